"""Sales aggregation for the dashboard and reports pages.

Every function here is a pure reduction over an already-filtered list of
sales (by company, date range and optionally driver). Nothing is fetched,
nothing is mutated, nothing raises: amounts are coerced to numbers by the
repository before they get here.

Usage:
    rows = await repository.list_sales(db, company_id, start=..., end=...)

    platforms = platform_summary(rows)          # {platform: PlatformTotals}
    totals = grand_totals(rows, commission_pct)  # GrandTotals
    daily = daily_series(rows)                   # [SeriesPoint] by date
    monthly = monthly_series(rows)               # [SeriesPoint] by YYYY-MM

Any object with ``date``, ``platform``, ``total_sale``, ``card_payments``,
``cash_payments`` and ``driver_name`` attributes is accepted as a row.
"""

from __future__ import annotations
import calendar
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable


# ── Input / result containers ────────────────────────────────────────────────

@dataclass(frozen=True)
class SaleRow:
    date: date
    platform: str = ""
    total_sale: float = 0.0
    card_payments: float = 0.0
    cash_payments: float = 0.0
    driver_name: str = ""


@dataclass
class PlatformTotals:
    total: float = 0.0
    card: float = 0.0
    cash: float = 0.0


@dataclass
class GrandTotals:
    total: float = 0.0
    card: float = 0.0
    cash: float = 0.0
    commission: float = 0.0


@dataclass
class SeriesPoint:
    """One bar of a stacked per-driver series."""
    key: str = ""                 # sort key: YYYY-MM-DD or YYYY-MM
    label: str = ""               # what the chart axis shows
    total: float = 0.0
    by_driver: dict[str, float] = field(default_factory=dict)


@dataclass
class DriverTotals:
    name: str = ""
    total: float = 0.0
    card: float = 0.0
    cash: float = 0.0


@dataclass
class DateGroup:
    date: date
    total: float = 0.0
    drivers: dict[str, DriverTotals] = field(default_factory=dict)


# ── Helpers ──────────────────────────────────────────────────────────────────

def _num(v) -> float:
    return float(v or 0.0)


def commission_for(total: float, commission_pct: float | None) -> float:
    """Driver's share of ``total``; 0 when no percentage applies."""
    if not commission_pct:
        return 0.0
    return total * commission_pct / 100


def month_label(year: int, month: int) -> str:
    return f"{calendar.month_name[month]} {year}"


# ── Summaries ────────────────────────────────────────────────────────────────

def platform_summary(sales: Iterable) -> dict[str, PlatformTotals]:
    """Totals per platform string, in first-seen order.

    Empty or unknown platform names are kept as-is: the entry form owns
    platform validation, not the report.
    """
    out: dict[str, PlatformTotals] = {}
    for s in sales:
        bucket = out.setdefault(s.platform or "", PlatformTotals())
        bucket.total += _num(s.total_sale)
        bucket.card += _num(s.card_payments)
        bucket.cash += _num(s.cash_payments)
    return out


def grand_totals(sales: Iterable, commission_pct: float | None = None) -> GrandTotals:
    result = GrandTotals()
    for s in sales:
        result.total += _num(s.total_sale)
        result.card += _num(s.card_payments)
        result.cash += _num(s.cash_payments)
    result.commission = commission_for(result.total, commission_pct)
    return result


# ── Time series ──────────────────────────────────────────────────────────────

def _series(sales: Iterable, key_of, label_of) -> list[SeriesPoint]:
    points: dict[str, SeriesPoint] = {}
    for s in sales:
        key = key_of(s.date)
        point = points.get(key)
        if point is None:
            point = points[key] = SeriesPoint(key=key, label=label_of(s.date))
        amount = _num(s.total_sale)
        driver = s.driver_name or ""
        point.total += amount
        point.by_driver[driver] = point.by_driver.get(driver, 0.0) + amount
    # Keys are zero-padded, so string order is chronological order
    return [points[k] for k in sorted(points)]


def daily_series(sales: Iterable) -> list[SeriesPoint]:
    return _series(sales, lambda d: d.isoformat(), lambda d: d.isoformat())


def monthly_series(sales: Iterable) -> list[SeriesPoint]:
    """Per-month totals, sorted by ``YYYY-MM`` and never by the month name."""
    return _series(
        sales,
        lambda d: f"{d.year:04d}-{d.month:02d}",
        lambda d: month_label(d.year, d.month),
    )


def series_drivers(points: Iterable[SeriesPoint]) -> list[str]:
    """Distinct driver names across a series, in first-seen order (legend order)."""
    seen: dict[str, None] = {}
    for p in points:
        for name in p.by_driver:
            seen.setdefault(name, None)
    return list(seen)


def sales_by_date_and_driver(sales: Iterable) -> list[DateGroup]:
    """Per-date totals broken down per driver, ascending by date."""
    groups: dict[date, DateGroup] = {}
    for s in sales:
        group = groups.get(s.date)
        if group is None:
            group = groups[s.date] = DateGroup(date=s.date)
        name = s.driver_name or ""
        drv = group.drivers.get(name)
        if drv is None:
            drv = group.drivers[name] = DriverTotals(name=name)
        amount = _num(s.total_sale)
        group.total += amount
        drv.total += amount
        drv.card += _num(s.card_payments)
        drv.cash += _num(s.cash_payments)
    return [groups[d] for d in sorted(groups)]

"""Date windows and filter state shared by the dashboard, reports and export.

All windows are inclusive ``[start, end]`` pairs at day granularity. "Now" is
read in one reference time zone for every user of the app, so a driver
abroad and the admin at the office agree on where the current month starts.
"""

import os
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

REPORT_TIMEZONE = os.environ.get("REPORT_TIMEZONE", "Europe/Madrid")

QUICK_RANGES = ("today", "yesterday", "last7")
CUSTOM = "custom"


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def as_query(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def today_in(tz: str = REPORT_TIMEZONE, now: datetime | None = None) -> date:
    """Calendar date in ``tz``. A naive ``now`` is taken to be UTC."""
    zone = ZoneInfo(tz)
    if now is None:
        return datetime.now(zone).date()
    if now.tzinfo is None:
        now = now.replace(tzinfo=ZoneInfo("UTC"))
    return now.astimezone(zone).date()


def month_bounds(d: date) -> DateRange:
    start = date(d.year, d.month, 1)
    nxt = date(d.year + 1, 1, 1) if d.month == 12 else date(d.year, d.month + 1, 1)
    return DateRange(start, nxt - timedelta(days=1))


def default_date_range(now: datetime | None = None, tz: str = REPORT_TIMEZONE) -> DateRange:
    """First through last day of the current month in the reference zone."""
    return month_bounds(today_in(tz, now))


def quick_range(name: str, anchor: date) -> DateRange:
    if name == "today":
        return DateRange(anchor, anchor)
    if name == "yesterday":
        y = anchor - timedelta(days=1)
        return DateRange(y, y)
    if name == "last7":
        return DateRange(anchor - timedelta(days=6), anchor)
    raise ValueError(f"Unknown quick range: {name!r}")


# ── Filter bar state ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FilterState:
    """What the filter bar shows: the active quick-select, the window, the driver.

    ``driver`` is ``None`` for "all drivers".
    """
    active: str
    date_range: DateRange
    driver: int | None = None

    @classmethod
    def initial(cls, now: datetime | None = None) -> "FilterState":
        return cls(active=CUSTOM, date_range=default_date_range(now))

    def select_quick(self, name: str, anchor: date) -> "FilterState":
        # A quick-select always wins over dates typed by hand
        return replace(self, active=name, date_range=quick_range(name, anchor))

    def edit_date(self, which: str, value: date) -> "FilterState":
        if which == "start":
            dr = DateRange(value, self.date_range.end)
        elif which == "end":
            dr = DateRange(self.date_range.start, value)
        else:
            raise ValueError(f"Unknown date field: {which!r}")
        return replace(self, active=CUSTOM, date_range=dr)

    def with_driver(self, driver: int | None) -> "FilterState":
        return replace(self, driver=driver)

    @classmethod
    def from_query(
        cls,
        range_name: str | None = None,
        start: date | None = None,
        end: date | None = None,
        driver: str | None = None,
        now: datetime | None = None,
    ) -> "FilterState":
        """Rebuild the state a filter-bar submission describes.

        Missing or unreadable dates fall back to the default month window.
        """
        state = cls.initial(now)
        if range_name in QUICK_RANGES:
            state = state.select_quick(range_name, today_in(now=now))
        else:
            if start:
                state = state.edit_date("start", start)
            if end:
                state = state.edit_date("end", end)
        if driver and driver != "all":
            try:
                state = state.with_driver(int(driver))
            except ValueError:
                pass
        return state

    def query(self) -> dict[str, str]:
        q = {"range": self.active, **self.date_range.as_query()}
        q["driver"] = str(self.driver) if self.driver is not None else "all"
        return q


# ── Out-of-order response guard ──────────────────────────────────────────────

class RequestSequencer:
    """Remembers the most recently issued request per channel.

    A channel is whatever identifies one filter bar (e.g. user + view + page
    load). A response computed for a ticket that is no longer the latest must
    be thrown away: an earlier, slower fetch may not overwrite a newer one.
    There is no cancellation; superseded work simply finishes and is dropped.
    """

    _MAX_CHANNELS = 1000

    def __init__(self):
        self._latest: dict[str, int] = {}

    def issue(self, channel: str, ticket: int | None = None) -> int:
        """New ticket for ``channel``.

        Clients that number their own requests pass ``ticket``. The first
        ticket seen on a channel is current whatever its value; after that the
        latest never moves backwards, so an old ticket arriving late stays
        stale. A client whose counter restarts must open a new channel.
        """
        current = self._latest.get(channel)
        if ticket is None:
            ticket = (current or 0) + 1
        if current is None or ticket > current:
            if current is None and len(self._latest) >= self._MAX_CHANNELS:
                for k in list(self._latest)[: self._MAX_CHANNELS // 2]:
                    del self._latest[k]
            self._latest[channel] = ticket
        return ticket

    def is_current(self, channel: str, ticket: int) -> bool:
        return self._latest.get(channel) == ticket

    def latest(self, channel: str) -> int:
        return self._latest.get(channel, 0)

"""Parsing and display helpers shared by the routes and templates."""

from datetime import datetime

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CAD": "C$",
    "AUD": "A$",
}

def parse_date(s: str | None):
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y"):
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None

def parse_amount(v) -> float:
    """Stored amounts arrive as Decimal, str or None; anything unreadable is 0."""
    try:
        return float(v)
    except (TypeError, ValueError):
        return 0.0

def money(v, currency: str = "USD"):
    try:
        amount = float(v)
    except (TypeError, ValueError):
        amount = 0.0
    symbol = CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    sign = "-" if amount < 0 else ""
    decimals = 0 if currency == "JPY" else 2
    return f"{sign}{symbol}{abs(amount):,.{decimals}f}"

def fmt_date(d):
    return d.strftime("%d/%m/%Y") if d else ""

def fmt_datetime(d):
    return d.strftime("%d/%m/%Y %H:%M") if d else ""

"""Form payloads and their validation rules. ``first_error`` turns a ValidationError into one banner line."""

from pydantic import BaseModel, Field, field_validator
from datetime import date

AVAILABLE_CURRENCIES = {
    "USD": "US Dollar",
    "EUR": "Euro",
    "GBP": "British Pound",
    "JPY": "Japanese Yen",
    "CAD": "Canadian Dollar",
    "AUD": "Australian Dollar",
}

MIN_PASSWORD_LENGTH = 6


def _amount(v):
    # Blank inputs mean zero; anything else must be a number
    if v is None or (isinstance(v, str) and not v.strip()):
        return 0.0
    return v


def clamp_commission(v) -> float:
    try:
        n = float(v)
    except (TypeError, ValueError):
        return 0.0
    if n != n:  # NaN
        return 0.0
    return min(100.0, max(0.0, n))


def _required(v: str, label: str) -> str:
    v = (v or "").strip()
    if not v:
        raise ValueError(f"{label} is required")
    return v


def _email(v: str) -> str:
    v = _required(v, "Email").lower()
    local, _, domain = v.partition("@")
    if not local or "." not in domain:
        raise ValueError("Please enter a valid email address")
    return v


class SaleIn(BaseModel):
    date: date
    platform: str
    card_payments: float = Field(0.0, ge=0)
    cash_payments: float = Field(0.0, ge=0)
    total_sale: float = Field(..., gt=0)
    notes: str = ""

    @field_validator("card_payments", "cash_payments", "total_sale", mode="before")
    @classmethod
    def blank_amounts(cls, v):
        return _amount(v)

    @field_validator("platform")
    @classmethod
    def check_platform(cls, v: str) -> str:
        return _required(v, "Platform")

    @field_validator("notes")
    @classmethod
    def check_notes(cls, v: str) -> str:
        return (v or "").strip()


class DriverIn(BaseModel):
    name: str
    email: str
    password: str
    commission: float = 0.0

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        return _required(v, "Driver name")

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return _email(v)

    @field_validator("password")
    @classmethod
    def check_password(cls, v: str) -> str:
        if not v or len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
        return v

    @field_validator("commission", mode="before")
    @classmethod
    def check_commission(cls, v) -> float:
        return clamp_commission(v)


class DriverUpdate(BaseModel):
    name: str
    email: str
    commission: float = 0.0

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        return _required(v, "Driver name")

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return _email(v)

    @field_validator("commission", mode="before")
    @classmethod
    def check_commission(cls, v) -> float:
        return clamp_commission(v)


class SettingsIn(BaseModel):
    currency: str = "USD"
    enabled_platforms: list[str] = []
    custom_platforms: list[str] = []

    @field_validator("currency")
    @classmethod
    def check_currency(cls, v: str) -> str:
        v = (v or "").strip().upper()
        if v not in AVAILABLE_CURRENCIES:
            raise ValueError(f"Unsupported currency: {v or '(empty)'}")
        return v

    @field_validator("enabled_platforms", "custom_platforms")
    @classmethod
    def check_platforms(cls, v: list[str]) -> list[str]:
        out: list[str] = []
        for p in v:
            p = (p or "").strip().upper()
            if p and p not in out:
                out.append(p)
        return out


class CompanyIn(BaseModel):
    name: str
    address: str = ""
    phone: str = ""
    email: str = ""
    website: str = ""

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        return _required(v, "Company name")

    @field_validator("address", "phone", "website")
    @classmethod
    def check_optional(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return _email(v) if (v or "").strip() else ""


def first_error(exc) -> str:
    """The first human-readable message of a pydantic ``ValidationError``."""
    errors = exc.errors()
    if not errors:
        return "Invalid input"
    err = errors[0]
    msg = err.get("msg", "Invalid input")
    # field_validator ValueErrors come through as "Value error, <message>"
    if msg.startswith("Value error, "):
        return msg[len("Value error, "):]
    field = ".".join(str(p) for p in err.get("loc", ()))
    return f"{field.replace('_', ' ').capitalize()}: {msg}" if field else msg

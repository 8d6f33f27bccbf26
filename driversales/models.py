"""ORM tables: companies, users (admins and drivers), sales and per-company settings."""

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import String, Integer, Float, Date, Text, DateTime, Numeric, JSON, ForeignKey
from datetime import date, datetime, timezone
from decimal import Decimal

def _utcnow() -> datetime:
    """Naive UTC now, for TIMESTAMP columns (not TIMESTAMPTZ)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

class Base(DeclarativeBase):
    pass


# ════════════════════════════════════════════════
# COMPANY: the tenant
# ════════════════════════════════════════════════
class Company(Base):
    """A company is the top-level tenant. Every user, sale and the settings row
    belong to exactly one company. Companies and their first admin are
    provisioned in the hosted backend, never by this app."""
    __tablename__ = "companies"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    admin_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    address: Mapped[str | None] = mapped_column(String(300), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    email: Mapped[str | None] = mapped_column(String(254), nullable=True)
    website: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


# ════════════════════════════════════════════════
# USER: admin or driver, always inside one company
# ════════════════════════════════════════════════
class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    auth_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True, index=True)
    email: Mapped[str] = mapped_column(String(254), unique=True, nullable=False)
    role: Mapped[str] = mapped_column(String(16), default="driver")
    # Roles: "admin"  manages every user, sale and the settings of its company
    #        "driver" logs and edits its own sales
    name: Mapped[str] = mapped_column(String(120), default="")
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    admin_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    commission: Mapped[float] = mapped_column(Float, default=0.0)  # percent, 0 to 100
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


# ════════════════════════════════════════════════
# SALE: one day's earnings on one platform
# ════════════════════════════════════════════════
class Sale(Base):
    __tablename__ = "sales"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(80), default="")
    card_payments: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    cash_payments: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    # Entered independently; not required to equal card + cash (tips, adjustments)
    total_sale: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_modified_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_modified_by_name: Mapped[str] = mapped_column(String(120), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


# ════════════════════════════════════════════════
# SETTINGS: one per COMPANY
# Created lazily on the first admin visit, edited only by that admin.
# ════════════════════════════════════════════════
class Settings(Base):
    __tablename__ = "settings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), unique=True, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    enabled_platforms: Mapped[list] = mapped_column(JSON, default=list)
    custom_platforms: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

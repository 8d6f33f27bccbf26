"""Queries against the hosted database.

Every function takes the request's ``AsyncSession`` and scopes its query to
the caller's company. Row-level security proper is enforced by the hosted
backend; the company filter here only keeps one tenant's pages from showing
another tenant's rows when the app connects with a privileged role.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import auth
from .context import CompanySettings, DEFAULT_SETTINGS
from .models import Company, Sale, Settings, User, _utcnow
from .schemas import CompanyIn, DriverIn, DriverUpdate, SaleIn
from .utils import parse_amount

logger = logging.getLogger("repository")


class RepositoryError(Exception):
    """The backend refused a write, or a record is not there."""


@dataclass(frozen=True)
class SaleView:
    """A sale as pages and reports see it: amounts as floats, driver name joined in."""
    id: int
    user_id: int
    company_id: int
    date: date
    platform: str
    card_payments: float
    cash_payments: float
    total_sale: float
    notes: str
    driver_name: str
    last_modified_by: int | None
    last_modified_by_name: str
    created_at: datetime | None
    updated_at: datetime | None


def _money(v: float) -> Decimal:
    return Decimal(f"{v:.2f}")


def _view(sale: Sale, driver_name: str | None) -> SaleView:
    return SaleView(
        id=sale.id,
        user_id=sale.user_id,
        company_id=sale.company_id,
        date=sale.date,
        platform=sale.platform or "",
        card_payments=parse_amount(sale.card_payments),
        cash_payments=parse_amount(sale.cash_payments),
        total_sale=parse_amount(sale.total_sale),
        notes=sale.notes or "",
        driver_name=driver_name or "",
        last_modified_by=sale.last_modified_by,
        last_modified_by_name=sale.last_modified_by_name or "",
        created_at=sale.created_at,
        updated_at=sale.updated_at,
    )


# ── Users ─────────────────────────────────────────────────────────────────────

async def get_user(db: AsyncSession, user_id: int, company_id: int | None = None) -> User | None:
    q = select(User).where(User.id == user_id)
    if company_id is not None:
        q = q.where(User.company_id == company_id)
    return (await db.execute(q)).scalar_one_or_none()


async def get_user_by_auth_id(db: AsyncSession, auth_id: str) -> User | None:
    return (await db.execute(select(User).where(User.auth_id == auth_id))).scalar_one_or_none()


async def list_drivers(db: AsyncSession, company_id: int) -> list[User]:
    return list((await db.execute(
        select(User)
        .where(User.company_id == company_id, User.role == "driver")
        .order_by(User.name)
    )).scalars().all())


async def create_driver(db: AsyncSession, company_id: int, admin_id: int, data: DriverIn) -> User:
    """Issue a provider identity for the driver, then its users row.

    If the row cannot be written the provider identity is removed again so
    the email can be reused.
    """
    result = await auth.sign_up(data.email, data.password)
    if "error" in result:
        raise RepositoryError(result["error"])
    auth_id = result["id"]

    driver = User(
        auth_id=auth_id,
        email=data.email,
        role="driver",
        name=data.name,
        company_id=company_id,
        admin_id=admin_id,
        commission=data.commission,
    )
    db.add(driver)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        await auth.delete_auth_user(auth_id)
        raise RepositoryError("An account with this email already exists.")
    except SQLAlchemyError as e:
        await db.rollback()
        await auth.delete_auth_user(auth_id)
        logger.warning(f"Driver insert failed for company {company_id}: {e}")
        raise RepositoryError("Failed to add driver")
    await db.refresh(driver)
    logger.info(f"Created driver {driver.id} ({driver.email}) in company {company_id}")
    return driver


async def update_driver(db: AsyncSession, company_id: int, driver_id: int, data: DriverUpdate) -> User:
    driver = await get_user(db, driver_id, company_id)
    if driver is None or driver.role != "driver":
        raise RepositoryError("User not found")
    driver.name = data.name
    driver.email = data.email
    driver.commission = data.commission
    driver.updated_at = _utcnow()
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise RepositoryError("An account with this email already exists.")
    await db.refresh(driver)
    auth.cache_clear()
    return driver


# ── Sales ─────────────────────────────────────────────────────────────────────

async def list_sales(
    db: AsyncSession,
    company_id: int,
    user_id: int | None = None,
    start: date | None = None,
    end: date | None = None,
) -> list[SaleView]:
    """Sales of a company, newest first, optionally for one driver and an inclusive window."""
    q = (
        select(Sale, User.name)
        .join(User, User.id == Sale.user_id)
        .where(Sale.company_id == company_id)
    )
    if user_id is not None:
        q = q.where(Sale.user_id == user_id)
    if start is not None:
        q = q.where(Sale.date >= start)
    if end is not None:
        q = q.where(Sale.date <= end)
    q = q.order_by(Sale.date.desc(), Sale.id.desc())
    rows = (await db.execute(q)).all()
    return [_view(sale, name) for sale, name in rows]


async def get_sale(db: AsyncSession, sale_id: int, company_id: int) -> Sale | None:
    return (await db.execute(
        select(Sale).where(Sale.id == sale_id, Sale.company_id == company_id)
    )).scalar_one_or_none()


async def create_sale(
    db: AsyncSession,
    user_id: int,
    company_id: int,
    data: SaleIn,
    modifier_id: int,
    modifier_name: str,
) -> Sale:
    sale = Sale(
        user_id=user_id,
        company_id=company_id,
        date=data.date,
        platform=data.platform,
        card_payments=_money(data.card_payments),
        cash_payments=_money(data.cash_payments),
        total_sale=_money(data.total_sale),
        notes=data.notes or None,
        last_modified_by=modifier_id,
        last_modified_by_name=modifier_name,
    )
    db.add(sale)
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning(f"Sale insert failed for user {user_id}: {e}")
        raise RepositoryError("Failed to create sale")
    await db.refresh(sale)
    return sale


async def update_sale(
    db: AsyncSession,
    sale: Sale,
    data: SaleIn,
    modifier_id: int,
    modifier_name: str,
) -> Sale:
    sale_id = sale.id
    sale.date = data.date
    sale.platform = data.platform
    sale.card_payments = _money(data.card_payments)
    sale.cash_payments = _money(data.cash_payments)
    sale.total_sale = _money(data.total_sale)
    sale.notes = data.notes or None
    sale.last_modified_by = modifier_id
    sale.last_modified_by_name = modifier_name
    sale.updated_at = _utcnow()
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning(f"Sale {sale_id} update failed: {e}")
        raise RepositoryError("Failed to update sale")
    await db.refresh(sale)
    return sale


async def delete_sale(db: AsyncSession, sale: Sale) -> None:
    sale_id = sale.id
    await db.delete(sale)
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning(f"Sale {sale_id} delete failed: {e}")
        raise RepositoryError("Failed to delete sale")


# ── Companies ─────────────────────────────────────────────────────────────────

async def get_company(db: AsyncSession, company_id: int) -> Company | None:
    return (await db.execute(select(Company).where(Company.id == company_id))).scalar_one_or_none()


async def update_company(db: AsyncSession, company_id: int, data: CompanyIn) -> Company:
    company = await get_company(db, company_id)
    if company is None:
        raise RepositoryError("Company not found")
    company.name = data.name
    company.address = data.address or None
    company.phone = data.phone or None
    company.email = data.email or None
    company.website = data.website or None
    company.updated_at = _utcnow()
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning(f"Company {company_id} update failed: {e}")
        raise RepositoryError("Failed to save company profile")
    await db.refresh(company)
    return company


# ── Settings ──────────────────────────────────────────────────────────────────

def _settings_value(s: Settings) -> CompanySettings:
    return CompanySettings(
        currency=s.currency or DEFAULT_SETTINGS.currency,
        enabled_platforms=tuple(s.enabled_platforms or ()),
        custom_platforms=tuple(s.custom_platforms or ()),
    )


async def get_settings(db: AsyncSession, company_id: int, role: str | None) -> CompanySettings:
    """Settings of a company; created with defaults on the first admin visit.

    Any failure falls back to the defaults: a page with the default
    platforms is better than no page.
    """
    try:
        s = (await db.execute(
            select(Settings).where(Settings.company_id == company_id).limit(1)
        )).scalar_one_or_none()
        if s is not None:
            return _settings_value(s)
        if role != "admin":
            return DEFAULT_SETTINGS
        s = Settings(company_id=company_id, **DEFAULT_SETTINGS.to_dict())
        db.add(s)
        await db.commit()
        await db.refresh(s)
        logger.info(f"Created default settings for company {company_id}")
        return _settings_value(s)
    except Exception as e:
        logger.warning(f"Settings load failed for company {company_id}, using defaults: {e}")
        await db.rollback()
        return DEFAULT_SETTINGS


async def update_settings(
    db: AsyncSession,
    company_id: int,
    role: str | None,
    settings: CompanySettings,
) -> CompanySettings:
    """Persist new settings (admins only). On failure the submitted values are returned as-is."""
    try:
        if role != "admin":
            raise RepositoryError("Only company admin can update settings")
        s = (await db.execute(
            select(Settings).where(Settings.company_id == company_id).limit(1)
        )).scalar_one_or_none()
        if s is None:
            s = Settings(company_id=company_id)
            db.add(s)
        s.currency = settings.currency
        s.enabled_platforms = list(settings.enabled_platforms)
        s.custom_platforms = list(settings.custom_platforms)
        s.updated_at = _utcnow()
        await db.commit()
        await db.refresh(s)
        return _settings_value(s)
    except Exception as e:
        logger.warning(f"Settings update failed for company {company_id}: {e}")
        await db.rollback()
        return settings

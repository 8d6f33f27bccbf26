import json
import time
from datetime import date, timedelta

import pytest
from sqlalchemy import update

from conftest import csrf, encode_session, login, run, set_session
from driversales import main, repository
from driversales.filters import today_in
from driversales.models import User
from driversales.schemas import SaleIn
from driversales.session_store import SESSION_KEY


def add_sale(sessionmaker, user_id, company_id, d=None, platform="UBER", total=100.0, card=60.0, cash=40.0):
    async def go():
        async with sessionmaker() as db:
            data = SaleIn(date=d or today_in(), platform=platform, card_payments=card,
                          cash_payments=cash, total_sale=total)
            sale = await repository.create_sale(db, user_id, company_id, data, user_id, "Seed")
            return sale.id

    return run(go())


# ── Sign-in ──────────────────────────────────────────────────────────────────

def test_protected_page_redirects_to_sign_in(client):
    r = client.get("/dashboard", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"].startswith("/?next=")


def test_api_without_session_is_401(client):
    assert client.get("/api/summary").status_code == 401


def test_login_page_sets_csrf_cookie(client):
    r = client.get("/")
    assert r.status_code == 200
    assert client.cookies.get(main.CSRF_COOKIE)
    assert 'name="csrf_token"' in r.text


def test_post_without_csrf_is_rejected(client):
    r = client.post("/", data={"email": "admin@fleet.test", "password": "secret123"})
    assert r.status_code == 403


def test_wrong_password(client):
    r = login(client, "admin@fleet.test", password="wrong")
    assert r.status_code == 200
    assert "Invalid email or password" in r.text
    assert client.cookies.get(SESSION_KEY) is None


def test_login_redirects_to_dashboard_and_stores_session(client):
    r = login(client, "admin@fleet.test")
    assert r.status_code == 303
    assert r.headers["location"] == "/dashboard"
    assert client.cookies.get(SESSION_KEY)
    page = client.get("/dashboard")
    assert page.status_code == 200
    assert "Ana Admin" in page.text


def test_login_honours_next(client):
    r = login(client, "admin@fleet.test", next="/reports")
    assert r.headers["location"] == "/reports"


def test_login_ignores_offsite_next(client):
    r = login(client, "admin@fleet.test", next="//evil.example")
    assert r.headers["location"] == "/dashboard"


def test_signed_in_visit_to_sign_in_page_goes_to_dashboard(as_driver):
    r = as_driver.get("/", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/dashboard"


def test_identity_without_users_row(client, supabase):
    supabase.add_user("ghost@fleet.test", auth_id="auth-ghost")
    r = login(client, "ghost@fleet.test")
    assert r.status_code == 200
    assert "No account found" in r.text


def test_logout_clears_session(as_driver, supabase):
    r = as_driver.get("/logout", follow_redirects=False)
    assert r.status_code == 303
    assert as_driver.cookies.get(SESSION_KEY) is None
    assert "POST /auth/v1/logout" in supabase.calls
    assert as_driver.get("/dashboard", follow_redirects=False).status_code == 303


def test_rate_limited_after_repeated_failures(client):
    for _ in range(main._LOGIN_RATE_LIMIT):
        login(client, "admin@fleet.test", password="wrong")
    r = login(client, "admin@fleet.test")
    assert "Too many attempts" in r.text


# ── Session expiry and refresh ───────────────────────────────────────────────

def test_expired_session_is_refreshed(client, supabase):
    user = supabase.users["driver@fleet.test"]
    session = supabase.session_for(user)
    credential = {"access_token": session["access_token"], "refresh_token": session["refresh_token"],
                  "expires_at": int(time.time()) - 10, "auth_id": user["id"], "email": user["email"]}
    set_session(client, credential)
    r = client.get("/dashboard", follow_redirects=False)
    assert r.status_code == 200
    assert any(c.endswith("/auth/v1/token") for c in supabase.calls)
    assert client.cookies.get(SESSION_KEY) != encode_session(credential)


def test_unrefreshable_session_shows_expiry_notice(client):
    credential = {"access_token": "old", "refresh_token": "gone", "expires_at": int(time.time()) - 10,
                  "auth_id": "auth-driver", "email": "driver@fleet.test"}
    set_session(client, credential)
    r = client.get("/reports", follow_redirects=False)
    assert r.status_code == 303
    assert client.cookies.get(SESSION_KEY) is None
    page = client.get(r.headers["location"])
    assert "Your session has expired" in page.text
    assert "Your session has expired" not in client.get("/").text


def test_garbage_session_cookie_is_treated_as_signed_out(client):
    client.cookies.set(SESSION_KEY, "not-base64-json", domain="testserver.local", path="/")
    r = client.get("/")
    assert r.status_code == 200
    assert "Sign in" in r.text


def test_session_status(as_driver):
    data = as_driver.get("/api/session-status").json()
    assert data["authenticated"] is True
    assert 3000 < data["seconds_remaining"] <= 3600


def test_session_status_signed_out(client):
    assert client.get("/api/session-status").json() == {"authenticated": False, "seconds_remaining": 0}


# ── Roles ────────────────────────────────────────────────────────────────────

def test_driver_cannot_reach_admin_pages(as_driver):
    for path in ("/drivers", "/settings"):
        r = as_driver.get(path, follow_redirects=False)
        assert r.status_code == 303
        assert r.headers["location"] == "/"


def test_admin_reaches_admin_pages(as_admin):
    assert as_admin.get("/drivers").status_code == 200
    assert as_admin.get("/settings").status_code == 200


# ── Dashboard and summary ────────────────────────────────────────────────────

def test_driver_dashboard_shows_own_totals_and_commission(as_driver, sessionmaker, seed):
    add_sale(sessionmaker, seed.driver_id, seed.company_id, total=200, card=150, cash=50)
    add_sale(sessionmaker, seed.other_id, seed.company_id, total=999)
    r = as_driver.get("/dashboard")
    assert "$200.00" in r.text
    assert "$20.00" in r.text  # 10% commission
    assert "$999.00" not in r.text


def test_admin_dashboard_shows_everyone(as_admin, sessionmaker, seed):
    add_sale(sessionmaker, seed.driver_id, seed.company_id, total=200)
    add_sale(sessionmaker, seed.other_id, seed.company_id, total=100)
    add_sale(sessionmaker, seed.outsider_id, seed.other_company_id, total=5000)
    r = as_admin.get("/dashboard")
    assert "$300.00" in r.text
    assert "$5,000.00" not in r.text
    assert "Olga Other" in r.text


def test_summary_api(as_admin, sessionmaker, seed):
    today = today_in()
    add_sale(sessionmaker, seed.driver_id, seed.company_id, d=today, platform="UBER", total=100)
    add_sale(sessionmaker, seed.other_id, seed.company_id, d=today, platform="BOLT", total=50)
    data = as_admin.get("/api/summary", params={"range": "today", "seq": 1}).json()
    assert data["stale"] is False
    assert data["totals"]["total"] == 150
    assert data["totals"]["commission"] == 0
    assert {p["name"] for p in data["platforms"]} == {"UBER", "BOLT"}
    assert data["daily"][0]["drivers"] == {"Dan Driver": 100, "Olga Other": 50}


def test_summary_api_driver_filter(as_admin, sessionmaker, seed):
    add_sale(sessionmaker, seed.driver_id, seed.company_id, total=100)
    add_sale(sessionmaker, seed.other_id, seed.company_id, total=50)
    data = as_admin.get("/api/summary", params={"driver": seed.other_id}).json()
    assert data["totals"]["total"] == 50
    assert data["filters"]["driver"] == str(seed.other_id)


def test_driver_cannot_widen_summary_to_others(as_driver, sessionmaker, seed):
    add_sale(sessionmaker, seed.other_id, seed.company_id, total=50)
    data = as_driver.get("/api/summary", params={"driver": "all"}).json()
    assert data["totals"]["total"] == 0


def test_summary_api_stale_ticket(as_admin):
    params = {"view": "reports", "page": "load-1"}
    fresh = as_admin.get("/api/summary", params={**params, "seq": 10}).json()
    late = as_admin.get("/api/summary", params={**params, "seq": 9}).json()
    assert fresh["stale"] is False
    assert late == {"stale": True, "seq": 9, "latest": 10}


def test_summary_api_first_ticket_may_be_zero(as_admin):
    data = as_admin.get("/api/summary", params={"page": "load-1", "seq": 0}).json()
    assert data["stale"] is False
    assert data["seq"] == 0


def test_summary_api_reload_restarts_the_counter(as_admin):
    for n in range(1, 6):
        assert as_admin.get("/api/summary", params={"page": "load-1", "seq": n}).json()["stale"] is False
    reloaded = as_admin.get("/api/summary", params={"page": "load-2", "seq": 1}).json()
    assert reloaded["stale"] is False
    other_tab = as_admin.get("/api/summary", params={"page": "load-3", "seq": 1}).json()
    assert other_tab["stale"] is False


def test_summary_api_without_page_numbers_calls_itself(as_admin):
    first = as_admin.get("/api/summary", params={"seq": 5}).json()
    second = as_admin.get("/api/summary", params={"seq": 1}).json()
    assert first["stale"] is False
    assert second["stale"] is False
    assert second["seq"] == first["seq"] + 1


# ── Sales ────────────────────────────────────────────────────────────────────

def test_driver_adds_sale(as_driver, sessionmaker, seed):
    r = as_driver.post("/sales", data={
        "date": today_in().isoformat(), "platform": "UBER", "card_payments": "20",
        "cash_payments": "", "total_sale": "35", "notes": "", "csrf_token": csrf(as_driver),
    }, follow_redirects=False)
    assert r.status_code == 303
    assert "Sales data submitted successfully" in as_driver.get(r.headers["location"]).text

    async def go():
        async with sessionmaker() as db:
            return await repository.list_sales(db, seed.company_id)

    [sale] = run(go())
    assert (sale.user_id, sale.total_sale, sale.cash_payments) == (seed.driver_id, 35.0, 0.0)
    assert sale.last_modified_by_name == "Dan Driver"


def test_sale_total_must_be_positive(as_driver):
    r = as_driver.post("/sales", data={
        "date": today_in().isoformat(), "platform": "UBER", "total_sale": "0", "csrf_token": csrf(as_driver),
    })
    assert r.status_code == 400


def test_sale_platform_must_be_enabled(as_driver):
    r = as_driver.post("/sales", data={
        "date": today_in().isoformat(), "platform": "LYFT", "total_sale": "10", "csrf_token": csrf(as_driver),
    })
    assert r.status_code == 400
    assert "Please select a platform" in r.text


def test_admin_must_pick_a_driver(as_admin, seed):
    r = as_admin.post("/sales", data={
        "date": today_in().isoformat(), "platform": "UBER", "total_sale": "10", "csrf_token": csrf(as_admin),
    })
    assert r.status_code == 400
    assert "Please select a driver" in r.text

    r = as_admin.post("/sales", data={
        "date": today_in().isoformat(), "platform": "UBER", "total_sale": "10",
        "driver_id": str(seed.outsider_id), "csrf_token": csrf(as_admin),
    })
    assert r.status_code == 400


def test_admin_adds_sale_for_driver(as_admin, sessionmaker, seed):
    r = as_admin.post("/sales", data={
        "date": today_in().isoformat(), "platform": "BOLT", "total_sale": "42",
        "driver_id": str(seed.driver_id), "csrf_token": csrf(as_admin),
    }, follow_redirects=False)
    assert r.status_code == 303

    async def go():
        async with sessionmaker() as db:
            return await repository.list_sales(db, seed.company_id, user_id=seed.driver_id)

    [sale] = run(go())
    assert sale.last_modified_by_name == "Ana Admin"


def test_driver_edits_own_sale_but_not_others(as_driver, sessionmaker, seed):
    mine = add_sale(sessionmaker, seed.driver_id, seed.company_id)
    theirs = add_sale(sessionmaker, seed.other_id, seed.company_id)
    assert as_driver.get(f"/sales/{mine}/edit").status_code == 200
    assert as_driver.get(f"/sales/{theirs}/edit").status_code == 404

    r = as_driver.post(f"/sales/{mine}/edit", data={
        "date": today_in().isoformat(), "platform": "CABIFY", "card_payments": "1",
        "cash_payments": "2", "total_sale": "3", "csrf_token": csrf(as_driver),
    }, follow_redirects=False)
    assert r.status_code == 303


def test_admin_cannot_touch_other_company_sale(as_admin, sessionmaker, seed):
    foreign = add_sale(sessionmaker, seed.outsider_id, seed.other_company_id)
    assert as_admin.get(f"/sales/{foreign}/edit").status_code == 404
    r = as_admin.post(f"/sales/{foreign}/delete", data={"csrf_token": csrf(as_admin)})
    assert r.status_code == 404


def test_delete_sale(as_admin, sessionmaker, seed):
    sale_id = add_sale(sessionmaker, seed.driver_id, seed.company_id)
    r = as_admin.post(f"/sales/{sale_id}/delete", data={"csrf_token": csrf(as_admin)}, follow_redirects=False)
    assert r.status_code == 303

    async def go():
        async with sessionmaker() as db:
            return await repository.list_sales(db, seed.company_id)

    assert run(go()) == []


def test_refused_delete_shows_banner_and_keeps_sale(as_admin, sessionmaker, seed, monkeypatch):
    sale_id = add_sale(sessionmaker, seed.driver_id, seed.company_id, total=77.7)

    async def refuse(db, sale):
        raise repository.RepositoryError("Failed to delete sale")

    monkeypatch.setattr(repository, "delete_sale", refuse)
    r = as_admin.post(f"/sales/{sale_id}/delete",
                      data={"csrf_token": csrf(as_admin), "next": "/dashboard?range=today"},
                      follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/dashboard?range=today&notice=delete_failed"

    page = as_admin.get(r.headers["location"])
    assert page.status_code == 200
    assert "Failed to delete sale" in page.text
    assert "77.70" in page.text


def test_unknown_notice_is_ignored(as_admin):
    r = as_admin.get("/dashboard", params={"notice": "<b>hi</b>"})
    assert r.status_code == 200
    assert 'class="error"' not in r.text


def test_dashboard_sorting(as_admin, sessionmaker, seed):
    add_sale(sessionmaker, seed.driver_id, seed.company_id, total=11.11)
    add_sale(sessionmaker, seed.other_id, seed.company_id, total=99.99)
    text = as_admin.get("/dashboard", params={"sort": "total", "dir": "asc"}).text
    assert text.index("$11.11") < text.index("$99.99")
    text = as_admin.get("/dashboard", params={"sort": "total", "dir": "desc"}).text
    assert text.index("$99.99") < text.index("$11.11")


# ── Reports ──────────────────────────────────────────────────────────────────

def test_reports_page(as_admin, sessionmaker, seed):
    start = date(2024, 11, 20)
    add_sale(sessionmaker, seed.driver_id, seed.company_id, d=start, total=10)
    add_sale(sessionmaker, seed.other_id, seed.company_id, d=start + timedelta(days=20), total=20)
    r = as_admin.get("/reports", params={"range": "custom", "start": "2024-11-01", "end": "2024-12-31"})
    assert r.status_code == 200
    assert r.text.index("November 2024") < r.text.index("December 2024")
    assert 'getElementById("daily-chart")' in r.text


def test_reports_chart_keeps_drivers_apart_from_day_total(as_admin, sessionmaker, seed):
    async def rename():
        async with sessionmaker() as db:
            await db.execute(update(User).where(User.id == seed.other_id).values(name="total"))
            await db.commit()

    run(rename())
    day = date(2025, 1, 5)
    add_sale(sessionmaker, seed.driver_id, seed.company_id, d=day, total=100)
    add_sale(sessionmaker, seed.other_id, seed.company_id, d=day, total=5)
    r = as_admin.get("/reports", params={"range": "custom", "start": "2025-01-01", "end": "2025-01-31"})
    raw = r.text.split('id="daily-data">', 1)[1].split("</script>", 1)[0]
    chart = json.loads(raw)
    assert chart == [{"date": "2025-01-05", "total": 105.0, "drivers": {"Dan Driver": 100.0, "total": 5.0}}]


@pytest.mark.parametrize("url, expected", [
    ("sqlite+aiosqlite:////tmp/driversales.db", "sqlite+aiosqlite:////tmp/driversales.db"),
    ("sqlite+aiosqlite:///relative.db?mode=ro", "sqlite+aiosqlite:///relative.db?mode=ro"),
    ("postgres://u:p@db.example.test:6543/postgres?sslmode=require&application_name=ds",
     "postgres://u:p@db.example.test:6543/postgres?application_name=ds"),
])
def test_sanitize_url(url, expected):
    assert main._sanitize_url(url) == expected


def test_csv_export(as_admin, sessionmaker, seed):
    add_sale(sessionmaker, seed.driver_id, seed.company_id, d=date(2025, 1, 5), total=12.5, card=10, cash=2.5)
    r = as_admin.get("/reports/export", params={"start": "2025-01-01", "end": "2025-01-31"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert "sales-2025-01-01-2025-01-31.csv" in r.headers["content-disposition"]
    lines = r.text.strip().splitlines()
    assert lines[0].startswith("Date,Driver,Platform")
    assert lines[1].startswith("2025-01-05,Dan Driver,UBER,10.00,2.50,12.50")


# ── Drivers ──────────────────────────────────────────────────────────────────

def test_admin_creates_driver(as_admin, supabase):
    r = as_admin.post("/drivers", data={
        "name": "Nina New", "email": "nina@fleet.test", "password": "secret123",
        "commission": "150", "csrf_token": csrf(as_admin),
    })
    assert r.status_code == 200
    assert "Driver added successfully" in r.text
    assert "Nina New" in r.text
    assert "100.0%" in r.text
    assert "nina@fleet.test" in supabase.users


def test_create_driver_validation(as_admin):
    r = as_admin.post("/drivers", data={
        "name": "Nina", "email": "nina@fleet.test", "password": "123", "csrf_token": csrf(as_admin),
    })
    assert r.status_code == 400
    assert "Password must be at least 6 characters long" in r.text


def test_create_driver_duplicate_email(as_admin):
    r = as_admin.post("/drivers", data={
        "name": "Dup", "email": "driver@fleet.test", "password": "secret123", "csrf_token": csrf(as_admin),
    })
    assert r.status_code == 400
    assert "already exists" in r.text


def test_driver_profile_commission_follows_current_rate(as_admin, sessionmaker, seed):
    add_sale(sessionmaker, seed.driver_id, seed.company_id, total=200)
    r = as_admin.get(f"/drivers/{seed.driver_id}")
    assert "$20.00" in r.text
    r = as_admin.post(f"/drivers/{seed.driver_id}", data={
        "name": "Dan Driver", "email": "driver@fleet.test", "commission": "25", "csrf_token": csrf(as_admin),
    })
    assert "Profile updated successfully" in r.text
    assert "$50.00" in r.text


def test_driver_profile_of_other_company_is_404(as_admin, seed):
    assert as_admin.get(f"/drivers/{seed.outsider_id}").status_code == 404


# ── Settings ─────────────────────────────────────────────────────────────────

def test_settings_change_currency_and_platforms(as_admin):
    r = as_admin.post("/settings", data={
        "name": "Fleet One", "currency": "EUR",
        "enabled_platforms": ["UBER", "BOLT"], "new_platform": "freenow",
        "csrf_token": csrf(as_admin),
    })
    assert r.status_code == 200
    assert "Settings saved successfully" in r.text
    form = as_admin.get("/sales").text
    assert 'value="FREENOW"' in form
    assert 'value="CABIFY"' not in form
    assert "€" in as_admin.get("/dashboard").text


def test_settings_remove_custom_platform(as_admin):
    token = csrf(as_admin)
    as_admin.post("/settings", data={"name": "Fleet One", "currency": "USD", "new_platform": "freenow",
                                     "enabled_platforms": ["UBER"], "csrf_token": token})
    r = as_admin.post("/settings", data={"name": "Fleet One", "currency": "USD",
                                         "enabled_platforms": ["UBER", "FREENOW"], "custom_platforms": ["FREENOW"],
                                         "remove_platform": "FREENOW", "csrf_token": token})
    assert r.status_code == 200
    assert 'value="FREENOW"' not in as_admin.get("/sales").text


def test_settings_requires_company_name(as_admin):
    r = as_admin.post("/settings", data={"name": "", "currency": "USD", "csrf_token": csrf(as_admin)})
    assert r.status_code == 400
    assert "Company name is required" in r.text


def test_edit_keeps_disabled_platform_selectable(as_admin, sessionmaker, seed):
    sale_id = add_sale(sessionmaker, seed.driver_id, seed.company_id, platform="TAXXILO")
    as_admin.post("/settings", data={"name": "Fleet One", "currency": "USD",
                                     "enabled_platforms": ["UBER"], "csrf_token": csrf(as_admin)})
    r = as_admin.post(f"/sales/{sale_id}/edit", data={
        "date": today_in().isoformat(), "platform": "TAXXILO", "total_sale": "15", "csrf_token": csrf(as_admin),
    }, follow_redirects=False)
    assert r.status_code == 303

"""Tests for day views, history, overrides, finalization and the review queue."""

from datetime import timedelta

import pytest
from conftest import MEMBER, ORG, START, auth_headers, scan_body
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qrtrack.models.ledger import AttendanceSession, DayLedger
from qrtrack.services.session_ledger import day_cache_key


async def _check_in(client: AsyncClient, codes: dict, headers: dict):
    resp = await client.post("/api/v1/scan", json=scan_body(codes["check-in"]), headers=headers)
    assert resp.status_code == 200, resp.text
    return resp


async def _check_out(client: AsyncClient, codes: dict, headers: dict):
    resp = await client.post("/api/v1/scan", json=scan_body(codes["check-out"]), headers=headers)
    assert resp.status_code == 200, resp.text
    return resp


# ── Day view ────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_today_without_scans_is_absent(async_client: AsyncClient, member_headers: dict):
    resp = await async_client.get("/api/v1/attendance/today", headers=member_headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["date"] == "2026-03-02"
    assert data["status"] == "absent"
    assert data["is_working_day"] is True
    assert data["sessions"] == []


@pytest.mark.asyncio
async def test_open_session_total_grows_with_time(
    async_client: AsyncClient, codes: dict, member_headers: dict, clock
):
    await _check_in(async_client, codes, member_headers)
    clock.advance(minutes=90)
    first = (await async_client.get("/api/v1/attendance/today", headers=member_headers)).json()
    assert first["total_minutes"] == 90
    assert first["has_active_session"] is True
    assert first["status"] == "present"

    clock.advance(hours=3)
    later = (await async_client.get("/api/v1/attendance/today", headers=member_headers)).json()
    assert later["total_minutes"] == 270
    assert later["status"] == "half-day"


@pytest.mark.asyncio
async def test_day_view_cached_while_scan_commits_is_dropped(
    app, async_client: AsyncClient, codes: dict, member_headers: dict, monkeypatch
):
    before = (await async_client.get("/api/v1/attendance/today", headers=member_headers)).json()
    assert before["status"] == "absent"
    key = day_cache_key(ORG, MEMBER, "2026-03-02")
    old_view = app.state.cache.get(key)
    assert old_view is not None

    real_commit = AsyncSession.commit

    async def commit_behind_a_reader(self):
        # A day view read before the commit lands puts the old state back.
        app.state.cache.set(key, old_view)
        await real_commit(self)

    monkeypatch.setattr(AsyncSession, "commit", commit_behind_a_reader)
    await _check_in(async_client, codes, member_headers)
    monkeypatch.undo()

    day = (await async_client.get("/api/v1/attendance/today", headers=member_headers)).json()
    assert day["has_active_session"] is True
    assert day["status"] == "present"


@pytest.mark.asyncio
async def test_late_first_check_in(async_client: AsyncClient, codes: dict, member_headers: dict, clock):
    clock.advance(minutes=20)
    resp = await _check_in(async_client, codes, member_headers)
    assert resp.json()["day_status"]["is_late"] is True


@pytest.mark.asyncio
async def test_day_uses_organization_timezone(
    async_client: AsyncClient, codes: dict, member_headers: dict, clock
):
    # 19:30 UTC on 2 March is 01:00 on 3 March in Asia/Kolkata.
    clock.set(START.replace(hour=19))
    resp = await _check_in(async_client, codes, member_headers)
    assert resp.json()["date"] == "2026-03-03"


@pytest.mark.asyncio
async def test_member_cannot_view_another_user(async_client: AsyncClient, member_headers: dict):
    resp = await async_client.get("/api/v1/attendance/member-2/2026-03-02", headers=member_headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_admin_views_any_user(
    async_client: AsyncClient, codes: dict, member_headers: dict, admin_headers: dict, clock
):
    await _check_in(async_client, codes, member_headers)
    clock.advance(minutes=45)
    await _check_out(async_client, codes, member_headers)

    resp = await async_client.get(f"/api/v1/attendance/{MEMBER}/2026-03-02", headers=admin_headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_minutes"] == 45
    assert len(data["sessions"]) == 1
    assert data["sessions"][0]["duration_minutes"] == 45


@pytest.mark.asyncio
async def test_admin_of_other_org_gets_not_found(
    async_client: AsyncClient, codes: dict, member_headers: dict
):
    await _check_in(async_client, codes, member_headers)
    outsider = auth_headers("admin-9", "org-2", "admin")
    resp = await async_client.get(f"/api/v1/attendance/{MEMBER}/2026-03-02", headers=outsider)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_history_lists_recent_days(
    async_client: AsyncClient, codes: dict, member_headers: dict, clock
):
    await _check_in(async_client, codes, member_headers)
    clock.advance(hours=1)
    await _check_out(async_client, codes, member_headers)
    clock.advance(days=1)
    await _check_in(async_client, codes, member_headers)

    resp = await async_client.get("/api/v1/attendance/me/history", params={"days": 7}, headers=member_headers)
    ledgers = resp.json()["ledgers"]
    assert [ledger["date"] for ledger in ledgers] == ["2026-03-03", "2026-03-02"]
    assert ledgers[1]["total_working_minutes"] == 60

    narrow = await async_client.get("/api/v1/attendance/me/history", params={"days": 1}, headers=member_headers)
    assert [ledger["date"] for ledger in narrow.json()["ledgers"]] == ["2026-03-03"]


# ── Override ────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_override_wins_over_computed_status(
    async_client: AsyncClient, codes: dict, member_headers: dict, admin_headers: dict, clock
):
    await _check_in(async_client, codes, member_headers)
    clock.advance(minutes=30)
    await _check_out(async_client, codes, member_headers)

    resp = await async_client.post(
        "/api/v1/attendance/override",
        json={"user_id": MEMBER, "date": "2026-03-02", "status": "full-day", "notes": "Client visit"},
        headers=admin_headers,
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "full-day"
    assert resp.json()["override_status"] == "full-day"

    day = (await async_client.get("/api/v1/attendance/today", headers=member_headers)).json()
    assert day["status"] == "full-day"
    assert day["total_minutes"] == 30


@pytest.mark.asyncio
async def test_override_creates_missing_ledger(async_client: AsyncClient, admin_headers: dict):
    resp = await async_client.post(
        "/api/v1/attendance/override",
        json={"user_id": "member-7", "date": "2026-02-27", "status": "present"},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["date"] == "2026-02-27"
    assert data["total_working_minutes"] == 0
    assert data["status"] == "present"


@pytest.mark.asyncio
async def test_override_rejects_holiday_status(async_client: AsyncClient, admin_headers: dict):
    resp = await async_client.post(
        "/api/v1/attendance/override",
        json={"user_id": MEMBER, "date": "2026-03-02", "status": "holiday"},
        headers=admin_headers,
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_override_requires_admin(async_client: AsyncClient, member_headers: dict):
    resp = await async_client.post(
        "/api/v1/attendance/override",
        json={"user_id": MEMBER, "date": "2026-03-02", "status": "full-day"},
        headers=member_headers,
    )
    assert resp.status_code == 403


# ── Finalize ────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_finalize_waits_for_window_to_close(
    async_client: AsyncClient, codes: dict, member_headers: dict, admin_headers: dict
):
    await _check_in(async_client, codes, member_headers)
    resp = await async_client.post(
        "/api/v1/attendance/finalize", params={"date": "2026-03-02"}, headers=admin_headers
    )
    data = resp.json()
    assert data["finalized"] == 0
    assert data["pending"] == [MEMBER]


@pytest.mark.asyncio
async def test_finalize_caps_open_session_at_window_close(
    async_client: AsyncClient, codes: dict, member_headers: dict, admin_headers: dict, clock
):
    await _check_in(async_client, codes, member_headers)
    # 17:00 Asia/Kolkata is 11:30 UTC; the member never checks out.
    clock.advance(hours=10)

    resp = await async_client.post(
        "/api/v1/attendance/finalize", params={"date": "2026-03-02"}, headers=admin_headers
    )
    assert resp.json()["finalized"] == 1

    day = (await async_client.get("/api/v1/attendance/today", headers=member_headers)).json()
    assert day["finalized"] is True
    assert day["total_minutes"] == 480
    assert day["status"] == "full-day"

    again = await async_client.post(
        "/api/v1/attendance/finalize", params={"date": "2026-03-02"}, headers=admin_headers
    )
    assert again.json()["already_finalized"] == 1


@pytest.mark.asyncio
async def test_scan_on_finalized_day_is_rejected(
    async_client: AsyncClient, codes: dict, member_headers: dict, admin_headers: dict, clock
):
    await _check_in(async_client, codes, member_headers)
    clock.advance(hours=1)
    await _check_out(async_client, codes, member_headers)
    clock.advance(hours=8)
    await async_client.post(
        "/api/v1/attendance/finalize", params={"date": "2026-03-02"}, headers=admin_headers
    )

    resp = await async_client.post("/api/v1/scan", json=scan_body(codes["check-in"]), headers=member_headers)
    assert resp.status_code == 409
    assert resp.json()["reason"] == "DAY_FINALIZED"


# ── Review queue ────────────────────────────────────────────────────
async def _corrupt_ledger(db: AsyncSession) -> None:
    """Store a ledger with two open sessions, which no scan can produce."""
    ledger = DayLedger(
        user_id=MEMBER,
        organization_id=ORG,
        date="2026-03-02",
        total_working_minutes=0,
        status="absent",
        version=1,
    )
    ledger.sessions = [
        AttendanceSession(check_in_at=START, check_in_latitude=0.0, check_in_longitude=0.0),
        AttendanceSession(
            check_in_at=START + timedelta(minutes=1), check_in_latitude=0.0, check_in_longitude=0.0
        ),
    ]
    db.add(ledger)
    await db.commit()


@pytest.mark.asyncio
async def test_inconsistent_ledger_is_flagged_not_repaired(
    async_client: AsyncClient,
    codes: dict,
    member_headers: dict,
    admin_headers: dict,
    db_session: AsyncSession,
):
    await _corrupt_ledger(db_session)

    resp = await async_client.post("/api/v1/scan", json=scan_body(codes["check-out"]), headers=member_headers)
    assert resp.status_code == 409
    assert resp.json()["reason"] == "LEDGER_NEEDS_REVIEW"

    queue = await async_client.get("/api/v1/attendance/review", headers=admin_headers)
    flagged = queue.json()
    assert len(flagged) == 1
    assert flagged[0]["needs_review"] is True
    assert flagged[0]["review_note"]

    sessions = (
        await db_session.execute(select(AttendanceSession).where(AttendanceSession.check_out_at.is_(None)))
    ).scalars().all()
    assert len(sessions) == 2

    # Further scans are refused while the flag stands.
    again = await async_client.post("/api/v1/scan", json=scan_body(codes["check-in"]), headers=member_headers)
    assert again.json()["reason"] == "LEDGER_NEEDS_REVIEW"


@pytest.mark.asyncio
async def test_clear_review_flag(
    async_client: AsyncClient,
    codes: dict,
    member_headers: dict,
    admin_headers: dict,
    db_session: AsyncSession,
):
    await _corrupt_ledger(db_session)
    await async_client.post("/api/v1/scan", json=scan_body(codes["check-out"]), headers=member_headers)
    ledger_id = (await async_client.get("/api/v1/attendance/review", headers=admin_headers)).json()[0]["id"]

    resp = await async_client.post(f"/api/v1/attendance/review/{ledger_id}/clear", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["needs_review"] is False
    assert (await async_client.get("/api/v1/attendance/review", headers=admin_headers)).json() == []

    missing = await async_client.post("/api/v1/attendance/review/9999/clear", headers=admin_headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_finalize_skips_flagged_ledgers(
    async_client: AsyncClient,
    codes: dict,
    member_headers: dict,
    admin_headers: dict,
    db_session: AsyncSession,
    clock,
):
    await _corrupt_ledger(db_session)
    await async_client.post("/api/v1/scan", json=scan_body(codes["check-out"]), headers=member_headers)
    clock.advance(hours=10)

    resp = await async_client.post(
        "/api/v1/attendance/finalize", params={"date": "2026-03-02"}, headers=admin_headers
    )
    assert resp.json()["finalized"] == 0
    assert resp.json()["pending"] == [MEMBER]

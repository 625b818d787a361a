import random
import string

import pytest
from conftest import scan_body
from httpx import AsyncClient

# 💀 OMEGA FUZZER: GENERATING CHAOS

rng = random.Random(1337)


def generate_garbage(length=100):
    return "".join(rng.choices(string.ascii_letters + string.digits + "!@#$%^&*()-_", k=length))


def generate_sql_injection():
    payloads = ["' OR '1'='1", "'; DROP TABLE day_ledgers--", "admin'--", "' UNION SELECT 1,2,3--"]
    return rng.choice(payloads)


def generate_xss():
    payloads = ["<script>alert(1)</script>", "<img src=x onerror=alert(1)>", "javascript:alert(1)"]
    return rng.choice(payloads)


SCAN_OK_OR_REJECTED = {200, 400, 403, 404, 409, 410, 422}


@pytest.mark.asyncio
async def test_omega_scan_code_fuzz(async_client: AsyncClient, codes: dict, member_headers: dict):
    """Fuzz the /scan code field with 100 random variations."""
    for i in range(100):
        code = generate_garbage(rng.randint(1, 255))
        if i % 10 == 0:
            code = generate_sql_injection()
        if i % 11 == 0:
            code = generate_xss()

        resp = await async_client.post("/api/v1/scan", json=scan_body(code), headers=member_headers)
        # It should fail gracefully, never 500
        assert resp.status_code in SCAN_OK_OR_REJECTED, f"CRITICAL: {resp.status_code} on code: {code}"
        assert resp.status_code != 200


@pytest.mark.asyncio
async def test_omega_scan_geo_fuzz(async_client: AsyncClient, codes: dict, member_headers: dict):
    """Real codes, hostile coordinates and accuracies."""
    values = [0, -0.0, 1e-12, 89.9999, -89.9999, 179.9999, -180, 1e9, -1, "NaN", None, "north", []]
    for i in range(60):
        body = scan_body(codes["auto"])
        body["geo"]["latitude"] = rng.choice(values)
        body["geo"]["longitude"] = rng.choice(values)
        body["geo"]["accuracy"] = rng.choice(values)
        resp = await async_client.post("/api/v1/scan", json=body, headers=member_headers)
        assert resp.status_code in SCAN_OK_OR_REJECTED, f"CRITICAL: {resp.status_code} on geo: {body['geo']}"


@pytest.mark.asyncio
async def test_omega_scan_timestamp_fuzz(async_client: AsyncClient, codes: dict, member_headers: dict):
    stamps = [
        "2026-03-02T03:30:00Z",
        "2026-03-02T09:00:00+05:30",
        "2026-03-02T03:30:00",
        "1970-01-01T00:00:00Z",
        "9999-12-31T23:59:59Z",
        "not-a-time",
        "2026-02-30T00:00:00Z",
        "' OR 1=1",
        1772422200,
    ]
    for stamp in stamps:
        resp = await async_client.post(
            "/api/v1/scan", json=scan_body(codes["auto"], timestamp=stamp), headers=member_headers
        )
        assert resp.status_code in SCAN_OK_OR_REJECTED, f"Scan crashed on timestamp: {stamp}"


@pytest.mark.asyncio
async def test_omega_device_fuzz(async_client: AsyncClient, codes: dict, member_headers: dict):
    for _ in range(30):
        body = scan_body(codes["auto"], device=generate_garbage(rng.randint(0, 200)))
        body["device"]["fingerprint"] = rng.choice([None, "", generate_garbage(300), generate_xss()])
        resp = await async_client.post("/api/v1/scan", json=body, headers=member_headers)
        assert resp.status_code in SCAN_OK_OR_REJECTED


@pytest.mark.asyncio
async def test_omega_token_fuzz(async_client: AsyncClient, codes: dict):
    """Garbage bearer tokens and cookies never get past authentication."""
    for i in range(30):
        token = generate_garbage(rng.randint(1, 400))
        if i % 2:
            resp = await async_client.post(
                "/api/v1/scan", json=scan_body(codes["auto"]), headers={"Authorization": f"Bearer {token}"}
            )
        else:
            async_client.cookies.set("access_token", token)
            resp = await async_client.post("/api/v1/scan", json=scan_body(codes["auto"]))
            async_client.cookies.clear()
        assert resp.status_code in (401, 403), f"Token fuzz leaked through: {resp.status_code}"


@pytest.mark.asyncio
async def test_omega_date_fuzz(async_client: AsyncClient, admin_headers: dict):
    """Fuzz date parsing in the day view and finalize."""
    dates = ["2020-01-01", "9999-12-31", "0001-01-01", "0000-00-00", "not-a-date", "' OR 1=1", "2026-13-01"]
    for d in dates:
        resp = await async_client.get(f"/api/v1/attendance/member-1/{d}", headers=admin_headers)
        assert resp.status_code in (200, 404, 422), f"Day view crashed on date: {d}"

        resp = await async_client.post(
            "/api/v1/attendance/finalize", params={"date": d}, headers=admin_headers
        )
        assert resp.status_code in (200, 422), f"Finalize crashed on date: {d}"

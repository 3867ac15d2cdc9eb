import pytest
import pytest_asyncio
from aiohttp import test_utils

from paani.api.server import GUARD, build_app
from paani.core.scheduler import SchedulerDriver
from paani.services.guard import DuplicateRequestGuard
from paani.services.rate_limit import WindowRateLimiter
from paani.services.recurring import RecurringSweep

OFFSET = 300


@pytest_asyncio.fixture
async def client(sessions):
    limiter = WindowRateLimiter(max_requests=1, window_seconds=60)
    guard = DuplicateRequestGuard(limiter)
    driver = SchedulerDriver(RecurringSweep(sessions, guard, offset_minutes=OFFSET), limiter)
    app = build_app(sessions, guard, driver, offset_minutes=OFFSET)
    async with test_utils.TestClient(test_utils.TestServer(app)) as c:
        yield c


async def _customer(client, name="Bilal Ahmed"):
    resp = await client.post("/api/customers", json={
        "name": name,
        "address": "House 12, Street 4",
        "defaultCans": 2,
        "paymentType": "cash",
    })
    assert resp.status == 201
    return await resp.json()


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/api/health")
    assert resp.status == 200
    assert (await resp.json())["status"] == "ok"


@pytest.mark.asyncio
async def test_create_customer_validates(client):
    resp = await client.post("/api/customers", json={"name": "No Address"})
    assert resp.status == 400
    resp = await client.post("/api/customers", json={"name": "A", "address": "B", "paymentType": "card"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_create_request_then_duplicate_is_409(client):
    c = await _customer(client)
    resp = await client.post("/api/delivery-requests", json={"customerId": c["id"], "cans": 3})
    assert resp.status == 201
    first = await resp.json()
    assert first["status"] == "pending"
    assert first["customerName"] == "Bilal Ahmed"
    assert first["requestedAt"].endswith("Z")

    # past the double-tap window, the duplicate check answers
    client.app[GUARD].rate_limiter.reset(f"delivery_{c['id']}")
    resp = await client.post("/api/delivery-requests", json={"customerId": c["id"]})
    assert resp.status == 409
    body = await resp.json()
    assert body["code"] == "DUPLICATE_REQUEST"
    assert body["existingRequestId"] == first["id"]
    assert body["existingStatus"] == "pending"

    resp = await client.get(f"/api/customers/{c['id']}/active-requests")
    body = await resp.json()
    assert body["hasActiveRequests"] is True
    assert body["activeRequestsCount"] == 1


@pytest.mark.asyncio
async def test_double_tap_is_429(client):
    c = await _customer(client)
    resp = await client.post("/api/delivery-requests", json={"customerId": c["id"]})
    assert resp.status == 201
    resp = await client.post("/api/delivery-requests", json={"customerId": c["id"]})
    assert resp.status == 429
    body = await resp.json()
    assert body["code"] == "RATE_LIMIT_EXCEEDED"
    assert body["retryAfter"] >= 1
    assert "Retry-After" in resp.headers


@pytest.mark.asyncio
async def test_unknown_customer_is_404(client):
    resp = await client.post("/api/delivery-requests", json={"customerId": 4242})
    assert resp.status == 404


@pytest.mark.asyncio
async def test_status_flow_over_http(client):
    c = await _customer(client)
    req = await (await client.post("/api/delivery-requests", json={"customerId": c["id"]})).json()

    resp = await client.put(f"/api/delivery-requests/{req['id']}/status", json={"status": "delivered"})
    assert resp.status == 400
    assert (await resp.json())["currentStatus"] == "pending"

    resp = await client.put(f"/api/delivery-requests/{req['id']}/status", json={"status": "processing"})
    assert resp.status == 200

    resp = await client.post(f"/api/delivery-requests/{req['id']}/cancel", json={"reason": "door_closed"})
    assert resp.status == 400

    resp = await client.post(
        f"/api/delivery-requests/{req['id']}/cancel",
        json={"reason": "door_closed", "cancelledBy": "staff", "notes": "gate locked"},
    )
    assert resp.status == 200
    body = await resp.json()
    assert body["status"] == "cancelled"
    assert body["cancelledAt"] is not None

    resp = await client.get("/api/delivery-requests", params={"status": "cancelled"})
    assert [r["id"] for r in await resp.json()] == [req["id"]]


@pytest.mark.asyncio
async def test_rule_crud(client):
    c = await _customer(client)
    resp = await client.post("/api/recurring-requests", json={
        "customerId": c["id"],
        "type": "weekly",
        "days": [1, 3],
        "time": "2:30 PM",
    })
    assert resp.status == 201
    rule = await resp.json()
    assert rule["time"] == "14:30"
    assert rule["cans"] == 2
    assert rule["nextRun"].endswith("Z")
    assert rule["customerName"] == "Bilal Ahmed"

    resp = await client.put(f"/api/recurring-requests/{rule['id']}", json={"nextRun": "2030-01-07T09:30:00Z"})
    assert resp.status == 200
    assert (await resp.json())["nextRun"] == "2030-01-07T09:30:00Z"

    resp = await client.post("/api/recurring-requests", json={"customerId": c["id"], "type": "one_time"})
    assert resp.status == 400

    resp = await client.delete(f"/api/recurring-requests/{rule['id']}")
    assert (await resp.json()) == {"success": True}
    resp = await client.delete(f"/api/recurring-requests/{rule['id']}")
    assert resp.status == 404


@pytest.mark.asyncio
async def test_reads_run_the_sweep(client):
    c = await _customer(client)
    resp = await client.post("/api/recurring-requests", json={
        "customerId": c["id"],
        "type": "daily",
        "time": "09:00",
        "nextRun": "2026-01-01T04:00:00Z",
    })
    assert resp.status == 201

    resp = await client.get("/api/delivery-requests")
    reqs = await resp.json()
    assert len(reqs) == 1
    assert reqs[0]["createdBy"] == "scheduler"

    rules = await (await client.get("/api/recurring-requests")).json()
    assert rules[0]["nextRun"] > "2026-01-01T04:00:00Z"
    assert rules[0]["lastTriggeredAt"] is not None


@pytest.mark.asyncio
async def test_manual_tick_reports_counts(client):
    resp = await client.post("/api/scheduler/tick")
    assert resp.status == 200
    assert (await resp.json())["due"] == 0

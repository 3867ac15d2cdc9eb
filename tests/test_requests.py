from datetime import datetime

import pytest

from paani.core.db import session_scope
from paani.core.errors import (
    CustomerNotFound,
    DuplicateActiveRequest,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from paani.services.guard import DuplicateRequestGuard
from paani.services.requests import (
    cancel_delivery_request,
    check_transition,
    create_delivery_request,
    list_delivery_requests,
    set_status,
    update_delivery_request,
)

NOW = datetime(2026, 10, 19, 8, 30)


@pytest.fixture
def guard():
    return DuplicateRequestGuard()


@pytest.fixture
def new_request(sessions, guard):
    async def _new(customer_id: int, **payload):
        async with session_scope(sessions) as s:
            return await create_delivery_request(s, guard, {"customerId": customer_id, **payload})
    return _new


@pytest.mark.parametrize(
    "current, target",
    [
        ("pending", "processing"),
        ("pending", "cancelled"),
        ("pending_confirmation", "processing"),
        ("processing", "delivered"),
        ("processing", "cancelled"),
    ],
)
def test_allowed_transitions(current, target):
    check_transition(current, target)


@pytest.mark.parametrize(
    "current, target",
    [
        ("pending", "delivered"),
        ("processing", "pending"),
        ("delivered", "processing"),
        ("delivered", "cancelled"),
        ("cancelled", "pending"),
        ("cancelled", "processing"),
    ],
)
def test_refused_transitions(current, target):
    with pytest.raises(InvalidTransition):
        check_transition(current, target)


def test_unknown_status_is_a_validation_error():
    with pytest.raises(ValidationError):
        check_transition("pending", "lost")


@pytest.mark.asyncio
async def test_create_snapshots_customer(add_customer, new_request):
    c = await add_customer(price_per_can=150.0, payment_type="account", default_cans=3)
    req = await new_request(c.id, priority="URGENT", orderDetails="gate code 42")
    assert req.status == "pending"
    assert req.cans == 3
    assert req.priority == "urgent"
    assert req.customer_name == c.name
    assert req.address == c.address
    assert req.price_per_can == 150.0
    assert req.payment_type == "account"
    assert req.order_details == "gate code 42"
    assert req.requested_at is not None


@pytest.mark.asyncio
async def test_create_rejects_unknown_customer_and_bad_input(add_customer, new_request):
    with pytest.raises(CustomerNotFound):
        await new_request(999)
    c = await add_customer()
    with pytest.raises(ValidationError):
        await new_request(c.id, cans=0)
    with pytest.raises(ValidationError):
        await new_request(c.id, priority="asap")


@pytest.mark.asyncio
async def test_full_lifecycle_stamps_times(sessions, add_customer, new_request):
    c = await add_customer()
    req = await new_request(c.id)

    async with session_scope(sessions) as s:
        req = await set_status(s, req.id, "processing", now=NOW)
    assert req.status == "processing"
    assert req.delivered_at is None

    async with session_scope(sessions) as s:
        req = await set_status(s, req.id, "delivered", now=NOW)
    assert req.delivered_at == NOW
    assert req.completed_at == NOW

    # terminal: nothing moves it
    with pytest.raises(InvalidTransition) as exc:
        async with session_scope(sessions) as s:
            await set_status(s, req.id, "processing")
    assert exc.value.current == "delivered"

    # and the customer is free again
    again = await new_request(c.id)
    assert again.id != req.id


@pytest.mark.asyncio
async def test_set_status_cannot_cancel(sessions, add_customer, new_request):
    c = await add_customer()
    req = await new_request(c.id)
    with pytest.raises(ValidationError):
        async with session_scope(sessions) as s:
            await set_status(s, req.id, "cancelled")


@pytest.mark.asyncio
async def test_set_status_on_terminal_request_is_invalid_transition(sessions, add_customer, new_request):
    c = await add_customer()
    req = await new_request(c.id)
    async with session_scope(sessions) as s:
        await set_status(s, req.id, "processing")
        await set_status(s, req.id, "delivered")

    with pytest.raises(InvalidTransition) as exc:
        async with session_scope(sessions) as s:
            await set_status(s, req.id, "cancelled")
    assert exc.value.current == "delivered"
    assert exc.value.target == "cancelled"


@pytest.mark.asyncio
async def test_cancel_requires_reason_and_actor(sessions, add_customer, new_request):
    c = await add_customer()
    req = await new_request(c.id)
    for reason, by in (("", "staff"), ("door_closed", ""), ("bored", "staff"), ("door_closed", "robot")):
        with pytest.raises(ValidationError):
            async with session_scope(sessions) as s:
                await cancel_delivery_request(s, req.id, reason, by)

    async with session_scope(sessions) as s:
        req = await cancel_delivery_request(s, req.id, "door_closed", "staff", "nobody home", now=NOW)
    assert req.status == "cancelled"
    assert req.cancelled_at == NOW
    assert req.completed_at == NOW
    assert req.cancelled_by == "staff"
    assert req.cancellation_reason == "door_closed"
    assert req.cancellation_notes == "nobody home"

    with pytest.raises(InvalidTransition):
        async with session_scope(sessions) as s:
            await cancel_delivery_request(s, req.id, "other", "admin")


@pytest.mark.asyncio
async def test_missing_request_is_not_found(sessions):
    with pytest.raises(NotFound):
        async with session_scope(sessions) as s:
            await set_status(s, 12345, "processing")


@pytest.mark.asyncio
async def test_moving_active_request_to_busy_customer_is_refused(sessions, guard, add_customer, new_request):
    a = await add_customer(name="A")
    b = await add_customer(name="B")
    req_a = await new_request(a.id)
    req_b = await new_request(b.id)

    with pytest.raises(DuplicateActiveRequest) as exc:
        async with session_scope(sessions) as s:
            await update_delivery_request(s, guard, req_a.id, {"customerId": b.id})
    assert exc.value.existing_id == req_b.id

    async with session_scope(sessions) as s:
        req_b = await set_status(s, req_b.id, "processing")
        req_b = await set_status(s, req_b.id, "delivered")
    async with session_scope(sessions) as s:
        moved = await update_delivery_request(s, guard, req_a.id, {"customerId": b.id, "cans": 4})
    assert moved.customer_id == b.id
    assert moved.customer_name == "B"
    assert moved.cans == 4


@pytest.mark.asyncio
async def test_list_filters_by_status(sessions, add_customer, new_request):
    a = await add_customer(name="A")
    b = await add_customer(name="B")
    await new_request(a.id)
    req_b = await new_request(b.id)
    async with session_scope(sessions) as s:
        await set_status(s, req_b.id, "processing")

    async with session_scope(sessions) as s:
        assert [r.customer_id for r in await list_delivery_requests(s, "pending")] == [a.id]
        assert len(await list_delivery_requests(s)) == 2
        with pytest.raises(ValidationError):
            await list_delivery_requests(s, "bogus")

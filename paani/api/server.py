# paani/api/server.py
# JSON API over aiohttp. Read paths run an on-demand sweep first so a host that
# slept through its timer catches up on the next request.

from __future__ import annotations

import json
import logging
from typing import Any

from aiohttp import web
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paani.api.schemas import customer_to_dict, request_to_dict, rule_to_dict
from paani.core.clock import iso, utc_naive_now
from paani.core.db import session_scope
from paani.core.errors import (
    DuplicateActiveRequest,
    InvalidTransition,
    NotFound,
    RateLimitExceeded,
    ValidationError,
)
from paani.core.scheduler import SchedulerDriver
from paani.repo import customers as customers_repo
from paani.services import recurring, requests
from paani.services.guard import DuplicateRequestGuard

log = logging.getLogger(__name__)

SESSIONS = web.AppKey("sessions", async_sessionmaker)
GUARD = web.AppKey("guard", DuplicateRequestGuard)
DRIVER = web.AppKey("driver", SchedulerDriver)
OFFSET = web.AppKey("offset_minutes", int)

routes = web.RouteTableDef()


def _error(status: int, error: str, details: str, **extra: Any) -> web.Response:
    return web.json_response({"error": error, "details": details, **extra}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except DuplicateActiveRequest as e:
        return _error(
            409, "Duplicate request prevented",
            "Customer already has an active delivery request",
            code="DUPLICATE_REQUEST",
            existingRequestId=e.existing_id,
            existingStatus=e.existing_status,
        )
    except RateLimitExceeded as e:
        retry = max(1, round(e.retry_after))
        resp = _error(
            429, "Rate limit exceeded",
            f"Too many requests. Please wait {retry} seconds.",
            code="RATE_LIMIT_EXCEEDED",
            retryAfter=retry,
        )
        resp.headers["Retry-After"] = str(retry)
        return resp
    except NotFound as e:
        return _error(404, "Not found", str(e))
    except InvalidTransition as e:
        return _error(400, "Invalid status transition", str(e), currentStatus=e.current)
    except ValidationError as e:
        return _error(400, "Invalid request", str(e))
    except Exception as e:
        log.exception("unhandled api error path=%s", request.path)
        return _error(500, "Internal error", str(e))


async def _body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except json.JSONDecodeError:
        raise ValidationError("body must be JSON") from None
    if not isinstance(data, dict):
        raise ValidationError("body must be a JSON object")
    return data


def _id(request: web.Request) -> int:
    return int(request.match_info["id"])


def _scope(request: web.Request):
    return session_scope(request.app[SESSIONS])


async def _tick(request: web.Request) -> None:
    await request.app[DRIVER].tick()


@routes.get("/api/health")
async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "time": iso(utc_naive_now())})


# customers ------------------------------------------------------------------

@routes.get("/api/customers")
async def list_customers(request: web.Request) -> web.Response:
    async with _scope(request) as s:
        rows = await customers_repo.list_customers(s)
        return web.json_response([customer_to_dict(c) for c in rows])


@routes.post("/api/customers")
async def create_customer(request: web.Request) -> web.Response:
    body = await _body(request)
    name = str(body.get("name") or "").strip()
    address = str(body.get("address") or "").strip()
    if not name or not address:
        raise ValidationError("name and address are required")
    payment_type = body.get("paymentType") or "cash"
    if payment_type not in ("cash", "account"):
        raise ValidationError("paymentType must be cash or account")
    try:
        default_cans = int(body.get("defaultCans") or 1)
    except (TypeError, ValueError):
        raise ValidationError("defaultCans must be an integer") from None
    async with _scope(request) as s:
        c = await customers_repo.create_customer(
            s, name, address,
            phone=body.get("phone"),
            default_cans=default_cans,
            price_per_can=body.get("pricePerCan"),
            payment_type=payment_type,
            notes=str(body.get("notes") or ""),
        )
        return web.json_response(customer_to_dict(c), status=201)


@routes.get(r"/api/customers/{id:\d+}/active-requests")
async def customer_active_requests(request: web.Request) -> web.Response:
    async with _scope(request) as s:
        rows = await requests.active_requests_for_customer(s, _id(request))
        return web.json_response({
            "hasActiveRequests": bool(rows),
            "activeRequestsCount": len(rows),
            "activeRequests": [request_to_dict(r) for r in rows],
        })


# recurring rules ------------------------------------------------------------

@routes.get("/api/recurring-requests")
async def list_rules(request: web.Request) -> web.Response:
    await _tick(request)
    async with _scope(request) as s:
        rows = await recurring.list_rules(s)
        return web.json_response([rule_to_dict(r) for r in rows])


@routes.post("/api/recurring-requests")
async def create_rule(request: web.Request) -> web.Response:
    body = await _body(request)
    async with _scope(request) as s:
        rule = await recurring.create_rule(s, body, offset_minutes=request.app[OFFSET])
        return web.json_response(rule_to_dict(rule), status=201)


@routes.put(r"/api/recurring-requests/{id:\d+}")
async def update_rule(request: web.Request) -> web.Response:
    body = await _body(request)
    async with _scope(request) as s:
        rule = await recurring.update_rule(s, _id(request), body, offset_minutes=request.app[OFFSET])
        return web.json_response(rule_to_dict(rule))


@routes.delete(r"/api/recurring-requests/{id:\d+}")
async def delete_rule(request: web.Request) -> web.Response:
    async with _scope(request) as s:
        await recurring.delete_rule(s, _id(request))
    return web.json_response({"success": True})


@routes.post("/api/scheduler/tick")
async def trigger_sweep_now(request: web.Request) -> web.Response:
    report = await request.app[DRIVER].tick()
    if report is None:
        return _error(503, "Sweep failed", "see server logs; the next tick retries")
    return web.json_response(report.as_dict())


# delivery requests ----------------------------------------------------------

@routes.get("/api/delivery-requests")
async def list_requests(request: web.Request) -> web.Response:
    await _tick(request)
    async with _scope(request) as s:
        rows = await requests.list_delivery_requests(s, request.query.get("status") or None)
        return web.json_response([request_to_dict(r) for r in rows])


@routes.post("/api/delivery-requests")
async def create_request(request: web.Request) -> web.Response:
    body = await _body(request)
    async with _scope(request) as s:
        req = await requests.create_delivery_request(s, request.app[GUARD], body)
        return web.json_response(request_to_dict(req), status=201)


@routes.put(r"/api/delivery-requests/{id:\d+}")
async def update_request(request: web.Request) -> web.Response:
    body = await _body(request)
    async with _scope(request) as s:
        req = await requests.update_delivery_request(s, request.app[GUARD], _id(request), body)
        return web.json_response(request_to_dict(req))


@routes.put(r"/api/delivery-requests/{id:\d+}/status")
async def set_status(request: web.Request) -> web.Response:
    body = await _body(request)
    async with _scope(request) as s:
        req = await requests.set_status(s, _id(request), str(body.get("status") or ""))
        return web.json_response(request_to_dict(req))


@routes.post(r"/api/delivery-requests/{id:\d+}/cancel")
async def cancel_request(request: web.Request) -> web.Response:
    body = await _body(request)
    async with _scope(request) as s:
        req = await requests.cancel_delivery_request(
            s, _id(request),
            reason=str(body.get("reason") or ""),
            cancelled_by=str(body.get("cancelledBy") or ""),
            notes=str(body.get("notes") or ""),
        )
        return web.json_response(request_to_dict(req))


@routes.delete(r"/api/delivery-requests/{id:\d+}")
async def delete_request(request: web.Request) -> web.Response:
    async with _scope(request) as s:
        await requests.delete_delivery_request(s, _id(request))
    return web.json_response({"message": "Delivery request deleted successfully"})


def build_app(
    sessions: async_sessionmaker[AsyncSession],
    guard: DuplicateRequestGuard,
    driver: SchedulerDriver,
    *,
    offset_minutes: int,
) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[SESSIONS] = sessions
    app[GUARD] = guard
    app[DRIVER] = driver
    app[OFFSET] = offset_minutes
    app.add_routes(routes)
    return app


async def start_api(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("API listening on %s:%s", host, port)
    return runner

# paani/services/fallback.py
"""
Client-side fallback trigger.

Runs the recurring-rule firing from outside the server, talking only to the
JSON API. Meant for hosts whose own scheduler sleeps (free tiers) or polls too
rarely. The server-side guard still decides duplicates; a rejected create is
treated as done and the rule is moved on.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

import aiohttp

from paani.core.clock import iso, parse_iso, utc_naive_now
from paani.services.recurring import TRIGGER_COOLDOWN, is_debounced
from paani.services.schedule import advance_from_previous

log = logging.getLogger(__name__)

CLIENT_DEBOUNCE = timedelta(minutes=4)
# duplicate prevented / rate limited / customer gone: the server already decided
SUCCESS_EQUIVALENT = frozenset({400, 409, 429})


class ApiError(Exception):
    def __init__(self, status: int, details: str = "") -> None:
        super().__init__(f"API responded {status}: {details}")
        self.status = status
        self.details = details


@dataclass(frozen=True)
class ApiResponse:
    status: int
    data: Any


class DeliveryApi(Protocol):
    async def list_rules(self) -> list[dict[str, Any]]: ...

    async def create_request(self, payload: dict[str, Any]) -> ApiResponse: ...

    async def update_rule(self, rule_id: int, payload: dict[str, Any]) -> dict[str, Any]: ...

    async def delete_rule(self, rule_id: int) -> None: ...


class HttpDeliveryApi:
    """aiohttp client for the /api endpoints of paani.api.server."""

    def __init__(
        self,
        base_url: str,
        session: aiohttp.ClientSession | None = None,
        timeout: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def __aenter__(self) -> "HttpDeliveryApi":
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _call(self, method: str, path: str, payload: dict[str, Any] | None = None) -> ApiResponse:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        async with self._session.request(method, f"{self.base_url}{path}", json=payload) as resp:
            try:
                data = await resp.json(content_type=None)
            except (json.JSONDecodeError, aiohttp.ContentTypeError):
                data = None
            return ApiResponse(status=resp.status, data=data)

    @staticmethod
    def _raise_for(resp: ApiResponse, *ok: int) -> None:
        if resp.status not in ok:
            details = resp.data.get("details", "") if isinstance(resp.data, dict) else ""
            raise ApiError(resp.status, details)

    async def list_rules(self) -> list[dict[str, Any]]:
        resp = await self._call("GET", "/api/recurring-requests")
        self._raise_for(resp, 200)
        return list(resp.data or [])

    async def create_request(self, payload: dict[str, Any]) -> ApiResponse:
        return await self._call("POST", "/api/delivery-requests", payload)

    async def update_rule(self, rule_id: int, payload: dict[str, Any]) -> dict[str, Any]:
        resp = await self._call("PUT", f"/api/recurring-requests/{rule_id}", payload)
        self._raise_for(resp, 200)
        return resp.data

    async def delete_rule(self, rule_id: int) -> None:
        resp = await self._call("DELETE", f"/api/recurring-requests/{rule_id}")
        # already gone counts as deleted
        self._raise_for(resp, 200, 404)


@dataclass
class FallbackReport:
    due: int = 0
    created: int = 0
    rejected: int = 0
    advanced: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


_TRANSPORT_ERRORS = (ApiError, aiohttp.ClientError, asyncio.TimeoutError)


def _instant(raw: Any) -> datetime | None:
    if not raw:
        return None
    try:
        return parse_iso(raw)
    except (TypeError, ValueError):
        return None


class FallbackTrigger:
    def __init__(
        self,
        api: DeliveryApi,
        *,
        offset_minutes: int,
        debounce: timedelta = CLIENT_DEBOUNCE,
        cooldown: timedelta = TRIGGER_COOLDOWN,
        cache_path: str | Path | None = None,
    ) -> None:
        self.api = api
        self.offset_minutes = offset_minutes
        self.debounce = debounce
        self.cooldown = cooldown
        self.cache_path = Path(cache_path) if cache_path else None
        self._attempts: dict[Any, datetime] = {}
        self._rules: list[dict[str, Any]] = []

    @property
    def cached_rules(self) -> list[dict[str, Any]]:
        return list(self._rules)

    async def load_rules(self) -> list[dict[str, Any]]:
        """Fresh list from the API; the last good copy when the API is unreachable."""
        try:
            rules = await self.api.list_rules()
        except _TRANSPORT_ERRORS as e:
            log.warning("fallback: rule list unavailable, using local copy err=%s", e)
            if not self._rules:
                self._rules = self._read_cache()
            return list(self._rules)
        self._rules = list(rules)
        self._write_cache()
        return list(self._rules)

    def _read_cache(self) -> list[dict[str, Any]]:
        if self.cache_path is None or not self.cache_path.exists():
            return []
        try:
            data = json.loads(self.cache_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            log.warning("fallback: cache unreadable path=%s err=%s", self.cache_path, e)
            return []
        return data if isinstance(data, list) else []

    def _write_cache(self) -> None:
        if self.cache_path is None:
            return
        try:
            self.cache_path.write_text(json.dumps(self._rules), encoding="utf-8")
        except OSError as e:
            log.warning("fallback: cache not written path=%s err=%s", self.cache_path, e)

    def _replace_cached(self, rule_id: Any, updated: dict[str, Any] | None) -> None:
        if updated is None:
            self._rules = [r for r in self._rules if r.get("id") != rule_id]
        else:
            self._rules = [updated if r.get("id") == rule_id else r for r in self._rules]
        self._write_cache()

    async def run_once(self, now: datetime | None = None) -> FallbackReport:
        now = now or utc_naive_now()
        report = FallbackReport()

        for rule in await self.load_rules():
            next_run = _instant(rule.get("nextRun"))
            if next_run is None or next_run > now:
                continue
            report.due += 1

            rule_id = rule.get("id")
            if rule_id is None:
                report.skipped += 1
                continue
            if is_debounced(_instant(rule.get("lastTriggeredAt")), next_run, now, self.cooldown):
                report.skipped += 1
                continue
            last_attempt = self._attempts.get(rule_id)
            if last_attempt is not None and now - last_attempt < self.debounce:
                report.skipped += 1
                continue
            # mark before the calls so an overlapping run in this process backs off
            self._attempts[rule_id] = now

            try:
                await self._fire(rule, next_run, now, report)
            except _TRANSPORT_ERRORS as e:
                log.warning("fallback: rule=%s left for a later cycle err=%s", rule_id, e)
                report.failed += 1

        self._prune(now)
        if report.due:
            log.info("fallback_done %s", " ".join(f"{k}={v}" for k, v in report.as_dict().items()))
        return report

    async def _fire(self, rule: dict[str, Any], next_run: datetime, now: datetime, report: FallbackReport) -> None:
        rule_id = rule["id"]
        resp = await self.api.create_request({
            "customerId": rule.get("customerId"),
            "cans": rule.get("cans"),
            "priority": rule.get("priority") or "normal",
            "orderDetails": "",
            "createdBy": "fallback",
        })
        if resp.status in (200, 201):
            report.created += 1
        elif resp.status in SUCCESS_EQUIVALENT:
            report.rejected += 1
            log.info("fallback: create rejected rule=%s status=%s (treated as done)", rule_id, resp.status)
        else:
            raise ApiError(resp.status, "create failed")

        if rule.get("type") == "one_time":
            await self.api.delete_rule(rule_id)
            self._replace_cached(rule_id, None)
            report.deleted += 1
            return

        nxt = advance_from_previous(
            {
                "id": rule_id,
                "type": rule.get("type"),
                "days": rule.get("days") or [],
                "date": rule.get("date") or "",
                "time": rule.get("time"),
                "next_run": next_run,
            },
            self.offset_minutes,
            now,
        )
        updated = await self.api.update_rule(rule_id, {"nextRun": iso(nxt)})
        if isinstance(updated, dict):
            self._replace_cached(rule_id, updated)
        report.advanced += 1

    def _prune(self, now: datetime) -> None:
        stale = [k for k, t in self._attempts.items() if now - t >= self.debounce]
        for k in stale:
            del self._attempts[k]

    async def run_forever(self, interval_seconds: float, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception:
                log.exception("fallback cycle failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass

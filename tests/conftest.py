"""
Test configuration and shared fixtures.
HTTP collaborators talk to an in-process fake of the content API built with
FastAPI; the SQL cache backend runs on in-memory SQLite.
"""
from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from httpx import ASGITransport

from herald.clients.content_api import ContentApiClient
from herald.core.exceptions import ApiError
from herald.schemas.push_token import PushToken
from herald.services.local_store import LocalNotificationStore
from herald.services.storage import MemoryStorage, SqlStorage

# ── Fake content API ──────────────────────────────────────────────────────────
TEST_API_URL = "http://test/api"
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
SERVER_EPOCH = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _entity(record: dict[str, Any]) -> dict[str, Any]:
    """Serialize a stored row the way the content API does: id + attributes."""
    attributes = {k: v for k, v in record.items() if k != "id"}
    return {"id": record["id"], "attributes": attributes}


def _paginate(
    rows: list[dict[str, Any]], request: Request
) -> tuple[list[dict[str, Any]], dict[str, Any]]:
    page = int(request.query_params.get("page", 1))
    page_size = int(request.query_params.get("pageSize", 25))
    start = (page - 1) * page_size
    meta = {
        "pagination": {
            "page": page,
            "pageSize": page_size,
            "pageCount": -(-len(rows) // page_size),
            "total": len(rows),
        }
    }
    return rows[start : start + page_size], meta


def _newest_first(rows: list[dict[str, Any]], request: Request) -> list[dict[str, Any]]:
    if request.query_params.get("sort") == "createdAt:desc":
        return sorted(rows, key=lambda r: r["createdAt"], reverse=True)
    return rows


class FakeContentApi:
    """
    In-memory content API with per-route failure switches.

    ``missing`` routes answer 404 and ``broken`` routes answer 500; a route
    with a ``gates`` entry holds every request until the event is set. Route
    names are ``users``, ``notifications``, ``deliveries``, ``push-tokens``,
    or ``<name>:<method>`` for a single verb.
    """

    def __init__(self) -> None:
        self.users: list[dict[str, Any]] = []
        self.notifications: list[dict[str, Any]] = []
        self.deliveries: list[dict[str, Any]] = []
        self.push_tokens: list[dict[str, Any]] = []
        self.missing: set[str] = set()
        self.broken: set[str] = set()
        self.failing_delivery_users: set[int] = set()
        self.gates: dict[str, asyncio.Event] = {}
        self.idempotency_keys: list[str] = []
        self.requests: list[dict[str, Any]] = []
        self._ids = itertools.count(1)
        self._ticks = itertools.count(1)
        self.app = self._build_app()

    # ── Seeding ───────────────────────────────────────────────────────────────

    def _timestamp(self) -> str:
        moment = SERVER_EPOCH + timedelta(minutes=next(self._ticks))
        return moment.isoformat().replace("+00:00", "Z")

    def add_user(
        self,
        user_id: int,
        *,
        email: str | None = None,
        confirmed: bool = True,
        blocked: bool = False,
        role_id: int | None = None,
    ) -> dict[str, Any]:
        user = {
            "id": user_id,
            "username": f"user{user_id}",
            "email": email or f"user{user_id}@example.com",
            "confirmed": confirmed,
            "blocked": blocked,
            "role_id": role_id,
        }
        self.users.append(user)
        return user

    def add_notification(self, title: str, **fields: Any) -> dict[str, Any]:
        record = {
            "id": next(self._ids),
            "title": title,
            "message": fields.pop("message", f"{title} body"),
            "type": "info",
            "category": "general",
            "priority": "medium",
            "targetUsers": "all",
            "isActive": True,
            "createdAt": self._timestamp(),
            **fields,
        }
        self.notifications.append(record)
        return record

    def add_delivery(self, user_id: int, notification_id: int, **fields: Any) -> dict[str, Any]:
        record = {
            "id": next(self._ids),
            "user": user_id,
            "notification": notification_id,
            "isRead": False,
            "readAt": None,
            "isDelivered": False,
            "createdAt": self._timestamp(),
            **fields,
        }
        self.deliveries.append(record)
        return record

    def add_push_token(
        self, user_id: int, token: str, device_type: str = "web", is_active: bool = True
    ) -> dict[str, Any]:
        record = {
            "id": next(self._ids),
            "user": user_id,
            "token": token,
            "deviceType": device_type,
            "isActive": is_active,
        }
        self.push_tokens.append(record)
        return record

    def requests_to(self, method: str, path: str) -> list[dict[str, Any]]:
        return [r for r in self.requests if r["method"] == method and r["path"] == path]

    # ── App ───────────────────────────────────────────────────────────────────

    async def _guard(self, route: str, method: str) -> None:
        for name in (route, f"{route}:{method}"):
            gate = self.gates.get(name)
            if gate is not None:
                await gate.wait()
            if name in self.missing:
                raise HTTPException(status_code=404, detail="Not Found")
            if name in self.broken:
                raise HTTPException(status_code=500, detail="Internal Server Error")

    async def _record(self, request: Request) -> None:
        self.requests.append(
            {
                "method": request.method,
                "path": request.url.path.removeprefix("/api"),
                "query": request.query_params.multi_items(),
                "headers": dict(request.headers),
            }
        )

    def _find(self, rows: list[dict[str, Any]], row_id: int) -> dict[str, Any]:
        for row in rows:
            if row["id"] == row_id:
                return row
        raise HTTPException(status_code=404, detail="Not Found")

    def _serialize_delivery(self, row: dict[str, Any], populate: bool) -> dict[str, Any]:
        data = dict(row)
        data["user"] = {"data": {"id": row["user"]}}
        if populate:
            notification = self._find(self.notifications, row["notification"])
            data["notification"] = {"data": _entity(notification)}
        return _entity(data)

    def _build_app(self) -> FastAPI:
        router = APIRouter(prefix="/api", dependencies=[Depends(self._record)])

        @router.get("/users")
        async def list_users(request: Request) -> list[dict[str, Any]]:
            await self._guard("users", "get")
            params = request.query_params
            rows = list(self.users)
            if "confirmed" in params:
                rows = [u for u in rows if u["confirmed"] == (params["confirmed"] == "true")]
            if "blocked" in params:
                rows = [u for u in rows if u["blocked"] == (params["blocked"] == "true")]
            if "email" in params:
                rows = [u for u in rows if u["email"] == params["email"]]
            result = []
            for user in rows:
                body = {k: v for k, v in user.items() if k != "role_id"}
                if params.get("populate") == "role" and user["role_id"] is not None:
                    body["role"] = {"id": user["role_id"], "name": f"role{user['role_id']}"}
                result.append(body)
            return result

        @router.get("/notifications")
        async def list_notifications(request: Request) -> dict[str, Any]:
            await self._guard("notifications", "get")
            rows, meta = _paginate(_newest_first(self.notifications, request), request)
            return {"data": [_entity(r) for r in rows], "meta": meta}

        @router.post("/notifications")
        async def create_notification(payload: dict[str, Any]) -> dict[str, Any]:
            await self._guard("notifications", "post")
            record = {"id": next(self._ids), **payload["data"], "createdAt": self._timestamp()}
            self.notifications.append(record)
            return {"data": _entity(record), "meta": {}}

        @router.get("/deliveries")
        async def list_deliveries(request: Request) -> dict[str, Any]:
            await self._guard("deliveries", "get")
            params = request.query_params
            rows = list(self.deliveries)
            users = {int(u) for u in params.getlist("user")}
            if users:
                rows = [d for d in rows if d["user"] in users]
            if "notification" in params:
                rows = [d for d in rows if d["notification"] == int(params["notification"])]
            rows, meta = _paginate(_newest_first(rows, request), request)
            populate = params.get("populate") == "notification"
            return {"data": [self._serialize_delivery(d, populate) for d in rows], "meta": meta}

        @router.post("/deliveries")
        async def create_delivery(payload: dict[str, Any], request: Request) -> dict[str, Any]:
            await self._guard("deliveries", "post")
            body = payload["data"]
            if body["userId"] in self.failing_delivery_users:
                raise HTTPException(status_code=503, detail="Delivery store unavailable")
            key = request.headers.get("Idempotency-Key")
            if key is not None:
                self.idempotency_keys.append(key)
            record = self.add_delivery(
                body["userId"],
                body["notificationId"],
                isRead=body["isRead"],
                isDelivered=body["isDelivered"],
            )
            return {"data": self._serialize_delivery(record, False), "meta": {}}

        @router.put("/deliveries/{delivery_id}")
        async def update_delivery(delivery_id: int, payload: dict[str, Any]) -> dict[str, Any]:
            await self._guard("deliveries", "put")
            record = self._find(self.deliveries, delivery_id)
            record.update(payload["data"])
            return {"data": self._serialize_delivery(record, False), "meta": {}}

        @router.delete("/deliveries/{delivery_id}")
        async def delete_delivery(delivery_id: int) -> dict[str, Any]:
            await self._guard("deliveries", "delete")
            record = self._find(self.deliveries, delivery_id)
            self.deliveries.remove(record)
            return {"data": self._serialize_delivery(record, False), "meta": {}}

        @router.get("/push-tokens")
        async def list_push_tokens(request: Request) -> dict[str, Any]:
            await self._guard("push-tokens", "get")
            params = request.query_params
            rows = list(self.push_tokens)
            users = {int(u) for u in params.getlist("user")}
            if users:
                rows = [t for t in rows if t["user"] in users]
            if "isActive" in params:
                rows = [t for t in rows if t["isActive"] == (params["isActive"] == "true")]
            if "deviceType" in params:
                rows = [t for t in rows if t["deviceType"] == params["deviceType"]]
            rows, meta = _paginate(rows, request)
            return {"data": [_entity(t) for t in rows], "meta": meta}

        @router.post("/push-tokens")
        async def create_push_token(payload: dict[str, Any]) -> dict[str, Any]:
            await self._guard("push-tokens", "post")
            body = payload["data"]
            record = self.add_push_token(
                body["userId"], body["token"], body["deviceType"], body.get("isActive", True)
            )
            return {"data": _entity(record), "meta": {}}

        @router.put("/push-tokens/{token_id}")
        async def update_push_token(token_id: int, payload: dict[str, Any]) -> dict[str, Any]:
            await self._guard("push-tokens", "put")
            record = self._find(self.push_tokens, token_id)
            body = dict(payload["data"])
            if "userId" in body:
                record["user"] = body.pop("userId")
            record.update(body)
            return {"data": _entity(record), "meta": {}}

        app = FastAPI(title="Fake content API")
        app.include_router(router)
        return app


# ── Test doubles ──────────────────────────────────────────────────────────────

async def settle(condition: Callable[[], bool], attempts: int = 200) -> None:
    """Yield to the event loop until ``condition`` holds."""
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition never became true")


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingPushSender:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.failing_tokens: set[str] = set()

    async def send(
        self, token: PushToken, title: str, message: str, *, idempotency_key: str
    ) -> None:
        if token.token in self.failing_tokens:
            raise ApiError("gateway rejected token", status_code=410)
        self.sent.append(
            {
                "token": token.token,
                "user_id": token.user_id,
                "title": title,
                "message": message,
                "key": idempotency_key,
            }
        )


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def fake_api() -> FakeContentApi:
    return FakeContentApi()


@pytest_asyncio.fixture
async def api(fake_api: FakeContentApi) -> AsyncGenerator[ContentApiClient, None]:
    """Content API client wired to the fake app, no network involved."""
    async with ContentApiClient(
        TEST_API_URL,
        auth_headers=lambda: {"Authorization": "Bearer test-token"},
        transport=ASGITransport(app=fake_api.app),
    ) as client:
        yield client


@pytest.fixture
def three_users(fake_api: FakeContentApi) -> list[int]:
    for user_id in (1, 2, 3):
        fake_api.add_user(user_id)
    return [1, 2, 3]


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def push_sender() -> RecordingPushSender:
    return RecordingPushSender()


@pytest.fixture
def memory_storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def store(memory_storage: MemoryStorage, clock: FrozenClock) -> LocalNotificationStore:
    return LocalNotificationStore(memory_storage, max_notifications=100, clock=clock)


@pytest_asyncio.fixture
async def sql_storage() -> AsyncGenerator[SqlStorage, None]:
    storage = await SqlStorage.connect(TEST_DATABASE_URL)
    yield storage
    await storage.close()

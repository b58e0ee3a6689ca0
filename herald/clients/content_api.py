"""
Async HTTP client for the Strapi-style content API.
Wraps request bodies in the ``{"data": ...}`` envelope, flattens
``attributes`` in responses and maps every failure onto ApiError.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from herald.core.config import settings
from herald.core.exceptions import ApiError, NotFoundException

logger = logging.getLogger(__name__)

AuthHeaderSupplier = Callable[[], Mapping[str, str]]


@dataclass
class ApiResponse:
    status_code: int
    data: Any = None
    meta: dict[str, Any] = field(default_factory=dict)

    def items(self) -> list[dict[str, Any]]:
        """Return ``data`` as a list of records, whatever shape it arrived in."""
        if self.data is None:
            return []
        if isinstance(self.data, list):
            return [item for item in self.data if isinstance(item, dict)]
        if isinstance(self.data, dict):
            return [self.data]
        return []


def flatten_entity(value: Any) -> Any:
    """
    Turn ``{"id": 1, "attributes": {...}}`` into ``{"id": 1, ...}`` and unwrap
    ``{"data": ...}`` relation containers, recursively.
    """
    if isinstance(value, list):
        return [flatten_entity(item) for item in value]
    if not isinstance(value, dict):
        return value
    if set(value.keys()) == {"data"}:
        return flatten_entity(value["data"])
    flat: dict[str, Any] = {}
    attributes = value.get("attributes")
    for key, item in value.items():
        if key == "attributes":
            continue
        flat[key] = flatten_entity(item)
    if isinstance(attributes, dict):
        for key, item in attributes.items():
            flat[key] = flatten_entity(item)
    return flat


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if body.get("detail"):
            return str(body["detail"])
    return response.reason_phrase


class ContentApiClient:
    """
    Thin async client around ``httpx.AsyncClient``.
    Every call uses a bounded timeout and is attempted exactly once.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        auth_headers: AuthHeaderSupplier | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._auth_headers = auth_headers or settings.auth_headers
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.API_URL,
            timeout=httpx.Timeout(timeout or settings.REQUEST_TIMEOUT_SECONDS),
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> ContentApiClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        data: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> ApiResponse:
        request_headers = dict(self._auth_headers())
        if headers:
            request_headers.update(headers)
        body = {"data": dict(data)} if data is not None else None

        try:
            response = await self._client.request(
                method,
                path,
                params=dict(params) if params else None,
                json=body,
                headers=request_headers,
            )
        except httpx.TimeoutException as exc:
            logger.warning("Content API timeout: %s %s", method, path)
            raise ApiError(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("Content API unreachable: %s %s: %s", method, path, exc)
            raise ApiError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 404:
            raise NotFoundException(path)
        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.debug(
                "Content API error: %s %s -> %s %s", method, path, response.status_code, detail
            )
            raise ApiError(
                f"{method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return ApiResponse(status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ApiError(
                f"{method} {path} returned a non-JSON body", status_code=response.status_code
            ) from exc

        if isinstance(payload, dict) and "data" in payload:
            meta = payload.get("meta") or {}
            return ApiResponse(
                status_code=response.status_code,
                data=flatten_entity(payload["data"]),
                meta=meta if isinstance(meta, dict) else {},
            )
        return ApiResponse(status_code=response.status_code, data=flatten_entity(payload))

    async def get(self, path: str, params: Mapping[str, Any] | None = None) -> ApiResponse:
        return await self.request("GET", path, params=params)

    async def get_all(
        self,
        path: str,
        params: Mapping[str, Any] | None = None,
        *,
        page_size: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Read every page of a collection.
        Follows ``meta.pagination.pageCount``; a response without pagination
        meta is taken as the whole collection.
        """
        size = page_size or settings.DEFAULT_PAGE_SIZE
        rows: list[dict[str, Any]] = []
        page = 1
        while True:
            response = await self.get(path, {**(params or {}), "page": page, "pageSize": size})
            rows.extend(response.items())
            pagination = response.meta.get("pagination") or {}
            page_count = pagination.get("pageCount")
            if not isinstance(page_count, int) or page >= page_count:
                return rows
            page += 1

    async def post(
        self,
        path: str,
        data: Mapping[str, Any],
        *,
        headers: Mapping[str, str] | None = None,
    ) -> ApiResponse:
        return await self.request("POST", path, data=data, headers=headers)

    async def put(self, path: str, data: Mapping[str, Any]) -> ApiResponse:
        return await self.request("PUT", path, data=data)

    async def delete(self, path: str) -> ApiResponse:
        return await self.request("DELETE", path)

"""Async HTTP client for the content-management record store."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .config import RecordStoreSettings
from .errors import RecordStoreError, UpstreamTimeout, UpstreamUnavailable

logger = logging.getLogger("enrollment.record_store")

Record = Dict[str, Any]

# The users-permissions plugin reads and writes bare bodies instead of {"data": ...}.
_UNWRAPPED_COLLECTIONS = frozenset({"users"})
_TIMEOUT_STATUSES = frozenset({408, 504})
_UNAVAILABLE_STATUSES = frozenset({502, 503})


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("Record store base URL must not be empty")
    return cleaned.rstrip("/")


def _build_endpoint(collection: str, record_id: object | None = None) -> str:
    path = f"/api/{collection.strip('/')}"
    if record_id is not None:
        path = f"{path}/{record_id}"
    return path


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str) and message.strip():
                return message.strip()
        for key in ("message", "detail", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return default


def encode_filters(filters: Mapping[str, object] | None) -> Dict[str, str]:
    """Encode equality filters as bracketed query parameters.

    Dotted keys address relations: ``{"cursos.id": 4}`` becomes
    ``filters[cursos][id][$eq]=4``.
    """
    params: Dict[str, str] = {}
    for key, value in (filters or {}).items():
        path = "".join(f"[{part}]" for part in key.split("."))
        if isinstance(value, bool):
            encoded = "true" if value else "false"
        else:
            encoded = str(value)
        params[f"filters{path}[$eq]"] = encoded
    return params


def flatten_record(record: object) -> Record:
    """Merge ``attributes`` envelopes and unwrap ``{"data": ...}`` relations."""
    if not isinstance(record, Mapping):
        return {}
    flattened: Record = {}
    attributes = record.get("attributes")
    for key, value in record.items():
        if key != "attributes":
            flattened[key] = value
    if isinstance(attributes, Mapping):
        for key, value in attributes.items():
            flattened.setdefault(key, value)

    for key, value in list(flattened.items()):
        if isinstance(value, Mapping) and set(value.keys()) <= {"data", "meta"} and "data" in value:
            inner = value.get("data")
            if isinstance(inner, list):
                flattened[key] = [flatten_record(item) for item in inner]
            elif isinstance(inner, Mapping):
                flattened[key] = flatten_record(inner)
            else:
                flattened[key] = inner
        elif isinstance(value, list) and value and all(isinstance(item, Mapping) for item in value):
            flattened[key] = [flatten_record(item) for item in value]
    return flattened


class RecordStore:
    """Thin async wrapper over the record store REST API.

    Every request carries the privileged bearer token. Transport failures are
    translated into :class:`UpstreamTimeout` / :class:`UpstreamUnavailable`;
    other non-success responses raise :class:`RecordStoreError`.
    """

    def __init__(
        self,
        settings: RecordStoreSettings,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._base_url = _normalize_base_url(settings.base_url)
        headers = {"Content-Type": "application/json"}
        if settings.token:
            headers["Authorization"] = f"Bearer {settings.token}"
        self._headers = headers
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.timeout)

    @property
    def page_size(self) -> int:
        return self._settings.page_size

    @property
    def locale(self) -> str:
        return self._settings.locale

    async def __aenter__(self) -> "RecordStore":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def find(
        self,
        collection: str,
        filters: Mapping[str, object] | None = None,
        *,
        sort: Optional[str] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        params: Mapping[str, object] | None = None,
    ) -> List[Record]:
        records, _ = await self._find_page(
            collection, filters, sort=sort, page=page, page_size=page_size, params=params
        )
        return records

    async def find_all(
        self,
        collection: str,
        filters: Mapping[str, object] | None = None,
        *,
        sort: Optional[str] = None,
        params: Mapping[str, object] | None = None,
    ) -> List[Record]:
        """Walk every page of a filtered listing."""
        collected: List[Record] = []
        page = 1
        while True:
            records, page_count = await self._find_page(
                collection, filters, sort=sort, page=page, page_size=self.page_size, params=params
            )
            collected.extend(records)
            if not records or page_count is None or page >= page_count:
                break
            page += 1
        return collected

    async def get(
        self,
        collection: str,
        record_id: object,
        *,
        params: Mapping[str, object] | None = None,
    ) -> Optional[Record]:
        try:
            payload = await self._request(
                "GET", _build_endpoint(collection, record_id), params=self._query(params)
            )
        except RecordStoreError as exc:
            if exc.status_code == 404:
                return None
            raise
        return self._unwrap(collection, payload)

    async def create(self, collection: str, payload: Mapping[str, object]) -> Record:
        body = await self._request(
            "POST", _build_endpoint(collection), json=self._wrap(collection, payload)
        )
        return self._unwrap(collection, body) or {}

    async def update(
        self,
        collection: str,
        record_id: object,
        payload: Mapping[str, object],
    ) -> Record:
        body = await self._request(
            "PUT", _build_endpoint(collection, record_id), json=self._wrap(collection, payload)
        )
        return self._unwrap(collection, body) or {}

    async def _find_page(
        self,
        collection: str,
        filters: Mapping[str, object] | None,
        *,
        sort: Optional[str],
        page: Optional[int],
        page_size: Optional[int],
        params: Mapping[str, object] | None,
    ) -> tuple[List[Record], Optional[int]]:
        query = self._query(params)
        query.update(encode_filters(filters))
        if sort:
            query["sort"] = sort
        if page is not None:
            query["pagination[page]"] = str(page)
        if page_size is not None:
            query["pagination[pageSize]"] = str(page_size)

        payload = await self._request("GET", _build_endpoint(collection), params=query)
        if isinstance(payload, list):
            return [flatten_record(item) for item in payload], None
        if not isinstance(payload, dict):
            raise RecordStoreError(f"Unexpected listing payload for '{collection}'")

        data = payload.get("data") or []
        if not isinstance(data, list):
            data = [data]
        pagination = (payload.get("meta") or {}).get("pagination") or {}
        page_count = pagination.get("pageCount") if isinstance(pagination, dict) else None
        return [flatten_record(item) for item in data], page_count

    def _query(self, params: Mapping[str, object] | None) -> Dict[str, str]:
        query = {"populate": "*"}
        for key, value in (params or {}).items():
            query[key] = str(value)
        return query

    def _wrap(self, collection: str, payload: Mapping[str, object]) -> Dict[str, object]:
        if collection in _UNWRAPPED_COLLECTIONS:
            return dict(payload)
        return {"data": dict(payload)}

    def _unwrap(self, collection: str, payload: object) -> Optional[Record]:
        if collection not in _UNWRAPPED_COLLECTIONS and isinstance(payload, dict) and "data" in payload:
            payload = payload["data"]
        if payload is None:
            return None
        return flatten_record(payload)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json: object | None = None,
    ) -> object:
        url = f"{self._base_url}{path}"
        logger.debug("%s %s params=%s", method, path, params)
        try:
            response = await self._client.request(
                method, url, params=params, json=json, headers=self._headers
            )
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"Record store timed out on {method} {path}") from exc
        except httpx.RequestError as exc:
            raise UpstreamUnavailable(f"Failed to contact record store: {exc}") from exc

        if response.status_code >= 400:
            default = f"Record store request failed with status {response.status_code}"
            try:
                parsed: object = response.json()
            except ValueError:
                parsed = response.text
            message = _extract_error_message(parsed, default)
            if response.status_code in _TIMEOUT_STATUSES:
                raise UpstreamTimeout(message, status_code=response.status_code)
            if response.status_code in _UNAVAILABLE_STATUSES:
                raise UpstreamUnavailable(message, status_code=response.status_code)
            raise RecordStoreError(message, status_code=response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RecordStoreError("Record store returned an invalid response") from exc


__all__ = ["Record", "RecordStore", "encode_filters", "flatten_record"]

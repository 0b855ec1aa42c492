"""
HTTP transport backed by httpx.

Inbound, a JSON endpoint is paged with a cursor query parameter. Outbound,
records are posted as JSON one by one, or in a single bulk request when a bulk
endpoint is configured, which makes the transport atomic per batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from logging import LoggerAdapter
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

import httpx

from ..contract.errors import ErrorClass, FatalTransportError, RateLimited, RetryableTransportError, TransportError
from ..contract.models import Batch, CommitResult, Cursor, CursorKind, Record
from ..contract.options import EffectiveConfig
from ..core.logging import get_logger
from .base import BaseTransport

DEFAULT_TIMEOUT = 15.0


def _raise_for_status(response: httpx.Response) -> None:
    """Translate an HTTP error status into the transport error taxonomy."""

    status = response.status_code
    if status < 400:
        return
    request = response.request
    message = f"HTTP {status} error for {request.method} {request.url}: {response.text[:200]}"
    if status == 429:
        raise RateLimited(message)
    if status in (401, 403):
        raise FatalTransportError(message, error_class=ErrorClass.AUTHENTICATION, code=str(status))
    if status == 408 or status >= 500:
        raise RetryableTransportError(message, error_class=ErrorClass.SERVER, code=str(status))
    raise FatalTransportError(message, error_class=ErrorClass.MALFORMED, code=str(status))


def _parse_cursor(kind: CursorKind, raw: Any) -> Optional[Cursor]:
    if raw is None or raw == "":
        return None
    if kind == CursorKind.DELTA_TOKEN:
        return Cursor.delta_token(str(raw))
    if kind == CursorKind.ID:
        return Cursor.identifier(int(raw))
    if isinstance(raw, (int, float)):
        return Cursor.timestamp(raw)
    text = str(raw)
    if text.isdigit():
        return Cursor.timestamp(int(text))
    return Cursor.timestamp(datetime.fromisoformat(text.replace("Z", "+00:00")))


@dataclass(slots=True)
class HttpTransport(BaseTransport):
    """
    JSON-over-HTTP transport.

    Parameters
    ----------
    base_url:
        Root URL for the upstream service.
    fetch_path:
        Endpoint returning ``{items_field: [...], next_cursor_field: ...}``.
    deliver_path:
        Endpoint receiving one JSON record per request.
    bulk_path:
        Optional endpoint receiving a JSON array per batch; enables atomic commit.
    cursor_kind:
        How item cursors are parsed from ``cursor_field``.
    """

    base_url: str
    fetch_path: str = "/records"
    deliver_path: str = "/records"
    bulk_path: Optional[str] = None
    cursor_param: str = "since"
    limit_param: str = "limit"
    items_field: str = "items"
    id_field: str = "id"
    cursor_field: str = "cursor"
    next_cursor_field: str = "nextCursor"
    cursor_kind: CursorKind = CursorKind.TIMESTAMP
    timeout: float = DEFAULT_TIMEOUT
    default_headers: MutableMapping[str, str] = field(default_factory=dict)
    name: str = "http"
    logger: LoggerAdapter = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.logger = get_logger(f"{self.__class__.__module__}.{self.__class__.__name__}", extra={"base_url": self.base_url})

    @property
    def supports_atomic_commit(self) -> bool:
        return bool(self.bulk_path)

    @classmethod
    def from_config(cls, config: EffectiveConfig) -> "HttpTransport":
        base_url = config.option("baseUrl")
        if not base_url:
            raise FatalTransportError("HTTP adapters require a 'baseUrl' option.", error_class=ErrorClass.CONFIGURATION)
        headers: Dict[str, str] = {str(key): str(value) for key, value in dict(config.option("headers", {}) or {}).items()}
        token = config.option("token")
        if token:
            headers.setdefault("Authorization", f"Bearer {token}")
        return cls(
            base_url=str(base_url),
            fetch_path=str(config.option("fetchPath", "/records")),
            deliver_path=str(config.option("deliverPath", "/records")),
            bulk_path=config.option("bulkPath"),
            cursor_param=str(config.option("cursorParam", "since")),
            limit_param=str(config.option("limitParam", "limit")),
            items_field=str(config.option("itemsField", "items")),
            id_field=str(config.option("idField", "id")),
            cursor_field=str(config.option("cursorField", "cursor")),
            next_cursor_field=str(config.option("nextCursorField", "nextCursor")),
            cursor_kind=config.cursor_kind,
            timeout=config.operation_timeout,
            default_headers=headers,
        )

    def open(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=dict(self.default_headers),
            follow_redirects=True,
        )

    def close(self, session: httpx.Client) -> None:
        session.close()

    def _request(self, session: httpx.Client, method: str, url: str, *, timeout: Optional[float] = None, **kwargs: Any) -> httpx.Response:
        self.logger.debug("HTTP request", extra={"method": method, "url": url, "params": kwargs.get("params")})
        try:
            response = session.request(method, url, timeout=timeout if timeout is not None else self.timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise RetryableTransportError(f"Timed out calling {method} {url}: {exc}", error_class=ErrorClass.TIMEOUT) from exc
        except httpx.HTTPError as exc:
            raise RetryableTransportError(f"HTTP error while calling {method} {url}: {exc}", error_class=ErrorClass.CONNECTION) from exc
        _raise_for_status(response)
        self.logger.debug("HTTP response", extra={"status_code": response.status_code, "url": str(response.url)})
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise FatalTransportError(f"Failed to decode JSON from {response.url}: {exc}", error_class=ErrorClass.MALFORMED) from exc

    def test_connection(self, session: httpx.Client) -> bool:
        try:
            self._request(session, "GET", self.fetch_path, params={self.limit_param: 1})
        except TransportError:
            return False
        return True

    def fetch(self, session: httpx.Client, cursor: Optional[Cursor], max_items: int, *, timeout: Optional[float] = None) -> Batch:
        params: Dict[str, Any] = {self.limit_param: max_items}
        if cursor is not None:
            params[self.cursor_param] = cursor.value
        payload = self._json(self._request(session, "GET", self.fetch_path, params=params, timeout=timeout))
        items = payload.get(self.items_field, []) if isinstance(payload, Mapping) else payload
        if not isinstance(items, list):
            raise FatalTransportError(f"Expected a list under '{self.items_field}'.", error_class=ErrorClass.MALFORMED)

        truncated = len(items) > max_items
        records: List[Record] = []
        for item in items[:max_items]:
            if not isinstance(item, Mapping) or item.get(self.id_field) is None:
                raise FatalTransportError(f"Item without '{self.id_field}' in response from {self.fetch_path}.", error_class=ErrorClass.MALFORMED)
            try:
                item_cursor = _parse_cursor(self.cursor_kind, item.get(self.cursor_field)) if self.cursor_kind != CursorKind.DELTA_TOKEN else None
            except ValueError as exc:
                raise FatalTransportError(f"Invalid cursor value in item '{item.get(self.id_field)}': {exc}", error_class=ErrorClass.MALFORMED) from exc
            records.append(Record.from_json(str(item[self.id_field]), item, cursor=item_cursor))

        end_cursor = None
        if truncated:
            # nextCursor points past the dropped items; resume after the last kept one instead.
            end_cursor = records[-1].cursor if records else None
            if end_cursor is None:
                raise FatalTransportError(
                    f"Response from {self.fetch_path} held {len(items)} items for a limit of {max_items} and no per-item cursor to resume from.",
                    error_class=ErrorClass.MALFORMED,
                )
            self.logger.warning("Response exceeded page size; resuming after last kept item", extra={"records": len(items), "limit": max_items})
        elif isinstance(payload, Mapping) and payload.get(self.next_cursor_field) is not None:
            end_cursor = _parse_cursor(self.cursor_kind, payload.get(self.next_cursor_field))
        return Batch(records=records, start_cursor=cursor, end_cursor=end_cursor)

    def deliver(self, session: httpx.Client, batch: Batch, *, timeout: Optional[float] = None) -> CommitResult:
        if self.bulk_path:
            body = [_record_body(record) for record in batch]
            response = self._request(session, "POST", self.bulk_path, json=body, timeout=timeout)
            return CommitResult(committed=len(body), references=(response.headers.get("Location", self.bulk_path),))

        references: List[str] = []
        for record in batch:
            response = self._request(
                session,
                "POST",
                self.deliver_path,
                json=_record_body(record),
                headers={"Idempotency-Key": record.record_id},
                timeout=timeout,
            )
            references.append(response.headers.get("Location", record.record_id))
        return CommitResult(committed=len(references), references=tuple(references))


def _record_body(record: Record) -> Any:
    if record.fields:
        return dict(record.fields)
    try:
        return {"id": record.record_id, "payload": record.payload.decode("utf-8")}
    except UnicodeDecodeError:
        return {"id": record.record_id, "payload": record.payload.hex()}

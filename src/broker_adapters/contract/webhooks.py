"""
HMAC verification for inbound webhook deliveries.

:class:`WebhookVerifier` is a pure predicate: malformed input of any kind yields
``False`` rather than an exception, so callers can map the result straight to a
401 response. :class:`WebhookIngestor` layers header lookup, replay suppression
and hand-off to the workflow engine on top of it.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from dataclasses import dataclass
from enum import Enum
from logging import LoggerAdapter
from typing import Any, Callable, Mapping, Optional

from ..core.logging import bind_adapter, get_logger
from .dedup import DedupIndex, DedupKey
from .models import Record
from .options import DedupStrategy, EffectiveConfig

LOGGER = get_logger(__name__)

DEFAULT_MAX_BODY_BYTES = 1024 * 1024


def _to_bytes(value: Any) -> Optional[bytes]:
    if isinstance(value, bytes):
        return value
    if isinstance(value, bytearray):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    return None


def _decode_signature(value: str, digest_size: int) -> Optional[bytes]:
    """Decode lowercase hex or canonical base64; any other spelling of the digest is rejected."""

    candidate = value.strip()
    if len(candidate) == digest_size * 2:
        try:
            decoded = bytes.fromhex(candidate)
        except ValueError:
            decoded = None
        if decoded is not None:
            return decoded if decoded.hex() == candidate else None
    try:
        decoded = base64.b64decode(candidate, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(decoded) != digest_size or base64.b64encode(decoded).decode("ascii") != candidate:
        return None
    return decoded


class WebhookVerifier:
    """
    Verify ``<algo>=<signature>`` style HMAC headers.

    Parameters
    ----------
    algorithm:
        Digest name understood by :mod:`hashlib`, e.g. ``sha256`` or ``sha1``.
    """

    def __init__(self, algorithm: str = "sha256") -> None:
        self.algorithm = algorithm.lower()

    def _digest(self, body: bytes, secret: bytes) -> Optional[bytes]:
        try:
            return hmac.new(secret, body, self.algorithm).digest()
        except (ValueError, TypeError):
            return None

    def sign(self, raw_body: bytes | str, secret: bytes | str) -> str:
        """Return the ``<algo>=<hex>`` header value for ``raw_body``."""

        body = _to_bytes(raw_body)
        key = _to_bytes(secret)
        if body is None or key is None:
            raise TypeError("Body and secret must be bytes or str.")
        return f"{self.algorithm}={hmac.new(key, body, self.algorithm).hexdigest()}"

    def verify(self, signature_header: Any, raw_body: Any, shared_secret: Any) -> bool:
        """``True`` only when ``signature_header`` is a valid HMAC of ``raw_body``."""

        body = _to_bytes(raw_body)
        secret = _to_bytes(shared_secret)
        if body is None or not secret or not isinstance(signature_header, str) or not signature_header.strip():
            return False
        value = signature_header.strip()
        prefix, separator, remainder = value.partition("=")
        if separator and prefix.lower() in hashlib.algorithms_available:
            if prefix != self.algorithm:
                return False
            value = remainder
        expected = self._digest(body, secret)
        if expected is None:
            return False
        provided = _decode_signature(value, len(expected))
        if provided is None:
            return False
        return hmac.compare_digest(expected, provided)

    def verify_timestamped(
        self,
        signature_header: Any,
        timestamp: Any,
        raw_body: Any,
        shared_secret: Any,
        *,
        tolerance_seconds: float = 300,
        now: Optional[float] = None,
    ) -> bool:
        """Verify a signature computed over ``"{timestamp}.{body}"`` and reject stale timestamps."""

        body = _to_bytes(raw_body)
        if body is None:
            return False
        try:
            issued_at = float(str(timestamp).strip())
        except (TypeError, ValueError):
            return False
        moment = time.time() if now is None else now
        if abs(moment - issued_at) > tolerance_seconds:
            return False
        signed = str(timestamp).strip().encode("utf-8") + b"." + body
        return self.verify(signature_header, signed, shared_secret)


class WebhookStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


@dataclass(slots=True)
class WebhookResult:
    status: WebhookStatus
    reason: str = ""
    record: Optional[Record] = None

    @property
    def http_status(self) -> int:
        if self.status == WebhookStatus.REJECTED:
            if self.reason == "payload too large":
                return 413
            if self.reason == "hand-off rejected":
                return 503
            return 401
        return 200


class WebhookIngestor:
    """Accept signed webhook requests for one inbound adapter."""

    def __init__(
        self,
        adapter_id: str,
        secret: bytes | str,
        sink: Any,
        *,
        config: EffectiveConfig,
        dedup: Optional[DedupIndex] = None,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.adapter_id = adapter_id
        self.secret = secret
        self.sink = sink
        self.config = config
        self.dedup = dedup
        self.max_body_bytes = max_body_bytes
        self.verifier = WebhookVerifier(config.webhook_algorithm)
        self._clock = clock
        self.logger: LoggerAdapter = bind_adapter(LOGGER, adapter_id)

    @staticmethod
    def _header(headers: Mapping[str, str], name: Optional[str]) -> Optional[str]:
        if not name:
            return None
        wanted = name.lower()
        for key, value in headers.items():
            if key.lower() == wanted:
                return value
        return None

    def _reject(self, reason: str) -> WebhookResult:
        self.logger.warning("Webhook rejected", extra={"reason": reason})
        return WebhookResult(WebhookStatus.REJECTED, reason=reason)

    def ingest(self, headers: Mapping[str, str], raw_body: bytes, *, delivery_id: Optional[str] = None) -> WebhookResult:
        if len(raw_body) > self.max_body_bytes:
            return self._reject("payload too large")
        signature = self._header(headers, self.config.webhook_signature_header)
        if not signature:
            return self._reject("missing signature")

        timestamp_header = self.config.webhook_timestamp_header
        if timestamp_header:
            timestamp = self._header(headers, timestamp_header)
            valid = self.verifier.verify_timestamped(
                signature,
                timestamp,
                raw_body,
                self.secret,
                tolerance_seconds=self.config.webhook_tolerance_seconds,
                now=self._clock(),
            )
        else:
            valid = self.verifier.verify(signature, raw_body, self.secret)
        if not valid:
            return self._reject("invalid signature")

        record_id = delivery_id or hashlib.sha256(raw_body).hexdigest()
        key = DedupKey(DedupStrategy.NAME, record_id)
        if self.dedup is not None and self.dedup.contains(key):
            self.logger.info("Webhook replay suppressed", extra={"record_id": record_id})
            return WebhookResult(WebhookStatus.DUPLICATE, reason="replay")

        record = Record(record_id=record_id, payload=raw_body, metadata={"headers": dict(headers)})
        ack = self.sink.hand_off(record)
        if not (ack is True or getattr(ack, "value", ack) == "ack"):
            self.logger.warning("Webhook hand-off rejected by sink", extra={"record_id": record_id})
            return WebhookResult(WebhookStatus.REJECTED, reason="hand-off rejected", record=record)
        if self.dedup is not None:
            self.dedup.insert(key)
        self.logger.info("Webhook accepted", extra={"record_id": record_id, "bytes": len(raw_body)})
        return WebhookResult(WebhookStatus.ACCEPTED, record=record)

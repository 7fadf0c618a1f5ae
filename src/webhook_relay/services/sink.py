"""HTTP client for the external sink."""
from __future__ import annotations

import asyncio
import json
from typing import Any, Sequence

import structlog
from aiohttp import ClientError, ClientSession, ClientTimeout

from webhook_relay.core.exceptions import PermanentDeliveryError, TransientDeliveryError

logger = structlog.get_logger(__name__)

USER_AGENT = "Webhook-Relay/1.0"
REQUEST_ID_HEADER = "X-Request-Id"

_ERROR_BODY_LIMIT = 2000


def is_transient_status(status: int) -> bool:
    return status == 429 or status >= 500


class WebhookSink:
    """POSTs outbound documents and classifies the result.

    Returns the parsed JSON body on a 2xx response. Raises
    :class:`TransientDeliveryError` for timeouts, transport errors, 5xx and
    429, and :class:`PermanentDeliveryError` for any other status or for a
    body that is not JSON or lacks a required field.
    """

    def __init__(
        self,
        session: ClientSession,
        url: str,
        *,
        token: str,
        timeout_seconds: float,
        required_fields: Sequence[str] = (),
    ):
        self._session = session
        self._url = url
        self._token = token
        self._timeout_seconds = timeout_seconds
        self._required_fields = tuple(required_fields)

    @property
    def url(self) -> str:
        return self._url

    async def send(self, document: dict[str, Any], *, request_id: str | None = None) -> Any:
        body_bytes = json.dumps(document, separators=(",", ":"), ensure_ascii=False, default=str).encode(
            "utf-8"
        )
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "Authorization": f"Bearer {self._token}",
        }
        if request_id:
            headers[REQUEST_ID_HEADER] = request_id
        try:
            async with self._session.post(
                self._url,
                data=body_bytes,
                headers=headers,
                timeout=ClientTimeout(total=self._timeout_seconds),
            ) as resp:
                raw = await resp.read()
                status = resp.status
        except asyncio.TimeoutError as exc:
            raise TransientDeliveryError(
                f"Sink request timed out after {self._timeout_seconds}s"
            ) from exc
        except ClientError as exc:
            raise TransientDeliveryError(f"Sink request failed: {exc!r}") from exc

        if not 200 <= status < 300:
            text = raw.decode("utf-8", errors="replace")[:_ERROR_BODY_LIMIT]
            message = f"HTTP {status}: {text}"
            if is_transient_status(status):
                raise TransientDeliveryError(message, status_code=status)
            raise PermanentDeliveryError(message, status_code=status)

        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise PermanentDeliveryError(
                f"Sink response is not valid JSON (HTTP {status})", status_code=status
            ) from exc

        missing = [f for f in self._required_fields if not isinstance(data, dict) or f not in data]
        if missing:
            raise PermanentDeliveryError(
                f"Sink response is missing required fields: {', '.join(missing)}",
                status_code=status,
            )
        logger.debug("sink accepted delivery", status_code=status, request_id=request_id)
        return data

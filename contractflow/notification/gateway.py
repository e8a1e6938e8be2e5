"""Outbound messaging gateways.

A gateway turns ``(recipient, content)`` into one delivery attempt and
reports the result as a :class:`SendResult`; it never raises for transport
problems.  Timeouts are failures like any other.

:class:`WhatsAppGateway` posts ``{"phone": ..., "message": ...}`` to a
WhatsApp HTTP bridge using ``httpx`` synchronous calls with an explicit
timeout.  Recipients and message bodies are never logged.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Protocol

import httpx

from contractflow.core.errors import GatewayError
from contractflow.core.settings import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class MessagingGateway(Protocol):
    def send(self, recipient: str, content: str) -> SendResult:
        ...


# ---------------------------------------------------------------------------
# WhatsApp bridge
# ---------------------------------------------------------------------------


class WhatsAppGateway:
    """Synchronous client for the WhatsApp send-text bridge.

    Parameters
    ----------
    url:
        Full send endpoint.  Defaults to ``settings.gateway_url``.
    token:
        Optional bearer token.  Defaults to ``settings.gateway_token``.
    timeout_s:
        Request timeout in seconds.  Defaults to
        ``settings.gateway_timeout_seconds``.
    """

    def __init__(
        self,
        *,
        url: str | None = None,
        token: str | None = None,
        timeout_s: float | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        settings = get_settings()
        self.url = url or settings.gateway_url
        self.token = token if token is not None else settings.gateway_token
        self.timeout_s = timeout_s if timeout_s is not None else settings.gateway_timeout_seconds
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _post(self, payload: dict) -> httpx.Response:
        """POST *payload*; every transport or HTTP failure becomes :class:`GatewayError`."""
        try:
            if self._client is not None:
                response = self._client.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout_s)
            else:
                response = httpx.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout_s)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("WhatsApp gateway timed out after %ss", self.timeout_s)
            raise GatewayError(f"timeout after {self.timeout_s}s") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning("WhatsApp gateway rejected message: status=%s", exc.response.status_code)
            raise GatewayError(f"HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.warning("WhatsApp gateway unreachable: %s", type(exc).__name__)
            raise GatewayError(f"transport error: {type(exc).__name__}") from exc
        return response

    def send(self, recipient: str, content: str) -> SendResult:
        payload = {"phone": _digits_only(recipient), "message": content}
        start = time.monotonic()
        try:
            response = self._post(payload)
        except GatewayError as exc:
            return SendResult(success=False, error=str(exc))

        elapsed_ms = int((time.monotonic() - start) * 1000)
        try:
            data = response.json()
        except ValueError:
            data = {}
        message_id = None
        if isinstance(data, dict):
            message_id = data.get("messageId") or data.get("id") or data.get("zaapId")
        logger.info("WhatsApp message accepted: message_id=%s latency_ms=%d", message_id, elapsed_ms)
        return SendResult(success=True, message_id=str(message_id) if message_id else None)


def _digits_only(phone: str) -> str:
    return "".join(ch for ch in phone if ch.isdigit())

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import time
from typing import Any

import httpx

from ragrelay.core.config import Settings
from ragrelay.core.errors import TransientDeliveryError
from ragrelay.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

INTEGRATION_NAME = "automation.webhook"


@dataclass(frozen=True)
class WebhookDeliveryResult:
    # Summarize one accepted webhook attempt for logs and callers.
    status_code: int
    body_preview: str


class WebhookTransport:
    """Synchronous HTTP delivery to the external processing service.

    Any failure (not configured, network error, timeout, status >= 400) raises
    TransientDeliveryError; the retry scheduler owns what happens next.
    """

    name = "webhook"

    def __init__(
        self,
        *,
        url: str | None,
        authorization: str | None,
        timeout_ms: int,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._authorization = authorization
        self._timeout_s = max(0.2, timeout_ms / 1000.0)
        # Injected in tests to avoid real network calls.
        self._transport = transport

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None
    ) -> "WebhookTransport":
        return cls(
            url=settings.automation_webhook_url,
            authorization=settings.automation_webhook_auth,
            timeout_ms=settings.webhook_timeout_ms,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self._url)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._authorization:
            headers["Authorization"] = self._authorization
        return headers

    async def send(self, payload: dict[str, Any]) -> WebhookDeliveryResult:
        if not self._url:
            raise TransientDeliveryError("Automation webhook URL is not configured")
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(self._url, content=body, headers=self._headers())
        except httpx.TimeoutException as exc:
            self._record(start, success=False)
            raise TransientDeliveryError(f"Webhook timed out after {self._timeout_s:.1f}s") from exc
        except httpx.HTTPError as exc:
            self._record(start, success=False)
            raise TransientDeliveryError(f"Webhook unreachable: {exc}") from exc

        if response.status_code >= 400:
            self._record(start, success=False)
            raise TransientDeliveryError(f"Webhook responded with status {response.status_code}")

        self._record(start, success=True)
        return WebhookDeliveryResult(
            status_code=response.status_code,
            body_preview=response.text[:512] if response.text else "",
        )

    def _record(self, start: float, *, success: bool) -> None:
        record_external_call(
            integration=INTEGRATION_NAME,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )

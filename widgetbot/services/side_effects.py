"""Delivery of chat side effects (lead captured, booking intent) to a webhook.

The chat turn only *emits* side effects; this dispatcher runs after the
response has been sent (FastAPI background task) and owns retries.  The
receiver de-duplicates on the ``Idempotency-Key`` header, so redelivering
an effect is always safe.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

import httpx

from widgetbot.models import SideEffect
from widgetbot.services.metrics import MetricsClient

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 10.0


class SideEffectDeliveryError(Exception):
    """Raised when a side effect could not be delivered after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class SideEffectDispatcher:
    """POSTs each ``SideEffect`` to the configured webhook with retries.

    With no webhook URL configured the effects are only logged.
    """

    def __init__(
        self,
        webhook_url: str,
        metrics: MetricsClient,
        *,
        secret: str = "",
        client: httpx.AsyncClient | None = None,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
    ) -> None:
        self._webhook_url = webhook_url
        self._metrics = metrics
        self._initial_backoff = initial_backoff
        headers = {"Content-Type": "application/json"}
        if secret:
            headers["Authorization"] = f"Bearer {secret}"
        self._client = client or httpx.AsyncClient(
            headers=headers, timeout=REQUEST_TIMEOUT_SECONDS,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _post(self, effect: SideEffect) -> None:
        """Deliver one effect with exponential-backoff retries."""
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.post(
                    self._webhook_url,
                    json=effect.to_dict(),
                    headers={"Idempotency-Key": effect.idempotency_key},
                )
                if response.status_code >= 500:
                    raise SideEffectDeliveryError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise SideEffectDeliveryError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                return

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Side effect %s attempt %d/%d failed (%s)",
                    effect.idempotency_key, attempt, MAX_RETRIES, type(exc).__name__,
                )
            except SideEffectDeliveryError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Side effect %s server error on attempt %d/%d",
                        effect.idempotency_key, attempt, MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < MAX_RETRIES:
                await asyncio.sleep(self._initial_backoff * (2 ** (attempt - 1)))

        raise SideEffectDeliveryError(
            f"Delivery failed after {MAX_RETRIES} attempts: {last_error}"
        )

    # ── Public API ───────────────────────────────────────────────────

    async def dispatch(self, effects: Sequence[SideEffect]) -> int:
        """Deliver *effects*; returns how many were delivered.  Never raises."""
        if not effects:
            return 0
        if not self.enabled:
            for effect in effects:
                logger.info("Side effect (no webhook configured): %s", effect.idempotency_key)
            return 0

        delivered = 0
        for effect in effects:
            t0 = time.perf_counter()
            try:
                await self._post(effect)
            except Exception as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                self._metrics.record_failure(
                    "webhook", effect.type, error_type=type(exc).__name__, latency_ms=elapsed,
                )
                logger.error("Side effect %s not delivered: %s", effect.idempotency_key, exc)
                continue
            elapsed = (time.perf_counter() - t0) * 1000
            self._metrics.record_success("webhook", effect.type, latency_ms=elapsed)
            logger.info("Side effect %s delivered", effect.idempotency_key)
            delivered += 1
        return delivered

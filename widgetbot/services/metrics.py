"""CloudWatch custom metrics for the chat core.

Two families of data points share one buffer:

* ``ExternalAPI/*``  count, latency and errors per outside call
  (``anthropic``, ``retrieval``, ``webhook``), dimensioned by service and
  operation.
* ``ChatTurn/*``     one count per turn by status and intent, plus the
  turn latency by status.

The buffer is pushed to CloudWatch from a daemon thread, at most
``MAX_BATCH_SIZE`` points per ``put_metric_data`` call.  With
``METRICS_ENABLED`` off nothing leaves the process; the buffer is bounded
so a local run never grows it without limit.

>>> metrics = MetricsClient(enabled=False)
>>> metrics.record_turn("answered", intent="hours", latency_ms=950.0)
"""

from __future__ import annotations

import atexit
import logging
import threading
import time
from collections import deque
from datetime import UTC, datetime
from typing import Any

from widgetbot.config import METRICS_ENABLED

logger = logging.getLogger(__name__)

NAMESPACE = "WidgetBot"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # PutMetricData limit
MAX_BUFFERED = 10_000


def _datum(name: str, value: float, unit: str, **dimensions: str) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": [{"Name": k, "Value": v} for k, v in dimensions.items()],
        "Timestamp": datetime.now(UTC),
        "Value": value,
        "Unit": unit,
    }


class MetricsClient:
    """Buffers data points and ships them to CloudWatch in batches."""

    def __init__(self, enabled: bool = METRICS_ENABLED) -> None:
        self._enabled = enabled
        self._buffer: deque[dict[str, Any]] = deque(maxlen=MAX_BUFFERED)
        self._lock = threading.Lock()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    def _cloudwatch(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    def _record(self, *points: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.extend(points)

    # ── Recording ─────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        self._record(
            _datum("ExternalAPI/RequestCount", 1, "Count", Service=service, Status="success"),
            _datum("ExternalAPI/Latency", latency_ms, "Milliseconds", Service=service, Operation=operation),
        )
        logger.debug("Metric: %s %s ok in %.1fms", service, operation, latency_ms)

    def record_failure(
        self, service: str, operation: str, error_type: str, latency_ms: float = 0,
    ) -> None:
        points = [
            _datum("ExternalAPI/RequestCount", 1, "Count", Service=service, Status="failure"),
            _datum("ExternalAPI/ErrorCount", 1, "Count", Service=service, ErrorType=error_type),
        ]
        if latency_ms > 0:
            points.append(
                _datum("ExternalAPI/Latency", latency_ms, "Milliseconds", Service=service, Operation=operation),
            )
        self._record(*points)
        logger.debug("Metric: %s %s failed (%s)", service, operation, error_type)

    def record_turn(self, status: str, intent: str = "", latency_ms: float = 0) -> None:
        """One chat turn outcome: answered, rate_limited, bot_not_found or errored."""
        points = [_datum("ChatTurn/Count", 1, "Count", Status=status, Intent=intent or "none")]
        if latency_ms > 0:
            points.append(_datum("ChatTurn/Latency", latency_ms, "Milliseconds", Status=status))
        self._record(*points)

    # ── Shipping ──────────────────────────────────────────────────────

    def flush(self) -> int:
        """Ship and clear the buffer.  Returns the number of points sent."""
        with self._lock:
            batch = list(self._buffer)
            self._buffer.clear()
        if not batch or not self._enabled:
            return 0

        sent = 0
        try:
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                part = batch[i : i + MAX_BATCH_SIZE]
                self._cloudwatch().put_metric_data(Namespace=NAMESPACE, MetricData=part)
                sent += len(part)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        else:
            logger.info("Flushed %d metrics to CloudWatch", sent)
        return sent

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                self.flush()

        threading.Thread(target=_loop, daemon=True, name="metrics-flush").start()
        atexit.register(self.flush)

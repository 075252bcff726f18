"""OpenTelemetry metrics instruments for the calendar engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around and all recordings are silent
no-ops until ``init_metrics`` installs a real provider.

Instruments
-----------
  studycal.remote.calls_total         Counter  (labels: operation, outcome)
  studycal.ratelimit.waits_total      Counter  (label: reason=empty|penalized)
  studycal.tokens.refresh_total       Counter  (label: outcome)
  studycal.batch.items_total          Counter  (labels: operation, outcome)
  studycal.sync.runs_total            Counter  (labels: mode, outcome)
  studycal.sync.duration_ms           Histogram
  studycal.webhooks.notifications_total  Counter  (label: outcome)
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "studycal"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


def _remote_calls_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="studycal.remote.calls_total",
        description="Remote calendar provider calls by operation and outcome",
        unit="calls",
    )


def _ratelimit_waits_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="studycal.ratelimit.waits_total",
        description="Times a caller had to wait for a rate-limit token",
        unit="waits",
    )


def _token_refresh_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="studycal.tokens.refresh_total",
        description="OAuth access-token refresh attempts by outcome",
        unit="refreshes",
    )


def _batch_items_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="studycal.batch.items_total",
        description="Batch items processed by operation and outcome",
        unit="items",
    )


def _sync_runs_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="studycal.sync.runs_total",
        description="Sync orchestrator runs by mode and outcome",
        unit="runs",
    )


def _sync_duration_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="studycal.sync.duration_ms",
        description="Sync run duration in milliseconds",
        unit="ms",
    )


def _webhook_notifications_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="studycal.webhooks.notifications_total",
        description="Inbound push notifications by outcome",
        unit="notifications",
    )


class EngineMetrics:
    """Convenience wrapper that caches the engine's instruments.

    Safe to construct before ``init_metrics``; instruments are created on
    first use.
    """

    def __init__(self, provider: str = "google") -> None:
        self._attrs = {"provider": provider}
        self.__remote_calls: metrics.Counter | None = None
        self.__ratelimit_waits: metrics.Counter | None = None
        self.__token_refresh: metrics.Counter | None = None
        self.__batch_items: metrics.Counter | None = None
        self.__sync_runs: metrics.Counter | None = None
        self.__sync_duration: metrics.Histogram | None = None
        self.__webhook_notifications: metrics.Counter | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _remote_calls(self) -> metrics.Counter:
        if self.__remote_calls is None:
            self.__remote_calls = _remote_calls_total()
        return self.__remote_calls

    @property
    def _ratelimit_waits(self) -> metrics.Counter:
        if self.__ratelimit_waits is None:
            self.__ratelimit_waits = _ratelimit_waits_total()
        return self.__ratelimit_waits

    @property
    def _token_refresh(self) -> metrics.Counter:
        if self.__token_refresh is None:
            self.__token_refresh = _token_refresh_total()
        return self.__token_refresh

    @property
    def _batch_items(self) -> metrics.Counter:
        if self.__batch_items is None:
            self.__batch_items = _batch_items_total()
        return self.__batch_items

    @property
    def _sync_runs(self) -> metrics.Counter:
        if self.__sync_runs is None:
            self.__sync_runs = _sync_runs_total()
        return self.__sync_runs

    @property
    def _sync_duration(self) -> metrics.Histogram:
        if self.__sync_duration is None:
            self.__sync_duration = _sync_duration_ms()
        return self.__sync_duration

    @property
    def _webhook_notifications(self) -> metrics.Counter:
        if self.__webhook_notifications is None:
            self.__webhook_notifications = _webhook_notifications_total()
        return self.__webhook_notifications

    # -- recording helpers ---------------------------------------------------

    def remote_call(self, operation: str, outcome: str) -> None:
        self._remote_calls.add(1, {**self._attrs, "operation": operation, "outcome": outcome})

    def ratelimit_wait(self, reason: str) -> None:
        self._ratelimit_waits.add(1, {**self._attrs, "reason": reason})

    def token_refresh(self, outcome: str) -> None:
        self._token_refresh.add(1, {**self._attrs, "outcome": outcome})

    def batch_item(self, operation: str, outcome: str) -> None:
        self._batch_items.add(1, {**self._attrs, "operation": operation, "outcome": outcome})

    def sync_run(self, mode: str, outcome: str, duration_ms: float) -> None:
        """Record a finished sync run and its duration."""
        attrs = {**self._attrs, "mode": mode, "outcome": outcome}
        self._sync_runs.add(1, attrs)
        self._sync_duration.record(duration_ms, attrs)

    def webhook_notification(self, outcome: str) -> None:
        self._webhook_notifications.add(1, {**self._attrs, "outcome": outcome})

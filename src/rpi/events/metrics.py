"""Prometheus metrics for pipeline observability.

Metrics are exposed at the ``/metrics`` endpoint in Prometheus format.

Metrics Defined:
- rpi_runs_completed_total: Runs that reached completed
- rpi_stage_failures_total: Failed stage executions and rejected requests
- rpi_reruns_total: Reruns by target stage and commit strategy
- rpi_artifacts_swept_total: Feature directories removed by cleanup
- rpi_run_duration_seconds: Time from request to completion
- rpi_runs_by_stage: Runs currently at each stage

MetricsEventEmitter updates these from pipeline events.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from src.rpi.events.emitter import EventEmitter
from src.rpi.events.models import EventType, PipelineEvent
from src.rpi.state.models import STAGE_ORDER

logger = logging.getLogger(__name__)

# 10 seconds to 4 hours
DEFAULT_DURATION_BUCKETS = (
    10.0,
    30.0,
    60.0,
    300.0,
    600.0,
    1800.0,
    3600.0,
    7200.0,
    14400.0,
)

PIPELINE_STAGES = tuple(stage.value for stage in STAGE_ORDER)


class PipelineMetrics:
    """Container for the pipeline's Prometheus metrics.

    Pass a custom registry in tests to keep metrics isolated.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.runs_completed_total = Counter(
            "rpi_runs_completed_total",
            "Total number of pipeline runs that reached completed",
            labelnames=["repository"],
            registry=self.registry,
        )

        self.stage_failures_total = Counter(
            "rpi_stage_failures_total",
            "Total number of failed stage executions",
            labelnames=["repository", "stage"],
            registry=self.registry,
        )

        self.reruns_total = Counter(
            "rpi_reruns_total",
            "Total number of reruns",
            labelnames=["repository", "target_stage", "strategy"],
            registry=self.registry,
        )

        self.artifacts_swept_total = Counter(
            "rpi_artifacts_swept_total",
            "Total number of feature artifact directories removed by cleanup",
            registry=self.registry,
        )

        self.run_duration_seconds = Histogram(
            "rpi_run_duration_seconds",
            "Time from request to completed in seconds",
            labelnames=["repository"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.runs_by_stage = Gauge(
            "rpi_runs_by_stage",
            "Current number of pipeline runs at each stage",
            labelnames=["stage"],
            registry=self.registry,
        )

        for stage in PIPELINE_STAGES:
            self.runs_by_stage.labels(stage=stage).set(0)

    def update_stage_count(self, stage: str, delta: int) -> None:
        """Move the per-stage gauge by ``delta``, never below zero."""
        if stage in PIPELINE_STAGES:
            gauge = self.runs_by_stage.labels(stage=stage)
            gauge.set(max(0, gauge._value.get() + delta))

    def set_stage_count(self, stage: str, count: int) -> None:
        if stage in PIPELINE_STAGES:
            self.runs_by_stage.labels(stage=stage).set(max(0, count))


_default_metrics: Optional[PipelineMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> PipelineMetrics:
    """Get the global metrics instance, or a new one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return PipelineMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = PipelineMetrics()
    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Prometheus text exposition of ``registry`` (default REGISTRY)."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - STATE_TRANSITION / RERUN: move the runs_by_stage gauge
    - RERUN: count the rerun by target stage and strategy
    - ERROR: count a stage failure (timeouts also emit ERROR)
    - COMPLETION: count the run and observe its duration
    - CLEANUP: count removed directories
    """

    def __init__(
        self,
        metrics: Optional[PipelineMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    async def emit(self, event: PipelineEvent) -> None:
        try:
            if event.event_type in (EventType.STATE_TRANSITION, EventType.RERUN):
                self._handle_transition(event)
            if event.event_type == EventType.RERUN:
                self._metrics.reruns_total.labels(
                    repository=event.repository,
                    target_stage=event.details.get("to_stage", "unknown"),
                    strategy=event.details.get("strategy", "unknown"),
                ).inc()
            elif event.event_type == EventType.ERROR:
                self._metrics.stage_failures_total.labels(
                    repository=event.repository,
                    stage=event.details.get("stage") or "unknown",
                ).inc()
            elif event.event_type == EventType.COMPLETION:
                self._handle_completion(event)
            elif event.event_type == EventType.CLEANUP:
                removed = event.details.get("removed") or []
                self._metrics.artifacts_swept_total.inc(len(removed))
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "feature_id": event.feature_id,
                },
            )

    def _handle_transition(self, event: PipelineEvent) -> None:
        from_stage = event.details.get("from_stage")
        to_stage = event.details.get("to_stage")
        if from_stage:
            self._metrics.update_stage_count(from_stage, -1)
        if to_stage:
            self._metrics.update_stage_count(to_stage, +1)

    def _handle_completion(self, event: PipelineEvent) -> None:
        self._metrics.runs_completed_total.labels(repository=event.repository).inc()
        duration = event.details.get("duration_seconds")
        if duration is not None:
            self._metrics.run_duration_seconds.labels(
                repository=event.repository,
            ).observe(float(duration))

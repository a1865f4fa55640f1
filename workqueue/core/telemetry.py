"""
Queue Telemetry

OpenTelemetry tracer and meter accessors plus the queue's metric instruments.
Only the API package is required; without a configured SDK every instrument
is a no-op.
"""

from typing import Optional

from opentelemetry import metrics, trace


def get_tracer(name: str, version: Optional[str] = None):
    """Get a tracer for a queue component."""
    return trace.get_tracer(name, version)


def get_meter(name: str, version: Optional[str] = None):
    """Get a meter for a queue component."""
    return metrics.get_meter(name, version)


class QueueMetrics:
    """Counters and histograms for task lifecycle transitions."""

    def __init__(self, meter_name: str = "workqueue") -> None:
        meter = get_meter(meter_name)
        self.tasks_enqueued = meter.create_counter(
            "workqueue.tasks.enqueued", unit="1", description="Tasks enqueued"
        )
        self.tasks_dequeued = meter.create_counter(
            "workqueue.tasks.dequeued", unit="1", description="Tasks claimed by workers"
        )
        self.tasks_completed = meter.create_counter(
            "workqueue.tasks.completed", unit="1", description="Tasks completed"
        )
        self.tasks_retried = meter.create_counter(
            "workqueue.tasks.retried", unit="1", description="Failed tasks rescheduled"
        )
        self.tasks_failed = meter.create_counter(
            "workqueue.tasks.failed", unit="1", description="Tasks failed terminally"
        )
        self.tasks_dead_lettered = meter.create_counter(
            "workqueue.tasks.dead_lettered",
            unit="1",
            description="Tasks pushed onto the dead letter queue",
        )
        self.task_duration = meter.create_histogram(
            "workqueue.task.duration",
            unit="ms",
            description="Time from dequeue to completion",
        )

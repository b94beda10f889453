"""Prometheus metrics for the log sink.

The daemon exposes no listening socket, so metrics are published through the
node-exporter textfile collector: :func:`export_textfile` atomically rewrites
the configured ``.prom`` file.
"""
from pathlib import Path

from prometheus_client import REGISTRY, Counter, Gauge, write_to_textfile

# ---------------------------------------------------------------------------
# Metric definitions (add new ones here)
# ---------------------------------------------------------------------------

MESSAGES_CONSUMED_TOTAL = Counter(
    "log_sink_messages_consumed_total",
    "Kafka messages consumed",
    ["topic", "status"],
)

RECORDS_WRITTEN_TOTAL = Counter(
    "log_sink_records_written_total",
    "Records appended to partition files",
    ["level"],
)

WRITE_FAILURES_TOTAL = Counter(
    "log_sink_write_failures_total",
    "Failed appends to partition files",
)

ROTATIONS_TOTAL = Counter(
    "log_sink_rotations_total",
    "Partition file rotations",
)

COMPRESSIONS_TOTAL = Counter(
    "log_sink_compressions_total",
    "Rotated partition files compressed",
    ["status"],
)

SWEEPS_TOTAL = Counter(
    "log_sink_retention_sweeps_total",
    "Retention sweeps run",
    ["status"],
)

PARTITIONS_DELETED_TOTAL = Counter(
    "log_sink_partitions_deleted_total",
    "Partition files handled by retention sweeps",
    ["status"],
)

CONSUMER_STATE = Gauge(
    "log_sink_consumer_state",
    "1 for the current Kafka connection state, 0 otherwise",
    ["state"],
)


def export_textfile(path: Path) -> None:
    """Write the default registry to *path* for the textfile collector."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    write_to_textfile(str(path), REGISTRY)


__all__ = [
    "MESSAGES_CONSUMED_TOTAL",
    "RECORDS_WRITTEN_TOTAL",
    "WRITE_FAILURES_TOTAL",
    "ROTATIONS_TOTAL",
    "COMPRESSIONS_TOTAL",
    "SWEEPS_TOTAL",
    "PARTITIONS_DELETED_TOTAL",
    "CONSUMER_STATE",
    "export_textfile",
]

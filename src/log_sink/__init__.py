"""Kafka to partitioned-file log sink."""

__version__ = "0.1.0"

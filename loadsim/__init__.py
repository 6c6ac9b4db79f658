"""Threaded synthetic-workload driver: arrival-rate scheduling, stateful virtual-user sessions, thresholds."""

__version__ = "0.1.0"

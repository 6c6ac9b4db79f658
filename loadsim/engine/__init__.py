"""Workload orchestration engine: profiles, scheduler, sessions and metrics."""

from .collector import MetricsCollector, Threshold, parse_thresholds
from .config import ExecutorMode, LoadProfile, Stage, Workload
from .scheduler import Scheduler, StageReport
from .selector import WeightedTable, select
from .session import SessionSpec, Step, VirtualUserContext, think

__all__ = [
    "ExecutorMode",
    "LoadProfile",
    "MetricsCollector",
    "Scheduler",
    "SessionSpec",
    "Stage",
    "StageReport",
    "Step",
    "Threshold",
    "VirtualUserContext",
    "WeightedTable",
    "Workload",
    "parse_thresholds",
    "select",
    "think",
]

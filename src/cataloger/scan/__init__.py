"""Scan pipeline orchestration."""

from cataloger.scan.models import ScanPlan, ScanState, ScanSummary
from cataloger.scan.orchestrator import CancellationToken, ScanOrchestrator
from cataloger.scan.planner import ScanPlanner, repository_id

__all__ = [
    "CancellationToken",
    "ScanOrchestrator",
    "ScanPlan",
    "ScanPlanner",
    "ScanState",
    "ScanSummary",
    "repository_id",
]

"""Anomaly detection and the confirm-then-purge remediation loop."""

from balancewatch.remediation.detector import AnomalyScanner, detect_anomalies, find_spikes
from balancewatch.remediation.remediator import (
    AnomalyRemediator,
    RemediationReport,
    RemediationState,
)

__all__ = [
    "AnomalyRemediator",
    "AnomalyScanner",
    "RemediationReport",
    "RemediationState",
    "detect_anomalies",
    "find_spikes",
]

"""Security pre-screening for untrusted pipeline definitions."""

from .base import Detector, PatternDetector, RiskPattern, SecurityRejected, pattern
from .detectors import builtin_detectors
from .scanner import SecurityScanner, first_blocked

__all__ = [
    "Detector",
    "PatternDetector",
    "RiskPattern",
    "SecurityRejected",
    "SecurityScanner",
    "builtin_detectors",
    "first_blocked",
    "pattern",
]

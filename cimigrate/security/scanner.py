"""Security pre-screen run before any translation work."""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, List, Optional

from ..logging import get_logger
from ..models import Diagnostic, Severity
from .base import Detector, SecurityRejected
from .detectors import builtin_detectors


class SecurityScanner:
    """Runs the detector catalog over raw text in a fixed order."""

    def __init__(
        self,
        detectors: Optional[Iterable[Detector]] = None,
        *,
        strict: bool = False,
    ) -> None:
        self.detectors: List[Detector] = (
            list(detectors) if detectors is not None else builtin_detectors()
        )
        self.strict = strict
        self.logger = get_logger("security")

    def scan(self, text: str) -> List[Diagnostic]:
        """Return every finding; blocked findings first appear in catalog order."""
        diagnostics: List[Diagnostic] = []
        for detector in self.detectors:
            found = list(detector.detect(text))
            if found:
                self.logger.debug("Detector %s reported %d finding(s)", detector.name, len(found))
            for diagnostic in found:
                if self.strict and diagnostic.severity is Severity.WARNING:
                    diagnostic = replace(diagnostic, severity=Severity.BLOCKED)
                diagnostics.append(diagnostic)
        return diagnostics

    def check(self, text: str) -> List[Diagnostic]:
        """Scan and raise SecurityRejected on the first blocked finding."""
        diagnostics = self.scan(text)
        blocked = first_blocked(diagnostics)
        if blocked is not None:
            self.logger.warning("Rejecting document: %s", blocked.message)
            raise SecurityRejected(blocked, diagnostics)
        return diagnostics


def first_blocked(diagnostics: Iterable[Diagnostic]) -> Optional[Diagnostic]:
    for diagnostic in diagnostics:
        if diagnostic.is_blocked:
            return diagnostic
    return None


__all__ = ["SecurityScanner", "first_blocked"]

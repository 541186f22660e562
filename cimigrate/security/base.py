"""Detector contract and shared helpers for the security pre-screen."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from ..models import Category, Diagnostic, DiagnosticCode, Severity, Span, line_of

_EXCERPT_LIMIT = 120


class SecurityRejected(RuntimeError):
    """Raised when a document matches a blocked risk pattern."""

    def __init__(self, diagnostic: Diagnostic, diagnostics: Sequence[Diagnostic] = ()) -> None:
        self.diagnostic = diagnostic
        self.diagnostics = list(diagnostics) or [diagnostic]
        self.category = str(diagnostic.metadata.get("category", "unknown"))
        self.excerpt = str(diagnostic.metadata.get("excerpt", ""))
        self.suggestion: Optional[str] = diagnostic.metadata.get("suggestion")
        message = f"Security check failed ({self.category}): {diagnostic.message}"
        if self.suggestion:
            message += f". Suggested alternative: {self.suggestion}"
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "pattern": self.diagnostic.metadata.get("pattern"),
            "excerpt": self.excerpt,
            "suggestion": self.suggestion,
            "line": self.diagnostic.span.line if self.diagnostic.span else None,
        }


class Detector(ABC):
    """Contract for detectors that flag risky content in raw pipeline text."""

    name: str = "detector"
    category: str = "structural"

    @abstractmethod
    def detect(self, text: str) -> Iterable[Diagnostic]:
        """Yield diagnostics for every risky construct found in the text."""


@dataclass(frozen=True)
class RiskPattern:
    """A labelled regular expression with the severity it carries."""

    label: str
    regex: re.Pattern[str]
    severity: Severity = Severity.BLOCKED


def pattern(label: str, expression: str, severity: Severity = Severity.BLOCKED) -> RiskPattern:
    return RiskPattern(
        label=label,
        regex=re.compile(expression, re.IGNORECASE | re.MULTILINE),
        severity=severity,
    )


class PatternDetector(Detector):
    """Table-driven detector matching a list of risk patterns."""

    def __init__(
        self,
        name: str,
        category: str,
        patterns: Sequence[RiskPattern],
        *,
        suggestion: Optional[str] = None,
    ) -> None:
        self.name = name
        self.category = category
        self.patterns = list(patterns)
        self.suggestion = suggestion

    def detect(self, text: str) -> Iterable[Diagnostic]:
        findings: List[Diagnostic] = []
        for risk in self.patterns:
            for match in risk.regex.finditer(text):
                findings.append(self.build(text, match.start(), match.end(), risk.label, risk.severity))
        findings.sort(key=lambda diag: (diag.span.start if diag.span else 0))
        return findings

    def build(
        self,
        text: str,
        start: int,
        end: int,
        label: str,
        severity: Severity,
    ) -> Diagnostic:
        excerpt = _excerpt(text[start:end])
        return Diagnostic(
            severity=severity,
            code=DiagnosticCode.SECURITY_RISK,
            message=f"{label}: `{excerpt}`",
            category=Category.SECURITY,
            span=Span(start, end, line_of(text, start)),
            metadata={
                "detector": self.name,
                "category": self.category,
                "pattern": label,
                "excerpt": excerpt,
                "suggestion": self.suggestion,
            },
        )


def _excerpt(raw: str) -> str:
    snippet = " ".join(raw.split())
    if len(snippet) > _EXCERPT_LIMIT:
        snippet = snippet[: _EXCERPT_LIMIT - 3].rstrip() + "..."
    return snippet

"""Base classes for dialect extractors."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

from ..models import (
    Category,
    Construct,
    ConstructKind,
    Diagnostic,
    DiagnosticCode,
    Dialect,
    Severity,
    Span,
    line_of,
)

# Attribute names an extractor may attach to each construct kind. Rule
# templates are validated against this table at load time.
COMMON_ATTRIBUTES: FrozenSet[str] = frozenset({"parent_id", "key"})

CONSTRUCT_ATTRIBUTES: Dict[ConstructKind, FrozenSet[str]] = {
    ConstructKind.TRIGGER: frozenset(
        {
            "event",
            "branches",
            "branches_ignore",
            "tags",
            "paths",
            "paths_ignore",
            "types",
            "cron",
            "inputs",
            "workflows",
            "spec",
        }
    ),
    ConstructKind.JOB: frozenset(
        {
            "name",
            "runs_on",
            "needs",
            "timeout_minutes",
            "continue_on_error",
            "container",
            "agent",
            "environment",
            "services",
            "stages",
        }
    ),
    ConstructKind.STEP: frozenset(
        {
            "name",
            "run",
            "uses",
            "with",
            "env",
            "if",
            "step_id",
            "shell",
            "working_directory",
            "continue_on_error",
            "timeout_minutes",
            "command",
            "args",
            "value",
            "block",
        }
    ),
    ConstructKind.ENV_BLOCK: frozenset({"variables", "credentials"}),
    ConstructKind.MATRIX: frozenset({"dimensions", "include", "exclude", "fail_fast", "max_parallel"}),
    ConstructKind.CREDENTIAL: frozenset({"scope", "permissions", "bindings"}),
    ConstructKind.CONDITIONAL: frozenset({"expression", "conditions"}),
    ConstructKind.ARTIFACT: frozenset({"action", "name", "path", "retention_days"}),
    ConstructKind.OTHER: frozenset({"value", "reason"}),
}


def attributes_for(kind: ConstructKind) -> FrozenSet[str]:
    return COMMON_ATTRIBUTES | CONSTRUCT_ATTRIBUTES[kind]


@dataclass
class ExtractionResult:
    """Constructs in source order plus any degradation diagnostics."""

    constructs: List[Construct] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)


class Extractor(ABC):
    """Contract for extractors that turn raw text into constructs."""

    dialect: Dialect

    @abstractmethod
    def extract(self, text: str) -> ExtractionResult:
        """Return constructs in source order; never raise on malformed input."""


class ConstructCollector:
    """Assigns ids and spans while an extractor walks a document."""

    def __init__(self, text: str, dialect: Dialect) -> None:
        self.text = text
        self.dialect = dialect
        self.result = ExtractionResult()

    def add(
        self,
        kind: ConstructKind,
        start: int,
        end: int,
        *,
        identifier: Optional[str] = None,
        parent: Optional[Construct] = None,
        **attributes: Any,
    ) -> Construct:
        start, end = self._trim(start, end)
        values = {name: value for name, value in attributes.items() if value is not None}
        if parent is not None:
            values["parent_id"] = parent.id
        unknown = set(values) - attributes_for(kind)
        if unknown:
            raise KeyError(f"Unsupported attributes for {kind.value}: {', '.join(sorted(unknown))}")
        construct = Construct(
            id=f"c{len(self.result.constructs) + 1}",
            kind=kind,
            span=Span(start, end, line_of(self.text, start)),
            identifier=identifier,
            attributes=values,
            dialect=self.dialect,
            raw=self.text[start:end],
        )
        self.result.constructs.append(construct)
        return construct

    def degrade(
        self,
        start: int,
        end: int,
        reason: str,
        *,
        key: Optional[str] = None,
        parent: Optional[Construct] = None,
    ) -> Construct:
        """Wrap an unparseable section in an Other construct and warn about it."""
        construct = self.add(
            ConstructKind.OTHER,
            start,
            end,
            identifier=key,
            parent=parent,
            key=key,
            reason=reason,
        )
        self.result.diagnostics.append(
            Diagnostic(
                severity=Severity.WARNING,
                code=DiagnosticCode.EXTRACTION_DEGRADED,
                message=f"Could not parse {key or 'section'} at line {construct.span.line}: {reason}",
                category=Category.TRANSLATION,
                span=construct.span,
                metadata={"construct": construct.id},
            )
        )
        return construct

    def _trim(self, start: int, end: int) -> tuple[int, int]:
        start = max(0, min(start, len(self.text)))
        end = max(start, min(end, len(self.text)))
        while end > start and self.text[end - 1].isspace():
            end -= 1
        while start < end and self.text[start].isspace():
            start += 1
        return start, end

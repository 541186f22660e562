"""Core data models shared across cimigrate components."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, Optional


class Dialect(str, Enum):
    """Source grammar profiles understood by the extractors."""

    WORKFLOW_YAML = "workflow-yaml"
    GROOVY_PIPELINE = "groovy-pipeline-dsl"

    @classmethod
    def parse(cls, value: "str | Dialect") -> "Dialect":
        if isinstance(value, Dialect):
            return value
        lowered = str(value).strip().lower()
        for member in cls:
            if member.value == lowered:
                return member
        aliases = {
            "github": cls.WORKFLOW_YAML,
            "github-actions": cls.WORKFLOW_YAML,
            "jenkins": cls.GROOVY_PIPELINE,
            "jenkinsfile": cls.GROOVY_PIPELINE,
        }
        if lowered in aliases:
            return aliases[lowered]
        known = ", ".join(member.value for member in cls)
        raise ValueError(f"Unknown dialect '{value}' (expected one of: {known})")


class ConstructKind(str, Enum):
    TRIGGER = "trigger"
    JOB = "job"
    STEP = "step"
    ENV_BLOCK = "env"
    MATRIX = "matrix"
    CREDENTIAL = "credential"
    CONDITIONAL = "conditional"
    ARTIFACT = "artifact"
    OTHER = "other"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    BLOCKED = "blocked"


class DiagnosticCode(str, Enum):
    SECURITY_RISK = "SecurityRisk"
    UNMAPPED_CONSTRUCT = "UnmappedConstruct"
    EXTRACTION_DEGRADED = "ExtractionDegraded"
    RULE_NOTE = "RuleNote"


class Category(str, Enum):
    """Header groups used by the emitter, in display order."""

    TRIGGERS = "triggers"
    PERMISSIONS = "permissions"
    AGENTS = "agents"
    SECURITY = "security"
    TRANSLATION = "translation"


CATEGORY_TITLES: Dict[Category, str] = {
    Category.TRIGGERS: "Triggers",
    Category.PERMISSIONS: "Permissions",
    Category.AGENTS: "Agent requirements",
    Category.SECURITY: "Security notes",
    Category.TRANSLATION: "Translation notes",
}


@dataclass(frozen=True)
class Span:
    """Half-open character range into a raw document."""

    start: int
    end: int
    line: int = 1

    def slice(self, text: str) -> str:
        return text[self.start:self.end]

    def overlaps(self, other: "Span") -> bool:
        return self.start < other.end and other.start < self.end


@dataclass(frozen=True)
class RawDocument:
    """Unparsed source text tagged with its dialect."""

    text: str
    dialect: Dialect
    name: Optional[str] = None

    @classmethod
    def load(
        cls,
        text: str,
        dialect: "str | Dialect | None" = None,
        *,
        name: Optional[str] = None,
    ) -> "RawDocument":
        resolved = Dialect.parse(dialect) if dialect is not None else detect_dialect(text, name)
        return cls(text=text, dialect=resolved, name=name)


@dataclass(frozen=True)
class Construct:
    """Typed unit extracted from a source document."""

    id: str
    kind: ConstructKind
    span: Span
    identifier: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    dialect: Optional[Dialect] = None
    raw: str = ""

    @property
    def parent_id(self) -> Optional[str]:
        value = self.attributes.get("parent_id")
        return str(value) if value is not None else None


@dataclass(frozen=True)
class OutputFragment:
    """Either a structured target construct or a literal comment."""

    provenance: str
    target: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    comment: Optional[str] = None
    parent: Optional[str] = None
    category: Category = Category.TRANSLATION
    hoist: bool = False
    primary: bool = False
    passthrough: bool = False
    rule_id: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.target is None) == (self.comment is None):
            raise ValueError("OutputFragment needs exactly one of target or comment")

    @property
    def is_comment(self) -> bool:
        return self.comment is not None


@dataclass(frozen=True)
class Diagnostic:
    """Finding surfaced to the caller alongside translated output."""

    severity: Severity
    code: DiagnosticCode
    message: str
    category: Category = Category.TRANSLATION
    span: Optional[Span] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_blocked(self) -> bool:
        return self.severity is Severity.BLOCKED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "code": self.code.value,
            "category": self.category.value,
            "message": self.message,
            "line": self.span.line if self.span is not None else None,
            "metadata": dict(self.metadata),
        }


_GROOVY_MARKERS = re.compile(r"^\s*(pipeline|node)\s*(\([^)]*\))?\s*\{", re.MULTILINE)
_WORKFLOW_MARKERS = re.compile(r"^(jobs|on|\"on\"|'on')\s*:", re.MULTILINE)


def detect_dialect(text: str, name: Optional[str] = None) -> Dialect:
    """Guess the dialect from a file name, falling back to content markers."""
    if name:
        path = PurePath(name)
        lowered = path.name.lower()
        if lowered == "jenkinsfile" or lowered.endswith((".jenkinsfile", ".groovy")):
            return Dialect.GROOVY_PIPELINE
        if path.suffix.lower() in {".yml", ".yaml"}:
            return Dialect.WORKFLOW_YAML
    if _GROOVY_MARKERS.search(text):
        return Dialect.GROOVY_PIPELINE
    if _WORKFLOW_MARKERS.search(text):
        return Dialect.WORKFLOW_YAML
    if not text.strip():
        return Dialect.WORKFLOW_YAML
    raise ValueError("Unable to detect the source dialect; pass one explicitly")


def line_of(text: str, index: int) -> int:
    """Return 1-based line number for a character index."""
    return text.count("\n", 0, index) + 1

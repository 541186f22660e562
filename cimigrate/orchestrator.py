"""Pipeline orchestration for scan, extract, rewrite and emit."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

from .config import CimigrateConfig
from .extractors import discover_extractors
from .extractors.base import Extractor
from .logging import get_logger
from .models import Construct, Diagnostic, Dialect, OutputFragment, RawDocument
from .postproc.emitter import DEFAULT_TITLE, Emitter
from .rewriter import RewriteEngine
from .rules import RuleTable, build_rule_table, default_rule_table
from .security import SecurityRejected, SecurityScanner


class Phase(str, Enum):
    """Document-level translation states."""

    LOADED = "loaded"
    SCANNED = "scanned"
    REJECTED = "rejected"
    EXTRACTED = "extracted"
    REWRITTEN = "rewritten"
    EMITTED = "emitted"


_TRANSITIONS: Dict[Phase, FrozenSet[Phase]] = {
    Phase.LOADED: frozenset({Phase.SCANNED}),
    Phase.SCANNED: frozenset({Phase.REJECTED, Phase.EXTRACTED}),
    Phase.EXTRACTED: frozenset({Phase.REWRITTEN}),
    Phase.REWRITTEN: frozenset({Phase.EMITTED}),
    Phase.REJECTED: frozenset(),
    Phase.EMITTED: frozenset(),
}


class InvalidTransition(RuntimeError):
    """Raised when a translation skips or repeats a phase."""

    def __init__(self, current: Phase, requested: Phase) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move from {current.value} to {requested.value}")


class PhaseTracker:
    """Records the phase of one translation request."""

    def __init__(self) -> None:
        self.phase = Phase.LOADED
        self.history: List[Phase] = [Phase.LOADED]

    def advance(self, target: Phase) -> None:
        if target not in _TRANSITIONS[self.phase]:
            raise InvalidTransition(self.phase, target)
        self.phase = target
        self.history.append(target)

    @property
    def finished(self) -> bool:
        return not _TRANSITIONS[self.phase]


@dataclass
class TranslationResult:
    """Emitted pipeline text plus everything gathered on the way."""

    document: RawDocument
    text: str
    diagnostics: List[Diagnostic] = field(default_factory=list)
    constructs: List[Construct] = field(default_factory=list)
    fragments: List[OutputFragment] = field(default_factory=list)
    phase: Phase = Phase.EMITTED


class Orchestrator:
    """Coordinates the translation pipeline for single documents."""

    def __init__(
        self,
        scanner: SecurityScanner | None = None,
        rule_table: RuleTable | None = None,
        rewriter: RewriteEngine | None = None,
        emitter: Emitter | None = None,
        extractors: Optional[Dict[Dialect, Extractor]] = None,
        default_dialect: Optional[Dialect] = None,
    ) -> None:
        self.scanner = scanner or SecurityScanner()
        self.rule_table = rule_table if rule_table is not None else default_rule_table()
        self.rewriter = rewriter or RewriteEngine()
        self.emitter = emitter or Emitter()
        self.extractors = extractors if extractors is not None else discover_extractors()
        self.default_dialect = default_dialect
        self.logger = get_logger("orchestrator")

    @classmethod
    def from_config(cls, config: CimigrateConfig) -> "Orchestrator":
        """Build an orchestrator honouring a loaded .cimigrate.yml."""
        return cls(
            scanner=SecurityScanner(strict=config.security.strict),
            rule_table=build_rule_table(config.rules.paths, include_builtin=config.rules.include_builtin),
            emitter=Emitter(title=config.emit.title or DEFAULT_TITLE),
            default_dialect=config.dialect,
        )

    def load(self, text: str, dialect: "str | Dialect | None" = None, *, name: Optional[str] = None) -> RawDocument:
        """Resolve the dialect and wrap text in a RawDocument."""
        try:
            return RawDocument.load(text, dialect, name=name)
        except ValueError:
            if dialect is not None or self.default_dialect is None:
                raise
        return RawDocument(text=text, dialect=self.default_dialect, name=name)

    def scan(self, text: str) -> List[Diagnostic]:
        """Run only the security pre-screen."""
        return self.scanner.scan(text)

    def translate(
        self,
        text: str,
        dialect: "str | Dialect | None" = None,
        *,
        name: Optional[str] = None,
    ) -> TranslationResult:
        """Translate one document; raises SecurityRejected before extraction."""
        document = self.load(text, dialect, name=name)
        tracker = PhaseTracker()
        label = name or "<text>"
        self.logger.info("Translating %s (%s)", label, document.dialect.value)

        try:
            diagnostics = self.scanner.check(document.text)
        except SecurityRejected as exc:
            tracker.advance(Phase.SCANNED)
            tracker.advance(Phase.REJECTED)
            self.logger.warning("Rejected %s: %s", label, exc.category)
            raise
        tracker.advance(Phase.SCANNED)

        extractor = self.extractors[document.dialect]
        extraction = extractor.extract(document.text)
        tracker.advance(Phase.EXTRACTED)
        diagnostics.extend(extraction.diagnostics)
        self.logger.debug("Extracted %d constructs", len(extraction.constructs))

        fragments, notes = self.rewriter.rewrite(extraction.constructs, self.rule_table)
        tracker.advance(Phase.REWRITTEN)
        diagnostics.extend(notes)

        output = self.emitter.emit(fragments, diagnostics)
        tracker.advance(Phase.EMITTED)
        self.logger.info(
            "Translated %s: %d constructs, %d diagnostics", label, len(extraction.constructs), len(diagnostics)
        )
        return TranslationResult(
            document=document,
            text=output,
            diagnostics=diagnostics,
            constructs=list(extraction.constructs),
            fragments=fragments,
            phase=tracker.phase,
        )

    def translate_file(self, path: Path | str, dialect: "str | Dialect | None" = None) -> TranslationResult:
        source = Path(path).expanduser()
        text = source.read_text(encoding="utf-8")
        return self.translate(text, dialect, name=source.name)


__all__ = [
    "InvalidTransition",
    "Orchestrator",
    "Phase",
    "PhaseTracker",
    "TranslationResult",
]

"""Apply rule tables to extracted constructs."""

from __future__ import annotations

import dataclasses
from typing import Iterable, List, Sequence, Tuple

from .logging import get_logger
from .models import (
    Category,
    Construct,
    Diagnostic,
    DiagnosticCode,
    OutputFragment,
    Severity,
)
from .rules import RuleEntry, RuleTable, TemplateRenderError


class RewriteEngine:
    """Turns constructs into output fragments, one construct at a time."""

    def __init__(self) -> None:
        self.logger = get_logger("rewriter")

    def rewrite(
        self,
        constructs: Sequence[Construct],
        table: RuleTable,
    ) -> Tuple[List[OutputFragment], List[Diagnostic]]:
        fragments: List[OutputFragment] = []
        diagnostics: List[Diagnostic] = []
        for construct in constructs:
            produced, notes = self._rewrite_one(construct, table)
            fragments.extend(produced)
            diagnostics.extend(notes)
        self.logger.debug(
            "Rewrote %d constructs into %d fragments (%d diagnostics)",
            len(constructs),
            len(fragments),
            len(diagnostics),
        )
        return fragments, diagnostics

    def _rewrite_one(
        self, construct: Construct, table: RuleTable
    ) -> Tuple[List[OutputFragment], List[Diagnostic]]:
        entries = select_entries(table.match(construct))
        if not entries:
            return self._passthrough(construct, "no rule matched")

        fragments: List[OutputFragment] = []
        diagnostics: List[Diagnostic] = []
        try:
            for entry in entries:
                fragments.extend(entry.template(construct))
                if entry.diagnostics is not None:
                    diagnostics.extend(entry.diagnostics(construct))
        except TemplateRenderError as exc:
            self.logger.warning("%s", exc)
            return self._passthrough(construct, str(exc))

        if not fragments:
            fragments.append(
                OutputFragment(
                    provenance=construct.id,
                    comment=f"Removed {construct.kind.value} {_describe(construct)} ({_rule_ids(entries)})",
                    parent=construct.parent_id,
                    rule_id=entries[0].id,
                )
            )
        fragments[0] = dataclasses.replace(fragments[0], primary=True)
        return fragments, diagnostics

    def _passthrough(
        self, construct: Construct, reason: str
    ) -> Tuple[List[OutputFragment], List[Diagnostic]]:
        fragment = OutputFragment(
            provenance=construct.id,
            comment=f"Untranslated {construct.kind.value} {_describe(construct)}:\n{construct.raw}",
            parent=construct.parent_id,
            primary=True,
            passthrough=True,
        )
        diagnostic = Diagnostic(
            severity=Severity.WARNING,
            code=DiagnosticCode.UNMAPPED_CONSTRUCT,
            message=(
                f"No translation for {construct.kind.value} {_describe(construct)} "
                f"at line {construct.span.line}: {reason}"
            ),
            category=Category.TRANSLATION,
            span=construct.span,
            metadata={"construct": construct.id},
        )
        return [fragment], [diagnostic]


def select_entries(matches: Iterable[RuleEntry]) -> List[RuleEntry]:
    """Keep the first terminal entry alone, otherwise every non-terminal one."""
    ordered = list(matches)
    for entry in ordered:
        if entry.terminal:
            return [entry]
    return ordered


def _describe(construct: Construct) -> str:
    return f"'{construct.identifier}'" if construct.identifier else construct.id


def _rule_ids(entries: Sequence[RuleEntry]) -> str:
    return ", ".join(entry.id for entry in entries)


__all__ = ["RewriteEngine", "select_entries"]

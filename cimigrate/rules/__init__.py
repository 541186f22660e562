"""Rule tables that map source constructs onto Buildkite fragments."""

from __future__ import annotations

import threading
from importlib import resources
from pathlib import Path
from typing import Iterable, Optional, Union

from ..logging import get_logger
from .filters import FILTERS
from .table import (
    MalformedRule,
    Matcher,
    RuleEntry,
    RuleTable,
    TemplateRenderError,
    load_rules,
    template_context,
)

BUILTIN_RULES = "builtin_rules.yml"

_LOCK = threading.Lock()
_DEFAULT_TABLE: Optional[RuleTable] = None


def default_rule_table() -> RuleTable:
    """Return the packaged rule table, loading it once per process."""
    global _DEFAULT_TABLE
    if _DEFAULT_TABLE is None:
        with _LOCK:
            if _DEFAULT_TABLE is None:
                text = resources.files(__package__).joinpath(BUILTIN_RULES).read_text(encoding="utf-8")
                _DEFAULT_TABLE = RuleTable.load(text)
                get_logger("rules").debug("Loaded %d builtin rules", len(_DEFAULT_TABLE))
    return _DEFAULT_TABLE


def build_rule_table(
    paths: Iterable[Union[str, Path]] = (),
    *,
    include_builtin: bool = True,
) -> RuleTable:
    """Layer user rule files over the builtin table in the given order."""
    table = default_rule_table() if include_builtin else RuleTable()
    for path in paths:
        table = table.merge(RuleTable.load(Path(path)))
    return table


__all__ = [
    "BUILTIN_RULES",
    "FILTERS",
    "MalformedRule",
    "Matcher",
    "RuleEntry",
    "RuleTable",
    "TemplateRenderError",
    "build_rule_table",
    "default_rule_table",
    "load_rules",
    "template_context",
]

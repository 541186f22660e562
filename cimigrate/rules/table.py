"""Declarative rule loading and matching."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import yaml
from jinja2 import StrictUndefined, TemplateError, meta
from jinja2.sandbox import SandboxedEnvironment

from ..extractors.base import attributes_for
from ..models import (
    Category,
    Construct,
    ConstructKind,
    Diagnostic,
    DiagnosticCode,
    Dialect,
    OutputFragment,
    Severity,
)
from .filters import FILTERS

RULE_SCHEMA_VERSION = 1

# Template variables available for every construct kind.
BASE_VARIABLES = frozenset({"id", "kind", "identifier", "dialect", "raw", "attributes"})

TARGET_KINDS = frozenset(
    {"step", "group", "command", "env", "agents", "matrix", "if", "artifact_paths", "plugins", "step_options"}
)

_PREDICATE_OPERATORS = frozenset({"equals", "present", "in", "not_in", "prefix", "regex"})


class MalformedRule(ValueError):
    """Raised when a rule source cannot be turned into a rule table."""

    def __init__(self, message: str, *, rule_id: Optional[str] = None) -> None:
        self.rule_id = rule_id
        prefix = f"rule '{rule_id}': " if rule_id else ""
        super().__init__(f"{prefix}{message}")


class TemplateRenderError(RuntimeError):
    """Raised when a rule template fails for a specific construct."""


def _create_env() -> SandboxedEnvironment:
    env = SandboxedEnvironment(
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        finalize=lambda value: "" if value is None else value,
    )
    env.filters.update(FILTERS)
    return env


_ENV = _create_env()


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AttributePredicate:
    """One condition over a construct attribute."""

    name: str
    operator: str
    operand: Any = None

    def test(self, construct: Construct) -> bool:
        if self.name == "identifier":
            value = construct.identifier
        else:
            value = construct.attributes.get(self.name)
        if self.operator == "present":
            return (value is not None) == bool(self.operand)
        if self.operator == "not_in":
            return value is None or str(value) not in self.operand
        if value is None:
            return False
        if self.operator == "equals":
            if isinstance(value, (list, tuple)):
                return self.operand in [str(item) for item in value]
            return str(value) == self.operand
        if self.operator == "in":
            return str(value) in self.operand
        if self.operator == "prefix":
            return str(value).startswith(self.operand)
        if self.operator == "regex":
            return bool(self.operand.search(str(value)))
        return False


@dataclass(frozen=True)
class Matcher:
    """Predicate over a construct's kind, dialect and attributes."""

    kind: ConstructKind
    dialect: Optional[Dialect] = None
    predicates: Tuple[AttributePredicate, ...] = ()

    def __call__(self, construct: Construct) -> bool:
        if construct.kind is not self.kind:
            return False
        if self.dialect is not None and construct.dialect is not self.dialect:
            return False
        return all(predicate.test(construct) for predicate in self.predicates)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def template_context(construct: Construct) -> Dict[str, Any]:
    context: Dict[str, Any] = {name: None for name in attributes_for(construct.kind)}
    context.update(construct.attributes)
    context.update(
        {
            "id": construct.id,
            "kind": construct.kind.value,
            "identifier": construct.identifier,
            "dialect": construct.dialect.value if construct.dialect else None,
            "raw": construct.raw,
            "attributes": dict(construct.attributes),
        }
    )
    return context


@dataclass(frozen=True)
class _ValueSpec:
    """Compiled form of one attribute value inside an emit record."""

    template: Any = None
    source: Optional[str] = None
    filter_name: Optional[str] = None
    literal: Any = None
    items: Optional[Tuple["_ValueSpec", ...]] = None
    mapping: Optional[Tuple[Tuple[str, "_ValueSpec"], ...]] = None

    def render(self, context: Mapping[str, Any]) -> Any:
        if self.template is not None:
            return self.template.render(context).strip()
        if self.source is not None:
            value = context.get(self.source)
            if value is not None and self.filter_name:
                value = FILTERS[self.filter_name](value)
            return value
        if self.items is not None:
            rendered = [item.render(context) for item in self.items]
            return [item for item in rendered if not _empty(item)]
        if self.mapping is not None:
            rendered_map = {key: spec.render(context) for key, spec in self.mapping}
            return {key: value for key, value in rendered_map.items() if not _empty(value)}
        return self.literal


@dataclass(frozen=True)
class _EmitSpec:
    target: Optional[str]
    comment: Any
    attributes: Tuple[Tuple[str, _ValueSpec], ...]
    category: Category
    hoist: bool
    parent: str
    condition: Any


@dataclass(frozen=True)
class _DiagnosticSpec:
    severity: Severity
    category: Category
    message: Any
    condition: Any


class FragmentTemplate:
    """Callable that renders a rule's emit records for a construct."""

    def __init__(self, rule_id: str, emits: Sequence[_EmitSpec]) -> None:
        self.rule_id = rule_id
        self._emits = tuple(emits)

    def __call__(self, construct: Construct) -> List[OutputFragment]:
        context = template_context(construct)
        fragments: List[OutputFragment] = []
        try:
            for spec in self._emits:
                if spec.condition is not None and not spec.condition(**context):
                    continue
                parent = {"parent": construct.parent_id, "self": construct.id}.get(spec.parent)
                if spec.comment is not None:
                    text = spec.comment.render(context).strip()
                    if not text:
                        continue
                    fragments.append(
                        OutputFragment(
                            provenance=construct.id,
                            comment=text,
                            parent=parent,
                            category=spec.category,
                            hoist=spec.hoist,
                            rule_id=self.rule_id,
                        )
                    )
                    continue
                attributes = {key: value.render(context) for key, value in spec.attributes}
                fragments.append(
                    OutputFragment(
                        provenance=construct.id,
                        target=spec.target,
                        attributes={key: value for key, value in attributes.items() if not _empty(value)},
                        parent=parent,
                        category=spec.category,
                        rule_id=self.rule_id,
                    )
                )
        except TemplateError as exc:
            raise TemplateRenderError(f"rule '{self.rule_id}' failed for {construct.id}: {exc}") from exc
        return fragments


class DiagnosticTemplate:
    """Callable that renders a rule's diagnostic records for a construct."""

    def __init__(self, rule_id: str, specs: Sequence[_DiagnosticSpec]) -> None:
        self.rule_id = rule_id
        self._specs = tuple(specs)

    def __call__(self, construct: Construct) -> List[Diagnostic]:
        context = template_context(construct)
        diagnostics: List[Diagnostic] = []
        try:
            for spec in self._specs:
                if spec.condition is not None and not spec.condition(**context):
                    continue
                message = spec.message.render(context).strip()
                if not message:
                    continue
                diagnostics.append(
                    Diagnostic(
                        severity=spec.severity,
                        code=DiagnosticCode.RULE_NOTE,
                        message=message,
                        category=spec.category,
                        span=construct.span,
                        metadata={"rule": self.rule_id, "construct": construct.id},
                    )
                )
        except TemplateError as exc:
            raise TemplateRenderError(f"rule '{self.rule_id}' failed for {construct.id}: {exc}") from exc
        return diagnostics

    def __bool__(self) -> bool:
        return bool(self._specs)


# ---------------------------------------------------------------------------
# Rule entries and tables
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuleEntry:
    """A matcher plus the template it applies, ordered by priority."""

    id: str
    matcher: Callable[[Construct], bool]
    template: Callable[[Construct], List[OutputFragment]]
    priority: int = 0
    terminal: bool = False
    diagnostics: Optional[Callable[[Construct], List[Diagnostic]]] = None
    description: str = ""


@dataclass(frozen=True)
class RuleTable:
    """Immutable, ordered collection of rule entries."""

    entries: Tuple[RuleEntry, ...] = field(default_factory=tuple)

    @classmethod
    def load(cls, source: Union[Path, str, Mapping[str, Any]]) -> "RuleTable":
        """Build a table from a rule file path, YAML text or parsed mapping."""
        return cls(entries=tuple(load_rules(source)))

    def match(self, construct: Construct) -> List[RuleEntry]:
        """Return accepting entries by priority, terminal first among equals."""
        accepted = [
            (index, entry) for index, entry in enumerate(self.entries) if entry.matcher(construct)
        ]
        accepted.sort(key=lambda pair: (-pair[1].priority, not pair[1].terminal, pair[0]))
        return [entry for _, entry in accepted]

    def merge(self, other: "RuleTable") -> "RuleTable":
        """Layer ``other`` over this table; entries with the same id are replaced."""
        replaced = {entry.id for entry in other.entries}
        kept = [entry for entry in self.entries if entry.id not in replaced]
        return RuleTable(entries=tuple(kept) + other.entries)

    def get(self, rule_id: str) -> Optional[RuleEntry]:
        return next((entry for entry in self.entries if entry.id == rule_id), None)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[RuleEntry]:
        return iter(self.entries)


def load_rules(source: Union[Path, str, Mapping[str, Any]]) -> List[RuleEntry]:
    data = _read_source(source)
    if not isinstance(data, Mapping):
        raise MalformedRule("rule source must contain a mapping at the root")
    version = data.get("version", RULE_SCHEMA_VERSION)
    if version != RULE_SCHEMA_VERSION:
        raise MalformedRule(f"unsupported rule schema version {version!r}")
    records = data.get("rules")
    if records is None:
        return []
    if not isinstance(records, list):
        raise MalformedRule("'rules' must be a list")

    entries: List[RuleEntry] = []
    seen: set[str] = set()
    for index, record in enumerate(records, start=1):
        if not isinstance(record, Mapping):
            raise MalformedRule(f"rule #{index} must be a mapping")
        rule_id = str(record.get("id") or "").strip()
        if not rule_id:
            raise MalformedRule(f"rule #{index} is missing an id")
        if rule_id in seen:
            raise MalformedRule("duplicate rule id", rule_id=rule_id)
        seen.add(rule_id)
        entries.append(_compile_rule(rule_id, record))
    return entries


def _read_source(source: Union[Path, str, Mapping[str, Any]]) -> Any:
    if isinstance(source, Mapping):
        return source
    if isinstance(source, Path):
        try:
            text = source.read_text(encoding="utf-8")
        except OSError as exc:
            raise MalformedRule(f"cannot read rule file {source}: {exc}") from exc
    else:
        text = source
    try:
        return yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise MalformedRule(f"invalid rule YAML: {exc}") from exc


def _compile_rule(rule_id: str, record: Mapping[str, Any]) -> RuleEntry:
    match = record.get("match")
    if not isinstance(match, Mapping):
        raise MalformedRule("'match' must be a mapping", rule_id=rule_id)
    kind = _parse_kind(match.get("kind"), rule_id)
    dialect = None
    if match.get("dialect") is not None:
        try:
            dialect = Dialect.parse(str(match["dialect"]))
        except ValueError as exc:
            raise MalformedRule(str(exc), rule_id=rule_id) from exc

    allowed = attributes_for(kind)
    predicates = tuple(_compile_predicates(match.get("attributes") or {}, allowed, rule_id))
    variables = allowed | BASE_VARIABLES

    priority = record.get("priority", 0)
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise MalformedRule("'priority' must be an integer", rule_id=rule_id)
    terminal = record.get("terminal", False)
    if not isinstance(terminal, bool):
        raise MalformedRule("'terminal' must be a boolean", rule_id=rule_id)

    emit_records = record.get("emit") or []
    if not isinstance(emit_records, list):
        raise MalformedRule("'emit' must be a list", rule_id=rule_id)
    emits = [_compile_emit(item, variables, rule_id) for item in emit_records]

    diagnostic_records = record.get("diagnostics") or []
    if not isinstance(diagnostic_records, list):
        raise MalformedRule("'diagnostics' must be a list", rule_id=rule_id)
    diagnostics = [_compile_diagnostic(item, variables, rule_id) for item in diagnostic_records]

    return RuleEntry(
        id=rule_id,
        matcher=Matcher(kind=kind, dialect=dialect, predicates=predicates),
        template=FragmentTemplate(rule_id, emits),
        priority=priority,
        terminal=terminal,
        diagnostics=DiagnosticTemplate(rule_id, diagnostics) if diagnostics else None,
        description=str(record.get("description") or ""),
    )


def _parse_kind(value: Any, rule_id: str) -> ConstructKind:
    for member in ConstructKind:
        if member.value == value:
            return member
    raise MalformedRule(f"unknown construct kind {value!r}", rule_id=rule_id)


def _compile_predicates(
    conditions: Any, allowed: Iterable[str], rule_id: str
) -> Iterable[AttributePredicate]:
    if not isinstance(conditions, Mapping):
        raise MalformedRule("'match.attributes' must be a mapping", rule_id=rule_id)
    known = set(allowed) | {"identifier"}
    for name, condition in conditions.items():
        if name not in known:
            raise MalformedRule(f"matcher references unknown attribute '{name}'", rule_id=rule_id)
        if not isinstance(condition, Mapping):
            yield AttributePredicate(name, "equals", str(condition))
            continue
        for operator, operand in condition.items():
            if operator not in _PREDICATE_OPERATORS:
                raise MalformedRule(f"unknown predicate operator '{operator}'", rule_id=rule_id)
            if operator == "present":
                yield AttributePredicate(name, operator, bool(operand))
            elif operator in {"in", "not_in"}:
                if not isinstance(operand, list):
                    raise MalformedRule(f"'{operator}' expects a list", rule_id=rule_id)
                yield AttributePredicate(name, operator, tuple(str(item) for item in operand))
            elif operator == "regex":
                try:
                    compiled = re.compile(str(operand))
                except re.error as exc:
                    raise MalformedRule(f"invalid regex for '{name}': {exc}", rule_id=rule_id) from exc
                yield AttributePredicate(name, operator, compiled)
            else:
                yield AttributePredicate(name, operator, str(operand))


def _compile_template(source: str, variables: frozenset[str], rule_id: str) -> Any:
    try:
        parsed = _ENV.parse(source)
        undeclared = meta.find_undeclared_variables(parsed) - set(_ENV.globals)
        template = _ENV.from_string(source)
    except TemplateError as exc:
        raise MalformedRule(f"invalid template {source!r}: {exc}", rule_id=rule_id) from exc
    unknown = sorted(undeclared - variables)
    if unknown:
        raise MalformedRule(f"template references undefined placeholder(s): {', '.join(unknown)}", rule_id=rule_id)
    return template


def _compile_condition(expression: Any, variables: frozenset[str], rule_id: str) -> Any:
    if expression is None:
        return None
    _compile_template("{{ " + str(expression) + " }}", variables, rule_id)
    try:
        return _ENV.compile_expression(str(expression))
    except TemplateError as exc:
        raise MalformedRule(f"invalid condition {expression!r}: {exc}", rule_id=rule_id) from exc


def _compile_value(value: Any, variables: frozenset[str], rule_id: str) -> _ValueSpec:
    if isinstance(value, str):
        return _ValueSpec(template=_compile_template(value, variables, rule_id))
    if isinstance(value, list):
        return _ValueSpec(items=tuple(_compile_value(item, variables, rule_id) for item in value))
    if isinstance(value, Mapping):
        if "from" in value:
            source = str(value["from"])
            if source not in variables:
                raise MalformedRule(f"'from' references undefined placeholder '{source}'", rule_id=rule_id)
            filter_name = value.get("filter")
            if filter_name is not None and filter_name not in FILTERS:
                raise MalformedRule(f"unknown filter '{filter_name}'", rule_id=rule_id)
            return _ValueSpec(source=source, filter_name=filter_name)
        return _ValueSpec(
            mapping=tuple(
                (str(key), _compile_value(item, variables, rule_id)) for key, item in value.items()
            )
        )
    return _ValueSpec(literal=value)


def _compile_emit(record: Any, variables: frozenset[str], rule_id: str) -> _EmitSpec:
    if not isinstance(record, Mapping):
        raise MalformedRule("emit entries must be mappings", rule_id=rule_id)
    target = record.get("target")
    comment = record.get("comment")
    if (target is None) == (comment is None):
        raise MalformedRule("emit entries need exactly one of 'target' or 'comment'", rule_id=rule_id)
    if target is not None and target not in TARGET_KINDS:
        raise MalformedRule(f"unknown target kind '{target}'", rule_id=rule_id)
    parent = record.get("parent", "parent")
    if parent not in {"parent", "self", "none"}:
        raise MalformedRule("'parent' must be one of parent, self or none", rule_id=rule_id)
    attributes = record.get("attributes") or {}
    if not isinstance(attributes, Mapping):
        raise MalformedRule("'attributes' must be a mapping", rule_id=rule_id)
    return _EmitSpec(
        target=target,
        comment=_compile_template(str(comment), variables, rule_id) if comment is not None else None,
        attributes=tuple(
            (str(key), _compile_value(value, variables, rule_id)) for key, value in attributes.items()
        ),
        category=_parse_category(record.get("category"), rule_id),
        hoist=bool(record.get("hoist", False)),
        parent=parent,
        condition=_compile_condition(record.get("when"), variables, rule_id),
    )


def _compile_diagnostic(record: Any, variables: frozenset[str], rule_id: str) -> _DiagnosticSpec:
    if not isinstance(record, Mapping) or "message" not in record:
        raise MalformedRule("diagnostic entries need a 'message'", rule_id=rule_id)
    severity_name = str(record.get("severity", "info"))
    if severity_name not in {Severity.INFO.value, Severity.WARNING.value}:
        raise MalformedRule(f"rule diagnostics cannot use severity '{severity_name}'", rule_id=rule_id)
    return _DiagnosticSpec(
        severity=Severity(severity_name),
        category=_parse_category(record.get("category"), rule_id),
        message=_compile_template(str(record["message"]), variables, rule_id),
        condition=_compile_condition(record.get("when"), variables, rule_id),
    )


def _parse_category(value: Any, rule_id: str) -> Category:
    if value is None:
        return Category.TRANSLATION
    for member in Category:
        if member.value == value:
            return member
    raise MalformedRule(f"unknown category {value!r}", rule_id=rule_id)


def _empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


__all__ = [
    "AttributePredicate",
    "DiagnosticTemplate",
    "FragmentTemplate",
    "MalformedRule",
    "Matcher",
    "RuleEntry",
    "RuleTable",
    "TemplateRenderError",
    "load_rules",
    "template_context",
]

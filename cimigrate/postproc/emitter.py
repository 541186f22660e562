"""Serialize output fragments into a Buildkite pipeline document."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import yaml

from ..logging import get_logger
from ..models import CATEGORY_TITLES, Category, Diagnostic, OutputFragment
from ..security import SecurityRejected, first_blocked
from .lint import YamlLinter

DEFAULT_TITLE = "Translated pipeline"

# Buildkite step keys in the order they are written.
_STEP_KEY_ORDER = (
    "label",
    "group",
    "key",
    "depends_on",
    "if",
    "agents",
    "env",
    "matrix",
    "commands",
    "artifact_paths",
    "plugins",
    "timeout_in_minutes",
    "soft_fail",
    "retry",
    "concurrency_group",
    "concurrency",
)

_PLACEHOLDER_COMMAND = "echo 'No commands were translated for this step'"


class _PipelineDumper(yaml.SafeDumper):
    """Indents nested sequences and writes multi-line strings as literal blocks."""

    def increase_indent(self, flow: bool = False, indentless: bool = False) -> None:
        super().increase_indent(flow, False)


def _represent_str(dumper: yaml.SafeDumper, value: str) -> yaml.ScalarNode:
    style = "|" if "\n" in value else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", value, style=style)


_PipelineDumper.add_representer(str, _represent_str)


@dataclass
class _Node:
    """A step or group being assembled from fragments."""

    provenance: str
    kind: str
    data: Dict[str, Any]
    comments: List[str] = field(default_factory=list)
    children: List["_Node"] = field(default_factory=list)
    commands: List[str] = field(default_factory=list)
    inherited: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def is_group(self) -> bool:
        return self.kind == "group"


class Emitter:
    """Renders the header block and the ``steps`` body."""

    def __init__(self, *, title: str = DEFAULT_TITLE, linter: Optional[YamlLinter] = None) -> None:
        self.title = title
        self.linter = linter or YamlLinter()
        self.logger = get_logger("emitter")

    def emit(self, fragments: Sequence[OutputFragment], diagnostics: Sequence[Diagnostic]) -> str:
        blocked = first_blocked(diagnostics)
        if blocked is not None:
            raise SecurityRejected(blocked, diagnostics)

        header = self.render_header(fragments, diagnostics)
        if not fragments:
            return self.linter.lint(header)
        body = self.render_body(fragments)
        return self.linter.lint(f"{header}\n{body}")

    # ------------------------------------------------------------------
    # Header
    # ------------------------------------------------------------------

    def render_header(self, fragments: Sequence[OutputFragment], diagnostics: Sequence[Diagnostic]) -> str:
        lines = [
            f"# {self.title}",
            "# Generated by cimigrate. Review the notes below before uploading.",
        ]
        grouped: Dict[Category, List[str]] = {category: [] for category in CATEGORY_TITLES}
        for fragment in fragments:
            if fragment.is_comment and fragment.hoist:
                grouped[fragment.category].append(fragment.comment or "")
        for diagnostic in diagnostics:
            grouped[diagnostic.category].append(_describe_diagnostic(diagnostic))

        for category, title in CATEGORY_TITLES.items():
            entries = grouped[category]
            if not entries:
                continue
            lines.append("#")
            lines.append(f"# {title}:")
            for entry in entries:
                first, *rest = entry.splitlines() or [""]
                lines.append(f"#   - {first}".rstrip())
                lines.extend(f"#     {line}".rstrip() for line in rest)
        return "\n".join(lines) + "\n"

    # ------------------------------------------------------------------
    # Body
    # ------------------------------------------------------------------

    def render_body(self, fragments: Sequence[OutputFragment]) -> str:
        pipeline_env: Dict[str, Any] = {}
        pipeline_agents: Dict[str, Any] = {}
        items: List[Union[_Node, str]] = []
        nodes: Dict[str, _Node] = {}

        for fragment in fragments:
            if fragment.is_comment:
                if fragment.hoist:
                    continue
                owner = nodes.get(fragment.parent or "")
                if owner is not None:
                    owner.comments.append(fragment.comment or "")
                else:
                    items.append(fragment.comment or "")
                continue

            target = fragment.target or ""
            if target in {"step", "group"}:
                node = _Node(provenance=fragment.provenance, kind=target, data=dict(fragment.attributes))
                nodes.setdefault(fragment.provenance, node)
                parent = nodes.get(fragment.parent or "")
                if parent is not None and parent.is_group:
                    parent.children.append(node)
                else:
                    items.append(node)
                continue

            owner = nodes.get(fragment.parent or "")
            if owner is None and fragment.parent is None:
                if target == "env":
                    pipeline_env.update(fragment.attributes.get("variables") or {})
                    continue
                if target == "agents":
                    pipeline_agents.update(fragment.attributes)
                    continue
                if target == "command":
                    node = _Node(provenance=fragment.provenance, kind="step", data={})
                    node.commands.extend(_as_list(fragment.attributes.get("commands")))
                    nodes.setdefault(fragment.provenance, node)
                    items.append(node)
                    continue
            if owner is None:
                items.append(_orphan_note(fragment))
                continue
            note = _apply(owner, target, fragment.attributes)
            if note:
                owner.comments.append(note)

        sections: List[str] = []
        top: Dict[str, Any] = {}
        if pipeline_env:
            top["env"] = dict(pipeline_env)
        if pipeline_agents:
            top["agents"] = _escape(pipeline_agents)
        if top:
            sections.append(_dump(top))

        lines = ["steps:"]
        for item in items:
            if isinstance(item, _Node):
                lines.extend(_render_node(item, indent=2, inherited={}))
            else:
                lines.extend(_comment_lines(item, indent=2))
        if len(lines) == 1:
            lines = ["steps: []"]
        sections.append("\n".join(lines) + "\n")
        self.logger.debug("Rendered %d top-level pipeline items", len(items))
        return "\n".join(sections)


def _apply(owner: _Node, target: str, attributes: Dict[str, Any]) -> Optional[str]:
    """Fold a child fragment into its parent step; return a note when it cannot."""
    if target == "if":
        expression = attributes.get("expression")
        if expression:
            current = owner.data.get("if")
            owner.data["if"] = f"({current}) && ({expression})" if current else expression
        return None
    if owner.is_group:
        if target == "env":
            owner.inherited.setdefault("env", {}).update(attributes.get("variables") or {})
            return None
        if target == "agents":
            owner.inherited.setdefault("agents", {}).update(attributes)
            return None
        return f"{target} is not supported on group steps: {_inline(attributes)}"
    if target == "command":
        owner.commands.extend(_as_list(attributes.get("commands")))
    elif target == "env":
        owner.data.setdefault("env", {}).update(attributes.get("variables") or {})
    elif target == "agents":
        owner.data.setdefault("agents", {}).update(attributes)
    elif target == "matrix":
        owner.data["matrix"] = dict(attributes)
    elif target == "artifact_paths":
        owner.data.setdefault("artifact_paths", []).extend(_as_list(attributes.get("paths")))
    elif target == "plugins":
        owner.data.setdefault("plugins", []).extend(_as_list(attributes.get("plugins")))
    elif target == "step_options":
        return _merge_step_options(owner.data, attributes)
    else:
        return f"unsupported fragment {target}: {_inline(attributes)}"
    return None


def _merge_step_options(data: Dict[str, Any], attributes: Dict[str, Any]) -> Optional[str]:
    """Merge step options, keeping the more generous timeout and retry limit."""
    kept: List[str] = []
    for name, value in attributes.items():
        current = data.get(name)
        if name == "timeout_in_minutes" and _is_lower(value, current):
            kept.append(f"timeout_in_minutes {current} (nested block asked for {value})")
            continue
        if name == "retry" and _is_lower(_retry_limit(value), _retry_limit(current)):
            kept.append(f"retry limit {_retry_limit(current)} (nested block asked for {_retry_limit(value)})")
            continue
        data[name] = value
    if kept:
        return "kept " + "; ".join(kept)
    return None


def _retry_limit(value: Any) -> Any:
    if isinstance(value, dict) and isinstance(value.get("automatic"), dict):
        return value["automatic"].get("limit")
    return None


def _is_lower(value: Any, current: Any) -> bool:
    numbers = [item for item in (value, current) if isinstance(item, int) and not isinstance(item, bool)]
    return len(numbers) == 2 and value < current


def _render_node(node: _Node, *, indent: int, inherited: Dict[str, Dict[str, Any]]) -> List[str]:
    lines = _comment_lines("\n".join(node.comments), indent=indent) if node.comments else []
    if node.is_group:
        data = _ordered({key: value for key, value in node.data.items() if key != "steps"})
        lines.extend(_indent(_dump([_escape(data)]), indent))
        lines.append(" " * (indent + 2) + "steps:")
        scope = _merge_inherited(inherited, node.inherited)
        for child in _flatten_groups(node.children, lines, indent + 4):
            lines.extend(_render_node(child, indent=indent + 4, inherited=scope))
        return lines

    data = dict(node.data)
    for name, values in inherited.items():
        data[name] = {**values, **(data.get(name) or {})}
    commands = node.commands or ([] if data.get("plugins") else [_PLACEHOLDER_COMMAND])
    if commands:
        data["commands"] = commands
    lines.extend(_indent(_dump([_escape(_ordered(data))]), indent))
    return lines


def _flatten_groups(children: Sequence[_Node], lines: List[str], indent: int) -> List[_Node]:
    """Buildkite groups cannot nest; lift grandchildren into the outer group."""
    flattened: List[_Node] = []
    for child in children:
        if child.is_group:
            label = child.data.get("group") or child.data.get("key") or child.provenance
            lines.extend(_comment_lines(f"nested group '{label}' was flattened into its parent", indent=indent))
            flattened.extend(_flatten_groups(child.children, lines, indent))
        else:
            flattened.append(child)
    return flattened


def _merge_inherited(
    outer: Dict[str, Dict[str, Any]], inner: Dict[str, Dict[str, Any]]
) -> Dict[str, Dict[str, Any]]:
    merged = {name: dict(values) for name, values in outer.items()}
    for name, values in inner.items():
        merged.setdefault(name, {}).update(values)
    return merged


def _ordered(data: Dict[str, Any]) -> Dict[str, Any]:
    ordered = {key: data[key] for key in _STEP_KEY_ORDER if key in data}
    ordered.update({key: value for key, value in data.items() if key not in ordered})
    return ordered


def _escape(value: Any, *, key: Optional[str] = None) -> Any:
    """Double ``$`` so Buildkite leaves interpolation to the agent's shell.

    ``env`` maps are left untouched; the agent does not shell-expand them, so
    their references must resolve when the pipeline is uploaded.
    """
    if key == "env":
        return value
    if isinstance(value, str):
        return value.replace("$", "$$")
    if isinstance(value, dict):
        return {name: _escape(item, key=name) for name, item in value.items()}
    if isinstance(value, list):
        return [_escape(item) for item in value]
    return value


def _dump(value: Any) -> str:
    return yaml.dump(
        value,
        Dumper=_PipelineDumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=4096,
    )


def _indent(text: str, indent: int) -> List[str]:
    pad = " " * indent
    return [f"{pad}{line}" if line else line for line in text.rstrip("\n").split("\n")]


def _comment_lines(text: str, *, indent: int) -> List[str]:
    pad = " " * indent
    return [f"{pad}# {line}".rstrip() for line in text.splitlines() or [""]]


def _as_list(value: Any) -> List[Any]:
    if value is None or value == "":
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


def _inline(attributes: Dict[str, Any]) -> str:
    return ", ".join(f"{key}={value}" for key, value in attributes.items())


def _orphan_note(fragment: OutputFragment) -> str:
    return f"{fragment.target} from {fragment.provenance} has no step to attach to: {_inline(fragment.attributes)}"


def _describe_diagnostic(diagnostic: Diagnostic) -> str:
    location = f" (line {diagnostic.span.line})" if diagnostic.span is not None else ""
    return f"[{diagnostic.severity.value}] {diagnostic.code.value}: {diagnostic.message}{location}"


__all__ = ["DEFAULT_TITLE", "Emitter"]

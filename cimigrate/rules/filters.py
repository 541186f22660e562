"""Template filters that translate source expressions into Buildkite syntax."""

from __future__ import annotations

import re
import shlex
from typing import Any, Dict, List, Mapping, Optional

_GH_EXPRESSION = re.compile(r"\$\{\{\s*(?P<body>.*?)\s*\}\}")
_GH_CONTEXT = re.compile(r"^(?P<context>secrets|env|vars|inputs|matrix|github\.event\.inputs)\.(?P<name>[A-Za-z_][\w-]*)$")
_JENKINS_VAR = re.compile(r"\$\{(?:env\.)?(?P<braced>[A-Za-z_]\w*)\}|\$(?P<bare>[A-Za-z_]\w*)|\benv\.(?P<dotted>[A-Za-z_]\w*)")
_KEY_INVALID = re.compile(r"[^A-Za-z0-9_:\-]+")
_QUOTED = re.compile(r"\"[^\"]*\"|'[^']*'")
_CONDITION_TOKEN = re.compile(r"[A-Za-z_][\w.\-]*")
# Buildkite conditionals only know build.* variables besides these literals.
_CONDITION_LITERALS = {"null", "true", "false"}

GITHUB_CONTEXT_VARIABLES: Dict[str, str] = {
    "github.sha": "BUILDKITE_COMMIT",
    "github.ref": "BUILDKITE_BRANCH",
    "github.ref_name": "BUILDKITE_BRANCH",
    "github.head_ref": "BUILDKITE_BRANCH",
    "github.base_ref": "BUILDKITE_PULL_REQUEST_BASE_BRANCH",
    "github.run_number": "BUILDKITE_BUILD_NUMBER",
    "github.run_id": "BUILDKITE_BUILD_ID",
    "github.actor": "BUILDKITE_BUILD_CREATOR",
    "github.workspace": "BUILDKITE_BUILD_CHECKOUT_PATH",
    "github.event_name": "BUILDKITE_SOURCE",
    "github.job": "BUILDKITE_STEP_KEY",
    "github.repository": "BUILDKITE_REPO",
    "runner.os": "BUILDKITE_AGENT_META_DATA_OS",
    "runner.temp": "TMPDIR",
}

JENKINS_VARIABLES: Dict[str, str] = {
    "BUILD_NUMBER": "BUILDKITE_BUILD_NUMBER",
    "BUILD_ID": "BUILDKITE_BUILD_ID",
    "BUILD_URL": "BUILDKITE_BUILD_URL",
    "BRANCH_NAME": "BUILDKITE_BRANCH",
    "GIT_BRANCH": "BUILDKITE_BRANCH",
    "GIT_COMMIT": "BUILDKITE_COMMIT",
    "JOB_NAME": "BUILDKITE_PIPELINE_SLUG",
    "WORKSPACE": "BUILDKITE_BUILD_CHECKOUT_PATH",
    "TAG_NAME": "BUILDKITE_TAG",
    "CHANGE_ID": "BUILDKITE_PULL_REQUEST",
    "CHANGE_TARGET": "BUILDKITE_PULL_REQUEST_BASE_BRANCH",
    "NODE_NAME": "BUILDKITE_AGENT_NAME",
}

_RUNNER_QUEUES = (
    ("ubuntu", "linux"),
    ("linux", "linux"),
    ("windows", "windows"),
    ("macos", "macos"),
)


def bk_key(value: Any) -> str:
    """Normalise an identifier into a valid Buildkite step key."""
    key = _KEY_INVALID.sub("-", str(value or "")).strip("-")
    return key or "step"


def bk_keys(values: Any) -> List[str]:
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    return [bk_key(value) for value in values]


def bk_label(value: Any, limit: int = 80) -> str:
    text = str(value or "").strip()
    first = text.splitlines()[0].strip() if text else ""
    if len(first) > limit:
        first = first[: limit - 3].rstrip() + "..."
    return first


def bk_expr(value: Any) -> str:
    """Rewrite ``${{ }}`` and Jenkins variables into shell variable references."""
    if value is None:
        return ""
    text = str(value)

    def _github(match: re.Match[str]) -> str:
        body = match.group("body")
        if body in GITHUB_CONTEXT_VARIABLES:
            return "${" + GITHUB_CONTEXT_VARIABLES[body] + "}"
        context = _GH_CONTEXT.match(body)
        if context is None:
            return match.group(0)
        name = context.group("name")
        if context.group("context") == "matrix":
            return "{{matrix." + name + "}}"
        return "${" + name.replace("-", "_") + "}"

    text = _GH_EXPRESSION.sub(_github, text)

    def _jenkins(match: re.Match[str]) -> str:
        name = match.group("braced") or match.group("bare") or match.group("dotted")
        if name in JENKINS_VARIABLES:
            return "${" + JENKINS_VARIABLES[name] + "}"
        if match.group("dotted") or match.group(0).startswith("${env."):
            return "${" + name + "}"
        return match.group(0)

    return _JENKINS_VAR.sub(_jenkins, text)


def gh_unmapped(value: Any) -> List[str]:
    """Return ``${{ }}`` expressions that bk_expr leaves untouched."""
    if value is None:
        return []
    if isinstance(value, Mapping):
        found: List[str] = []
        for item in value.values():
            found.extend(gh_unmapped(item))
        return found
    return [match.group(0) for match in _GH_EXPRESSION.finditer(bk_expr(value))]


def bk_queue(value: Any) -> str:
    """Map a runner label (or label list) onto an agent queue name."""
    if isinstance(value, str) and _GH_EXPRESSION.search(value):
        return bk_expr(value)
    labels = [value] if isinstance(value, str) else list(value or [])
    labels = [str(label) for label in labels if str(label) != "self-hosted"]
    if not labels:
        return "default"
    first = labels[0].lower()
    for prefix, queue in _RUNNER_QUEUES:
        if first.startswith(prefix):
            return queue
    return bk_key("-".join(labels))


def bk_env(values: Any) -> Dict[str, str]:
    if not isinstance(values, Mapping):
        return {}
    return {str(name): bk_expr(value) for name, value in values.items()}


def bk_if(expression: Any) -> str:
    """Translate a simple workflow ``if`` into a Buildkite conditional, or ''."""
    if expression is None:
        return ""
    text = str(expression).strip()
    outer = _GH_EXPRESSION.fullmatch(text)
    if outer:
        text = outer.group("body")
    replacements = (
        (r"github\.ref\s*==\s*'refs/heads/([^']+)'", r'build.branch == "\1"'),
        (r"github\.ref\s*!=\s*'refs/heads/([^']+)'", r'build.branch != "\1"'),
        (r"github\.ref_name\s*==\s*'([^']+)'", r'build.branch == "\1"'),
        (r"startsWith\(\s*github\.ref\s*,\s*'refs/tags/'\s*\)", "build.tag != null"),
        (r"github\.event_name\s*==\s*'pull_request'", "build.pull_request.id != null"),
        (r"github\.event_name\s*!=\s*'pull_request'", "build.pull_request.id == null"),
        (r"github\.event_name\s*==\s*'push'", "build.pull_request.id == null"),
        (r"github\.event_name\s*==\s*'schedule'", 'build.source == "schedule"'),
        (r"github\.event_name\s*==\s*'workflow_dispatch'", 'build.source == "ui"'),
    )
    for pattern, replacement in replacements:
        text = re.sub(pattern, replacement, text)
    remainder = _QUOTED.sub("", text)
    if re.search(r"\w+\(", remainder):
        return ""
    for token in _CONDITION_TOKEN.findall(remainder):
        if token not in _CONDITION_LITERALS and not token.startswith("build."):
            return ""
    return text


def bk_when(conditions: Any) -> str:
    """Translate Jenkins ``when`` conditions joined with AND, or ''."""
    parts: List[str] = []
    for condition in conditions or []:
        kind = condition.get("type")
        value = str(condition.get("value", ""))
        if kind == "branch":
            parts.append(_glob_condition("build.branch", value))
        elif kind == "tag":
            parts.append(_glob_condition("build.tag", value) if value else "build.tag != null")
        elif kind == "buildingTag":
            parts.append("build.tag != null")
        elif kind == "changeRequest":
            parts.append("build.pull_request.id != null")
        elif kind == "environment" and "=" in value:
            name, expected = value.split("=", 1)
            parts.append(f'build.env("{name}") == "{expected}"')
        else:
            return ""
    return " && ".join(parts)


def bk_int(value: Any) -> Optional[int]:
    """Return ``value`` as an int, or None when it is an expression or blank."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text) if text.isdigit() else None


def bk_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    text = str(value or "").strip().lower()
    if text in {"true", "yes", "on"}:
        return True
    if text in {"false", "no", "off"}:
        return False
    return None


def bk_paths(value: Any) -> List[str]:
    """Split multi-line or comma separated path lists."""
    if value is None:
        return []
    items = value if isinstance(value, list) else re.split(r"[\n,]", str(value))
    return [str(item).strip() for item in items if str(item).strip()]


def bk_inline(value: Any) -> str:
    """Render a small mapping or list on one line for comments."""
    if value is None:
        return ""
    if isinstance(value, Mapping):
        return ", ".join(f"{key}: {bk_inline(item)}" for key, item in value.items())
    if isinstance(value, (list, tuple)):
        return ", ".join(bk_inline(item) for item in value)
    return str(value)


def bk_adjustments(attributes: Any) -> List[Dict[str, Any]]:
    """Turn matrix include/exclude lists into Buildkite matrix adjustments."""
    if not isinstance(attributes, Mapping):
        return []
    dimensions = attributes.get("dimensions") or {}
    adjustments: List[Dict[str, Any]] = []
    for entry in attributes.get("exclude") or []:
        if isinstance(entry, Mapping):
            adjustments.append({"with": _matrix_cell(entry, dimensions), "skip": True})
    for entry in attributes.get("include") or []:
        if isinstance(entry, Mapping):
            cell = _matrix_cell(entry, dimensions)
            if cell:
                adjustments.append({"with": cell})
    return adjustments


def matrix_unmapped(attributes: Any) -> List[str]:
    """Return include keys that name no matrix dimension and so cannot be kept."""
    if not isinstance(attributes, Mapping):
        return []
    dimensions = attributes.get("dimensions") or {}
    dropped = {
        str(name)
        for entry in attributes.get("include") or []
        if isinstance(entry, Mapping)
        for name in entry
        if name not in dimensions
    }
    return sorted(dropped)


def shell_quote(value: Any) -> str:
    return shlex.quote(str(value if value is not None else ""))


def _matrix_cell(entry: Mapping[str, Any], dimensions: Mapping[str, Any]) -> Dict[str, str]:
    return {str(name): str(value) for name, value in entry.items() if name in dimensions}


def _glob_condition(field: str, pattern: str) -> str:
    if "*" not in pattern and "?" not in pattern:
        return f'{field} == "{pattern}"'
    regex = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".").replace("/", r"\/")
    return f"{field} =~ /^{regex}$/"


FILTERS = {
    "bk_key": bk_key,
    "bk_keys": bk_keys,
    "bk_label": bk_label,
    "bk_expr": bk_expr,
    "bk_env": bk_env,
    "bk_queue": bk_queue,
    "bk_if": bk_if,
    "bk_when": bk_when,
    "bk_int": bk_int,
    "bk_bool": bk_bool,
    "bk_paths": bk_paths,
    "bk_inline": bk_inline,
    "bk_adjustments": bk_adjustments,
    "gh_unmapped": gh_unmapped,
    "matrix_unmapped": matrix_unmapped,
    "shell_quote": shell_quote,
}


__all__ = ["FILTERS", "GITHUB_CONTEXT_VARIABLES", "JENKINS_VARIABLES"] + sorted(FILTERS)

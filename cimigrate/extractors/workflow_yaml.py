"""Extractor for GitHub Actions style workflow YAML."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Set

import yaml

from ..models import Construct, ConstructKind, Dialect
from .base import ConstructCollector, ExtractionResult, Extractor

_ARTIFACT_ACTIONS = {
    "actions/upload-artifact": "upload",
    "actions/download-artifact": "download",
}

# Job keys folded into the job construct's attributes instead of becoming children.
_JOB_ATTRIBUTE_KEYS = {
    "name": "name",
    "runs-on": "runs_on",
    "needs": "needs",
    "timeout-minutes": "timeout_minutes",
    "continue-on-error": "continue_on_error",
    "container": "container",
    "environment": "environment",
    "services": "services",
}

# Most nodes one top-level value may expand to once aliases are followed.
_MAX_EXPANDED_NODES = 20000

_TRIGGER_KEYS = {
    "branches": "branches",
    "branches-ignore": "branches_ignore",
    "tags": "tags",
    "paths": "paths",
    "paths-ignore": "paths_ignore",
    "types": "types",
    "inputs": "inputs",
    "workflows": "workflows",
}


class WorkflowYamlExtractor(Extractor):
    """Walks the YAML node graph so every construct keeps its source span."""

    dialect = Dialect.WORKFLOW_YAML

    def extract(self, text: str) -> ExtractionResult:
        collector = ConstructCollector(text, self.dialect)
        if not text.strip():
            return collector.result

        try:
            root = yaml.compose(text, Loader=yaml.SafeLoader)
        except yaml.YAMLError as exc:
            collector.degrade(0, len(text), _yaml_reason(exc), key="document")
            return collector.result

        if root is None:
            return collector.result
        if not isinstance(root, yaml.MappingNode):
            collector.degrade(0, len(text), "workflow root is not a mapping", key="document")
            return collector.result

        for key_node, value_node in root.value:
            key = _key(key_node)
            if not _expands_safely(value_node):
                # An alias value carries the marks of its anchor, which may sit earlier in the text.
                end = _end(value_node) if _start(value_node) >= _start(key_node) else _end(key_node)
                collector.degrade(_start(key_node), end, "recursive or oversized alias", key=key)
                continue
            if key == "on":
                self._triggers(collector, key_node, value_node)
            elif key == "jobs":
                self._jobs(collector, key_node, value_node)
            elif key == "env":
                self._env(collector, key_node, value_node, parent=None)
            elif key == "permissions":
                collector.add(
                    ConstructKind.CREDENTIAL,
                    _start(key_node),
                    _end(value_node),
                    identifier="permissions",
                    key=key,
                    scope="permissions",
                    permissions=_value(value_node),
                )
            else:
                collector.add(
                    ConstructKind.OTHER,
                    _start(key_node),
                    _end(value_node),
                    identifier=key,
                    key=key,
                    value=_value(value_node),
                )
        return collector.result

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _triggers(self, collector: ConstructCollector, key_node: yaml.Node, value_node: yaml.Node) -> None:
        if isinstance(value_node, yaml.ScalarNode):
            event = _scalar(value_node)
            if event:
                collector.add(
                    ConstructKind.TRIGGER,
                    _start(value_node),
                    _end(value_node),
                    identifier=event,
                    key="on",
                    event=event,
                )
            return
        if isinstance(value_node, yaml.SequenceNode):
            for item in value_node.value:
                event = _scalar(item)
                if event is None:
                    collector.degrade(_start(item), _end(item), "trigger list entry is not a string", key="on")
                    continue
                collector.add(
                    ConstructKind.TRIGGER,
                    _start(item),
                    _end(item),
                    identifier=event,
                    key="on",
                    event=event,
                )
            return
        for event_node, config_node in value_node.value:
            event = _key(event_node)
            attributes: Dict[str, Any] = {}
            config = _value(config_node)
            if isinstance(config, dict):
                for source_key, attribute in _TRIGGER_KEYS.items():
                    if source_key in config:
                        attributes[attribute] = config[source_key]
            elif event == "schedule" and isinstance(config, list):
                attributes["cron"] = [
                    str(entry.get("cron"))
                    for entry in config
                    if isinstance(entry, dict) and entry.get("cron")
                ]
            collector.add(
                ConstructKind.TRIGGER,
                _start(event_node),
                _end(config_node),
                identifier=event,
                key="on",
                event=event,
                **attributes,
            )

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def _jobs(self, collector: ConstructCollector, key_node: yaml.Node, value_node: yaml.Node) -> None:
        if not isinstance(value_node, yaml.MappingNode):
            collector.degrade(_start(key_node), _end(value_node), "jobs must be a mapping", key="jobs")
            return
        for job_key, job_node in value_node.value:
            job_id = _key(job_key)
            if not isinstance(job_node, yaml.MappingNode):
                collector.degrade(_start(job_key), _end(job_node), "job body must be a mapping", key=job_id)
                continue
            body = {_key(k): v for k, v in job_node.value}
            attributes: Dict[str, Any] = {}
            for source_key, attribute in _JOB_ATTRIBUTE_KEYS.items():
                if source_key in body:
                    attributes[attribute] = _value(body[source_key])
            if isinstance(attributes.get("needs"), str):
                attributes["needs"] = [attributes["needs"]]
            container = attributes.get("container")
            if isinstance(container, dict):
                attributes["container"] = container.get("image")
            services = attributes.get("services")
            if isinstance(services, dict):
                attributes["services"] = list(services)
            environment = attributes.get("environment")
            if isinstance(environment, dict):
                attributes["environment"] = environment.get("name")

            job = collector.add(
                ConstructKind.JOB,
                _start(job_key),
                _end(job_key),
                identifier=job_id,
                key=job_id,
                **attributes,
            )
            for child_key, child_node in job_node.value:
                name = _key(child_key)
                if name in _JOB_ATTRIBUTE_KEYS:
                    continue
                if name == "steps":
                    self._steps(collector, child_key, child_node, job)
                elif name == "if":
                    collector.add(
                        ConstructKind.CONDITIONAL,
                        _start(child_key),
                        _end(child_node),
                        identifier=f"{job_id}.if",
                        parent=job,
                        key=name,
                        expression=_value(child_node),
                    )
                elif name == "env":
                    self._env(collector, child_key, child_node, parent=job)
                elif name == "strategy":
                    self._matrix(collector, child_key, child_node, job)
                elif name == "permissions":
                    collector.add(
                        ConstructKind.CREDENTIAL,
                        _start(child_key),
                        _end(child_node),
                        identifier=f"{job_id}.permissions",
                        parent=job,
                        key=name,
                        scope="permissions",
                        permissions=_value(child_node),
                    )
                else:
                    collector.add(
                        ConstructKind.OTHER,
                        _start(child_key),
                        _end(child_node),
                        identifier=f"{job_id}.{name}",
                        parent=job,
                        key=name,
                        value=_value(child_node),
                    )

    def _steps(
        self,
        collector: ConstructCollector,
        key_node: yaml.Node,
        value_node: yaml.Node,
        job: Construct,
    ) -> None:
        if not isinstance(value_node, yaml.SequenceNode):
            collector.degrade(_start(key_node), _end(value_node), "steps must be a list", key="steps", parent=job)
            return
        for index, item in enumerate(value_node.value, start=1):
            if not isinstance(item, yaml.MappingNode):
                collector.degrade(_start(item), _end(item), "step must be a mapping", key="steps", parent=job)
                continue
            step = _value(item)
            uses = _as_optional_str(step.get("uses"))
            with_block = step.get("with") if isinstance(step.get("with"), dict) else None
            action = _ARTIFACT_ACTIONS.get((uses or "").split("@", 1)[0])
            if action is not None:
                options = with_block or {}
                collector.add(
                    ConstructKind.ARTIFACT,
                    _start(item),
                    _end(item),
                    identifier=_as_optional_str(step.get("name")) or f"{action}-artifact",
                    parent=job,
                    action=action,
                    name=_as_optional_str(options.get("name")),
                    path=_as_optional_str(options.get("path")),
                    retention_days=_as_optional_str(options.get("retention-days")),
                )
                continue
            run = _as_optional_str(step.get("run"))
            identifier = (
                _as_optional_str(step.get("name"))
                or _as_optional_str(step.get("id"))
                or uses
                or (run.strip().splitlines()[0] if run and run.strip() else None)
                or f"step-{index}"
            )
            collector.add(
                ConstructKind.STEP,
                _start(item),
                _end(item),
                identifier=identifier,
                parent=job,
                name=_as_optional_str(step.get("name")),
                run=run,
                uses=uses,
                env=step.get("env") if isinstance(step.get("env"), dict) else None,
                step_id=_as_optional_str(step.get("id")),
                shell=_as_optional_str(step.get("shell")),
                working_directory=_as_optional_str(step.get("working-directory")),
                continue_on_error=_as_optional_str(step.get("continue-on-error")),
                timeout_minutes=_as_optional_str(step.get("timeout-minutes")),
                **{"with": with_block, "if": _as_optional_str(step.get("if"))},
            )

    def _env(
        self,
        collector: ConstructCollector,
        key_node: yaml.Node,
        value_node: yaml.Node,
        *,
        parent: Optional[Construct],
    ) -> None:
        if not isinstance(value_node, yaml.MappingNode):
            collector.degrade(_start(key_node), _end(value_node), "env must be a mapping", key="env", parent=parent)
            return
        identifier = f"{parent.identifier}.env" if parent is not None else "env"
        collector.add(
            ConstructKind.ENV_BLOCK,
            _start(key_node),
            _end(value_node),
            identifier=identifier,
            parent=parent,
            key="env",
            variables={name: _stringify(value) for name, value in _value(value_node).items()},
        )

    def _matrix(
        self,
        collector: ConstructCollector,
        key_node: yaml.Node,
        value_node: yaml.Node,
        job: Construct,
    ) -> None:
        strategy = _value(value_node)
        matrix = strategy.get("matrix") if isinstance(strategy, dict) else None
        if not isinstance(matrix, dict):
            collector.degrade(
                _start(key_node),
                _end(value_node),
                "strategy matrix must be a literal mapping",
                key="strategy",
                parent=job,
            )
            return
        dimensions: Dict[str, List[str]] = {}
        for name, values in matrix.items():
            if name in {"include", "exclude"}:
                continue
            dimensions[name] = [_stringify(v) for v in values] if isinstance(values, list) else [_stringify(values)]
        collector.add(
            ConstructKind.MATRIX,
            _start(key_node),
            _end(value_node),
            identifier=f"{job.identifier}.matrix",
            parent=job,
            key="strategy",
            dimensions=dimensions,
            include=matrix.get("include"),
            exclude=matrix.get("exclude"),
            fail_fast=_as_optional_str(strategy.get("fail-fast")),
            max_parallel=_as_optional_str(strategy.get("max-parallel")),
        )


# ---------------------------------------------------------------------------
# Node helpers
# ---------------------------------------------------------------------------


def _start(node: yaml.Node) -> int:
    return node.start_mark.index


def _end(node: yaml.Node) -> int:
    return node.end_mark.index


def _key(node: yaml.Node) -> str:
    return str(node.value) if isinstance(node, yaml.ScalarNode) else ""


def _scalar(node: yaml.Node) -> Optional[str]:
    return str(node.value) if isinstance(node, yaml.ScalarNode) else None


def _expands_safely(node: yaml.Node, limit: int = _MAX_EXPANDED_NODES) -> bool:
    """Return False when aliases form a cycle or expand past ``limit`` nodes."""
    visited = 0
    active: Set[int] = set()

    def visit(current: yaml.Node) -> bool:
        nonlocal visited
        visited += 1
        if visited > limit or id(current) in active:
            return False
        if isinstance(current, yaml.ScalarNode):
            return True
        if isinstance(current, yaml.MappingNode):
            children = [part for pair in current.value for part in pair]
        else:
            children = list(current.value)
        active.add(id(current))
        safe = all(visit(child) for child in children)
        active.discard(id(current))
        return safe

    return visit(node)


def _value(node: yaml.Node) -> Any:
    """Convert a composed node into plain containers, keeping scalars as strings."""
    if isinstance(node, yaml.MappingNode):
        return {_key(key): _value(value) for key, value in node.value}
    if isinstance(node, yaml.SequenceNode):
        return [_value(item) for item in node.value]
    return node.value


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return yaml.safe_dump(value, default_flow_style=True, sort_keys=False).strip()
    return str(value)


def _as_optional_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def _yaml_reason(exc: yaml.YAMLError) -> str:
    problem = getattr(exc, "problem", None)
    mark = getattr(exc, "problem_mark", None)
    if problem and mark is not None:
        return f"{problem} (line {mark.line + 1})"
    return str(exc).splitlines()[0] if str(exc) else exc.__class__.__name__


__all__ = ["WorkflowYamlExtractor"]

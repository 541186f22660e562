"""Extractor for Jenkins declarative pipelines (Groovy DSL)."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from ..models import Construct, ConstructKind, Dialect
from .base import ConstructCollector, ExtractionResult, Extractor

_HEADER = re.compile(r"^(?P<name>[A-Za-z_][\w.]*)\s*(?:\((?P<args>.*)\))?\s*$", re.DOTALL)
_CALL = re.compile(r"^(?P<name>[A-Za-z_][\w.]*)\s*(?:\((?P<paren>.*)\)\s*$|(?P<bare>.*)$)", re.DOTALL)
_ASSIGNMENT = re.compile(r"^(?P<name>[A-Za-z_]\w*)\s*=\s*(?P<value>.+)$", re.DOTALL)
_STRING = re.compile(r"'''(.*?)'''|\"\"\"(.*?)\"\"\"|'((?:[^'\\\n]|\\.)*)'|\"((?:[^\"\\\n]|\\.)*)\"", re.DOTALL)
_NAMED = re.compile(
    r"(?P<key>\w+)\s*:\s*(?P<value>'''.*?'''|\"\"\".*?\"\"\"|'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\"|[^,\)\]\n]+)",
    re.DOTALL,
)
_CREDENTIALS_CALL = re.compile(r"^credentials\(\s*['\"](?P<id>[^'\"]+)['\"]\s*\)$")
_BINDING = re.compile(r"(?P<type>\w+)\((?P<args>[^()]*)\)")
_CONTINUATION_SUFFIXES = (",", "+", "&&", "||", "(", "[", "=", "\\", "?", ":")

_SHELL_STEPS = {"sh", "bat", "powershell", "pwsh"}
_UPLOAD_STEPS = {"archiveArtifacts": "artifacts", "stash": "includes"}
_DOWNLOAD_STEPS = {"copyArtifacts": "filter", "unstash": None, "unarchive": "mapping"}
_STAGE_CONTAINERS = {"stages", "parallel"}


class GroovyParseError(ValueError):
    """Raised when braces or strings in the pipeline do not balance."""

    def __init__(self, message: str, offset: int) -> None:
        super().__init__(message)
        self.offset = offset


@dataclass
class Statement:
    text: str
    start: int
    end: int


@dataclass
class Block:
    name: str
    args: str
    start: int
    end: int
    body_start: int
    body_end: int
    items: List[Union["Block", Statement]] = field(default_factory=list)

    def blocks(self, name: str) -> List["Block"]:
        return [item for item in self.items if isinstance(item, Block) and item.name == name]

    def statements(self) -> List[Statement]:
        return [item for item in self.items if isinstance(item, Statement)]


Item = Union[Block, Statement]


# ---------------------------------------------------------------------------
# Lexical scanning
# ---------------------------------------------------------------------------


def _skip_string(text: str, index: int) -> int:
    """Return the index just past the string literal starting at ``index``."""
    quote = text[index]
    triple = text[index : index + 3]
    if triple in ("'''", '"""'):
        close = text.find(triple, index + 3)
        if close == -1:
            raise GroovyParseError("unterminated triple-quoted string", index)
        return close + 3
    position = index + 1
    while position < len(text):
        char = text[position]
        if char == "\\":
            position += 2
            continue
        if char == quote:
            return position + 1
        if char == "\n":
            break
        position += 1
    raise GroovyParseError("unterminated string literal", index)


def _comment_end(text: str, index: int) -> Optional[int]:
    if text.startswith("//", index):
        newline = text.find("\n", index)
        return len(text) if newline == -1 else newline
    if text.startswith("/*", index):
        close = text.find("*/", index + 2)
        if close == -1:
            raise GroovyParseError("unterminated block comment", index)
        return close + 2
    return None


def _matching_brace(text: str, open_index: int, end: int) -> int:
    depth = 0
    position = open_index
    while position < end:
        char = text[position]
        if char in "'\"":
            position = _skip_string(text, position)
            continue
        comment = _comment_end(text, position)
        if comment is not None:
            position = comment
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return position
        position += 1
    raise GroovyParseError("unbalanced '{'", open_index)


def _continues(text: str, start: int, newline: int) -> bool:
    so_far = text[start:newline].rstrip()
    if so_far.endswith(_CONTINUATION_SUFFIXES):
        return True
    following = text[newline + 1 :].lstrip()
    return following.startswith(".") and not following.startswith("..")


def parse_items(text: str, start: int, end: int) -> List[Item]:
    """Split a region into statements and brace-delimited blocks."""
    items: List[Item] = []
    position = start
    while position < end:
        char = text[position]
        if char.isspace() or char == ";":
            position += 1
            continue
        comment = _comment_end(text, position)
        if comment is not None:
            position = comment
            continue
        if char == "}":
            raise GroovyParseError("unexpected '}'", position)

        statement_start = position
        depth = 0
        opens_block = False
        while position < end:
            char = text[position]
            if char in "'\"":
                position = _skip_string(text, position)
                continue
            if text.startswith("//", position) or text.startswith("/*", position):
                if depth == 0 and text.startswith("//", position):
                    break
                position = _comment_end(text, position) or position + 1
                continue
            if char in "([":
                depth += 1
            elif char in ")]":
                depth = max(0, depth - 1)
            elif char == "{":
                if depth == 0:
                    opens_block = True
                    break
                position = _matching_brace(text, position, end) + 1
                continue
            elif char == "}":
                if depth == 0:
                    break
            elif depth == 0 and char == ";":
                break
            elif depth == 0 and char == "\n" and not _continues(text, statement_start, position):
                break
            position += 1

        if opens_block:
            close = _matching_brace(text, position, end)
            header = text[statement_start:position].strip()
            match = _HEADER.match(header)
            name = match.group("name") if match else header
            args = (match.group("args") or "") if match else ""
            items.append(
                Block(
                    name=name,
                    args=args.strip(),
                    start=statement_start,
                    end=close + 1,
                    body_start=position + 1,
                    body_end=close,
                    items=parse_items(text, position + 1, close),
                )
            )
            position = close + 1
            continue

        snippet = text[statement_start:position].strip()
        if snippet:
            items.append(Statement(snippet, statement_start, position))
        if position < end and text[position] == "}":
            raise GroovyParseError("unexpected '}'", position)
    return items


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def string_literals(text: str) -> List[str]:
    values: List[str] = []
    for match in _STRING.finditer(text):
        values.append(next(group for group in match.groups() if group is not None))
    return values


def first_literal(text: str) -> Optional[str]:
    literals = string_literals(text)
    return literals[0] if literals else None


def named_arguments(text: str) -> Dict[str, str]:
    named: Dict[str, str] = {}
    for match in _NAMED.finditer(text):
        raw = match.group("value").strip()
        literal = first_literal(raw)
        named[match.group("key")] = literal if literal is not None else raw
    return named


def split_call(text: str) -> tuple[str, str]:
    match = _CALL.match(text.strip())
    if not match:
        return text.strip(), ""
    args = match.group("paren") if match.group("paren") is not None else match.group("bare")
    return match.group("name"), (args or "").strip()


def _slug(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "stage"


def _timeout_minutes(args: str) -> Optional[str]:
    named = named_arguments(args)
    raw_time = named.get("time")
    if raw_time is None:
        return None
    try:
        amount = float(raw_time)
    except ValueError:
        return None
    unit = named.get("unit", "MINUTES").upper()
    if unit == "HOURS":
        amount *= 60
    elif unit == "SECONDS":
        amount /= 60
    elif unit == "DAYS":
        amount *= 1440
    return str(max(1, math.ceil(amount)))


def _agent_value(item: Item) -> Dict[str, str]:
    if isinstance(item, Statement):
        _, args = split_call(item.text)
        return {"type": args.strip() or "any"}
    for inner in item.items:
        if isinstance(inner, Statement):
            kind, args = split_call(inner.text)
            if kind == "label":
                return {"type": "label", "label": first_literal(args) or args}
            if kind == "dockerfile":
                return {"type": "dockerfile"}
            if kind == "node":
                return {"type": "label", "label": first_literal(args) or args}
        elif inner.name in {"docker", "node", "kubernetes"}:
            values = {"type": inner.name}
            for statement in inner.statements():
                key, args = split_call(statement.text)
                values[key] = first_literal(args) or args
            return values
    return {"type": "any"}


def _body_summary(block: Block) -> Dict[str, List[str]]:
    summary: Dict[str, List[str]] = {}
    for inner in block.items:
        if isinstance(inner, Block):
            summary[inner.name] = [_first_line(part) for part in _flatten_statements(inner)]
        else:
            summary.setdefault("statements", []).append(_first_line(inner.text))
    return summary


def _flatten_statements(block: Block) -> List[str]:
    lines: List[str] = []
    for inner in block.items:
        if isinstance(inner, Statement):
            lines.append(inner.text)
        else:
            lines.extend(_flatten_statements(inner))
    return lines


def _first_line(text: str) -> str:
    return text.strip().splitlines()[0] if text.strip() else ""


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class GroovyPipelineExtractor(Extractor):
    """Brace-aware walker for declarative ``pipeline { }`` documents."""

    dialect = Dialect.GROOVY_PIPELINE

    def extract(self, text: str) -> ExtractionResult:
        collector = ConstructCollector(text, self.dialect)
        if not text.strip():
            return collector.result
        try:
            items = parse_items(text, 0, len(text))
        except GroovyParseError as exc:
            collector.degrade(0, len(text), f"{exc} (offset {exc.offset})", key="document")
            return collector.result
        if not items:
            return collector.result

        pipeline = next((item for item in items if isinstance(item, Block) and item.name == "pipeline"), None)
        if pipeline is None:
            reason = (
                "scripted pipelines are not supported"
                if any(isinstance(item, Block) and item.name == "node" for item in items)
                else "no declarative pipeline block found"
            )
            collector.degrade(0, len(text), reason, key="document")
            return collector.result

        for item in pipeline.items:
            self._pipeline_item(collector, item)
        return collector.result

    def _pipeline_item(self, collector: ConstructCollector, item: Item) -> None:
        if isinstance(item, Statement):
            name, _ = split_call(item.text)
            collector.add(
                ConstructKind.OTHER,
                item.start,
                item.end,
                identifier=name,
                key=name,
                value=_agent_value(item) if name == "agent" else item.text,
            )
            return
        if item.name == "environment":
            self._environment(collector, item, parent=None)
        elif item.name == "triggers":
            self._triggers(collector, item)
        elif item.name == "stages":
            self._stages(collector, item, parent=None, sequential=True)
        elif item.name == "agent":
            collector.add(
                ConstructKind.OTHER,
                item.start,
                item.end,
                identifier="agent",
                key="agent",
                value=_agent_value(item),
            )
        else:
            collector.add(
                ConstructKind.OTHER,
                item.start,
                item.end,
                identifier=item.name,
                key=item.name,
                value=_body_summary(item),
            )

    def _triggers(self, collector: ConstructCollector, block: Block) -> None:
        for item in block.items:
            if isinstance(item, Block):
                collector.degrade(item.start, item.end, "unsupported trigger block", key="triggers")
                continue
            event, args = split_call(item.text)
            named = named_arguments(args)
            spec = named.get("upstreamProjects") or named.get("spec") or first_literal(args) or args or None
            collector.add(
                ConstructKind.TRIGGER,
                item.start,
                item.end,
                identifier=event,
                key="triggers",
                event=event,
                spec=spec,
                cron=[spec] if event in {"cron", "pollSCM"} and spec else None,
            )

    def _environment(self, collector: ConstructCollector, block: Block, *, parent: Optional[Construct]) -> None:
        variables: Dict[str, str] = {}
        credentials: Dict[str, str] = {}
        for statement in block.statements():
            match = _ASSIGNMENT.match(statement.text)
            if not match:
                continue
            value = match.group("value").strip()
            credential = _CREDENTIALS_CALL.match(value)
            if credential:
                credentials[match.group("name")] = credential.group("id")
                continue
            literal = first_literal(value)
            variables[match.group("name")] = literal if literal is not None else value
        identifier = f"{parent.identifier}.environment" if parent is not None else "environment"
        collector.add(
            ConstructKind.ENV_BLOCK,
            block.start,
            block.end,
            identifier=identifier,
            parent=parent,
            key="environment",
            variables=variables,
            credentials=credentials or None,
        )

    def _stages(
        self,
        collector: ConstructCollector,
        block: Block,
        *,
        parent: Optional[Construct],
        sequential: bool,
    ) -> List[Construct]:
        jobs: List[Construct] = []
        previous: Optional[str] = None
        for index, item in enumerate(block.items, start=1):
            if not isinstance(item, Block) or item.name != "stage":
                if isinstance(item, Statement) and split_call(item.text)[0] == "failFast":
                    continue
                start, end = item.start, item.end
                collector.degrade(start, end, f"unexpected entry in {block.name}", key=block.name, parent=parent)
                continue
            job = self._stage(collector, item, index, parent=parent, needs=[previous] if sequential and previous else None)
            jobs.append(job)
            previous = job.attributes["key"]
        return jobs

    def _stage(
        self,
        collector: ConstructCollector,
        block: Block,
        index: int,
        *,
        parent: Optional[Construct],
        needs: Optional[Sequence[str]],
    ) -> Construct:
        name = first_literal(block.args) or block.args or f"stage-{index}"
        attributes: Dict[str, Any] = {"name": name, "needs": list(needs) if needs else None}
        nested: List[Block] = []
        for item in block.items:
            if isinstance(item, Statement):
                keyword, _ = split_call(item.text)
                if keyword == "agent":
                    attributes["agent"] = _agent_value(item)
            elif item.name == "agent":
                attributes["agent"] = _agent_value(item)
            elif item.name == "options":
                for option in item.statements():
                    keyword, args = split_call(option.text)
                    if keyword == "timeout":
                        attributes["timeout_minutes"] = _timeout_minutes(args)
            elif item.name in _STAGE_CONTAINERS:
                nested.append(item)

        key = _slug(name)
        if parent is not None and parent.attributes.get("key"):
            key = f"{parent.attributes['key']}-{key}"
        job = collector.add(
            ConstructKind.JOB,
            block.start,
            block.body_start,
            identifier=name,
            parent=parent,
            key=key,
            stages=[
                f"{key}-{_slug(first_literal(inner.args) or '')}"
                for group in nested
                for inner in group.blocks("stage")
            ]
            or None,
            **attributes,
        )

        for item in block.items:
            if isinstance(item, Statement):
                keyword, _ = split_call(item.text)
                if keyword not in {"agent", "failFast"}:
                    collector.add(
                        ConstructKind.OTHER,
                        item.start,
                        item.end,
                        identifier=f"{name}.{keyword}",
                        parent=job,
                        key=keyword,
                        value=item.text,
                    )
                continue
            if item.name in {"agent", "options"}:
                continue
            if item.name == "steps":
                self._steps(collector, item, job)
            elif item.name == "environment":
                self._environment(collector, item, parent=job)
            elif item.name == "when":
                self._when(collector, item, job)
            elif item.name == "matrix":
                self._matrix(collector, item, job)
            elif item.name in _STAGE_CONTAINERS:
                self._stages(collector, item, parent=job, sequential=item.name == "stages")
            else:
                collector.add(
                    ConstructKind.OTHER,
                    item.start,
                    item.end,
                    identifier=f"{name}.{item.name}",
                    parent=job,
                    key=item.name,
                    value=_body_summary(item),
                )
        return job

    def _when(self, collector: ConstructCollector, block: Block, job: Construct) -> None:
        conditions: List[Dict[str, str]] = []
        for item in block.items:
            if isinstance(item, Statement):
                keyword, args = split_call(item.text)
                named = named_arguments(args)
                if keyword == "environment" and named:
                    value = f"{named.get('name', '')}={named.get('value', '')}"
                else:
                    value = first_literal(args) or args
                conditions.append({"type": keyword, "value": value})
            else:
                body = collector.text[item.body_start : item.body_end].strip()
                conditions.append({"type": item.name, "value": body})
        collector.add(
            ConstructKind.CONDITIONAL,
            block.start,
            block.end,
            identifier=f"{job.identifier}.when",
            parent=job,
            key="when",
            conditions=conditions,
            expression=collector.text[block.body_start : block.body_end].strip(),
        )

    def _matrix(self, collector: ConstructCollector, block: Block, job: Construct) -> None:
        axes = next(iter(block.blocks("axes")), None)
        if axes is None:
            collector.degrade(block.start, block.body_start, "matrix without axes", key="matrix", parent=job)
        else:
            dimensions: Dict[str, List[str]] = {}
            for axis in axes.blocks("axis"):
                axis_name: Optional[str] = None
                values: List[str] = []
                for statement in axis.statements():
                    keyword, args = split_call(statement.text)
                    if keyword == "name":
                        axis_name = first_literal(args) or args
                    elif keyword == "values":
                        values = string_literals(args)
                if axis_name:
                    dimensions[axis_name] = values
            collector.add(
                ConstructKind.MATRIX,
                axes.start,
                axes.end,
                identifier=f"{job.identifier}.matrix",
                parent=job,
                key="matrix",
                dimensions=dimensions,
            )
        # Stages inside a matrix run once per cell; their steps belong to the matrix job.
        for stages in block.blocks("stages"):
            for inner in stages.blocks("stage"):
                for steps in inner.blocks("steps"):
                    self._steps(collector, steps, job)

    def _steps(self, collector: ConstructCollector, block: Block, job: Construct) -> None:
        for item in block.items:
            if isinstance(item, Statement):
                self._step_statement(collector, item, job)
            elif item.name == "withCredentials":
                bindings = []
                for match in _BINDING.finditer(item.args):
                    binding = {"type": match.group("type")}
                    binding.update(named_arguments(match.group("args")))
                    bindings.append(binding)
                collector.add(
                    ConstructKind.CREDENTIAL,
                    item.start,
                    item.body_start,
                    identifier="withCredentials",
                    parent=job,
                    key="withCredentials",
                    scope="withCredentials",
                    bindings=bindings,
                )
                self._steps(collector, item, job)
            elif item.name == "script":
                collector.add(
                    ConstructKind.STEP,
                    item.start,
                    item.end,
                    identifier="script",
                    parent=job,
                    command="script",
                    args=collector.text[item.body_start : item.body_end].strip(),
                    block="true",
                )
            else:
                collector.add(
                    ConstructKind.STEP,
                    item.start,
                    item.body_start,
                    identifier=item.name,
                    parent=job,
                    command=item.name,
                    args=item.args,
                    value=first_literal(item.args),
                    timeout_minutes=_timeout_minutes(item.args) if item.name == "timeout" else None,
                    block="true",
                )
                self._steps(collector, item, job)

    def _step_statement(self, collector: ConstructCollector, item: Statement, job: Construct) -> None:
        command, args = split_call(item.text)
        named = named_arguments(args)
        if command in _UPLOAD_STEPS:
            collector.add(
                ConstructKind.ARTIFACT,
                item.start,
                item.end,
                identifier=command,
                parent=job,
                action="upload",
                name=named.get("name") if command == "stash" else None,
                path=named.get(_UPLOAD_STEPS[command]) or first_literal(args),
            )
            return
        if command in _DOWNLOAD_STEPS:
            option = _DOWNLOAD_STEPS[command]
            collector.add(
                ConstructKind.ARTIFACT,
                item.start,
                item.end,
                identifier=command,
                parent=job,
                action="download",
                name=named.get("projectName") or named.get("name") or (first_literal(args) if option is None else None),
                path=named.get(option) if option else None,
            )
            return
        run: Optional[str] = None
        if command in _SHELL_STEPS:
            run = named.get("script") or first_literal(args) or args
        collector.add(
            ConstructKind.STEP,
            item.start,
            item.end,
            identifier=_first_line(run) if run else command,
            parent=job,
            command=command,
            args=args,
            run=run,
            value=first_literal(args),
        )


__all__ = ["GroovyPipelineExtractor", "GroovyParseError", "parse_items"]

"""Tests for pipeline rendering and YAML linting."""

from __future__ import annotations

import pytest
import yaml

from cimigrate.models import (
    Category,
    Diagnostic,
    DiagnosticCode,
    OutputFragment,
    Severity,
    Span,
)
from cimigrate.postproc import DEFAULT_TITLE, Emitter, YamlLinter
from cimigrate.security import SecurityRejected

HEADER = f"# {DEFAULT_TITLE}\n# Generated by cimigrate. Review the notes below before uploading.\n"


def _step(provenance: str, parent: str | None = None, **attributes: object) -> OutputFragment:
    return OutputFragment(provenance=provenance, target="step", attributes=attributes, parent=parent, primary=True)


def test_empty_input_renders_header_only() -> None:
    assert Emitter().emit([], []) == HEADER


def test_custom_title() -> None:
    assert Emitter(title="Release pipeline").emit([], []).startswith("# Release pipeline\n")


def test_header_groups_notes_by_category() -> None:
    fragments = [
        OutputFragment(provenance="c1", comment="push: configure it", hoist=True, category=Category.TRIGGERS),
        OutputFragment(provenance="c2", comment="Workflow name: CI", hoist=True),
    ]
    diagnostics = [
        Diagnostic(
            severity=Severity.WARNING,
            code=DiagnosticCode.RULE_NOTE,
            message="toolchain dropped",
            category=Category.AGENTS,
            span=Span(0, 1, 7),
        )
    ]
    text = Emitter().emit(fragments, diagnostics)
    header = text.split("steps:")[0]
    assert header.index("# Triggers:") < header.index("# Agent requirements:") < header.index("# Translation notes:")
    assert "#   - push: configure it" in header
    assert "#   - [warning] RuleNote: toolchain dropped (line 7)" in header
    assert "# Permissions:" not in header
    assert text.rstrip().endswith("steps: []")


def test_child_fragments_fold_into_their_step() -> None:
    fragments = [
        _step("c1", label="Build", key="build", timeout_in_minutes=20),
        OutputFragment(provenance="c2", target="command", attributes={"commands": "make"}, parent="c1"),
        OutputFragment(provenance="c3", target="env", attributes={"variables": {"MODE": "ci"}}, parent="c1"),
        OutputFragment(provenance="c4", target="if", attributes={"expression": 'build.branch == "main"'}, parent="c1"),
        OutputFragment(provenance="c5", target="artifact_paths", attributes={"paths": ["dist/**"]}, parent="c1"),
        OutputFragment(provenance="c6", target="step_options", attributes={"retry": {"automatic": {"limit": 2}}}, parent="c1"),
        OutputFragment(provenance="c7", comment="checkout is automatic", parent="c1"),
    ]
    text = Emitter().emit(fragments, [])
    (step,) = yaml.safe_load(text)["steps"]
    assert list(step) == ["label", "key", "if", "env", "commands", "artifact_paths", "timeout_in_minutes", "retry"]
    assert step["commands"] == ["make"]
    assert step["env"] == {"MODE": "ci"}
    assert "  # checkout is automatic\n  - label: Build" in text


def test_nested_options_do_not_shrink_the_step_limits() -> None:
    fragments = [
        _step("c1", label="Build", timeout_in_minutes=60, retry={"automatic": {"limit": 3}}),
        OutputFragment(provenance="c2", target="step_options", attributes={"timeout_in_minutes": 1}, parent="c1"),
        OutputFragment(
            provenance="c3", target="step_options", attributes={"retry": {"automatic": {"limit": 1}}}, parent="c1"
        ),
        OutputFragment(provenance="c4", target="step_options", attributes={"timeout_in_minutes": 90}, parent="c1"),
    ]
    text = Emitter().emit(fragments, [])
    (step,) = yaml.safe_load(text)["steps"]
    assert step["timeout_in_minutes"] == 90
    assert step["retry"] == {"automatic": {"limit": 3}}
    assert "# kept timeout_in_minutes 60 (nested block asked for 1)" in text
    assert "# kept retry limit 3 (nested block asked for 1)" in text


def test_dollar_signs_are_escaped_outside_env_maps() -> None:
    fragments = [
        OutputFragment(provenance="c1", target="env", attributes={"variables": {"HOME_DIR": "$HOME"}}),
        OutputFragment(provenance="c2", target="command", attributes={"commands": ["echo ${BUILDKITE_COMMIT}"]}),
        _step("c3", label="Tag"),
        OutputFragment(provenance="c4", target="env", attributes={"variables": {"SHA": "${BUILDKITE_COMMIT}"}}, parent="c3"),
        OutputFragment(provenance="c5", target="command", attributes={"commands": "git tag v$TAG"}, parent="c3"),
    ]
    parsed = yaml.safe_load(Emitter().emit(fragments, []))
    assert parsed["env"] == {"HOME_DIR": "$HOME"}
    assert parsed["steps"][0]["commands"] == ["echo $${BUILDKITE_COMMIT}"]
    assert parsed["steps"][1]["env"] == {"SHA": "${BUILDKITE_COMMIT}"}
    assert parsed["steps"][1]["commands"] == ["git tag v$$TAG"]


def test_multiline_commands_use_literal_blocks() -> None:
    fragments = [
        _step("c1", label="Build"),
        OutputFragment(provenance="c2", target="command", attributes={"commands": "make\n\n\nmake install"}, parent="c1"),
    ]
    text = Emitter().emit(fragments, [])
    assert "- |-" in text or "- |" in text
    assert yaml.safe_load(text)["steps"][0]["commands"] == ["make\n\n\nmake install"]


def test_groups_pass_agents_down_and_flatten_nested_groups() -> None:
    fragments = [
        OutputFragment(provenance="g1", target="group", attributes={"group": "Test", "key": "test"}, primary=True),
        OutputFragment(provenance="g1", target="agents", attributes={"queue": "linux"}, parent="g1"),
        _step("s1", parent="g1", label="Unit"),
        OutputFragment(provenance="g2", target="group", attributes={"group": "Inner"}, parent="g1", primary=True),
        _step("s2", parent="g2", label="Lint"),
        OutputFragment(provenance="s1x", target="command", attributes={"commands": "make unit"}, parent="s1"),
        OutputFragment(provenance="g1x", target="matrix", attributes={"setup": {"os": ["a"]}}, parent="g1"),
    ]
    text = Emitter().emit(fragments, [])
    (group,) = yaml.safe_load(text)["steps"]
    assert group["group"] == "Test"
    labels = [step["label"] for step in group["steps"]]
    assert labels == ["Unit", "Lint"]
    assert all(step["agents"] == {"queue": "linux"} for step in group["steps"])
    assert "# nested group 'Inner' was flattened into its parent" in text
    assert "# matrix is not supported on group steps" in text


def test_steps_without_commands_get_a_placeholder() -> None:
    parsed = yaml.safe_load(Emitter().emit([_step("c1", label="Empty")], []))
    assert parsed["steps"][0]["commands"] == ["echo 'No commands were translated for this step'"]

    with_plugin = [_step("c1", label="Docker", plugins=[{"docker#v5.11.0": {"image": "node:20"}}])]
    parsed = yaml.safe_load(Emitter().emit(with_plugin, []))
    assert "commands" not in parsed["steps"][0]


def test_orphan_fragments_become_comments() -> None:
    fragments = [OutputFragment(provenance="c9", target="env", attributes={"variables": {"A": "1"}}, parent="c1")]
    text = Emitter().emit(fragments, [])
    assert "# env from c9 has no step to attach to" in text


def test_blocked_diagnostic_refuses_to_emit() -> None:
    blocked = Diagnostic(
        severity=Severity.BLOCKED,
        code=DiagnosticCode.SECURITY_RISK,
        message="netcat executing a shell",
        category=Category.SECURITY,
        metadata={"category": "reverse-shell"},
    )
    with pytest.raises(SecurityRejected):
        Emitter().emit([_step("c1", label="Build")], [blocked])


def test_linter_normalises_whitespace() -> None:
    assert YamlLinter().lint("a: 1  \r\n\r\n\r\nb: 2") == "a: 1\n\nb: 2\n"
    assert YamlLinter().lint("\n\nsteps: []\n\n\n") == "steps: []\n"


def test_linter_preserves_blank_lines_inside_block_scalars() -> None:
    text = "script: |\n  line\n\n\n  more\nnext: 1\n\n\n"
    assert YamlLinter().lint(text) == "script: |\n  line\n\n\n  more\nnext: 1\n"

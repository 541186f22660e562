"""Tests for shared models and dialect detection."""

from __future__ import annotations

import pytest

from cimigrate.models import (
    Dialect,
    OutputFragment,
    RawDocument,
    Span,
    detect_dialect,
    line_of,
)
from tests._fixtures.pipelines import JENKINSFILE, WORKFLOW


def test_dialect_parse_accepts_values_and_aliases() -> None:
    assert Dialect.parse("workflow-yaml") is Dialect.WORKFLOW_YAML
    assert Dialect.parse("GitHub-Actions") is Dialect.WORKFLOW_YAML
    assert Dialect.parse("jenkins") is Dialect.GROOVY_PIPELINE
    assert Dialect.parse(Dialect.GROOVY_PIPELINE) is Dialect.GROOVY_PIPELINE


def test_dialect_parse_rejects_unknown_names() -> None:
    with pytest.raises(ValueError, match="Unknown dialect"):
        Dialect.parse("gitlab")


def test_detect_dialect_prefers_file_name() -> None:
    assert detect_dialect("", "Jenkinsfile") is Dialect.GROOVY_PIPELINE
    assert detect_dialect("", "release.groovy") is Dialect.GROOVY_PIPELINE
    assert detect_dialect(JENKINSFILE, "ci.yaml") is Dialect.WORKFLOW_YAML


def test_detect_dialect_falls_back_to_content() -> None:
    assert detect_dialect(WORKFLOW) is Dialect.WORKFLOW_YAML
    assert detect_dialect(JENKINSFILE) is Dialect.GROOVY_PIPELINE
    assert detect_dialect("   \n") is Dialect.WORKFLOW_YAML


def test_detect_dialect_raises_when_unrecognised() -> None:
    with pytest.raises(ValueError, match="Unable to detect"):
        detect_dialect("just some prose\n")


def test_raw_document_load_uses_explicit_dialect() -> None:
    document = RawDocument.load("steps: []\n", "jenkins", name="ci.yml")
    assert document.dialect is Dialect.GROOVY_PIPELINE
    assert document.name == "ci.yml"


def test_output_fragment_requires_target_or_comment() -> None:
    with pytest.raises(ValueError):
        OutputFragment(provenance="c1")
    with pytest.raises(ValueError):
        OutputFragment(provenance="c1", target="step", comment="both")
    assert OutputFragment(provenance="c1", comment="note").is_comment


def test_span_helpers() -> None:
    text = "first\nsecond\nthird"
    span = Span(6, 12, line_of(text, 6))
    assert span.slice(text) == "second"
    assert span.line == 2
    assert span.overlaps(Span(10, 14))
    assert not span.overlaps(Span(12, 14))

"""Tests for the Jenkins declarative pipeline extractor."""

from __future__ import annotations

from itertools import combinations

import pytest

from cimigrate.extractors import GroovyPipelineExtractor, discover_extractors, extract
from cimigrate.extractors.groovy_dsl import Block, GroovyParseError, named_arguments, parse_items
from cimigrate.models import ConstructKind, DiagnosticCode, Dialect
from tests._fixtures.pipelines import JENKINSFILE, SCRIPTED_JENKINSFILE


def test_extracts_stages_and_steps_in_order() -> None:
    constructs = GroovyPipelineExtractor().extract(JENKINSFILE).constructs
    assert [(construct.kind, construct.identifier) for construct in constructs] == [
        (ConstructKind.OTHER, "agent"),
        (ConstructKind.ENV_BLOCK, "environment"),
        (ConstructKind.TRIGGER, "cron"),
        (ConstructKind.JOB, "Build"),
        (ConstructKind.STEP, "make build"),
        (ConstructKind.ARTIFACT, "archiveArtifacts"),
        (ConstructKind.JOB, "Test"),
        (ConstructKind.JOB, "Unit"),
        (ConstructKind.STEP, "make unit"),
        (ConstructKind.JOB, "Lint"),
        (ConstructKind.STEP, "make lint"),
        (ConstructKind.JOB, "Deploy"),
        (ConstructKind.CONDITIONAL, "Deploy.when"),
        (ConstructKind.STEP, "echo"),
        (ConstructKind.STEP, "./deploy.sh"),
    ]


def test_spans_do_not_overlap() -> None:
    constructs = GroovyPipelineExtractor().extract(JENKINSFILE).constructs
    for first, second in combinations(constructs, 2):
        assert not first.span.overlaps(second.span), (first.id, second.id)


def test_stage_relationships() -> None:
    constructs = GroovyPipelineExtractor().extract(JENKINSFILE).constructs
    jobs = {c.identifier: c for c in constructs if c.kind is ConstructKind.JOB}

    assert jobs["Build"].attributes.get("needs") is None
    assert jobs["Test"].attributes["needs"] == ["build"]
    assert jobs["Test"].attributes["stages"] == ["test-unit", "test-lint"]
    assert jobs["Unit"].parent_id == jobs["Test"].id
    assert jobs["Unit"].attributes["key"] == "test-unit"
    assert "needs" not in jobs["Lint"].attributes
    assert jobs["Deploy"].attributes["needs"] == ["test"]


def test_environment_separates_credentials() -> None:
    constructs = GroovyPipelineExtractor().extract(JENKINSFILE).constructs
    env = next(c for c in constructs if c.kind is ConstructKind.ENV_BLOCK)
    assert env.attributes["variables"] == {"APP_ENV": "ci"}
    assert env.attributes["credentials"] == {"DEPLOY_KEY": "deploy-key"}


def test_when_and_step_attributes() -> None:
    constructs = GroovyPipelineExtractor().extract(JENKINSFILE).constructs
    by_identifier = {c.identifier: c for c in constructs}
    assert by_identifier["Deploy.when"].attributes["conditions"] == [{"type": "branch", "value": "main"}]
    assert by_identifier["echo"].attributes["value"] == "Deploying build ${BUILD_NUMBER}"
    assert by_identifier["make build"].attributes["run"] == "make build"
    assert by_identifier["archiveArtifacts"].attributes["path"] == "dist/**"
    assert by_identifier["cron"].attributes["cron"] == ["H 4 * * *"]


def test_block_steps_record_timeouts() -> None:
    text = (
        "pipeline {\n"
        "  stages {\n"
        "    stage('Build') {\n"
        "      steps {\n"
        "        timeout(time: 2, unit: 'HOURS') {\n"
        "          sh 'make'\n"
        "        }\n"
        "      }\n"
        "    }\n"
        "  }\n"
        "}\n"
    )
    constructs = GroovyPipelineExtractor().extract(text).constructs
    timeout = next(c for c in constructs if c.identifier == "timeout")
    assert timeout.attributes["timeout_minutes"] == "120"
    assert timeout.attributes["block"] == "true"
    assert constructs[-1].attributes["run"] == "make"


def test_scripted_pipeline_degrades() -> None:
    result = GroovyPipelineExtractor().extract(SCRIPTED_JENKINSFILE)
    (construct,) = result.constructs
    assert construct.kind is ConstructKind.OTHER
    assert construct.attributes["reason"] == "scripted pipelines are not supported"
    assert result.diagnostics[0].code is DiagnosticCode.EXTRACTION_DEGRADED


def test_unbalanced_braces_degrade() -> None:
    result = GroovyPipelineExtractor().extract("pipeline {\n  stages {\n")
    (construct,) = result.constructs
    assert "unbalanced" in construct.attributes["reason"]


def test_parse_items_handles_strings_and_comments() -> None:
    text = "sh 'echo }'\n// stage('x') {\nstage('a') { echo \"{\" }\n"
    items = parse_items(text, 0, len(text))
    assert [getattr(item, "name", None) for item in items] == [None, "stage"]
    block = items[1]
    assert isinstance(block, Block)
    assert block.args == "'a'"


def test_parse_items_rejects_stray_brace() -> None:
    with pytest.raises(GroovyParseError):
        parse_items("}", 0, 1)


def test_named_arguments_unquote_values() -> None:
    assert named_arguments("time: 5, unit: 'MINUTES'") == {"time": "5", "unit": "MINUTES"}


def test_extract_dispatches_on_dialect() -> None:
    constructs, diagnostics = extract(JENKINSFILE, "jenkins")
    assert constructs[0].dialect is Dialect.GROOVY_PIPELINE
    assert diagnostics == []


class _EntryPoint:
    name = "custom"

    def load(self) -> type:
        return _CustomExtractor


class _CustomExtractor(GroovyPipelineExtractor):
    pass


def test_discover_extractors_applies_entry_point_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("cimigrate.extractors._iter_entry_points", lambda: [_EntryPoint()])
    extractors = discover_extractors()
    assert isinstance(extractors[Dialect.GROOVY_PIPELINE], _CustomExtractor)
    assert extractors[Dialect.WORKFLOW_YAML].dialect is Dialect.WORKFLOW_YAML

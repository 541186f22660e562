"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from cimigrate.config import CONFIG_FILENAME, ConfigError, load_config
from cimigrate.models import Dialect


def test_missing_config_returns_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "ci.yml")
    assert config.root == tmp_path.resolve()
    assert config.dialect is None
    assert config.rules.include_builtin is True
    assert config.rules.paths == []
    assert config.security.strict is False
    assert config.emit.title is None


def test_config_next_to_source_file_is_used(tmp_path: Path) -> None:
    (tmp_path / CONFIG_FILENAME).write_text(
        "dialect: github-actions\n"
        "rules:\n"
        "  include_builtin: false\n"
        "  paths:\n"
        "    - rules/local.yml\n"
        "security:\n"
        "  strict: 'yes'\n"
        "emit:\n"
        "  title: Nightly\n",
        encoding="utf-8",
    )
    config = load_config(tmp_path / "Jenkinsfile")
    assert config.dialect is Dialect.WORKFLOW_YAML
    assert config.rules.include_builtin is False
    assert config.rules.paths == [tmp_path.resolve() / "rules/local.yml"]
    assert config.security.strict is True
    assert config.emit.title == "Nightly"


def test_config_path_can_be_a_directory_or_the_file(tmp_path: Path) -> None:
    config_file = tmp_path / CONFIG_FILENAME
    config_file.write_text("rules:\n  paths: extra.yml\n", encoding="utf-8")
    assert load_config(tmp_path).rules.paths == [tmp_path.resolve() / "extra.yml"]
    assert load_config(config_file).rules.paths == [tmp_path.resolve() / "extra.yml"]


def test_empty_config_file_is_allowed(tmp_path: Path) -> None:
    (tmp_path / CONFIG_FILENAME).write_text("\n", encoding="utf-8")
    assert load_config(tmp_path).security.strict is False


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("rules: [unclosed\n", "Failed to parse"),
        ("- just\n- a list\n", "mapping at the root"),
        ("dialect: gitlab\n", "Unknown dialect"),
    ],
)
def test_invalid_config_raises(tmp_path: Path, content: str, message: str) -> None:
    (tmp_path / CONFIG_FILENAME).write_text(content, encoding="utf-8")
    with pytest.raises(ConfigError, match=message):
        load_config(tmp_path)

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import pytest

from cimigrate.orchestrator import Orchestrator
from tests._fixtures.pipelines import JENKINSFILE, WORKFLOW


@pytest.fixture(autouse=True)
def _reset_cimigrate_logger() -> Iterator[None]:
    """Drop handlers the CLI installs so later tests do not log to closed streams."""
    yield
    logger = logging.getLogger("cimigrate")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def orchestrator() -> Orchestrator:
    """Provide an orchestrator wired with the builtin rules and detectors."""
    return Orchestrator()


@pytest.fixture
def workflow_file(tmp_path: Path) -> Path:
    path = tmp_path / "ci.yml"
    path.write_text(WORKFLOW, encoding="utf-8")
    return path


@pytest.fixture
def jenkinsfile(tmp_path: Path) -> Path:
    path = tmp_path / "Jenkinsfile"
    path.write_text(JENKINSFILE, encoding="utf-8")
    return path

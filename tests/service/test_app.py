"""Tests for the FastAPI service mode."""

from __future__ import annotations

from typing import List, Optional

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient  # noqa: E402

from cimigrate.models import (  # noqa: E402
    Category,
    Diagnostic,
    DiagnosticCode,
    Dialect,
    RawDocument,
    Severity,
    Span,
)
from cimigrate.orchestrator import Orchestrator, TranslationResult  # noqa: E402
from cimigrate.security import SecurityRejected  # noqa: E402
from cimigrate.service import create_app  # noqa: E402
from tests._fixtures.pipelines import WORKFLOW  # noqa: E402

_BLOCKED = Diagnostic(
    severity=Severity.BLOCKED,
    code=DiagnosticCode.SECURITY_RISK,
    message="netcat executing a shell: `nc -e /bin/sh`",
    category=Category.SECURITY,
    span=Span(0, 10, 3),
    metadata={"category": "reverse-shell", "pattern": "netcat executing a shell", "excerpt": "nc -e /bin/sh"},
)


class _StubOrchestrator:
    def __init__(self) -> None:
        self.translate_calls: List[dict[str, object]] = []
        self.scan_calls: List[str] = []

    def translate(self, text: str, dialect: Optional[str] = None, *, name: Optional[str] = None) -> TranslationResult:
        self.translate_calls.append({"text": text, "dialect": dialect, "name": name})
        if "nc -e" in text:
            raise SecurityRejected(_BLOCKED)
        if dialect == "gitlab":
            raise ValueError("Unknown dialect 'gitlab'")
        note = Diagnostic(
            severity=Severity.INFO,
            code=DiagnosticCode.RULE_NOTE,
            message="note",
            metadata={"rule": "r1"},
        )
        return TranslationResult(
            document=RawDocument(text=text, dialect=Dialect.WORKFLOW_YAML, name=name),
            text="steps: []\n",
            diagnostics=[note],
        )

    def scan(self, text: str) -> List[Diagnostic]:
        self.scan_calls.append(text)
        return [_BLOCKED] if "nc -e" in text else []


def test_health_endpoint() -> None:
    client = TestClient(create_app(lambda: _StubOrchestrator()))
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_translate_endpoint_passes_request_through() -> None:
    stub = _StubOrchestrator()
    client = TestClient(create_app(lambda: stub))
    response = client.post("/translate", json={"text": "on: push\n", "dialect": "workflow-yaml", "name": "ci.yml"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["dialect"] == "workflow-yaml"
    assert payload["pipeline"] == "steps: []\n"
    assert payload["diagnostics"][0]["metadata"] == {"rule": "r1"}
    assert stub.translate_calls == [{"text": "on: push\n", "dialect": "workflow-yaml", "name": "ci.yml"}]


def test_translate_endpoint_reports_rejection() -> None:
    client = TestClient(create_app(lambda: _StubOrchestrator()))
    response = client.post("/translate", json={"text": "run: nc -e /bin/sh"})
    assert response.status_code == 422
    payload = response.json()
    assert payload["rejected"]["category"] == "reverse-shell"
    assert payload["rejected"]["line"] == 3


def test_translate_endpoint_maps_value_errors_to_bad_request() -> None:
    client = TestClient(create_app(lambda: _StubOrchestrator()))
    response = client.post("/translate", json={"text": "x", "dialect": "gitlab"})
    assert response.status_code == 400
    assert "gitlab" in response.json()["detail"]


def test_scan_endpoint() -> None:
    client = TestClient(create_app(lambda: _StubOrchestrator()))
    response = client.post("/scan", json={"text": "run: nc -e /bin/sh"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["blocked"] is True
    assert payload["diagnostics"][0]["severity"] == "blocked"


def test_default_app_translates_with_real_orchestrator() -> None:
    client = TestClient(create_app(Orchestrator))
    response = client.post("/translate", json={"text": WORKFLOW})
    assert response.status_code == 200
    assert response.json()["pipeline"].startswith("# Translated pipeline")

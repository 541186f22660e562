"""Built-in risk detectors, listed in catalog order."""

from __future__ import annotations

import ipaddress
import re
from typing import Iterable, List

from ..models import Diagnostic, Severity
from .base import Detector, PatternDetector, pattern

_SHELL = r"(?:sudo\s+)?(?:ba|z|k|da)?sh\b"

# ---------------------------------------------------------------------------
# Pattern catalogs
# ---------------------------------------------------------------------------

OBFUSCATED_EXECUTION = PatternDetector(
    "obfuscated-execution",
    "obfuscated-execution",
    [
        pattern("base64-decoded payload piped to a shell", rf"base64\s+(?:-d|-D|--decode)\b[^\n]*\|\s*{_SHELL}"),
        pattern("hex-decoded payload piped to a shell", rf"xxd\s+-r\s+-p\b[^\n]*\|\s*{_SHELL}"),
        pattern("eval of a decoded payload", r"\beval\b[^\n]*base64\s+(?:-d|-D|--decode)\b"),
        pattern("exec of a decoded payload", r"exec\(\s*(?:base64\.b64decode|__import__\(\s*['\"]base64)"),
        pattern(
            "long encoded blob",
            r"[A-Za-z0-9+/]{160,}={0,2}",
            Severity.WARNING,
        ),
    ],
    suggestion="commit the script in plain text and call it from the step",
)

CRYPTOMINING = PatternDetector(
    "cryptomining",
    "cryptomining",
    [
        pattern(
            "known miner binary",
            r"\b(?:xmrig|minerd|cpuminer|cgminer|bfgminer|ethminer|nbminer|phoenixminer|lolminer)\b",
        ),
        pattern("mining pool protocol", r"stratum\+(?:tcp|ssl|tls)://"),
        pattern("miner donation flag", r"--donate-level\b"),
        pattern("mining algorithm reference", r"\b(?:cryptonight|randomx)\b", Severity.WARNING),
    ],
    suggestion="remove the mining workload; CI agents are not for compute resale",
)

REVERSE_SHELL = PatternDetector(
    "reverse-shell",
    "reverse-shell",
    [
        pattern("netcat executing a shell", r"\b(?:nc|ncat|netcat)\b[^\n;&|]*\s-[ec]\s*\S*sh\b"),
        pattern("shell redirected to a TCP socket", r"/dev/(?:tcp|udp)/[\w.\-]+/\d+"),
        pattern("socat spawning a process", r"\bsocat\b[^\n]*\bexec:"),
        pattern("named pipe wired to netcat", r"\bmkfifo\b[^\n]*\|\s*(?:nc|ncat|netcat)\b"),
        pattern("python socket shell", r"import\s+socket\s*,\s*subprocess|pty\.spawn\("),
    ],
    suggestion="use the agent's interactive debugging features instead of an outbound shell",
)

DATA_EXFILTRATION = PatternDetector(
    "data-exfiltration",
    "data-exfiltration",
    [
        pattern("environment dumped to the network", r"\b(?:env|printenv|set)\s*\|\s*(?:curl|wget|nc|ncat)\b"),
        pattern(
            "secret sent as request body",
            r"\b(?:curl|wget)\b[^\n]*(?:\s-d|\s--data\S*|\s-F|\s--form|\s-T|\s--upload-file|\s--post-data)"
            r"[\s=]+[\"']?[^\s\"']*"
            r"(?:\$\{\{\s*secrets\.|\$\{?\w*(?:TOKEN|SECRET|PASSWORD)\w*|/etc/passwd|/etc/shadow|\.ssh/id_|\.aws/credentials)",
        ),
        pattern(
            "credential file piped to the network",
            r"\bcat\s+[^\n|]*(?:\.ssh/id_|\.aws/credentials|/etc/shadow)[^\n]*\|\s*(?:curl|wget|nc|ncat)\b",
        ),
        pattern(
            "request-catcher endpoint",
            r"\b(?:webhook\.site|requestbin|pipedream\.net|ngrok\.io|burpcollaborator\.net|interact\.sh)\b",
            Severity.WARNING,
        ),
    ],
    suggestion="publish results as build artifacts instead of posting them to external hosts",
)

PERSISTENCE = PatternDetector(
    "persistence",
    "persistence-mechanism",
    [
        pattern("write to authorized_keys", r">>?\s*\S*\.ssh/authorized_keys"),
        pattern("write to system cron", r">>?\s*/etc/cron"),
        pattern("crontab installed from stdin", r"\|\s*crontab\s+-(?:\s|$)"),
        pattern("write to rc.local", r">>?\s*/etc/rc\.local"),
        pattern("service enabled at boot", r"\bsystemctl\s+enable\b", Severity.WARNING),
        pattern(
            "shell profile modified",
            r">>?\s*\S*(?:\.bashrc|\.bash_profile|\.zshrc|\.profile)\b",
            Severity.WARNING,
        ),
    ],
    suggestion="keep agent changes scoped to the job; use ephemeral agents for system setup",
)

STRUCTURAL = PatternDetector(
    "structural",
    "structural",
    [
        pattern("recursive delete of the filesystem root", r"\brm\s+-(?:rf|fr)\s+/(?:\*|\s|$)"),
        pattern("remote script piped to a shell", rf"\b(?:curl|wget)\b[^\n]*\|\s*{_SHELL}", Severity.WARNING),
        pattern("world-writable permissions", r"\bchmod\s+(?:-R\s+)?0?777\b", Severity.WARNING),
        pattern("privileged container", r"--privileged\b", Severity.WARNING),
        pattern("pull_request_target trigger", r"\bpull_request_target\b", Severity.WARNING),
    ],
    suggestion="pin downloaded scripts by checksum and drop elevated privileges",
)


class RawIpDownloadDetector(Detector):
    """Flags downloads that address hosts by literal IP instead of name."""

    name = "raw-ip-download"
    category = "raw-ip-download"
    suggestion = "download from a named, TLS-verified host and verify a checksum"

    _DOWNLOAD = re.compile(
        r"\b(?:curl|wget)\b[^\n]*?https?://(?P<host>\d{1,3}(?:\.\d{1,3}){3})(?::\d+)?[^\s\"']*(?P<rest>[^\n]*)",
        re.IGNORECASE,
    )
    _PIPE_TO_SHELL = re.compile(rf"\|\s*{_SHELL}", re.IGNORECASE)

    def __init__(self) -> None:
        self._reporter = PatternDetector(self.name, self.category, [], suggestion=self.suggestion)

    def detect(self, text: str) -> Iterable[Diagnostic]:
        findings: List[Diagnostic] = []
        for match in self._DOWNLOAD.finditer(text):
            try:
                address = ipaddress.ip_address(match.group("host"))
            except ValueError:
                continue
            piped = bool(self._PIPE_TO_SHELL.search(match.group("rest")))
            if piped:
                label, severity = "raw IP download piped to a shell", Severity.BLOCKED
            elif address.is_loopback or address.is_private:
                continue
            else:
                label, severity = "download from a raw IP address", Severity.WARNING
            findings.append(self._reporter.build(text, match.start(), match.end(), label, severity))
        return findings


class VagueStepNameDetector(Detector):
    """Warns about step names that hide what the step does."""

    name = "vague-step-name"
    category = "structural"

    _VAGUE = {
        "a",
        "misc",
        "run",
        "script",
        "step",
        "stuff",
        "temp",
        "tmp",
        "test1",
        "todo",
        "x",
        "do it",
        "update",
    }
    _NAME = re.compile(r"^\s*-?\s*name:\s*[\"']?(?P<name>[^\"'#\n]*?)[\"']?\s*(?:#.*)?$", re.MULTILINE)
    _STAGE = re.compile(r"\bstage\s*\(\s*[\"'](?P<name>[^\"'\n]*)[\"']\s*\)")

    def __init__(self) -> None:
        self._reporter = PatternDetector(self.name, self.category, [])

    def detect(self, text: str) -> Iterable[Diagnostic]:
        findings: List[Diagnostic] = []
        for regex in (self._NAME, self._STAGE):
            for match in regex.finditer(text):
                value = match.group("name").strip().lower()
                if value in self._VAGUE:
                    findings.append(
                        self._reporter.build(
                            text,
                            match.start("name"),
                            match.end("name"),
                            "vague step name",
                            Severity.WARNING,
                        )
                    )
        findings.sort(key=lambda diag: diag.span.start if diag.span else 0)
        return findings


def builtin_detectors() -> List[Detector]:
    """Return a fresh list of detectors in catalog order."""
    return [
        OBFUSCATED_EXECUTION,
        CRYPTOMINING,
        REVERSE_SHELL,
        DATA_EXFILTRATION,
        RawIpDownloadDetector(),
        PERSISTENCE,
        STRUCTURAL,
        VagueStepNameDetector(),
    ]


__all__ = [
    "CRYPTOMINING",
    "DATA_EXFILTRATION",
    "OBFUSCATED_EXECUTION",
    "PERSISTENCE",
    "REVERSE_SHELL",
    "STRUCTURAL",
    "RawIpDownloadDetector",
    "VagueStepNameDetector",
    "builtin_detectors",
]

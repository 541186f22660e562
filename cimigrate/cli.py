"""CLI entrypoints for cimigrate commands."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Sequence

from .config import ConfigError, load_config
from .logging import configure_logging
from .models import Diagnostic, Dialect
from .orchestrator import Orchestrator
from .rules import MalformedRule, RuleTable, build_rule_table
from .security import SecurityRejected, first_blocked

EXIT_FAILURE = 1
EXIT_REJECTED = 2


def _add_verbose_option(
    parser: argparse.ArgumentParser, *, suppress_default: bool = False
) -> None:
    kwargs: dict[str, object] = {
        "action": "store_true",
        "help": "Increase log verbosity for troubleshooting.",
    }
    if suppress_default:
        kwargs["default"] = argparse.SUPPRESS
    else:
        kwargs["default"] = False
    parser.add_argument(
        "-v",
        "--verbose",
        **kwargs,
    )


def _add_json_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print a JSON document instead of plain text.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cimigrate",
        description="Translate CI pipeline definitions into Buildkite pipelines.",
    )
    _add_verbose_option(parser)
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write logs to this file.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    translate_parser = subparsers.add_parser(
        "translate",
        help="Translate a workflow or Jenkinsfile into a Buildkite pipeline.",
    )
    _add_verbose_option(translate_parser, suppress_default=True)
    _add_json_option(translate_parser)
    translate_parser.add_argument("path", help="Source pipeline file.")
    translate_parser.add_argument(
        "--dialect",
        choices=[dialect.value for dialect in Dialect],
        default=None,
        help="Source dialect (detected from the file when omitted).",
    )
    translate_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Write the pipeline to this file instead of stdout.",
    )
    translate_parser.add_argument(
        "--rules",
        nargs="+",
        default=[],
        metavar="FILE",
        help="Extra rule files layered over the builtin rules.",
    )
    translate_parser.add_argument(
        "--no-builtin-rules",
        action="store_true",
        help="Use only the rule files given with --rules or in .cimigrate.yml.",
    )

    scan_parser = subparsers.add_parser(
        "scan",
        help="Run only the security pre-screen on a file.",
    )
    _add_verbose_option(scan_parser, suppress_default=True)
    _add_json_option(scan_parser)
    scan_parser.add_argument("path", help="Source pipeline file.")

    rules_parser = subparsers.add_parser("rules", help="Work with rule files.")
    _add_verbose_option(rules_parser, suppress_default=True)
    rules_subparsers = rules_parser.add_subparsers(dest="rules_command", required=True)
    check_parser = rules_subparsers.add_parser("check", help="Validate rule files.")
    check_parser.add_argument("files", nargs="+", type=Path, help="Rule files to validate.")

    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the HTTP service (requires the service extra).",
    )
    _add_verbose_option(serve_parser, suppress_default=True)
    serve_parser.add_argument("--host", default="127.0.0.1", help="Interface to bind.")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to listen on.")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for cimigrate commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(verbose=bool(args.verbose), log_file=args.log_file)

    if args.command == "translate":
        _run_translate(parser, args)
    elif args.command == "scan":
        _run_scan(parser, args)
    elif args.command == "rules":
        _run_rules_check(parser, args.files)
    elif args.command == "serve":
        _run_serve(parser, args)
    else:  # pragma: no cover - argparse enforces choices
        parser.exit(EXIT_FAILURE, "Unknown command\n")


def _run_translate(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    source = Path(args.path)
    try:
        config = load_config(source)
        if args.rules:
            config.rules.paths.extend(Path(item) for item in args.rules)
        if args.no_builtin_rules:
            config.rules.include_builtin = False
        orchestrator = Orchestrator.from_config(config)
        result = orchestrator.translate_file(source, args.dialect)
        if args.output is not None:
            args.output.write_text(result.text, encoding="utf-8")
    except SecurityRejected as exc:
        if args.json:
            print(json.dumps({"rejected": exc.to_dict()}, indent=2))
        parser.exit(EXIT_REJECTED, f"{exc}\n")
    except (ConfigError, MalformedRule) as exc:
        parser.exit(EXIT_FAILURE, f"cimigrate translate failed: {exc}\n")
    except (OSError, ValueError) as exc:
        parser.exit(EXIT_FAILURE, f"cimigrate translate failed: {exc}\nRun with --verbose for more details.\n")

    if args.json:
        payload = {
            "dialect": result.document.dialect.value,
            "pipeline": result.text,
            "diagnostics": [diagnostic.to_dict() for diagnostic in result.diagnostics],
        }
        print(json.dumps(payload, indent=2))
    elif args.output is None:
        sys.stdout.write(result.text)
    else:
        print(f"Pipeline written to {_relativize(args.output)} ({len(result.diagnostics)} notes)")


def _run_scan(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    source = Path(args.path)
    try:
        config = load_config(source)
        text = source.read_text(encoding="utf-8")
        orchestrator = Orchestrator.from_config(config)
    except (ConfigError, MalformedRule, OSError) as exc:
        parser.exit(EXIT_FAILURE, f"cimigrate scan failed: {exc}\n")
    diagnostics = orchestrator.scan(text)
    if args.json:
        print(json.dumps([diagnostic.to_dict() for diagnostic in diagnostics], indent=2))
    else:
        for line in _format_diagnostics(diagnostics):
            print(line)
        if not diagnostics:
            print("No security findings")
    blocked = first_blocked(diagnostics)
    if blocked is not None:
        parser.exit(EXIT_REJECTED, f"{SecurityRejected(blocked, diagnostics)}\n")


def _run_rules_check(parser: argparse.ArgumentParser, files: Sequence[Path]) -> None:
    failures = 0
    for path in files:
        try:
            table = RuleTable.load(path)
        except MalformedRule as exc:
            failures += 1
            print(f"{path}: {exc}", file=sys.stderr)
            continue
        merged = build_rule_table([path])
        print(f"{path}: {len(table)} rule(s) ok ({len(merged)} after merging with builtin rules)")
    if failures:
        parser.exit(EXIT_FAILURE, f"{failures} rule file(s) failed validation\n")


def _run_serve(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    try:
        from .service import run_service
    except ModuleNotFoundError as exc:
        parser.exit(EXIT_FAILURE, f"Service mode needs the service extra: {exc}\n")
    try:
        run_service(host=args.host, port=args.port)
    except RuntimeError as exc:
        parser.exit(EXIT_FAILURE, f"{exc}\n")


def _format_diagnostics(diagnostics: Sequence[Diagnostic]) -> List[str]:
    lines: List[str] = []
    for diagnostic in diagnostics:
        location = f"line {diagnostic.span.line}: " if diagnostic.span is not None else ""
        lines.append(f"[{diagnostic.severity.value}] {location}{diagnostic.message}")
    return lines


def _relativize(path: Path) -> str:
    try:
        return str(path.resolve().relative_to(Path.cwd()))
    except ValueError:
        return str(path)


if __name__ == "__main__":
    main(sys.argv[1:])

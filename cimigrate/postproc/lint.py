"""Linting utilities for generated pipeline YAML."""

from __future__ import annotations

import re
from typing import List, Optional

_BLOCK_SCALAR = re.compile(r"^(?P<indent>\s*)(?:-\s+)?(?:[^#\s][^#]*:\s+)?[|>][-+]?\d*\s*$")


class YamlLinter:
    """Normalises line endings, trailing whitespace and blank runs."""

    def lint(self, text: str) -> str:
        normalized = text.replace("\r\n", "\n").replace("\r", "\n")
        lines = normalized.split("\n")
        cleaned: List[str] = []
        block_indent: Optional[int] = None
        previous_blank = False

        for line in lines:
            stripped = line.rstrip()
            indent = len(stripped) - len(stripped.lstrip())

            if block_indent is not None:
                if not stripped or indent > block_indent:
                    cleaned.append(stripped)
                    previous_blank = not stripped
                    continue
                block_indent = None

            if not stripped:
                if previous_blank or not cleaned:
                    continue
                previous_blank = True
                cleaned.append("")
                continue

            if _BLOCK_SCALAR.match(stripped) and not stripped.lstrip().startswith("#"):
                block_indent = indent
            cleaned.append(stripped)
            previous_blank = False

        while cleaned and cleaned[-1] == "":
            cleaned.pop()

        return "\n".join(cleaned) + "\n"


__all__ = ["YamlLinter"]

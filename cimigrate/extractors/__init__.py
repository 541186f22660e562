"""Dialect extractors and discovery utilities."""

from __future__ import annotations

from importlib import metadata
from typing import Callable, Dict, Iterable, List, Tuple

from ..models import Construct, Diagnostic, Dialect
from .base import (
    CONSTRUCT_ATTRIBUTES,
    ConstructCollector,
    ExtractionResult,
    Extractor,
    attributes_for,
)
from .groovy_dsl import GroovyPipelineExtractor
from .workflow_yaml import WorkflowYamlExtractor

_ENTRY_POINT_GROUP = "cimigrate.extractors"

_BUILTIN_FACTORIES: Dict[Dialect, Callable[[], Extractor]] = {
    Dialect.WORKFLOW_YAML: WorkflowYamlExtractor,
    Dialect.GROOVY_PIPELINE: GroovyPipelineExtractor,
}


def discover_extractors() -> Dict[Dialect, Extractor]:
    """Return one extractor per dialect; entry points override builtins."""
    extractors: Dict[Dialect, Extractor] = {
        dialect: factory() for dialect, factory in _BUILTIN_FACTORIES.items()
    }
    for entry in _iter_entry_points():
        try:
            loaded = entry.load()
        except Exception as exc:  # pragma: no cover - defensive guard
            raise RuntimeError(f"Failed to load extractor entry point '{entry.name}': {exc}") from exc
        instance = _coerce_extractor(loaded)
        extractors[Dialect.parse(instance.dialect)] = instance
    return extractors


def extract(text: str, dialect: "str | Dialect") -> Tuple[List[Construct], List[Diagnostic]]:
    """Extract constructs from raw text using the extractor for ``dialect``."""
    resolved = Dialect.parse(dialect)
    extractor = _BUILTIN_FACTORIES[resolved]()
    result = extractor.extract(text)
    return result.constructs, result.diagnostics


def _coerce_extractor(obj: object) -> Extractor:
    if isinstance(obj, Extractor):
        return obj
    if isinstance(obj, type) and issubclass(obj, Extractor):
        return obj()
    if callable(obj):
        instance = obj()
        if isinstance(instance, Extractor):
            return instance
    raise TypeError("Extractor entry point must be an Extractor subclass or factory")


def _iter_entry_points() -> Iterable[metadata.EntryPoint]:
    try:
        entry_points = metadata.entry_points()
    except Exception:  # pragma: no cover - defensive guard
        return []
    return entry_points.select(group=_ENTRY_POINT_GROUP)


__all__ = [
    "CONSTRUCT_ATTRIBUTES",
    "ConstructCollector",
    "ExtractionResult",
    "Extractor",
    "GroovyPipelineExtractor",
    "WorkflowYamlExtractor",
    "attributes_for",
    "discover_extractors",
    "extract",
]

"""Output rendering for translated pipelines."""

from .emitter import DEFAULT_TITLE, Emitter
from .lint import YamlLinter

__all__ = ["DEFAULT_TITLE", "Emitter", "YamlLinter"]

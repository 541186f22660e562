"""Rule-driven translation of CI pipeline definitions."""

__version__ = "0.1.0"

"""Compiler diagnostics: parsing and fix suggestions."""

from ghcworker.diagnostics.parser import parse_diagnostics
from ghcworker.diagnostics.suggestions import RULES, extract_suggestions

__all__ = [
    "RULES",
    "extract_suggestions",
    "parse_diagnostics",
]

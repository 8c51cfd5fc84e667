"""Models module for Pydantic schemas.

This module exposes the session, diagnostic and suggestion models.
"""

from ghcworker.models.schemas import (
    AddExtension,
    AddGhcOption,
    AddImportItem,
    AddMissingRecordFields,
    AddTypeSignature,
    Diagnostic,
    EnablePackage,
    FixTypo,
    InstallStatus,
    RemoveImportItem,
    RemoveRedundantConstraint,
    SessionSnapshot,
    SessionState,
    Severity,
    SourceSpan,
    StartMode,
    Suggestion,
)

__all__ = [
    "AddExtension",
    "AddGhcOption",
    "AddImportItem",
    "AddMissingRecordFields",
    "AddTypeSignature",
    "Diagnostic",
    "EnablePackage",
    "FixTypo",
    "InstallStatus",
    "RemoveImportItem",
    "RemoveRedundantConstraint",
    "SessionSnapshot",
    "SessionState",
    "Severity",
    "SourceSpan",
    "StartMode",
    "Suggestion",
]

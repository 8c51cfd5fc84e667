"""Pydantic models shared across the package.

Diagnostics and suggestions are immutable: they are derived from a single
response frame and never edited afterwards. All models use Pydantic v2.
"""

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


class SessionState(StrEnum):
    """Worker session lifecycle state."""

    ABSENT = "absent"
    INSTALLING = "installing"
    STARTING = "starting"
    READY = "ready"
    RESTARTING = "restarting"
    GIVEN_UP = "given-up"


class InstallStatus(StrEnum):
    """Result of probing the worker tool."""

    NOT_INSTALLED = "not-installed"
    WRONG_VERSION = "wrong-version"
    INSTALLED = "installed"


class StartMode(StrEnum):
    """How the worker is launched.

    ``fast`` skips building dependencies; ``with-build`` lets stack build
    them first and is only used after the worker died on a missing one.
    """

    FAST = "fast"
    WITH_BUILD = "with-build"


class Severity(StrEnum):
    """Diagnostic severity."""

    ERROR = "error"
    WARNING = "warning"
    SPLICE = "splice"


class SourceSpan(BaseModel):
    """A file range, 1-based lines and columns."""

    model_config = ConfigDict(frozen=True)

    file: str
    line: int = Field(ge=0)
    column: int = Field(ge=0)
    end_line: int = Field(ge=0)
    end_column: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------


class _SuggestionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    location: SourceSpan = Field(description="Where the fix applies")


class AddImportItem(_SuggestionBase):
    """Add an identifier to an existing import list."""

    kind: Literal["add-import-item"] = "add-import-item"
    module: str
    item: str


class RemoveImportItem(_SuggestionBase):
    """Remove redundant items from an import; no items means the whole import."""

    kind: Literal["remove-import-item"] = "remove-import-item"
    module: str
    items: tuple[str, ...] = ()
    qualified: bool = False


class AddExtension(_SuggestionBase):
    """Enable a language extension in the module header."""

    kind: Literal["add-extension"] = "add-extension"
    extension: str


class AddGhcOption(_SuggestionBase):
    """Add an OPTIONS_GHC flag to the module."""

    kind: Literal["add-ghc-option"] = "add-ghc-option"
    option: str


class AddMissingRecordFields(_SuggestionBase):
    """Fill in record fields the constructor application leaves out."""

    kind: Literal["add-missing-record-fields"] = "add-missing-record-fields"
    constructor: str
    fields: tuple[str, ...]


class FixTypo(_SuggestionBase):
    """Replace a misspelled name with one the compiler knows."""

    kind: Literal["fix-typo"] = "fix-typo"
    original: str
    replacement: str


class AddTypeSignature(_SuggestionBase):
    """Insert the inferred type signature above a top-level binding."""

    kind: Literal["add-type-signature"] = "add-type-signature"
    signature: str


class RemoveRedundantConstraint(_SuggestionBase):
    """Drop constraints the compiler reports as unused."""

    kind: Literal["remove-redundant-constraint"] = "remove-redundant-constraint"
    constraints: tuple[str, ...]


class EnablePackage(_SuggestionBase):
    """Add a hidden package to the project's dependencies."""

    kind: Literal["enable-package"] = "enable-package"
    package: str


Suggestion = Annotated[
    AddImportItem
    | RemoveImportItem
    | AddExtension
    | AddGhcOption
    | AddMissingRecordFields
    | FixTypo
    | AddTypeSignature
    | RemoveRedundantConstraint
    | EnablePackage,
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


class Diagnostic(BaseModel):
    """A compiler message with its location.

    ``end_line``/``end_column`` equal ``line``/``column`` when the compiler
    only reported a point.
    """

    model_config = ConfigDict(frozen=True)

    severity: Severity
    file: str
    line: int
    column: int
    end_line: int
    end_column: int
    message: str
    suggestions: tuple[Suggestion, ...] = ()

    @property
    def span(self) -> SourceSpan:
        return SourceSpan(
            file=self.file,
            line=self.line,
            column=self.column,
            end_line=self.end_line,
            end_column=self.end_column,
        )

    def identity(self) -> tuple[str, str, int, int, int, int, str]:
        """Key used to collapse duplicate diagnostics."""
        return (
            self.severity.value,
            self.file,
            self.line,
            self.column,
            self.end_line,
            self.end_column,
            self.message,
        )


# ---------------------------------------------------------------------------
# Session summaries
# ---------------------------------------------------------------------------


class SessionSnapshot(BaseModel):
    """Read-only view of a worker session, e.g. for listing sessions."""

    key: str = Field(description="Session key", examples=["backend:/src/app"])
    kind: str
    root: str
    state: SessionState
    start_mode: StartMode | None = None
    service_port: int | None = None
    pending_requests: int = 0
    ghc_version: str | None = None
    targets: list[str] = Field(default_factory=list)
    given_up_reason: str | None = None

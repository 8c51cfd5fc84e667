"""Parse compiler output into Diagnostic records.

A diagnostic starts with a non-indented ``path:location: message`` header
and continues over indented lines. Source excerpts (``  |`` gutters) and
blank lines end it.

Severity follows the compiler's own prefixes, with one twist: warnings that
only exist because errors were deferred (``-Wdeferred-type-errors`` and
friends) are really errors. When such a promotion is seen, every plain
warning from the same output is dropped, matching what the compiler
reports under deferred errors.
"""

import os
import re
import textwrap
from collections.abc import Iterable, Mapping

import structlog

from ghcworker.diagnostics.location import LOCATION, location_from_match
from ghcworker.diagnostics.suggestions import extract_suggestions
from ghcworker.models import Diagnostic, Severity

logger = structlog.get_logger()

HEADER_PATTERN = re.compile(rf"^(?P<file>\S.*?):{LOCATION}:[ \t]*(?P<message>.*)$")

# Source excerpt lines: "   |", "12 |   foo x", "   |   ^^^". Guards quoted in a
# message ("      | x > 0") have neither a line number nor a bare bar.
EXCERPT_PATTERN = re.compile(r"^\s*(?:\d+\s*\||\|\s*(?:\^|$))")

WARNING_PREFIX = "warning:"
ERROR_PREFIX = "error:"
SPLICE_PREFIX = "Splicing "

PROMOTED_WARNING_PATTERN = re.compile(
    r"^(?:\[GHC-\d+\]\s*)?"
    r"\[-W(?:deferred-type-errors|deferred-out-of-scope-variables|typed-holes)"
    r"(?:\]|,|\s)"
)


def _blocks(raw_text: str) -> Iterable[tuple[re.Match[str], list[str]]]:
    header: re.Match[str] | None = None
    body: list[str] = []
    for line in raw_text.splitlines():
        indented = line[:1] in (" ", "\t")
        if header is not None and indented and line.strip():
            if EXCERPT_PATTERN.match(line):
                yield header, body
                header, body = None, []
                continue
            body.append(line)
            continue

        if header is not None:
            yield header, body
            header, body = None, []

        if not indented:
            header = HEADER_PATTERN.match(line)
    if header is not None:
        yield header, body


def _classify(message: str) -> tuple[Severity, str, bool]:
    """Return (severity, message without prefix, promoted)."""
    if message.lower().startswith(WARNING_PREFIX):
        rest = message[len(WARNING_PREFIX):].lstrip()
        if PROMOTED_WARNING_PATTERN.match(rest):
            return Severity.ERROR, rest, True
        return Severity.WARNING, rest, False
    if message.startswith(SPLICE_PREFIX):
        return Severity.SPLICE, message, False
    if message.lower().startswith(ERROR_PREFIX):
        return Severity.ERROR, message[len(ERROR_PREFIX):].lstrip(), False
    return Severity.ERROR, message, False


def _remap(file: str, staging_paths: Mapping[str, str]) -> str:
    if not staging_paths:
        return file
    if file in staging_paths:
        return staging_paths[file]
    normalized = os.path.normpath(file)
    for staging, logical in staging_paths.items():
        if os.path.normpath(staging) == normalized:
            return logical
    return file


def parse_diagnostics(
    raw_text: str,
    *,
    staging_paths: Mapping[str, str] | None = None,
    extensions: Iterable[str] | None = None,
) -> list[Diagnostic]:
    """Parse compiler output into diagnostics.

    Args:
        raw_text: Output of a load or reload, e.g. one response frame.
        staging_paths: Scratch file -> logical source file. Diagnostics
            reported against a scratch copy are moved to the real file.
        extensions: Language extensions the compiler supports; used to
            filter extension suggestions when given.

    Returns:
        Diagnostics in output order, duplicates removed.

    Examples:
        >>> [d.line for d in parse_diagnostics("foo.hs:12:5: error: oops")]
        [12]
    """
    staging_paths = staging_paths or {}
    supported = list(extensions) if extensions is not None else None

    parsed: list[Diagnostic] = []
    promoted_seen = False
    for header, body in _blocks(raw_text):
        line, column, end_line, end_column = location_from_match(header)
        first = header.group("message").strip()
        continuation = textwrap.dedent("\n".join(body)).strip("\n")
        message = "\n".join(part for part in (first, continuation) if part)

        severity, message, promoted = _classify(message)
        promoted_seen = promoted_seen or promoted
        parsed.append(
            Diagnostic(
                severity=severity,
                file=_remap(header.group("file"), staging_paths),
                line=line,
                column=column,
                end_line=end_line,
                end_column=end_column,
                message=message.strip(),
            )
        )

    if promoted_seen:
        parsed = [d for d in parsed if d.severity != Severity.WARNING]

    seen: set[tuple[str, str, int, int, int, int, str]] = set()
    diagnostics: list[Diagnostic] = []
    for diagnostic in parsed:
        identity = diagnostic.identity()
        if identity in seen:
            continue
        seen.add(identity)
        if diagnostic.severity != Severity.SPLICE:
            suggestions = extract_suggestions(diagnostic, extensions=supported)
            if suggestions:
                diagnostic = diagnostic.model_copy(update={"suggestions": suggestions})
        diagnostics.append(diagnostic)

    logger.debug(
        "diagnostics_parsed",
        count=len(diagnostics),
        promoted=promoted_seen,
    )
    return diagnostics

"""Fix suggestions extracted from diagnostic messages.

Each rule is a plain function from a diagnostic to the suggestions it
recognises. Rules run in ``RULES`` order and the first rule that returns
anything wins, so a message that both proposes adding an import item and
lists similarly named identifiers yields only the import suggestion.
"""

import re
from collections.abc import Callable, Sequence

from ghcworker.diagnostics.location import FILE_LOCATION_PATTERN, location_from_match
from ghcworker.models import (
    AddExtension,
    AddGhcOption,
    AddImportItem,
    AddMissingRecordFields,
    AddTypeSignature,
    Diagnostic,
    EnablePackage,
    FixTypo,
    RemoveImportItem,
    RemoveRedundantConstraint,
    SourceSpan,
    Suggestion,
)

# Compilers quote with ‘…’ on UTF-8 terminals and `…' elsewhere; messages
# are normalised to the former before matching.
ASCII_QUOTED_PATTERN = re.compile(r"`([^`'\n]+)'")


def _quoted(name: str) -> str:
    return rf"‘(?P<{name}>[^’]+)’"


QUOTED_NAME_PATTERN = re.compile(_quoted("name"))
PARENTHESISED_PATTERN = re.compile(r"\([^()]*\)")

ADD_IMPORT_ITEM_PATTERN = re.compile(
    rf"Perhaps you want to add {_quoted('item')} to the import list "
    rf"in the import of {_quoted('module')} \((?P<where>.+?)\)(?:\.|\s|$)"
)
REDUNDANT_IMPORT_ITEMS_PATTERN = re.compile(
    rf"The import of {_quoted('items')} from module {_quoted('module')} is redundant"
)
REDUNDANT_IMPORT_PATTERN = re.compile(
    rf"The (?P<qualified>qualified )?import of {_quoted('module')} is redundant"
)
MISSING_FIELDS_PATTERN = re.compile(
    rf"Fields of {_quoted('constructor')} not initiali[sz]ed:(?P<rest>.*)", re.DOTALL
)
TYPE_SIGNATURE_PATTERN = re.compile(
    r"Top-level binding with no type signature:(?P<rest>.*)", re.DOTALL
)
REDUNDANT_CONSTRAINT_PATTERN = re.compile(
    r"Redundant constraints?:(?P<rest>.*)", re.DOTALL
)
HIDDEN_PACKAGE_PATTERN = re.compile(
    rf"It is a member of the hidden package {_quoted('package')}"
)
PACKAGE_VERSION_PATTERN = re.compile(r"-\d+(?:\.\d+)*(?:[-@:].*)?$")

EXTENSION_NAME = r"(?P<extension>[A-Z][A-Za-z0-9]+)"
EXTENSION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"-X{EXTENSION_NAME}"),
    re.compile(rf"Perhaps you intended to use {EXTENSION_NAME}"),
    re.compile(rf"You may want to use {EXTENSION_NAME}"),
    re.compile(rf"Try enabling {EXTENSION_NAME}"),
    re.compile(rf"\b[Uu]se {EXTENSION_NAME}(?![\w.])"),
)
GHC_OPTION_PATTERN = re.compile(r"\bUse (?P<option>-[fW][a-z][\w-]*)")

TYPO_PATTERN = re.compile(
    r"Perhaps (?:you meant|use)(?: one of these)?:?(?P<rest>.*)", re.DOTALL
)
NOT_IN_SCOPE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Variable not in scope: (?P<name>[^\s:]+)"),
    re.compile(r"Data constructor not in scope: (?P<name>[^\s:]+)"),
    re.compile(rf"Not in scope: [^‘\n]*{_quoted('name')}"),
)

# Lines that end the free text following a "label:" in a message.
SECTION_END_PATTERN = re.compile(r"^\s*(?:•|In |\||\d+\s*\|)")

Rule = Callable[[Diagnostic, Sequence[str] | None], list[Suggestion]]


def _message(diagnostic: Diagnostic) -> str:
    return ASCII_QUOTED_PATTERN.sub(r"‘\1’", diagnostic.message)


def _collapse(text: str) -> str:
    return " ".join(text.split())


def _section(rest: str) -> list[str]:
    """Lines of ``rest`` up to the next bullet, context line or excerpt."""
    lines = rest.split("\n")
    section = [lines[0]]
    for line in lines[1:]:
        if SECTION_END_PATTERN.match(line):
            break
        section.append(line)
    return [line.strip() for line in section if line.strip()]


def _split_top_level(text: str) -> list[str]:
    """Split on commas that are not inside parentheses or brackets."""
    items: list[str] = []
    depth = 0
    current: list[str] = []
    for char in text:
        if char in "([":
            depth += 1
        elif char in ")]":
            depth -= 1
        if char == "," and depth == 0:
            items.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    items.append("".join(current).strip())
    return [item for item in items if item]


# =============================================================================
# Rules, in evaluation order
# =============================================================================


def add_import_item(
    diagnostic: Diagnostic, extensions: Sequence[str] | None = None
) -> list[Suggestion]:
    """"Perhaps you want to add ‘x’ to the import list in the import of ‘M’ (f:l:c-c)".

    The suggestion points at the import declaration named in parentheses.
    """
    match = ADD_IMPORT_ITEM_PATTERN.search(_collapse(_message(diagnostic)))
    if not match:
        return []
    location = diagnostic.span
    where = FILE_LOCATION_PATTERN.match(match.group("where"))
    if where:
        line, column, end_line, end_column = location_from_match(where)
        location = SourceSpan(
            file=diagnostic.file,
            line=line,
            column=column,
            end_line=end_line,
            end_column=end_column,
        )
    return [
        AddImportItem(
            location=location,
            module=match.group("module"),
            item=match.group("item"),
        )
    ]


def remove_import_item(
    diagnostic: Diagnostic, extensions: Sequence[str] | None = None
) -> list[Suggestion]:
    message = _collapse(_message(diagnostic))
    match = REDUNDANT_IMPORT_ITEMS_PATTERN.search(message)
    if match:
        return [
            RemoveImportItem(
                location=diagnostic.span,
                module=match.group("module"),
                items=tuple(_split_top_level(match.group("items"))),
            )
        ]
    match = REDUNDANT_IMPORT_PATTERN.search(message)
    if match:
        return [
            RemoveImportItem(
                location=diagnostic.span,
                module=match.group("module"),
                qualified=match.group("qualified") is not None,
            )
        ]
    return []


def add_missing_record_fields(
    diagnostic: Diagnostic, extensions: Sequence[str] | None = None
) -> list[Suggestion]:
    """Both "Fields of ‘C’ not initialised: a, b" and the one-field-per-line form."""
    match = MISSING_FIELDS_PATTERN.search(_message(diagnostic))
    if not match:
        return []
    lines = _section(match.group("rest"))
    if any("::" in line for line in lines):
        fields = [line.split("::", 1)[0].strip() for line in lines if "::" in line]
    else:
        fields = _split_top_level(" ".join(lines))
    fields = [field.rstrip(".") for field in fields if field]
    if not fields:
        return []
    return [
        AddMissingRecordFields(
            location=diagnostic.span,
            constructor=match.group("constructor"),
            fields=tuple(fields),
        )
    ]


def add_type_signature(
    diagnostic: Diagnostic, extensions: Sequence[str] | None = None
) -> list[Suggestion]:
    match = TYPE_SIGNATURE_PATTERN.search(_message(diagnostic))
    if not match:
        return []
    signature = _collapse(" ".join(_section(match.group("rest"))))
    if "::" not in signature:
        return []
    return [AddTypeSignature(location=diagnostic.span, signature=signature)]


def remove_redundant_constraint(
    diagnostic: Diagnostic, extensions: Sequence[str] | None = None
) -> list[Suggestion]:
    match = REDUNDANT_CONSTRAINT_PATTERN.search(_message(diagnostic))
    if not match:
        return []
    text = _collapse(" ".join(_section(match.group("rest"))))
    if text.startswith("(") and text.endswith(")"):
        text = text[1:-1]
    constraints = _split_top_level(text)
    if not constraints:
        return []
    return [
        RemoveRedundantConstraint(
            location=diagnostic.span, constraints=tuple(constraints)
        )
    ]


def enable_package(
    diagnostic: Diagnostic, extensions: Sequence[str] | None = None
) -> list[Suggestion]:
    match = HIDDEN_PACKAGE_PATTERN.search(_collapse(_message(diagnostic)))
    if not match:
        return []
    package = PACKAGE_VERSION_PATTERN.sub("", match.group("package"))
    return [EnablePackage(location=diagnostic.span, package=package)]


def add_extension(
    diagnostic: Diagnostic, extensions: Sequence[str] | None = None
) -> list[Suggestion]:
    """Extension names the message recommends, filtered by ``extensions``."""
    message = _collapse(_message(diagnostic))
    found: list[tuple[int, str]] = []
    for pattern in EXTENSION_PATTERNS:
        for match in pattern.finditer(message):
            found.append((match.start("extension"), match.group("extension")))

    names: list[str] = []
    for _, name in sorted(found):
        if name in names:
            continue
        if extensions and name not in extensions:
            continue
        names.append(name)
    return [AddExtension(location=diagnostic.span, extension=name) for name in names]


def add_ghc_option(
    diagnostic: Diagnostic, extensions: Sequence[str] | None = None
) -> list[Suggestion]:
    options: list[str] = []
    for match in GHC_OPTION_PATTERN.finditer(_collapse(_message(diagnostic))):
        option = match.group("option").rstrip("-")
        if option not in options:
            options.append(option)
    return [AddGhcOption(location=diagnostic.span, option=option) for option in options]


def fix_typo(
    diagnostic: Diagnostic, extensions: Sequence[str] | None = None
) -> list[Suggestion]:
    """"Perhaps you meant ‘x’" against the out-of-scope name, one per candidate."""
    message = _message(diagnostic)
    original = None
    for pattern in NOT_IN_SCOPE_PATTERNS:
        match = pattern.search(message)
        if match:
            original = match.group("name")
            break
    if original is None:
        return []

    match = TYPO_PATTERN.search(message)
    if not match:
        return []
    # "(imported from ‘Prelude’)" and "(line 12)" are not candidates.
    candidates = PARENTHESISED_PATTERN.sub("", " ".join(_section(match.group("rest"))))
    replacements: list[str] = []
    for name_match in QUOTED_NAME_PATTERN.finditer(candidates):
        name = name_match.group("name")
        if name != original and name not in replacements:
            replacements.append(name)
    return [
        FixTypo(location=diagnostic.span, original=original, replacement=replacement)
        for replacement in replacements
    ]


RULES: tuple[Rule, ...] = (
    add_import_item,
    remove_import_item,
    add_missing_record_fields,
    add_type_signature,
    remove_redundant_constraint,
    enable_package,
    add_extension,
    add_ghc_option,
    fix_typo,
)


def extract_suggestions(
    diagnostic: Diagnostic, *, extensions: Sequence[str] | None = None
) -> tuple[Suggestion, ...]:
    """Suggestions from the first rule that recognises the message.

    Args:
        diagnostic: The diagnostic to inspect; it is not modified.
        extensions: Supported language extensions, if known.

    Returns:
        The suggestions, or an empty tuple.
    """
    for rule in RULES:
        suggestions = rule(diagnostic, extensions)
        if suggestions:
            return tuple(suggestions)
    return ()

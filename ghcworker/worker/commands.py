"""Builders for worker commands.

Span-based queries take the file, the 1-based span and the identifier under
the cursor, with strings quoted the way the worker's argument parser reads
them. ``is_read_only`` decides which commands may use the secondary channel.
"""

from ghcworker.models import SourceSpan

# Commands that never change worker state.
READ_ONLY_COMMANDS: frozenset[str] = frozenset(
    {
        ":type-at",
        ":uses",
        ":loc-at",
        ":complete-at",
        ":info",
        ":i",
        ":type",
        ":t",
        ":kind",
        ":k",
        ":browse",
        ":browse!",
    }
)


def quote(text: str) -> str:
    """Double-quote a string argument, escaping backslashes, quotes and newlines."""
    escaped = text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def _span_query(name: str, span: SourceSpan, text: str) -> str:
    return (
        f":{name} {quote(span.file)} {span.line} {span.column} "
        f"{span.end_line} {span.end_column} {quote(text)}"
    )


def load(path: str) -> str:
    """``:l`` a module; paths containing whitespace are quoted."""
    if any(char.isspace() for char in path):
        return f":l {quote(path)}"
    return f":l {path}"


def reload() -> str:
    return ":r"


def type_at(span: SourceSpan, identifier: str) -> str:
    """Type of the expression covering ``span``."""
    return _span_query("type-at", span, identifier)


def uses(span: SourceSpan, identifier: str) -> str:
    """All uses of the identifier at ``span``."""
    return _span_query("uses", span, identifier)


def loc_at(span: SourceSpan, identifier: str) -> str:
    """Definition site of the identifier at ``span``."""
    return _span_query("loc-at", span, identifier)


def complete_at(span: SourceSpan, prefix: str) -> str:
    """Completions for ``prefix`` in the scope of ``span``."""
    return _span_query("complete-at", span, prefix)


def info(identifier: str) -> str:
    return f":i {identifier}"


def type_of(expression: str) -> str:
    return f":t {expression}"


def kind_of(type_expression: str) -> str:
    return f":k {type_expression}"


def browse(module: str) -> str:
    return f":browse! {module}"


def is_read_only(command: str) -> bool:
    """True if ``command`` is a query that leaves worker state untouched."""
    parts = command.strip().split(None, 1)
    if not parts:
        return False
    return parts[0] in READ_ONLY_COMMANDS

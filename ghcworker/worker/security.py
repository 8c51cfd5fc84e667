"""Validation for commands written to the worker and for project roots.

The primary channel is line-oriented and framed on a single marker byte, so
a command that smuggles a line break or the marker would desynchronise the
request queue from the response stream. Project roots are checked before a
worker is spawned in them.
"""

from pathlib import Path

# Characters that must never reach the worker's stdin inside a command.
BLOCKED_CHARACTERS: dict[str, str] = {
    "\n": "newline",
    "\r": "carriage return",
    "\x00": "null byte",
}


def validate_command(command: str, *, marker: str = "\x04") -> tuple[bool, str]:
    """Validate a command before it is written to the worker.

    Args:
        command: The command text, without the trailing newline.
        marker: The frame marker configured as the worker's prompt.

    Returns:
        A tuple of (is_valid, error_message).
        If valid, error_message is an empty string.

    Examples:
        >>> validate_command(":t map")
        (True, "")
        >>> validate_command(":t map\\n:q")
        (False, "Command contains newline")
    """
    if not command or not command.strip():
        return False, "Command cannot be empty"

    for char, name in BLOCKED_CHARACTERS.items():
        if char in command:
            return False, f"Command contains {name}"

    if marker and marker in command:
        return False, "Command contains the frame marker"

    return True, ""


def _is_under(path: Path, parent: str) -> bool:
    try:
        path.relative_to(Path(parent).expanduser().resolve())
    except (ValueError, OSError):
        return False
    return True


def validate_project_root(
    root: str,
    *,
    whitelist: list[str] | None = None,
    blacklist: list[str] | None = None,
) -> tuple[bool, str, str]:
    """Check that a worker may be started in ``root``.

    The root must be an existing directory. If a whitelist is given the root
    must lie under one of its entries; a root under any blacklist entry is
    rejected even when whitelisted.

    Args:
        root: Project directory, absolute or relative to the current directory.
        whitelist: Directories workers may run under (empty means any).
        blacklist: Directories workers must never run under.

    Returns:
        A tuple of (is_valid, error_message, resolved_root).
        If invalid, resolved_root is empty.

    Examples:
        >>> validate_project_root("/src/app", blacklist=["/src"])
        (False, "Project root is blacklisted: /src", "")
    """
    if not root:
        return False, "Project root cannot be empty", ""

    try:
        resolved = Path(root).expanduser().resolve()
    except (ValueError, OSError) as e:
        return False, f"Invalid project root: {e}", ""

    for entry in blacklist or []:
        if _is_under(resolved, entry):
            return False, f"Project root is blacklisted: {entry}", ""

    if whitelist and not any(_is_under(resolved, entry) for entry in whitelist):
        return False, f"Project root is not whitelisted: {resolved}", ""

    if not resolved.is_dir():
        return False, f"Project root is not a directory: {resolved}", ""

    return True, "", str(resolved)


def sanitize_output(output: str) -> str:
    """Normalise line endings of a decoded response body.

    Carriage returns before a newline and at the very end are removed.

    Args:
        output: The decoded frame body.

    Returns:
        The body with Unix line endings.
    """
    if not output:
        return ""
    return output.replace("\r\n", "\n").rstrip("\r")


def truncate_transcript(transcript: str, max_bytes: int) -> str:
    """Keep the tail of a transcript within ``max_bytes`` UTF-8 bytes.

    The end of a failing worker's output is where the cause is, so the head
    is dropped.
    """
    encoded = transcript.encode("utf-8")
    if max_bytes <= 0 or len(encoded) <= max_bytes:
        return transcript
    omitted = len(encoded) - max_bytes
    tail = encoded[-max_bytes:].decode("utf-8", errors="ignore")
    return f"[... {omitted} bytes omitted]\n{tail}"

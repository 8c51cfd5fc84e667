"""Source location syntax used in compiler messages.

Three forms are understood, tried in this order: ``(line,col)-(line,col)``,
``line:col-col`` and ``line:col``.
"""

import re

LOCATION = (
    r"(?:\((?P<span_line>\d+),(?P<span_col>\d+)\)-\((?P<span_end_line>\d+),(?P<span_end_col>\d+)\)"
    r"|(?P<range_line>\d+):(?P<range_col>\d+)-(?P<range_end_col>\d+)"
    r"|(?P<point_line>\d+):(?P<point_col>\d+))"
)

# A file path followed by a location, e.g. "src/Foo.hs:(3,1)-(5,10)".
# The path is matched lazily so drive letters such as "C:" stay in the path.
FILE_LOCATION_PATTERN = re.compile(rf"(?P<file>\S.*?):{LOCATION}")


def location_from_match(match: re.Match[str]) -> tuple[int, int, int, int]:
    """(line, column, end_line, end_column) from a match of ``LOCATION``."""
    if match.group("span_line") is not None:
        return (
            int(match.group("span_line")),
            int(match.group("span_col")),
            int(match.group("span_end_line")),
            int(match.group("span_end_col")),
        )
    if match.group("range_line") is not None:
        line = int(match.group("range_line"))
        return line, int(match.group("range_col")), line, int(match.group("range_end_col"))
    line = int(match.group("point_line"))
    column = int(match.group("point_col"))
    return line, column, line, column

"""Console formatting helpers shared by the CLI."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence


CLASS_TIME_FORMAT = "%a %d %b %H:%M"


def format_duration(seconds: float) -> str:
    """Render a duration as e.g. '2h 30m 15s'; negative values clamp to 0s."""
    total_secs = max(int(seconds), 0)
    hours, rest = divmod(total_secs, 3600)
    mins, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {mins}m {secs}s"
    if mins > 0:
        return f"{mins}m {secs}s"
    return f"{secs}s"


def truncate(value: str, max_len: int) -> str:
    if len(value) <= max_len:
        return value
    return f"{value[: max_len - 3]}..."


def format_class_time(moment: datetime) -> str:
    return moment.strftime(CLASS_TIME_FORMAT)


def render_table(headers: Sequence[str], widths: Sequence[int], rows: Iterable[Sequence[str]]) -> str:
    """Left-aligned fixed-width table with a dashed rule under the header."""
    def _line(cells: Sequence[str]) -> str:
        return " ".join(f"{cell:<{width}}" for cell, width in zip(cells, widths)).rstrip()

    lines = [_line(headers), "-" * (sum(widths) + len(widths) - 1)]
    lines.extend(_line(row) for row in rows)
    return "\n".join(lines)

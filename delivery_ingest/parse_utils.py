from __future__ import annotations

import math
import re
from datetime import date, datetime
from typing import Any, Iterable, Optional, Sequence


_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")
_LEADING_CURRENCY = ("¥", "￥", "$", "£", "€")
_TRAILING_CURRENCY = ("円",)

_ISO_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_COMPACT_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_SLASH_DOT_RE = re.compile(r"^(\d{4})[/.](\d{1,2})[/.](\d{1,2})$")
_KANJI_RE = re.compile(r"^(\d{4})年(\d{1,2})月(\d{1,2})日$")
_SHORT_YEAR_RE = re.compile(r"^(\d{2})[./](\d{2})[./](\d{2})$")


def parse_number(value: Any) -> Optional[float]:
    """Parse a raw cell into a finite number, or None when it is not numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None

    cleaned = re.sub(r"[,\s]", "", value)
    for glyph in _LEADING_CURRENCY:
        if cleaned.startswith(glyph):
            cleaned = cleaned[len(glyph):]
            break
    for glyph in _TRAILING_CURRENCY:
        if cleaned.endswith(glyph):
            cleaned = cleaned[: -len(glyph)]
            break

    if not cleaned or not _NUMBER_RE.match(cleaned):
        return None
    number = float(cleaned)
    return number if math.isfinite(number) else None


def normalize_number(value: Any) -> float:
    """Convert a raw cell into a number; anything unusable becomes 0."""
    number = parse_number(value)
    return 0.0 if number is None else number


def _iso(year: int, month: int, day: int) -> str:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return ""


def normalize_date(value: Any) -> str:
    """Return YYYY-MM-DD, or "" when the value is not a recognised date."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        # Compact YYYYMMDD typed into a numeric cell.
        if isinstance(value, float) and not (math.isfinite(value) and value.is_integer()):
            return ""
        value = str(int(value))
    if not isinstance(value, str):
        return ""

    cleaned = value.strip()
    for pattern in (_ISO_RE, _COMPACT_RE, _SLASH_DOT_RE, _KANJI_RE):
        match = pattern.match(cleaned)
        if match:
            year, month, day = (int(part) for part in match.groups())
            return _iso(year, month, day)

    match = _SHORT_YEAR_RE.match(cleaned)
    if match:
        year, month, day = (int(part) for part in match.groups())
        return _iso(2000 + year, month, day)

    return ""


def cell_text(value: Any) -> str:
    """Render a cell as trimmed text; integral floats lose their trailing .0."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.date().isoformat() if value.time() == datetime.min.time() else value.isoformat()
    return str(value).strip()


def is_blank(value: Any) -> bool:
    return cell_text(value) == ""


# ---------------------------------------------------------------------------
# Spreadsheet column letters
# ---------------------------------------------------------------------------

def column_letter_to_index(column: str) -> int:
    """"A" -> 0, "Z" -> 25, "AA" -> 26."""
    letters = column.strip().upper()
    if not letters or not letters.isascii() or not letters.isalpha():
        raise ValueError(f"Invalid column reference: {column!r}")
    result = 0
    for char in letters:
        result = result * 26 + (ord(char) - ord("A") + 1)
    return result - 1


def index_to_column_letter(index: int) -> str:
    if index < 0:
        raise ValueError(f"Column index must be non-negative: {index}")
    result = ""
    index += 1
    while index > 0:
        index -= 1
        result = chr(ord("A") + index % 26) + result
        index //= 26
    return result


# ---------------------------------------------------------------------------
# Grid helpers
# ---------------------------------------------------------------------------

def _as_keywords(keywords: str | Iterable[str]) -> tuple[str, ...]:
    if isinstance(keywords, str):
        return (keywords.casefold(),)
    return tuple(keyword.casefold() for keyword in keywords)


def cell_matches(cell: Any, keywords: str | Iterable[str]) -> bool:
    if not isinstance(cell, str):
        return False
    folded = cell.casefold()
    return any(keyword in folded for keyword in _as_keywords(keywords))


def find_row_index(
    rows: Sequence[Sequence[Any]],
    keywords: str | Iterable[str],
    start: int = 0,
    stop: Optional[int] = None,
) -> int:
    """Index of the first row with a cell containing any keyword (case-insensitive), else -1."""
    wanted = _as_keywords(keywords)
    end = len(rows) if stop is None else min(stop, len(rows))
    for index in range(max(start, 0), end):
        if any(cell_matches(cell, wanted) for cell in rows[index]):
            return index
    return -1


def value_after_keyword(row: Sequence[Any], keywords: str | Iterable[str]) -> Any:
    """Return the first non-empty cell to the right of the cell containing a keyword."""
    wanted = _as_keywords(keywords)
    for index, cell in enumerate(row):
        if cell_matches(cell, wanted):
            for candidate in row[index + 1 :]:
                if not is_blank(candidate):
                    return candidate
            return ""
    return ""

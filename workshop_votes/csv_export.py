"""CSV export of ranked results with protection against formula injection.

Spreadsheet applications execute cells starting with ``=``, ``+``, ``-`` or
``@`` (and some tab/CR-prefixed variants) as formulas. Such cells get a leading
single quote so they are shown as text.

See https://owasp.org/www-community/attacks/CSV_Injection
"""
import re
from typing import Any, Iterable, Mapping, Optional, Sequence

from . import schemas

RESULTS_HEADERS = ["Rank", "Feature", "Total Points", "Votes", "Effort", "Impact"]
REPORT_HEADERS = [
    "Rank",
    "Feature",
    "Description",
    "Total Points",
    "Votes",
    "Effort",
    "Impact",
]
MISSING_RATING = "N/A"

_FORMULA_PREFIX = re.compile(r"^[=+\-@\t\r]")
_NEEDS_QUOTES = re.compile(r'[",\r\n]')
_UNSAFE_CELL = re.compile(r"^[=+\-@]")


def _escape(value: str) -> str:
    escaped = value.replace('"', '""')
    if _NEEDS_QUOTES.search(value):
        escaped = f'"{escaped}"'
    return escaped


def sanitize_csv_cell(value: Any) -> str:
    """Stringify ``value`` into a single CSV cell safe to open in a spreadsheet.

    >>> sanitize_csv_cell("=1+1")
    "'=1+1"
    >>> sanitize_csv_cell("Normal text")
    'Normal text'
    >>> sanitize_csv_cell(None)
    ''
    """
    if value is None:
        return ""

    text = str(value)
    if not text.strip():
        return ""

    if _FORMULA_PREFIX.match(text):
        text = "'" + text
    return _escape(text)


def _rating(value: Optional[int]) -> str:
    return MISSING_RATING if value is None else str(value)


def export_results_csv(results: Sequence[schemas.FeatureWithVotes]) -> str:
    """Plain ranked export; rows keep the order of ``results``."""
    lines = [",".join(RESULTS_HEADERS)]
    for rank, feature in enumerate(results, start=1):
        title = '"' + feature.title.replace('"', '""') + '"'
        lines.append(
            ",".join(
                [
                    str(rank),
                    title,
                    str(feature.total_points),
                    str(feature.vote_count),
                    _rating(feature.effort),
                    _rating(feature.impact),
                ]
            )
        )
    return "\n".join(lines)


def array_to_csv(
    rows: Sequence[Mapping[str, Any]], headers: Optional[Sequence[str]] = None
) -> str:
    if not rows:
        return ""

    columns = list(headers) if headers else list(rows[0].keys())
    lines = [",".join(sanitize_csv_cell(column) for column in columns)]
    for row in rows:
        lines.append(",".join(sanitize_csv_cell(row.get(column)) for column in columns))
    return "\n".join(lines)


def results_report_csv(results: Iterable[schemas.FeatureWithVotes]) -> str:
    rows = [
        {
            "Rank": rank,
            "Feature": feature.title,
            "Description": feature.description,
            "Total Points": feature.total_points,
            "Votes": feature.vote_count,
            "Effort": feature.effort,
            "Impact": feature.impact,
        }
        for rank, feature in enumerate(results, start=1)
    ]
    if not rows:
        return ",".join(REPORT_HEADERS)
    return array_to_csv(rows, REPORT_HEADERS)


def validate_csv_safety(csv: str) -> tuple[bool, list[str]]:
    """Look for cells that would still run as formulas.

    Cells are split naively on commas, so quoted commas can produce false
    positives. Meant as a last check before serving a download.
    """
    warnings = []
    for line_no, line in enumerate(csv.split("\n"), start=1):
        for cell_no, cell in enumerate(line.split(","), start=1):
            stripped = cell.strip()
            if stripped.startswith('"'):
                stripped = stripped[1:]
            if stripped.endswith('"'):
                stripped = stripped[:-1]
            if _UNSAFE_CELL.match(stripped):
                warnings.append(
                    f"Line {line_no}, Cell {cell_no}: "
                    f"Potential formula injection ({stripped[:20]}...)"
                )
    return not warnings, warnings


def report_filename(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "_", name, flags=re.IGNORECASE) + "_results.csv"

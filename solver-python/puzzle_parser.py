#!/usr/bin/env python3
"""
Puzzle readers: turn an external puzzle representation into a Grid.

Supported sources:
- Plain text rows: digits are clues, '.', '-', '_', '?' or a space are blank cells
- JSON: {"rows": [...]}, {"width", "height", "clues": [[...]]} or {"loopy": "<game id>"}
- Loopy game IDs for square grids, e.g. "5x5t0:a2b3..."
- Puzzle-page HTML where every cell is a "loop-task-cell" element positioned by
  its top/left style and holding its clue digit as text

All malformed input is rejected here with MalformedPuzzleError, before solving.
API request bodies are read here too: grid_from_request for the puzzle and
solver_settings_from_request for the solver settings (InvalidSettingsError).
"""

import json
import re
from html.parser import HTMLParser
from typing import Dict, List, Optional, Tuple

from slitherlink_solver import (
    MAX_CLUE, Grid, InvalidSettingsError, MalformedPuzzleError, default_max_iterations, iteration_cap,
)

BLANK_CHARS = set('.-_? ')
COMMENT_PREFIX = '#'
CELL_CLASS_PREFIX = 'loop-task-cell'
DEFAULT_MAX_TIME_SECONDS = 60

# WxH, then optional params (t = grid type, d = difficulty), then ':' and the description
LOOPY_ID_RE = re.compile(r'^(\d+)x(\d+)([^:]*):([0-9a-z]*)$')
LOOPY_TYPE_RE = re.compile(r't(\d+)')
SQUARE_GRID_TYPE = 0

# Elements that never get an end tag
VOID_ELEMENTS = {'area', 'base', 'br', 'col', 'embed', 'hr', 'img', 'input', 'link', 'meta', 'source', 'wbr'}


def _parse_clue_char(ch: str, row: int, col: int) -> Optional[int]:
    if ch in BLANK_CHARS:
        return None
    if ch.isdigit():
        value = int(ch)
        if value > MAX_CLUE:
            raise MalformedPuzzleError(f"Clue at ({row}, {col}) must be 0-{MAX_CLUE}, got {value}")
        return value
    raise MalformedPuzzleError(f"Unexpected character {ch!r} at ({row}, {col})")


def _parse_row_string(line: str, row: int) -> List[Optional[int]]:
    # Every character is one cell, so "3 2" is three cells with a blank in the middle
    return [_parse_clue_char(ch, row, col) for col, ch in enumerate(line.rstrip('\r\n'))]


def parse_text(source: str) -> Grid:
    """
    Parse one row per line. Empty lines and '#' comments are skipped; a line of
    spaces is a row of blank cells, so it still has to match the grid width.
    """
    rows = []
    for line in source.splitlines():
        if not line or line.lstrip().startswith(COMMENT_PREFIX):
            continue
        rows.append(_parse_row_string(line, len(rows)))

    if not rows:
        raise MalformedPuzzleError("Puzzle text contains no rows")
    widths = {len(row) for row in rows}
    if len(widths) != 1:
        raise MalformedPuzzleError(f"Rows have different lengths: {sorted(widths)}")
    return Grid.from_rows(rows)


def _parse_json_cell(value, row: int, col: int) -> Optional[int]:
    # -1 and "." both mean "no clue", as in the usual integer-matrix encodings
    if value is None or value == -1:
        return None
    if isinstance(value, str) and len(value) == 1:
        return _parse_clue_char(value, row, col)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    raise MalformedPuzzleError(f"Unexpected clue value {value!r} at ({row}, {col})")


def grid_from_json(data: dict) -> Grid:
    """Build a Grid from an already-decoded JSON object."""
    if not isinstance(data, dict):
        raise MalformedPuzzleError("Puzzle JSON must be an object")

    if 'loopy' in data:
        if not isinstance(data['loopy'], str):
            raise MalformedPuzzleError("'loopy' must be a game ID string")
        return parse_loopy_id(data['loopy'])

    if 'rows' in data:
        rows = data['rows']
        if not isinstance(rows, list) or not rows:
            raise MalformedPuzzleError("'rows' must be a non-empty list")
        parsed = []
        for r, row in enumerate(rows):
            if isinstance(row, str):
                parsed.append(_parse_row_string(row, r))
            elif isinstance(row, list):
                parsed.append([_parse_json_cell(v, r, c) for c, v in enumerate(row)])
            else:
                raise MalformedPuzzleError(f"Row {r} must be a string or a list")
        return Grid.from_rows(parsed)

    if 'clues' in data:
        clues = data['clues']
        if not isinstance(clues, list) or not all(isinstance(row, list) for row in clues):
            raise MalformedPuzzleError("'clues' must be a list of rows, each a list")
        parsed = [[_parse_json_cell(v, r, c) for c, v in enumerate(row)] for r, row in enumerate(clues)]
        height = data.get('height', len(parsed))
        width = data.get('width', len(parsed[0]) if parsed else 0)
        return Grid(width=width, height=height, clues=tuple(tuple(row) for row in parsed))

    raise MalformedPuzzleError("Puzzle JSON needs one of: 'rows', 'clues', 'loopy'")


def parse_json(source: str) -> Grid:
    try:
        data = json.loads(source)
    except json.JSONDecodeError as e:
        raise MalformedPuzzleError(f"Invalid JSON: {e}") from e
    return grid_from_json(data)


def parse_loopy_id(game_id: str) -> Grid:
    """
    Decode a Loopy game ID. Digits are clues; a letter is a run of blank cells
    ('a' = 1, 'b' = 2, ... 'z' = 26).
    """
    match = LOOPY_ID_RE.match(game_id.strip())
    if not match:
        raise MalformedPuzzleError(f"Not a Loopy game ID: {game_id!r}")
    width, height, params, desc = int(match.group(1)), int(match.group(2)), match.group(3), match.group(4)

    type_match = LOOPY_TYPE_RE.search(params)
    if type_match and int(type_match.group(1)) != SQUARE_GRID_TYPE:
        raise MalformedPuzzleError(f"Only square grids (t0) are supported, got t{type_match.group(1)}")

    cells: List[Optional[int]] = []
    for ch in desc:
        if ch.isdigit():
            cells.append(_parse_clue_char(ch, len(cells) // max(width, 1), len(cells) % max(width, 1)))
        else:
            cells.extend([None] * (ord(ch) - ord('a') + 1))

    if len(cells) != width * height:
        raise MalformedPuzzleError(f"Description covers {len(cells)} cells, expected {width * height}")
    rows = [cells[r * width:(r + 1) * width] for r in range(height)]
    return Grid(width=width, height=height, clues=tuple(tuple(row) for row in rows))


class LoopTaskParser(HTMLParser):
    """
    Collects puzzle cells from a puzzle page.

    Cells come in row-major document order. The grid size is the number of
    distinct `top:` and `left:` positions seen in the cell styles.
    """

    def __init__(self):
        super().__init__()
        self.cell_count = 0
        self.tops = set()
        self.lefts = set()
        self.texts: Dict[int, str] = {}
        self._depth = 0  # open tags inside the current cell, 0 = outside

    def handle_starttag(self, tag, attrs):
        if self._depth:
            if tag not in VOID_ELEMENTS:
                self._depth += 1
            return

        attrs = dict(attrs)
        if not (attrs.get('class') or '').startswith(CELL_CLASS_PREFIX):
            return

        self.cell_count += 1
        for entry in (attrs.get('style') or '').split(';'):
            key, _, value = entry.partition(':')
            key = key.strip()
            if key == 'top':
                self.tops.add(value.strip())
            elif key == 'left':
                self.lefts.add(value.strip())
        if tag not in VOID_ELEMENTS:
            self._depth = 1

    def handle_startendtag(self, tag, attrs):
        # <div class="loop-task-cell" /> is a cell with no clue
        depth = self._depth
        self.handle_starttag(tag, attrs)
        self._depth = depth

    def handle_endtag(self, tag):
        if self._depth:
            self._depth -= 1

    def handle_data(self, data):
        if self._depth and data.strip():
            index = self.cell_count - 1
            self.texts[index] = self.texts.get(index, '') + data.strip()


def parse_html(source: str) -> Grid:
    parser = LoopTaskParser()
    parser.feed(source)
    parser.close()

    width, height = len(parser.lefts), len(parser.tops)
    if parser.cell_count == 0:
        raise MalformedPuzzleError(f"No '{CELL_CLASS_PREFIX}' elements found")
    if width * height != parser.cell_count:
        raise MalformedPuzzleError(
            f"Found {parser.cell_count} cells but {width} columns x {height} rows of positions")

    clue_map: Dict[Tuple[int, int], int] = {}
    for index, text in parser.texts.items():
        row, col = divmod(index, width)
        if not text.isdigit():
            raise MalformedPuzzleError(f"Cell ({row}, {col}) has non-numeric text {text!r}")
        clue_map[(row, col)] = int(text)
    return Grid.from_clue_map(width, height, clue_map)


def detect_format(source: str) -> str:
    stripped = source.strip()
    if stripped.startswith('{'):
        return 'json'
    if stripped.startswith('<'):
        return 'html'
    if LOOPY_ID_RE.match(stripped):
        return 'loopy'
    return 'text'


PARSERS = {
    'json': parse_json,
    'text': parse_text,
    'loopy': parse_loopy_id,
    'html': parse_html,
}


def parse_puzzle(source: str, fmt: str = 'auto') -> Grid:
    """Parse a puzzle in the given format ('auto' guesses from the content)."""
    if fmt == 'auto':
        fmt = detect_format(source)
    if fmt not in PARSERS:
        raise MalformedPuzzleError(f"Unknown puzzle format {fmt!r}")
    return PARSERS[fmt](source)


def grid_from_request(data: dict) -> Grid:
    """
    Grid from an API request body: either inline JSON ("rows" / "clues" / "loopy")
    or a raw puzzle string in "puzzle" with an optional "format".
    """
    if 'puzzle' in data:
        if not isinstance(data['puzzle'], str):
            raise MalformedPuzzleError("'puzzle' must be a string")
        return parse_puzzle(data['puzzle'], fmt=data.get('format', 'auto'))
    return grid_from_json(data)


def _number_setting(data: dict, key: str, default, integer: bool = False):
    value = data.get(key, default)
    kinds = (int,) if integer else (int, float)
    # bool is an int subclass, reject it explicitly
    if isinstance(value, bool) or not isinstance(value, kinds):
        kind = "an integer" if integer else "a number"
        raise InvalidSettingsError(f"'{key}' must be {kind}, got {value!r}")
    return value


def solver_settings_from_request(data: dict, max_time_cap: Optional[float] = None) -> dict:
    """
    SolverInput keyword arguments from an API request body.

    "max_iterations" of null, 0 or below means unbounded, as on the command line.
    "max_time_seconds" must be positive and is clamped to max_time_cap when given.
    """
    if data.get('max_iterations', 0) is None:
        max_iterations = None
    else:
        max_iterations = _number_setting(data, 'max_iterations', default_max_iterations() or 0, integer=True)
        max_iterations = iteration_cap(max_iterations)

    max_time = _number_setting(data, 'max_time_seconds', DEFAULT_MAX_TIME_SECONDS)
    if max_time <= 0:
        raise InvalidSettingsError(f"'max_time_seconds' must be positive, got {max_time!r}")
    if max_time_cap is not None:
        max_time = min(max_time, max_time_cap)

    num_workers = _number_setting(data, 'num_workers', 1, integer=True)
    if num_workers < 1:
        raise InvalidSettingsError(f"'num_workers' must be at least 1, got {num_workers!r}")

    warm_start = data.get('warm_start', False)
    if not isinstance(warm_start, bool):
        raise InvalidSettingsError(f"'warm_start' must be true or false, got {warm_start!r}")

    return {
        'max_iterations': max_iterations,
        'max_time_seconds': max_time,
        'num_workers': num_workers,
        'warm_start': warm_start,
    }

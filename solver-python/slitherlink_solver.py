#!/usr/bin/env python3
"""
Slitherlink Solver using OR-Tools CP-SAT with lazy loop elimination.

The solver finds the single closed loop that:
1. Touches exactly N sides of every cell carrying a clue N
2. Passes through every grid vertex either 0 or 2 times (no dead ends, no crossings)
3. Forms ONE cycle covering every drawn edge

KEY INSIGHT: Rules 1 and 2 are cheap linear constraints, rule 3 is not.
We solve the relaxed model (clues + vertex parity), trace the cycles in the
returned model, and if there is more than one we forbid the smallest cycle and
solve again. Spurious loops are eliminated one at a time, only when they show up.
"""

import argparse
import json
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional, Set, Tuple

import numpy as np
from ortools.sat.python import cp_model

# =============================================================================
# DOMAIN DEFINITIONS
# =============================================================================

MAX_CLUE = 4  # A 4 only fits an isolated one-cell square, but it is a legal count
DEFAULT_MAX_ITERATIONS = 1000
MAX_ITERATIONS_ENV = 'SLITHER_MAX_ITERATIONS'

HORIZONTAL = 'h'  # "top" edge of cell (row, col)
VERTICAL = 'v'    # "left" edge of cell (row, col)

# Result statuses reported in SolverOutput.status
STATUS_SOLVED = 'SOLVED'
STATUS_INFEASIBLE = 'INFEASIBLE'
STATUS_UNKNOWN = 'UNKNOWN'
STATUS_INCONCLUSIVE = 'INCONCLUSIVE'
STATUS_INVALID = 'INVALID_PUZZLE'
STATUS_INVALID_SETTINGS = 'INVALID_SETTINGS'

# Renderer glyphs
VERTEX_GLYPH = '·'
H_LINE = '───'
H_BLANK = '   '
V_LINE = '│'


# =============================================================================
# ERRORS
# =============================================================================

class SlitherlinkError(Exception):
    """Base class for every failure raised by the solver."""
    pass


class MalformedPuzzleError(SlitherlinkError, ValueError):
    """Raised when grid data is inconsistent (bad dimensions, clue out of range)."""
    pass


class UnsatisfiableModelError(SlitherlinkError):
    """Raised when the backend proves the accumulated constraints infeasible."""
    pass


class BackendIndeterminateError(SlitherlinkError):
    """Raised when the backend gives up without a SAT/UNSAT answer."""
    pass


class RefinementLimitError(SlitherlinkError):
    """
    Raised when the refinement loop exceeds its iteration cap.

    This is an inconclusive outcome, not a proof that the puzzle has no loop.
    """

    def __init__(self, message: str, limit: int = None, observed: int = None):
        super().__init__(message)
        self.limit = limit
        self.observed = observed


class TraceError(SlitherlinkError, ValueError):
    """Raised when a traced walk hits a dangling endpoint (vertex parity broken)."""
    pass


class InvalidSettingsError(SlitherlinkError, ValueError):
    """Raised when solver settings from a request have the wrong type or range."""
    pass


# =============================================================================
# GRID MODEL
# =============================================================================

class Edge(NamedTuple):
    kind: str  # HORIZONTAL or VERTICAL
    row: int
    col: int

    @property
    def label(self) -> str:
        prefix = 'top' if self.kind == HORIZONTAL else 'left'
        return f'{prefix}_{self.row}_{self.col}'

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'row': self.row, 'col': self.col}


@dataclass(frozen=True)
class Grid:
    """Immutable puzzle: dimensions plus an optional clue per cell (row-major)."""
    width: int
    height: int
    clues: Tuple[Tuple[Optional[int], ...], ...]

    def __post_init__(self):
        if not isinstance(self.width, int) or not isinstance(self.height, int):
            raise MalformedPuzzleError(f"Grid dimensions must be integers, got {self.width!r}x{self.height!r}")
        if self.width < 1 or self.height < 1:
            raise MalformedPuzzleError(f"Grid dimensions must be positive, got {self.width}x{self.height}")
        if len(self.clues) != self.height:
            raise MalformedPuzzleError(f"Expected {self.height} clue rows, got {len(self.clues)}")
        for r, row in enumerate(self.clues):
            if len(row) != self.width:
                raise MalformedPuzzleError(f"Row {r} has {len(row)} cells, expected {self.width}")
            for c, value in enumerate(row):
                if value is None:
                    continue
                # bool is an int subclass, reject it explicitly
                if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= MAX_CLUE:
                    raise MalformedPuzzleError(f"Clue at ({r}, {c}) must be 0-{MAX_CLUE}, got {value!r}")

    @classmethod
    def from_rows(cls, rows: List[List[Optional[int]]]) -> 'Grid':
        if not rows:
            raise MalformedPuzzleError("Puzzle has no rows")
        return cls(width=len(rows[0]), height=len(rows), clues=tuple(tuple(row) for row in rows))

    @classmethod
    def from_clue_map(cls, width: int, height: int, clue_map: Dict[Tuple[int, int], int]) -> 'Grid':
        rows = [[None] * width for _ in range(height)]
        for (r, c), value in clue_map.items():
            if not (0 <= r < height and 0 <= c < width):
                raise MalformedPuzzleError(f"Clue position ({r}, {c}) is outside the {width}x{height} grid")
            rows[r][c] = value
        return cls(width=width, height=height, clues=tuple(tuple(row) for row in rows))

    def clue(self, row: int, col: int) -> Optional[int]:
        return self.clues[row][col]

    def clued_cells(self) -> Iterator[Tuple[int, int, int]]:
        for r in range(self.height):
            for c in range(self.width):
                value = self.clues[r][c]
                if value is not None:
                    yield r, c, value

    def cell_edges(self, row: int, col: int) -> List[Edge]:
        """The four sides of a cell: top, left, bottom, right."""
        return [
            Edge(HORIZONTAL, row, col),
            Edge(VERTICAL, row, col),
            Edge(HORIZONTAL, row + 1, col),
            Edge(VERTICAL, row, col + 1),
        ]

    def vertex_edges(self, row: int, col: int) -> List[Edge]:
        """Edges incident to vertex (row, col); 2 at corners, 3 on borders, 4 inside."""
        edges = []
        if row < self.height:
            edges.append(Edge(VERTICAL, row, col))
        if row > 0:
            edges.append(Edge(VERTICAL, row - 1, col))
        if col < self.width:
            edges.append(Edge(HORIZONTAL, row, col))
        if col > 0:
            edges.append(Edge(HORIZONTAL, row, col - 1))
        return edges

    def has_edge(self, edge: Edge) -> bool:
        if edge.kind == HORIZONTAL:
            return 0 <= edge.row <= self.height and 0 <= edge.col < self.width
        return 0 <= edge.row < self.height and 0 <= edge.col <= self.width

    def all_edges(self) -> Iterator[Edge]:
        """Horizontal edges row-major, then vertical edges row-major."""
        for r in range(self.height + 1):
            for c in range(self.width):
                yield Edge(HORIZONTAL, r, c)
        for r in range(self.height):
            for c in range(self.width + 1):
                yield Edge(VERTICAL, r, c)

    def to_dict(self) -> dict:
        return {'width': self.width, 'height': self.height, 'clues': [list(row) for row in self.clues]}


@dataclass
class EdgeAssignment:
    """
    Selected/unselected state of every edge, as two dense boolean arrays.

    horizontal[r, c] is top(r, c), shape (height + 1, width)
    vertical[r, c]   is left(r, c), shape (height, width + 1)
    """
    horizontal: np.ndarray
    vertical: np.ndarray

    @classmethod
    def empty(cls, width: int, height: int) -> 'EdgeAssignment':
        return cls(
            horizontal=np.zeros((height + 1, width), dtype=bool),
            vertical=np.zeros((height, width + 1), dtype=bool),
        )

    @classmethod
    def from_edges(cls, width: int, height: int, edges) -> 'EdgeAssignment':
        assignment = cls.empty(width, height)
        for edge in edges:
            edge = Edge(*edge)
            if edge.kind == HORIZONTAL:
                assignment.horizontal[edge.row, edge.col] = True
            else:
                assignment.vertical[edge.row, edge.col] = True
        return assignment

    @property
    def width(self) -> int:
        return self.horizontal.shape[1]

    @property
    def height(self) -> int:
        return self.vertical.shape[0]

    def has_edge(self, edge: Edge) -> bool:
        array = self.horizontal if edge.kind == HORIZONTAL else self.vertical
        rows, cols = array.shape
        return 0 <= edge.row < rows and 0 <= edge.col < cols

    def is_set(self, edge: Edge) -> bool:
        """True if the edge exists in the grid and is selected."""
        if not self.has_edge(edge):
            return False
        array = self.horizontal if edge.kind == HORIZONTAL else self.vertical
        return bool(array[edge.row, edge.col])

    def true_horizontal(self) -> List[Edge]:
        return [Edge(HORIZONTAL, int(r), int(c)) for r, c in np.argwhere(self.horizontal)]

    def true_edges(self) -> List[Edge]:
        return self.true_horizontal() + [Edge(VERTICAL, int(r), int(c)) for r, c in np.argwhere(self.vertical)]

    def edge_count(self) -> int:
        return int(self.horizontal.sum() + self.vertical.sum())

    def vertex_degrees(self) -> np.ndarray:
        """Selected-edge count at every vertex, shape (height + 1, width + 1)."""
        h = self.horizontal.astype(np.int8)
        v = self.vertical.astype(np.int8)
        degrees = np.zeros((self.height + 1, self.width + 1), dtype=np.int8)
        degrees[:, :-1] += h
        degrees[:, 1:] += h
        degrees[:-1, :] += v
        degrees[1:, :] += v
        return degrees

    def clue_counts(self) -> np.ndarray:
        """Selected sides of every cell, shape (height, width)."""
        h = self.horizontal.astype(np.int8)
        v = self.vertical.astype(np.int8)
        return h[:-1, :] + h[1:, :] + v[:, :-1] + v[:, 1:]

    def to_dict(self) -> dict:
        return {
            'horizontal': self.horizontal.astype(int).tolist(),
            'vertical': self.vertical.astype(int).tolist(),
        }


# =============================================================================
# SOLVER BACKEND (CP-SAT)
# =============================================================================

class SatResult(Enum):
    SAT = 'SAT'
    UNSAT = 'UNSAT'
    UNKNOWN = 'UNKNOWN'


class CpSatBackend:
    """
    Append-only pseudo-boolean model on top of CP-SAT.

    Constraints are only ever added. Each check() runs a fresh CpSolver over
    everything asserted so far and keeps it around so value() can read the model.
    """

    def __init__(self, max_time_seconds: Optional[float] = None, num_workers: int = 1,
                 log_search_progress: bool = False):
        self.model = cp_model.CpModel()
        self.max_time_seconds = max_time_seconds
        self.num_workers = num_workers
        self.log_search_progress = log_search_progress
        self.num_constraints = 0
        self.checks = 0
        self.wall_time = 0.0
        self.branches = 0
        self.conflicts = 0
        self.last_status_name = None
        self._solver = None

    def new_bool(self, label: str):
        return self.model.NewBoolVar(label)

    def add_weighted_sum_equals(self, terms: List[Tuple[object, int]], target: int):
        """Assert sum(weight * var) == target."""
        self.model.Add(sum(weight * var for var, weight in terms) == target)
        self.num_constraints += 1

    def add_weighted_sum_in(self, terms: List[Tuple[object, int]], values: List[int]):
        """Assert sum(weight * var) takes one of the given values."""
        expr = sum(weight * var for var, weight in terms)
        self.model.AddLinearExpressionInDomain(expr, cp_model.Domain.FromValues(list(values)))
        self.num_constraints += 1

    def add_not_all(self, literals: List[object]):
        """Assert NOT(l1 AND l2 AND ...), i.e. at least one literal is false."""
        self.model.AddBoolOr([lit.Not() for lit in literals])
        self.num_constraints += 1

    def hint(self, values: List[Tuple[object, bool]]):
        """Replace the warm-start hint with the given (var, value) pairs."""
        self.model.ClearHints()
        for var, value in values:
            self.model.AddHint(var, int(value))

    def check(self) -> SatResult:
        solver = cp_model.CpSolver()
        if self.max_time_seconds:
            solver.parameters.max_time_in_seconds = self.max_time_seconds
        solver.parameters.num_workers = self.num_workers
        solver.parameters.log_search_progress = self.log_search_progress

        status = solver.Solve(self.model)

        self._solver = solver
        self.checks += 1
        self.wall_time += solver.WallTime()
        self.branches += solver.NumBranches()
        self.conflicts += solver.NumConflicts()
        self.last_status_name = solver.StatusName(status)

        if status in (cp_model.OPTIMAL, cp_model.FEASIBLE):
            return SatResult.SAT
        if status == cp_model.INFEASIBLE:
            return SatResult.UNSAT
        # UNKNOWN (timeout) and MODEL_INVALID both leave us without an answer
        return SatResult.UNKNOWN

    def value(self, var) -> bool:
        if self._solver is None:
            raise RuntimeError("value() called before a successful check()")
        return bool(self._solver.BooleanValue(var))

    def stats(self) -> dict:
        return {
            'backend': 'cp-sat',
            'checks': self.checks,
            'constraints': self.num_constraints,
            'time_seconds': round(self.wall_time, 4),
            'branches': self.branches,
            'conflicts': self.conflicts,
            'last_status': self.last_status_name,
        }


def require_sat(result: SatResult, context: str):
    """Turn a non-SAT answer into the matching fatal error."""
    if result == SatResult.SAT:
        return
    if result == SatResult.UNSAT:
        raise UnsatisfiableModelError(f"Model is unsatisfiable {context}")
    raise BackendIndeterminateError(f"Backend could not decide the model {context}")


# =============================================================================
# CONSTRAINT ENCODER
# =============================================================================

@dataclass
class EdgeVariables:
    """One backend boolean per grid edge, stored densely per orientation."""
    width: int
    height: int
    horizontal: List[List[object]]  # [row 0..height][col 0..width-1]
    vertical: List[List[object]]    # [row 0..height-1][col 0..width]

    def get(self, edge: Edge):
        if edge.kind == HORIZONTAL:
            return self.horizontal[edge.row][edge.col]
        return self.vertical[edge.row][edge.col]

    def items(self) -> Iterator[Tuple[Edge, object]]:
        for r in range(self.height + 1):
            for c in range(self.width):
                yield Edge(HORIZONTAL, r, c), self.horizontal[r][c]
        for r in range(self.height):
            for c in range(self.width + 1):
                yield Edge(VERTICAL, r, c), self.vertical[r][c]

    def read_assignment(self, value: Callable[[object], bool]) -> EdgeAssignment:
        """Evaluate every variable against the current model."""
        assignment = EdgeAssignment.empty(self.width, self.height)
        for r in range(self.height + 1):
            for c in range(self.width):
                assignment.horizontal[r, c] = value(self.horizontal[r][c])
        for r in range(self.height):
            for c in range(self.width + 1):
                assignment.vertical[r, c] = value(self.vertical[r][c])
        return assignment


def create_edge_variables(grid: Grid, backend) -> EdgeVariables:
    horizontal = [
        [backend.new_bool(Edge(HORIZONTAL, r, c).label) for c in range(grid.width)]
        for r in range(grid.height + 1)
    ]
    vertical = [
        [backend.new_bool(Edge(VERTICAL, r, c).label) for c in range(grid.width + 1)]
        for r in range(grid.height)
    ]
    return EdgeVariables(width=grid.width, height=grid.height, horizontal=horizontal, vertical=vertical)


def add_clue_constraints(grid: Grid, backend, variables: EdgeVariables) -> int:
    """Each clued cell has exactly `clue` of its four sides selected."""
    added = 0
    for r, c, value in grid.clued_cells():
        terms = [(variables.get(edge), 1) for edge in grid.cell_edges(r, c)]
        backend.add_weighted_sum_equals(terms, value)
        added += 1
    return added


def add_vertex_constraints(grid: Grid, backend, variables: EdgeVariables) -> int:
    """Every vertex has 0 or 2 selected edges: no dead ends, no crossings."""
    added = 0
    for r in range(grid.height + 1):
        for c in range(grid.width + 1):
            terms = [(variables.get(edge), 1) for edge in grid.vertex_edges(r, c)]
            backend.add_weighted_sum_in(terms, [0, 2])
            added += 1
    return added


def encode_puzzle(grid: Grid, backend, check: bool = True, verbose: bool = False) -> EdgeVariables:
    """
    Build edge variables plus clue and vertex-parity constraints.

    With check=True the base model is checked once; an UNSAT answer here means
    the puzzle itself is broken, so it is raised rather than retried.
    """
    variables = create_edge_variables(grid, backend)
    clue_count = add_clue_constraints(grid, backend, variables)
    vertex_count = add_vertex_constraints(grid, backend, variables)

    if verbose:
        edge_count = (grid.height + 1) * grid.width + grid.height * (grid.width + 1)
        print(f"DEBUG: Encoded {grid.width}x{grid.height} grid: {edge_count} edge variables, "
              f"{clue_count} clue constraints, {vertex_count} vertex constraints", flush=True)

    if check:
        require_sat(backend.check(), "before refinement (clue and vertex constraints)")
    return variables


# =============================================================================
# CYCLE EXTRACTOR
# =============================================================================

class Direction(Enum):
    """
    Side of the current cell the walker is tracing, which fixes its heading:
    TOP heads east along top(r, c), RIGHT heads south along left(r, c + 1),
    BOTTOM heads west along top(r + 1, c), LEFT heads north along left(r, c).
    """
    TOP = 'top'
    RIGHT = 'right'
    BOTTOM = 'bottom'
    LEFT = 'left'


# Candidate moves per direction, in priority order: turn left, go straight, turn right.
# Each entry: (edge kind, edge row offset, edge col offset, next direction, row move, col move)
# Offsets are relative to the walker's cell before the move. The edge just walked
# is never among the candidates, so at a degree-2 vertex exactly one candidate is set.
TRANSITIONS: Dict[Direction, List[Tuple[str, int, int, Direction, int, int]]] = {
    Direction.TOP: [
        (VERTICAL, -1, 1, Direction.LEFT, -1, 1),
        (HORIZONTAL, 0, 1, Direction.TOP, 0, 1),
        (VERTICAL, 0, 1, Direction.RIGHT, 0, 0),
    ],
    Direction.RIGHT: [
        (HORIZONTAL, 1, 1, Direction.TOP, 1, 1),
        (VERTICAL, 1, 1, Direction.RIGHT, 1, 0),
        (HORIZONTAL, 1, 0, Direction.BOTTOM, 0, 0),
    ],
    Direction.BOTTOM: [
        (VERTICAL, 1, 0, Direction.RIGHT, 1, -1),
        (HORIZONTAL, 1, -1, Direction.BOTTOM, 0, -1),
        (VERTICAL, 0, 0, Direction.LEFT, 0, 0),
    ],
    Direction.LEFT: [
        (HORIZONTAL, 0, -1, Direction.BOTTOM, -1, -1),
        (VERTICAL, -1, 0, Direction.LEFT, -1, 0),
        (HORIZONTAL, 0, 0, Direction.TOP, 0, 0),
    ],
}


def trace_cycle(assignment: EdgeAssignment, start: Edge) -> List[Edge]:
    """
    Walk the loop through a selected horizontal edge, heading east first.

    Returns the edges in walk order, starting with `start`, without repeating it.
    """
    if start.kind != HORIZONTAL or not assignment.is_set(start):
        raise TraceError(f"Cycle trace must start on a selected horizontal edge, got {start}")

    row, col = start.row, start.col
    direction = Direction.TOP
    chain = [start]
    # A simple cycle cannot be longer than the number of selected edges
    max_steps = assignment.edge_count()

    while True:
        for kind, edge_dr, edge_dc, next_direction, move_dr, move_dc in TRANSITIONS[direction]:
            candidate = Edge(kind, row + edge_dr, col + edge_dc)
            if assignment.is_set(candidate):
                row += move_dr
                col += move_dc
                direction = next_direction
                break
        else:
            raise TraceError(f"Dangling endpoint after {chain[-1]} (vertex parity violated)")

        if candidate == start:
            return chain
        chain.append(candidate)
        if len(chain) > max_steps:
            raise TraceError(f"Walk from {start} did not close after {max_steps} edges")


@dataclass
class CycleDecomposition:
    cycles: List[List[Edge]]
    total_edges: int
    min_chain_len: int
    min_cycle_index: Optional[int]  # index into cycles, None when nothing is drawn

    @property
    def is_single_loop(self) -> bool:
        return self.min_chain_len == self.total_edges

    @property
    def min_cycle(self) -> Optional[List[Edge]]:
        if self.min_cycle_index is None:
            return None
        return self.cycles[self.min_cycle_index]

    def lengths(self) -> List[int]:
        return [len(cycle) for cycle in self.cycles]


def extract_cycles(assignment: EdgeAssignment) -> CycleDecomposition:
    """
    Partition all selected edges into disjoint cycles.

    Every loop on a square grid has at least one horizontal edge, so starting a
    walk from each uncovered selected horizontal edge (row-major) finds them all.
    Ties for the shortest cycle go to the one discovered first.
    """
    total = assignment.edge_count()
    cycles = []
    covered: Set[Edge] = set()
    min_len = total
    min_index = None

    for start in assignment.true_horizontal():
        if start in covered:
            continue
        cycle = trace_cycle(assignment, start)
        covered.update(cycle)
        cycles.append(cycle)
        if min_index is None or len(cycle) < min_len:
            min_len = len(cycle)
            min_index = len(cycles) - 1

    if len(covered) != total:
        # Only possible when some vertical edge sits on no traced loop
        raise TraceError(f"Traced {len(covered)} of {total} selected edges; stray vertical edges present")

    return CycleDecomposition(cycles=cycles, total_edges=total, min_chain_len=min_len, min_cycle_index=min_index)


# =============================================================================
# REFINEMENT LOOP
# =============================================================================

@dataclass
class IterationReport:
    iteration: int
    cycle_count: int
    cycle_lengths: List[int]
    total_edges: int
    min_chain_len: int
    blocked: bool

    def to_dict(self) -> dict:
        return {
            'iteration': self.iteration,
            'cycle_count': self.cycle_count,
            'cycle_lengths': self.cycle_lengths,
            'total_edges': self.total_edges,
            'min_chain_len': self.min_chain_len,
            'blocked': self.blocked,
        }


@dataclass
class RefinementResult:
    assignment: EdgeAssignment
    loop: List[Edge]
    iterations: int
    blocked_cycles: List[List[Edge]] = field(default_factory=list)


def refine_until_single_loop(grid: Grid, backend, variables: EdgeVariables,
                             max_iterations: Optional[int] = None,
                             on_iteration: Callable[[IterationReport], None] = None,
                             warm_start: bool = False, verbose: bool = False,
                             show_candidates: bool = False) -> RefinementResult:
    """
    Solve, trace, and forbid the smallest spurious loop until one loop remains.

    Raises UnsatisfiableModelError / BackendIndeterminateError on a non-SAT answer
    and RefinementLimitError once more than `max_iterations` checks are needed.
    """
    blocked_keys: Set[frozenset] = set()
    blocked_cycles = []
    iteration = 0

    while True:
        iteration += 1
        if max_iterations is not None and iteration > max_iterations:
            raise RefinementLimitError(
                f"No single loop after {max_iterations} iterations "
                f"({len(blocked_cycles)} cycles blocked)",
                limit=max_iterations, observed=iteration - 1,
            )

        require_sat(backend.check(), f"at refinement iteration {iteration}")
        assignment = variables.read_assignment(backend.value)
        decomposition = extract_cycles(assignment)

        if show_candidates:
            print(render_loop(grid, assignment), flush=True)

        done = decomposition.is_single_loop
        report = IterationReport(
            iteration=iteration,
            cycle_count=len(decomposition.cycles),
            cycle_lengths=decomposition.lengths(),
            total_edges=decomposition.total_edges,
            min_chain_len=decomposition.min_chain_len,
            blocked=not done,
        )
        if verbose:
            print(f"DEBUG: Iteration {iteration}: {report.cycle_count} cycle(s), "
                  f"min_chain_len={report.min_chain_len}, lines={report.total_edges}", flush=True)
        if on_iteration:
            on_iteration(report)

        if done:
            loop = decomposition.cycles[0] if decomposition.cycles else []
            return RefinementResult(assignment=assignment, loop=loop, iterations=iteration,
                                    blocked_cycles=blocked_cycles)

        cycle = decomposition.min_cycle
        key = frozenset(cycle)
        if key in blocked_keys:
            # The backend returned a model violating one of our own blocking clauses
            raise SlitherlinkError(f"Blocked cycle of length {len(cycle)} reappeared at iteration {iteration}")
        blocked_keys.add(key)
        blocked_cycles.append(cycle)
        backend.add_not_all([variables.get(edge) for edge in cycle])

        if verbose:
            print(f"DEBUG: Blocked cycle of length {len(cycle)} starting at {cycle[0].label}", flush=True)

        if warm_start:
            backend.hint([(var, assignment.is_set(edge)) for edge, var in variables.items()])


# =============================================================================
# RENDERER & VERIFICATION
# =============================================================================

def render_loop(grid: Grid, assignment: EdgeAssignment) -> str:
    """Draw the grid as text: vertices, selected segments, clue digits."""
    lines = []
    for r in range(grid.height + 1):
        parts = []
        for c in range(grid.width):
            parts.append(VERTEX_GLYPH + (H_LINE if assignment.horizontal[r, c] else H_BLANK))
        parts.append(VERTEX_GLYPH)
        lines.append(''.join(parts))
        if r < grid.height:
            parts = []
            for c in range(grid.width + 1):
                clue = grid.clue(r, c) if c < grid.width else None
                cell = str(clue) if clue is not None else ' '
                side = V_LINE if assignment.vertical[r, c] else ' '
                parts.append(f'{side} {cell} ')
            lines.append(''.join(parts).rstrip())
    return '\n'.join(lines)


def verify_loop(grid: Grid, assignment: EdgeAssignment) -> List[str]:
    """
    Independently check a final assignment. Returns a list of problems
    (empty when the drawing is a valid single-loop solution).
    """
    problems = []

    counts = assignment.clue_counts()
    for r, c, value in grid.clued_cells():
        if counts[r, c] != value:
            problems.append(f"Cell ({r},{c}): clue={value}, loop touches {int(counts[r, c])} sides")

    degrees = assignment.vertex_degrees()
    for r, c in np.argwhere((degrees != 0) & (degrees != 2)):
        problems.append(f"Vertex ({int(r)},{int(c)}) has degree {int(degrees[r, c])}, expected 0 or 2")

    if not problems:
        decomposition = extract_cycles(assignment)
        if len(decomposition.cycles) > 1:
            problems.append(f"Not a single loop: {len(decomposition.cycles)} cycles "
                            f"of lengths {decomposition.lengths()}")
    return problems


def diagnose_puzzle(grid: Grid) -> List[str]:
    """
    Check for common causes of infeasibility or degenerate answers.
    """
    hints = []
    clued = list(grid.clued_cells())

    # Check 1: nothing forces a loop to exist
    if not clued or all(value == 0 for _, _, value in clued):
        hints.append("No nonzero clues: the empty drawing satisfies every constraint.")

    # Check 2: single-cell grid can only hold 0 or 4
    if grid.width == 1 and grid.height == 1 and clued and clued[0][2] not in (0, 4):
        hints.append(f"A 1x1 grid can only draw all or none of its sides, but its clue is {clued[0][2]}.")

    for r, c, value in clued:
        if value != 4:
            continue
        # Check 3: a 4 closes its own loop
        if grid.width * grid.height > 1:
            hints.append(f"Clue 4 at ({r},{c}) closes a loop around one cell; "
                         f"any other drawn edge would form a second loop.")
        # Check 4: a 4 next to a 0 shares an edge that must be both on and off
        for nr, nc in ((r - 1, c), (r + 1, c), (r, c - 1), (r, c + 1)):
            if 0 <= nr < grid.height and 0 <= nc < grid.width and grid.clue(nr, nc) == 0:
                hints.append(f"Clue 4 at ({r},{c}) shares an edge with clue 0 at ({nr},{nc}).")

    # Check 5: a 3 in a corner with 0s on both inner sides cannot turn
    corners = [(0, 0), (0, grid.width - 1), (grid.height - 1, 0), (grid.height - 1, grid.width - 1)]
    for r, c in set(corners):
        if grid.clue(r, c) != 3 or grid.width == 1 or grid.height == 1:
            continue
        nr = 1 if r == 0 else r - 1
        nc = 1 if c == 0 else c - 1
        if grid.clue(nr, c) == 0 and grid.clue(r, nc) == 0:
            hints.append(f"Clue 3 in corner ({r},{c}) is walled in by 0s at ({nr},{c}) and ({r},{nc}).")

    return hints


# =============================================================================
# SOLVER
# =============================================================================

def default_max_iterations() -> Optional[int]:
    """SLITHER_MAX_ITERATIONS overrides the cap; 0 or negative means unbounded."""
    raw = os.environ.get(MAX_ITERATIONS_ENV)
    if raw is None:
        return DEFAULT_MAX_ITERATIONS
    try:
        limit = int(raw)
    except ValueError:
        return DEFAULT_MAX_ITERATIONS
    return limit if limit > 0 else None


def iteration_cap(value: Optional[int]) -> Optional[int]:
    """Normalize a requested cap: None, 0 or negative means unbounded."""
    if value is None or value <= 0:
        return None
    return value


@dataclass
class SolverInput:
    grid: Grid
    max_iterations: Optional[int] = field(default_factory=default_max_iterations)  # None = unbounded
    max_time_seconds: Optional[float] = 60  # Per backend check
    num_workers: int = 1  # More workers are faster but make the elimination order nondeterministic
    warm_start: bool = False  # Hint each re-solve with the previous model
    verbose: bool = False
    show_candidates: bool = False  # Print every candidate model, not just the answer
    log_search_progress: bool = False


@dataclass
class SolverOutput:
    success: bool
    status: str
    grid: Grid
    assignment: Optional[EdgeAssignment] = None
    loop: List[Edge] = field(default_factory=list)
    iterations: int = 0
    blocked_cycle_lengths: List[int] = field(default_factory=list)
    stats: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def loop_length(self) -> int:
        return len(self.loop)

    def render(self) -> str:
        assignment = self.assignment or EdgeAssignment.empty(self.grid.width, self.grid.height)
        return render_loop(self.grid, assignment)

    def to_dict(self) -> dict:
        output = {
            'success': self.success,
            'status': self.status,
            'width': self.grid.width,
            'height': self.grid.height,
            'clues': [list(row) for row in self.grid.clues],
            'iterations': self.iterations,
            'loop_length': self.loop_length,
            'loop': [edge.to_dict() for edge in self.loop],
            'blocked_cycle_lengths': self.blocked_cycle_lengths,
            'stats': self.stats,
        }
        if self.assignment is not None:
            output['edges'] = self.assignment.to_dict()
            output['rendered'] = self.render()
        if self.error:
            output['error'] = self.error
        return output


def solve_slitherlink(input_data: SolverInput,
                      on_iteration: Callable[[IterationReport], None] = None) -> SolverOutput:
    """
    Solve a puzzle end to end: encode, check base model, refine to one loop.

    Fatal outcomes are reported in the output (success=False) instead of raised.
    """
    grid = input_data.grid
    diagnostic_hints = diagnose_puzzle(grid)

    backend = CpSatBackend(
        max_time_seconds=input_data.max_time_seconds,
        num_workers=input_data.num_workers,
        log_search_progress=input_data.log_search_progress,
    )

    iterations_seen = []

    def track(report: IterationReport):
        iterations_seen.append(report)
        if on_iteration:
            on_iteration(report)

    try:
        variables = encode_puzzle(grid, backend, check=True, verbose=input_data.verbose)
        result = refine_until_single_loop(
            grid, backend, variables,
            max_iterations=input_data.max_iterations,
            on_iteration=track,
            warm_start=input_data.warm_start,
            verbose=input_data.verbose,
            show_candidates=input_data.show_candidates,
        )
    except (UnsatisfiableModelError, BackendIndeterminateError, RefinementLimitError) as e:
        if isinstance(e, UnsatisfiableModelError):
            status = STATUS_INFEASIBLE
            advice = "No single loop satisfies these clues."
        elif isinstance(e, BackendIndeterminateError):
            status = STATUS_UNKNOWN
            advice = (f"Solver gave up before deciding the model. "
                      f"Try increasing max_time_seconds (current: {input_data.max_time_seconds}s).")
        else:
            status = STATUS_INCONCLUSIVE
            advice = (f"Refinement stopped at the iteration cap. "
                      f"Try increasing max_iterations (current: {input_data.max_iterations}).")

        error_parts = [f"Solver status: {status}", f"\n{e}", f"\n{advice}"]
        if diagnostic_hints:
            error_parts.append("\nPossible issues:")
            for hint in diagnostic_hints:
                error_parts.append(f"\n  • {hint}")

        stats = backend.stats()
        stats['diagnostic_hints'] = diagnostic_hints
        return SolverOutput(
            success=False,
            status=status,
            grid=grid,
            iterations=len(iterations_seen),
            stats=stats,
            error=''.join(error_parts),
        )

    problems = verify_loop(grid, result.assignment)
    if problems:
        # Constraints guarantee this never happens; surface it loudly if it does
        print(f"WARNING: Final loop failed verification: {problems}", flush=True)

    stats = backend.stats()
    stats['verified'] = not problems
    stats['diagnostic_hints'] = diagnostic_hints
    return SolverOutput(
        success=True,
        status=STATUS_SOLVED,
        grid=grid,
        assignment=result.assignment,
        loop=result.loop,
        iterations=result.iterations,
        blocked_cycle_lengths=[len(cycle) for cycle in result.blocked_cycles],
        stats=stats,
    )


# =============================================================================
# CLI INTERFACE
# =============================================================================

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Slitherlink solver - OR-Tools CP-SAT with lazy loop elimination",
        epilog="Example: echo '{\"rows\": [\"3..\", \".2.\", \"..3\"]}' | python slitherlink_solver.py --render",
    )
    parser.add_argument('--puzzle', help="Read the puzzle from this file instead of stdin")
    parser.add_argument('--format', choices=['auto', 'json', 'text', 'loopy', 'html'], default='auto',
                        help="Puzzle format (default: guess from content)")
    parser.add_argument('--max-iterations', type=int, default=None,
                        help=f"Refinement iteration cap (default: {DEFAULT_MAX_ITERATIONS}, 0 = unbounded)")
    parser.add_argument('--max-time', type=float, default=60, help="Seconds per backend check")
    parser.add_argument('--workers', type=int, default=1, help="CP-SAT search workers")
    parser.add_argument('--warm-start', action='store_true', help="Hint each re-solve with the previous model")
    parser.add_argument('--render', action='store_true', help="Print the drawn grid after the JSON result")
    parser.add_argument('--verbose', action='store_true', help="Print refinement progress")
    parser.add_argument('--show-candidates', action='store_true', help="Print every candidate model")
    return parser


def main(argv: List[str] = None):
    """Read a puzzle, solve, write JSON to stdout."""
    from puzzle_parser import parse_puzzle

    args = build_arg_parser().parse_args(argv)

    try:
        if args.puzzle:
            with open(args.puzzle, encoding='utf-8') as f:
                source = f.read()
        else:
            source = sys.stdin.read()
        grid = parse_puzzle(source, fmt=args.format)
    except (OSError, MalformedPuzzleError) as e:
        print(json.dumps({"success": False, "status": STATUS_INVALID, "error": str(e)}))
        sys.exit(1)

    if args.max_iterations is None:
        max_iterations = default_max_iterations()
    else:
        max_iterations = iteration_cap(args.max_iterations)

    solver_input = SolverInput(
        grid=grid,
        max_iterations=max_iterations,
        max_time_seconds=args.max_time,
        num_workers=args.workers,
        warm_start=args.warm_start,
        verbose=args.verbose,
        show_candidates=args.show_candidates,
    )

    if args.verbose:
        print(f"width={grid.width}, height={grid.height}", flush=True)

    result = solve_slitherlink(solver_input)

    output = result.to_dict()
    output.pop('rendered', None)
    print(json.dumps(output, indent=2))
    if args.render:
        print()
        print(result.render())

    if not result.success:
        sys.exit(2)


if __name__ == '__main__':
    main()

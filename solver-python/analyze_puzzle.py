#!/usr/bin/env python3
"""
Solve a puzzle and analyze the final loop against the puzzle rules.
Uses a known fully-clued 4x4 puzzle as ground truth when no file is given.

Usage: python analyze_puzzle.py [puzzle-file]
"""

import sys
from collections import Counter

import numpy as np

from puzzle_parser import parse_puzzle
from slitherlink_solver import SolverInput, extract_cycles, solve_slitherlink, verify_loop

# Ground truth: every clue of a 20-edge loop with two notches
REFERENCE_PUZZLE = """
3112
3102
2013
2113
"""


def analyze_puzzle(name: str, source: str):
    """Solve a puzzle and print clue, vertex and loop checks."""
    print(f"\n{'='*60}")
    print(f"Analyzing: {name}")
    print(f"{'='*60}")

    grid = parse_puzzle(source)
    clue_counts = Counter(value for _, _, value in grid.clued_cells())

    print(f"\nGrid: {grid.width}x{grid.height}")
    print(f"Clued cells: {sum(clue_counts.values())} of {grid.width * grid.height}")
    print("\nClue counts:")
    for value in sorted(clue_counts):
        print(f"  {value}: {clue_counts[value]}")

    result = solve_slitherlink(SolverInput(grid=grid, verbose=True))
    if not result.success:
        print(f"\nFAILED: {result.error}")
        return result

    print(f"\nSolved in {result.iterations} iteration(s), "
          f"blocked cycles: {result.blocked_cycle_lengths or 'none'}")
    print()
    print(result.render())

    # --- CLUE ANALYSIS ---
    print("\n--- CLUE VALIDATION ---")
    counts = result.assignment.clue_counts()
    for r, c, value in grid.clued_cells():
        status = "OK" if counts[r, c] == value else "FAIL"
        print(f"  ({r},{c}) clue={value} sides={int(counts[r, c])} -> {status}")

    # --- VERTEX ANALYSIS ---
    print("\n--- VERTEX DEGREES ---")
    degrees = result.assignment.vertex_degrees()
    values, occurrences = np.unique(degrees, return_counts=True)
    for degree, count in zip(values, occurrences):
        print(f"  degree {int(degree)}: {int(count)} vertices")

    # --- LOOP ANALYSIS ---
    print("\n--- LOOP ---")
    decomposition = extract_cycles(result.assignment)
    print(f"  cycles: {len(decomposition.cycles)}, lengths: {decomposition.lengths()}")
    print(f"  drawn edges: {decomposition.total_edges}")

    problems = verify_loop(grid, result.assignment)
    print(f"\nVerification: {'PASS' if not problems else 'FAIL'}")
    for problem in problems:
        print(f"  • {problem}")

    return result


if __name__ == "__main__":
    if len(sys.argv) > 1:
        with open(sys.argv[1], encoding='utf-8') as f:
            analyze_puzzle(sys.argv[1], f.read())
    else:
        analyze_puzzle("Reference 4x4", REFERENCE_PUZZLE)

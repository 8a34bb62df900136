import io
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from unittest import mock

import numpy as np

from slitherlink_solver import (
    DEFAULT_MAX_ITERATIONS, HORIZONTAL, STATUS_INFEASIBLE, STATUS_SOLVED, CpSatBackend, Edge,
    EdgeAssignment, Grid, SatResult, SolverInput, SolverOutput, UnsatisfiableModelError,
    default_max_iterations, diagnose_puzzle, encode_puzzle, main, render_loop, solve_slitherlink,
    verify_loop,
)

REFERENCE_ROWS = [
    [3, 1, 1, 2],
    [3, 1, 0, 2],
    [2, 0, 1, 3],
    [2, 1, 1, 3],
]


def solve_rows(rows, **kwargs):
    return solve_slitherlink(SolverInput(grid=Grid.from_rows(rows), max_time_seconds=30, **kwargs))


class TestCpSatBackend(unittest.TestCase):
    """The backend answers SAT/UNSAT and reads models back."""

    def test_equality_and_domain(self):
        backend = CpSatBackend(max_time_seconds=10)
        a, b, c = (backend.new_bool(name) for name in 'abc')
        backend.add_weighted_sum_equals([(a, 1), (b, 1), (c, 1)], 2)
        backend.add_weighted_sum_in([(a, 1), (b, 1)], [0, 2])
        self.assertEqual(backend.check(), SatResult.SAT)
        self.assertTrue(backend.value(a) and backend.value(b))
        self.assertFalse(backend.value(c))

    def test_not_all(self):
        backend = CpSatBackend(max_time_seconds=10)
        a, b = backend.new_bool('a'), backend.new_bool('b')
        backend.add_weighted_sum_equals([(a, 1), (b, 1)], 2)
        self.assertEqual(backend.check(), SatResult.SAT)
        backend.add_not_all([a, b])
        self.assertEqual(backend.check(), SatResult.UNSAT)
        self.assertEqual(backend.stats()['checks'], 2)
        self.assertEqual(backend.stats()['constraints'], 2)

    def test_value_before_check(self):
        backend = CpSatBackend()
        with self.assertRaises(RuntimeError):
            backend.value(backend.new_bool('a'))


class TestScenarios(unittest.TestCase):
    """End-to-end solves with the CP-SAT backend."""

    def assert_valid_loop(self, result):
        self.assertTrue(result.success, result.error)
        self.assertEqual(result.status, STATUS_SOLVED)
        self.assertEqual(verify_loop(result.grid, result.assignment), [])
        self.assertEqual(result.loop_length, result.assignment.edge_count())
        degrees = result.assignment.vertex_degrees()
        self.assertTrue(np.isin(degrees, [0, 2]).all())
        self.assertTrue(result.stats['verified'])

    def test_single_cell_four(self):
        result = solve_rows([[4]])
        self.assert_valid_loop(result)
        self.assertEqual(result.loop_length, 4)
        self.assertEqual(result.iterations, 1)
        self.assertEqual(result.blocked_cycle_lengths, [])

    def test_two_by_two_perimeter(self):
        result = solve_rows([[2, 2], [2, 2]])
        self.assert_valid_loop(result)
        self.assertEqual(result.loop_length, 8)
        np.testing.assert_array_equal(result.assignment.horizontal, [[1, 1], [0, 0], [1, 1]])
        np.testing.assert_array_equal(result.assignment.vertical, [[1, 0, 1], [1, 0, 1]])

    def test_spurious_squares_eliminated(self):
        # Relaxed model allows two separate squares; only the perimeter is one loop
        for warm_start in (False, True):
            result = solve_rows([[None, 2, None]], warm_start=warm_start)
            self.assert_valid_loop(result)
            self.assertEqual(result.loop_length, 8)
            self.assertIn(result.blocked_cycle_lengths, ([], [4]))
            self.assertEqual(result.iterations, len(result.blocked_cycle_lengths) + 1)

    def test_zero_clue_edges_off(self):
        result = solve_rows(REFERENCE_ROWS)
        self.assert_valid_loop(result)
        counts = result.assignment.clue_counts()
        for r, c in ((1, 2), (2, 1)):
            self.assertEqual(counts[r, c], 0)
            for edge in result.grid.cell_edges(r, c):
                self.assertFalse(result.assignment.is_set(edge))

    def test_clues_hold_in_final_model(self):
        rows = [
            [None, 2, 2, None],
            [2, None, None, 2],
            [2, None, None, 2],
            [None, 2, 2, None],
        ]
        result = solve_rows(rows)
        self.assert_valid_loop(result)
        counts = result.assignment.clue_counts()
        for r, c, value in result.grid.clued_cells():
            self.assertEqual(counts[r, c], value)

    def test_unsatisfiable_puzzle(self):
        result = solve_rows([[3]])
        self.assertFalse(result.success)
        self.assertEqual(result.status, STATUS_INFEASIBLE)
        self.assertIsNone(result.assignment)
        self.assertIn('Possible issues', result.error)
        self.assertEqual(result.to_dict()['loop'], [])

    def test_unsatisfiable_at_encoding(self):
        grid = Grid.from_rows([[1]])
        backend = CpSatBackend(max_time_seconds=10)
        with self.assertRaises(UnsatisfiableModelError):
            encode_puzzle(grid, backend, check=True)
        self.assertEqual(backend.checks, 1)

    def test_progress_callback(self):
        reports = []
        solve_slitherlink(SolverInput(grid=Grid.from_rows([[4]])), on_iteration=reports.append)
        self.assertEqual(len(reports), 1)
        self.assertEqual(reports[0].total_edges, 4)

    def test_output_dict(self):
        data = solve_rows([[4]]).to_dict()
        self.assertTrue(data['success'])
        self.assertEqual(data['loop_length'], 4)
        self.assertEqual(data['loop'][0], {'kind': 'h', 'row': 0, 'col': 0})
        self.assertEqual(data['edges']['horizontal'], [[1], [1]])
        self.assertIn('rendered', data)

    def test_failed_output_defaults(self):
        grid = Grid.from_rows([[3]])
        first = SolverOutput(success=False, status=STATUS_INFEASIBLE, grid=grid)
        second = SolverOutput(success=False, status=STATUS_INFEASIBLE, grid=grid)
        first.loop.append(Edge(HORIZONTAL, 0, 0))
        self.assertEqual(second.loop, [])
        self.assertEqual(second.loop_length, 0)
        data = second.to_dict()
        self.assertEqual(data['loop'], [])
        self.assertEqual(data['blocked_cycle_lengths'], [])
        self.assertEqual(data['stats'], {})
        self.assertNotIn('edges', data)


class TestDiagnostics(unittest.TestCase):

    def test_no_clues(self):
        hints = diagnose_puzzle(Grid.from_rows([[None, None]]))
        self.assertTrue(any('empty drawing' in h for h in hints))

    def test_single_cell_odd_clue(self):
        hints = diagnose_puzzle(Grid.from_rows([[3]]))
        self.assertTrue(any('1x1' in h for h in hints))

    def test_four_next_to_zero(self):
        hints = diagnose_puzzle(Grid.from_rows([[4, 0]]))
        self.assertTrue(any('shares an edge' in h for h in hints))

    def test_walled_corner_three(self):
        hints = diagnose_puzzle(Grid.from_rows([[3, 0], [0, None]]))
        self.assertTrue(any('walled in' in h for h in hints))

    def test_clean_puzzle(self):
        self.assertEqual(diagnose_puzzle(Grid.from_rows(REFERENCE_ROWS)), [])


class TestVerifyAndRender(unittest.TestCase):

    def test_verify_reports_problems(self):
        grid = Grid.from_rows([[None, 2, None]])
        squares = EdgeAssignment.from_edges(3, 1, [
            ('h', 0, 0), ('h', 1, 0), ('v', 0, 0), ('v', 0, 1),
            ('h', 0, 2), ('h', 1, 2), ('v', 0, 2), ('v', 0, 3),
        ])
        problems = verify_loop(grid, squares)
        self.assertEqual(len(problems), 1)
        self.assertIn('Not a single loop', problems[0])

        dangling = EdgeAssignment.from_edges(3, 1, [('h', 0, 1)])
        problems = verify_loop(grid, dangling)
        self.assertTrue(any('clue=2' in p for p in problems))
        self.assertTrue(any('degree 1' in p for p in problems))

    def test_render(self):
        grid = Grid.from_rows([[4]])
        assignment = EdgeAssignment.from_edges(1, 1, [('h', 0, 0), ('v', 0, 1), ('h', 1, 0), ('v', 0, 0)])
        self.assertEqual(render_loop(grid, assignment), '·───·\n│ 4 │\n·───·')

    def test_render_blank(self):
        grid = Grid.from_rows([[None, 0]])
        self.assertEqual(render_loop(grid, EdgeAssignment.empty(2, 1)), '·   ·   ·\n      0\n·   ·   ·')


class TestConfiguration(unittest.TestCase):

    def test_default_cap(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertEqual(default_max_iterations(), DEFAULT_MAX_ITERATIONS)

    def test_env_override(self):
        with mock.patch.dict(os.environ, {'SLITHER_MAX_ITERATIONS': '25'}):
            self.assertEqual(default_max_iterations(), 25)
            self.assertEqual(SolverInput(grid=Grid.from_rows([[4]])).max_iterations, 25)
        with mock.patch.dict(os.environ, {'SLITHER_MAX_ITERATIONS': '0'}):
            self.assertIsNone(default_max_iterations())
        with mock.patch.dict(os.environ, {'SLITHER_MAX_ITERATIONS': 'lots'}):
            self.assertEqual(default_max_iterations(), DEFAULT_MAX_ITERATIONS)


class TestCli(unittest.TestCase):

    def write_puzzle(self, text):
        handle = tempfile.NamedTemporaryFile('w', suffix='.txt', delete=False, encoding='utf-8')
        handle.write(text)
        handle.close()
        self.addCleanup(os.unlink, handle.name)
        return handle.name

    def test_solves_file(self):
        path = self.write_puzzle('22\n22\n')
        out = io.StringIO()
        with redirect_stdout(out):
            main(['--puzzle', path, '--render'])
        self.assertIn('"success": true', out.getvalue())
        self.assertIn('·───·───·', out.getvalue())

    def test_unsolvable_exit_code(self):
        path = self.write_puzzle('3\n')
        with redirect_stdout(io.StringIO()):
            with self.assertRaises(SystemExit) as ctx:
                main(['--puzzle', path])
        self.assertEqual(ctx.exception.code, 2)

    def test_malformed_exit_code(self):
        path = self.write_puzzle('9\n')
        out = io.StringIO()
        with redirect_stdout(out):
            with self.assertRaises(SystemExit) as ctx:
                main(['--puzzle', path])
        self.assertEqual(ctx.exception.code, 1)
        self.assertIn('INVALID_PUZZLE', out.getvalue())

    def test_wrong_json_types_exit_code(self):
        for text in ('{"clues": [1, 2]}', '{"loopy": 5}'):
            path = self.write_puzzle(text)
            out = io.StringIO()
            with redirect_stdout(out):
                with self.assertRaises(SystemExit) as ctx:
                    main(['--puzzle', path])
            self.assertEqual(ctx.exception.code, 1, text)
            self.assertIn('INVALID_PUZZLE', out.getvalue())


if __name__ == '__main__':
    unittest.main()

import json
import os
import unittest
from unittest import mock

from puzzle_parser import (
    detect_format, grid_from_json, grid_from_request, parse_html, parse_json, parse_loopy_id,
    parse_puzzle, parse_text, solver_settings_from_request,
)
from slitherlink_solver import DEFAULT_MAX_ITERATIONS, InvalidSettingsError, MalformedPuzzleError


def cell_html(top, left, text=''):
    return (f'<div class="loop-task-cell" style="position: absolute; top: {top}px; left: {left}px;">'
            f'{text}</div>')


def page(cells):
    return '<html><body><div class="loop-task">' + ''.join(cells) + '</div></body></html>'


class TestTextFormat(unittest.TestCase):

    def test_rows(self):
        grid = parse_text("3.2\n...\n2-_\n")
        self.assertEqual((grid.width, grid.height), (3, 3))
        self.assertEqual(grid.clues, ((3, None, 2), (None, None, None), (2, None, None)))

    def test_comments_skipped(self):
        grid = parse_text("# sample\n\n3.2\n.1.\n")
        self.assertEqual(grid.clues, ((3, None, 2), (None, 1, None)))

    def test_space_is_blank_cell(self):
        grid = parse_text("3 2\n...\n")
        self.assertEqual(grid.width, 3)
        self.assertEqual(grid.clues, ((3, None, 2), (None, None, None)))

    def test_row_of_spaces(self):
        grid = parse_text("   \n1 1\n")
        self.assertEqual(grid.clues, ((None, None, None), (1, None, 1)))

    def test_tab_rejected(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_text("3\t2\n")

    def test_ragged_rows(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_text("32\n3\n")

    def test_bad_character(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_text("3x\n")

    def test_clue_too_large(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_text("5\n")

    def test_empty(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_text("\n# nothing\n")


class TestJsonFormat(unittest.TestCase):

    def test_row_strings(self):
        grid = parse_json(json.dumps({"rows": ["3.", ".0"]}))
        self.assertEqual(grid.clues, ((3, None), (None, 0)))

    def test_row_lists(self):
        grid = grid_from_json({"rows": [[3, None], [-1, "2"]]})
        self.assertEqual(grid.clues, ((3, None), (None, 2)))

    def test_clues_with_dimensions(self):
        grid = grid_from_json({"width": 2, "height": 1, "clues": [[1, None]]})
        self.assertEqual((grid.width, grid.height), (2, 1))

    def test_dimension_mismatch(self):
        with self.assertRaises(MalformedPuzzleError):
            grid_from_json({"width": 3, "height": 1, "clues": [[1, None]]})

    def test_loopy_key(self):
        grid = grid_from_json({"loopy": "2x1:2a"})
        self.assertEqual(grid.clues, ((2, None),))

    def test_invalid_json(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_json("{rows: nope")

    def test_missing_keys(self):
        with self.assertRaises(MalformedPuzzleError):
            grid_from_json({"puzzle_rows": []})

    def test_bad_cell_value(self):
        with self.assertRaises(MalformedPuzzleError):
            grid_from_json({"rows": [[[1]]]})

    def test_clue_rows_must_be_lists(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_json('{"clues": [1, 2]}')

    def test_loopy_value_must_be_string(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_json('{"loopy": 5}')

    def test_space_in_row_string(self):
        grid = grid_from_json({"rows": ["3 ", " 1"]})
        self.assertEqual(grid.clues, ((3, None), (None, 1)))


class TestLoopyFormat(unittest.TestCase):

    def test_decode(self):
        grid = parse_loopy_id("3x3t0:3a2c2a3")
        self.assertEqual(grid.clues, ((3, None, 2), (None, None, None), (2, None, 3)))

    def test_params_ignored(self):
        grid = parse_loopy_id("2x2t0de:b2a")
        self.assertEqual(grid.clues, ((None, None), (2, None)))

    def test_long_run(self):
        grid = parse_loopy_id("5x6:z1c")
        self.assertEqual(grid.clue(5, 1), 1)
        self.assertEqual(sum(1 for _ in grid.clued_cells()), 1)

    def test_wrong_cell_count(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_loopy_id("2x2:1a")

    def test_non_square_grid(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_loopy_id("2x2t1:d")

    def test_not_an_id(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_loopy_id("hello")


class TestHtmlFormat(unittest.TestCase):

    def test_cells(self):
        cells = [
            cell_html(0, 0, '3'), cell_html(0, 30), cell_html(0, 60, '1'),
            cell_html(30, 0), cell_html(30, 30, '<span>2</span>'), cell_html(30, 60),
        ]
        grid = parse_html(page(cells))
        self.assertEqual((grid.width, grid.height), (3, 2))
        self.assertEqual(grid.clues, ((3, None, 1), (None, 2, None)))

    def test_ignores_text_outside_cells(self):
        html = '<p>Puzzle 12</p>' + page([cell_html(0, 0, '0'), cell_html(0, 30)])
        grid = parse_html(html)
        self.assertEqual(grid.clues, ((0, None),))

    def test_self_closing_cells(self):
        html = ('<div class="loop-task-cell" style="top:0px; left:0px;"/>'
                + cell_html(0, 20, '2'))
        grid = parse_html(html)
        self.assertEqual(grid.clues, ((None, 2),))

    def test_no_cells(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_html('<html><body></body></html>')

    def test_inconsistent_positions(self):
        cells = [cell_html(0, 0), cell_html(0, 30), cell_html(30, 0)]
        with self.assertRaises(MalformedPuzzleError):
            parse_html(page(cells))

    def test_non_numeric_text(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_html(page([cell_html(0, 0, 'x')]))


class TestDetectFormat(unittest.TestCase):

    def test_detect(self):
        self.assertEqual(detect_format('{"rows": ["1"]}'), 'json')
        self.assertEqual(detect_format('  <html></html>'), 'html')
        self.assertEqual(detect_format('3x3t0:3a2c2a3\n'), 'loopy')
        self.assertEqual(detect_format('3.2\n'), 'text')

    def test_parse_puzzle_auto(self):
        self.assertEqual(parse_puzzle('3x3t0:3a2c2a3').clue(2, 2), 3)
        self.assertEqual(parse_puzzle('1.\n.2').clue(1, 1), 2)

    def test_unknown_format(self):
        with self.assertRaises(MalformedPuzzleError):
            parse_puzzle('1', fmt='xml')


class TestRequestBody(unittest.TestCase):

    def test_inline_json(self):
        self.assertEqual(grid_from_request({"rows": ["4"]}).clue(0, 0), 4)

    def test_raw_puzzle_with_format(self):
        grid = grid_from_request({"puzzle": "3.\n.1", "format": "text"})
        self.assertEqual(grid.clues, ((3, None), (None, 1)))

    def test_puzzle_must_be_string(self):
        with self.assertRaises(MalformedPuzzleError):
            grid_from_request({"puzzle": 12})


class TestSolverSettings(unittest.TestCase):

    def setUp(self):
        patcher = mock.patch.dict(os.environ, {}, clear=False)
        patcher.start()
        self.addCleanup(patcher.stop)
        os.environ.pop('SLITHER_MAX_ITERATIONS', None)

    def test_defaults(self):
        self.assertEqual(solver_settings_from_request({"rows": ["4"]}), {
            'max_iterations': DEFAULT_MAX_ITERATIONS,
            'max_time_seconds': 60,
            'num_workers': 1,
            'warm_start': False,
        })

    def test_zero_or_negative_cap_is_unbounded(self):
        for value in (0, -5, None):
            settings = solver_settings_from_request({"max_iterations": value})
            self.assertIsNone(settings['max_iterations'], value)

    def test_positive_cap_kept(self):
        self.assertEqual(solver_settings_from_request({"max_iterations": 7})['max_iterations'], 7)

    def test_time_clamped(self):
        settings = solver_settings_from_request({"max_time_seconds": 900}, max_time_cap=600)
        self.assertEqual(settings['max_time_seconds'], 600)
        settings = solver_settings_from_request({"max_time_seconds": 2.5}, max_time_cap=600)
        self.assertEqual(settings['max_time_seconds'], 2.5)

    def test_wrong_types_rejected(self):
        bad_bodies = [
            {"max_time_seconds": "10"},
            {"max_time_seconds": 0},
            {"max_time_seconds": True},
            {"max_iterations": "5"},
            {"max_iterations": 2.5},
            {"num_workers": 0},
            {"num_workers": "2"},
            {"warm_start": "yes"},
        ]
        for body in bad_bodies:
            with self.assertRaises(InvalidSettingsError, msg=str(body)):
                solver_settings_from_request(body)

    def test_settings_error_is_value_error(self):
        with self.assertRaises(ValueError):
            solver_settings_from_request({"max_time_seconds": "10"})


if __name__ == '__main__':
    unittest.main()

"""
Unit tests for the board module
"""

import unittest
import numpy as np
from minesync.board import (Board, BoardConfig, InvalidConfiguration, DIFFICULTIES, NO_CHANGE,
                            count_adjacent_mines, validate_dimensions, DETONATED, CLEARED)


CORNER_MINE = ["*..",
               "...",
               "..."]


class TestValidation(unittest.TestCase):
    """Test cases for board parameter validation"""

    def test_valid_dimensions(self):
        """Test that a standard configuration passes"""
        validate_dimensions(16, 30, 99)

    def test_zero_rows_rejected(self):
        with self.assertRaises(InvalidConfiguration):
            validate_dimensions(0, 10, 5)

    def test_oversized_board_rejected(self):
        with self.assertRaises(InvalidConfiguration):
            validate_dimensions(101, 10, 5)

    def test_negative_mines_rejected(self):
        with self.assertRaises(InvalidConfiguration):
            validate_dimensions(10, 10, -1)

    def test_too_many_mines_rejected(self):
        """Test that the mine count must leave room for the safe first-click region"""
        with self.assertRaises(InvalidConfiguration):
            validate_dimensions(5, 5, 16)
        validate_dimensions(5, 5, 15)

    def test_invalid_configuration_is_value_error(self):
        with self.assertRaises(ValueError) as ctx:
            Board(5, 5, 100)
        self.assertEqual(ctx.exception.mine_count, 100)


class TestBoardConfig(unittest.TestCase):
    """Test cases for difficulty presets and custom boards"""

    def test_default_is_medium(self):
        config = BoardConfig.from_request()
        self.assertEqual((config.rows, config.cols, config.mines), (16, 16, 40))
        self.assertEqual(config.difficulty, 'Medium')

    def test_preset_names_are_case_insensitive(self):
        self.assertIs(BoardConfig.from_request('hard'), DIFFICULTIES['Hard'])
        self.assertIs(BoardConfig.from_request(' easy '), DIFFICULTIES['Easy'])

    def test_unknown_preset(self):
        with self.assertRaises(InvalidConfiguration):
            BoardConfig.from_request('Impossible')

    def test_custom_board(self):
        config = BoardConfig.from_request('custom', rows=20, cols=25, mines=50)
        self.assertEqual(config, BoardConfig(20, 25, 50, 'Custom'))
        self.assertEqual(config.total_safe_cells, 450)

    def test_custom_without_difficulty(self):
        config = BoardConfig.from_request(rows=8, cols=8, mines=5)
        self.assertEqual(config.difficulty, 'Custom')

    def test_custom_requires_integers(self):
        with self.assertRaises(InvalidConfiguration):
            BoardConfig.from_request('Custom', rows='20', cols=20, mines=10)
        with self.assertRaises(InvalidConfiguration):
            BoardConfig.from_request('Custom', rows=True, cols=20, mines=10)

    def test_custom_is_validated(self):
        with self.assertRaises(InvalidConfiguration):
            BoardConfig.from_request('Custom', rows=5, cols=5, mines=20)

    def test_to_dict(self):
        self.assertEqual(DIFFICULTIES['Easy'].to_dict(),
                         {'rows': 9, 'cols': 9, 'mines': 10, 'difficulty': 'Easy'})


class TestGeneration(unittest.TestCase):
    """Test cases for mine placement"""

    def test_count_adjacent_mines(self):
        mines = np.array([[True, False, False],
                          [False, False, False],
                          [False, False, True]])
        expected = np.array([[0, 1, 0],
                             [1, 2, 1],
                             [0, 1, 0]])
        np.testing.assert_array_equal(count_adjacent_mines(mines), expected)

    def test_generate_places_exact_mine_count(self):
        board = Board.generate(9, 9, 10, exclude_cell=(4, 4), rng=np.random.default_rng(1))
        self.assertEqual(int(board.mines.sum()), 10)
        self.assertTrue(board.mines_placed)

    def test_generate_keeps_excluded_region_clear(self):
        """Test that the excluded cell and its neighbours never hold a mine"""
        for seed in range(20):
            board = Board.generate(5, 5, 15, exclude_cell=(2, 2), rng=np.random.default_rng(seed))
            self.assertFalse(board.mines[1:4, 1:4].any())
            self.assertEqual(int(board.mines.sum()), 15)

    def test_generate_in_corner(self):
        board = Board.generate(4, 4, 6, exclude_cell=(0, 0), rng=np.random.default_rng(3))
        self.assertFalse(board.mines[0:2, 0:2].any())
        self.assertEqual(int(board.mines.sum()), 6)

    def test_nearby_matches_mines(self):
        board = Board.generate(16, 16, 40, exclude_cell=(0, 0), rng=np.random.default_rng(7))
        for r in range(16):
            for c in range(16):
                expected = sum(1 for nr, nc in board.neighbors(r, c) if board.mines[nr, nc])
                self.assertEqual(board.nearby[r, c], expected)

    def test_same_seed_same_layout(self):
        a = Board.generate(16, 16, 40, (8, 8), rng=np.random.default_rng(42))
        b = Board.generate(16, 16, 40, (8, 8), rng=np.random.default_rng(42))
        np.testing.assert_array_equal(a.mines, b.mines)

    def test_place_mines_twice_raises(self):
        board = Board.generate(9, 9, 10, (0, 0))
        with self.assertRaises(RuntimeError):
            board.place_mines((0, 0))

    def test_from_layout(self):
        board = Board.from_layout(CORNER_MINE)
        self.assertEqual((board.rows, board.cols, board.mine_count), (3, 3, 1))
        self.assertTrue(board.mines[0, 0])
        self.assertEqual(board.nearby[1, 1], 1)
        self.assertEqual(board.nearby[2, 2], 0)


class TestOpen(unittest.TestCase):
    """Test cases for opening cells and cascade reveal"""

    def test_first_open_places_mines_lazily(self):
        board = Board(9, 9, 10, rng=np.random.default_rng(5))
        self.assertFalse(board.mines_placed)
        result = board.open(4, 4)
        self.assertTrue(board.mines_placed)
        self.assertFalse(result.detonated)
        self.assertEqual(result.status, CLEARED)
        # The clicked cell has no mined neighbours, so at least its 3x3 block opens
        self.assertGreaterEqual(len(result.opened), 9)

    def test_cascade_opens_region_and_border(self):
        board = Board.from_layout(CORNER_MINE)
        result = board.open(2, 2)
        self.assertEqual(len(result.opened), 8)
        self.assertNotIn((0, 0), result.opened)
        self.assertTrue(board.is_cleared())

    def test_numbered_cell_opens_alone(self):
        board = Board.from_layout(CORNER_MINE)
        result = board.open(1, 1)
        self.assertEqual(result.opened, [(1, 1)])

    def test_cascade_stops_at_numbers(self):
        board = Board.from_layout(["....",
                                   "....",
                                   "****",
                                   "...."])
        result = board.open(0, 0)
        self.assertEqual(set(result.opened), {(r, c) for r in range(2) for c in range(4)})
        self.assertFalse(board.opened[3].any())

    def test_cascade_visits_each_cell_once(self):
        board = Board.from_layout(['.' * 50] * 50)
        result = board.open(25, 25)
        self.assertEqual(len(result.opened), 2500)
        self.assertEqual(len(set(result.opened)), 2500)

    def test_open_mine_detonates(self):
        board = Board.from_layout(CORNER_MINE)
        result = board.open(0, 0)
        self.assertTrue(result.detonated)
        self.assertEqual(result.status, DETONATED)
        self.assertEqual(result.opened, [(0, 0)])

    def test_open_flagged_cell_is_noop(self):
        board = Board.from_layout(CORNER_MINE)
        board.toggle_flag(0, 0)
        self.assertIs(board.open(0, 0), NO_CHANGE)
        self.assertFalse(board.opened[0, 0])

    def test_open_twice_is_noop(self):
        board = Board.from_layout(CORNER_MINE)
        board.open(1, 1)
        result = board.open(1, 1)
        self.assertFalse(result.changed)

    def test_cascade_skips_flagged_cells(self):
        board = Board.from_layout(CORNER_MINE)
        board.toggle_flag(0, 2)
        result = board.open(2, 2)
        self.assertNotIn((0, 2), result.opened)
        self.assertFalse(board.is_cleared())

    def test_progress(self):
        board = Board.from_layout(CORNER_MINE)
        self.assertEqual(board.progress(), 0)
        board.open(1, 1)
        self.assertEqual(board.progress(), 1)
        self.assertEqual(board.total_safe_cells, 8)


class TestFlagAndChord(unittest.TestCase):
    """Test cases for flag toggling and chording"""

    def setUp(self):
        self.board = Board.from_layout(CORNER_MINE)

    def test_toggle_flag(self):
        self.assertTrue(self.board.toggle_flag(0, 0))
        self.assertTrue(self.board.flagged[0, 0])
        self.assertTrue(self.board.toggle_flag(0, 0))
        self.assertFalse(self.board.flagged[0, 0])

    def test_flag_open_cell_rejected(self):
        self.board.open(1, 1)
        self.assertFalse(self.board.toggle_flag(1, 1))
        self.assertFalse(self.board.flagged[1, 1])

    def test_chord_satisfied_number(self):
        self.board.open(1, 1)
        self.board.toggle_flag(0, 0)
        result = self.board.chord(1, 1)
        self.assertFalse(result.detonated)
        self.assertEqual(len(result.opened), 7)
        self.assertTrue(self.board.is_cleared())

    def test_chord_with_wrong_flag_detonates(self):
        self.board.open(1, 1)
        self.board.toggle_flag(0, 1)
        result = self.board.chord(1, 1)
        self.assertTrue(result.detonated)
        self.assertIn((0, 0), result.opened)

    def test_chord_unsatisfied_is_noop(self):
        self.board.open(1, 1)
        self.assertIs(self.board.chord(1, 1), NO_CHANGE)

    def test_chord_closed_cell_is_noop(self):
        self.board.toggle_flag(0, 0)
        self.assertIs(self.board.chord(1, 1), NO_CHANGE)

    def test_chord_zero_cell_is_noop(self):
        self.board.open(2, 2)
        self.assertIs(self.board.chord(2, 2), NO_CHANGE)


class TestViews(unittest.TestCase):
    """Test cases for client views of the board"""

    def test_closed_cells_hide_contents(self):
        board = Board.from_layout(CORNER_MINE)
        cell = board.cell(0, 0)
        self.assertEqual(cell.to_dict(), {'isMine': False, 'isOpen': False, 'isFlagged': False,
                                          'nearbyMines': 0})

    def test_reveal_shows_mines(self):
        board = Board.from_layout(CORNER_MINE)
        self.assertTrue(board.cell(0, 0, reveal=True).isMine)
        self.assertEqual(board.cell(1, 1, reveal=True).nearbyMines, 1)

    def test_open_cell_shows_count(self):
        board = Board.from_layout(CORNER_MINE)
        board.open(1, 1)
        self.assertEqual(board.cell(1, 1).to_dict(), {'isMine': False, 'isOpen': True, 'isFlagged': False,
                                                      'nearbyMines': 1})

    def test_cells_payload(self):
        board = Board.from_layout(CORNER_MINE)
        board.open(1, 1)
        payload = board.cells([(1, 1)])
        self.assertEqual(payload, [{'row': 1, 'col': 1, 'cell': board.cell(1, 1).to_dict()}])

    def test_to_view_shape(self):
        board = Board(4, 6, 2)
        view = board.to_view()
        self.assertEqual(len(view), 4)
        self.assertEqual(len(view[0]), 6)

    def test_mine_positions(self):
        board = Board.from_layout(["*..", "..*"])
        self.assertEqual(board.mine_positions(), [[0, 0], [1, 2]])


if __name__ == '__main__':
    unittest.main()

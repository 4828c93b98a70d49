"""Board engine for the minesweeper server.

Pure grid logic: mine placement, adjacency counts, cascade reveal, flag
toggling and chording.  Nothing in here knows about rooms, players or
sockets; the mode controllers in game_modes.py own Board instances.

"""
from collections import namedtuple
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple
import numpy as np


MAX_DIMENSION = 100

# Offsets of the (up to) eight neighbours of a cell
NEIGHBOR_OFFSETS = [(-1, -1), (-1, 0), (-1, 1),
                    (0, -1),           (0, 1),
                    (1, -1),  (1, 0),  (1, 1)]

DETONATED = 'detonated'
CLEARED = 'cleared'


class InvalidConfiguration(ValueError):
    """Raised when board parameters cannot produce a playable board.

    Attributes
    ----------
    rows, cols, mine_count : int
        The rejected parameters
    """

    def __init__(self, rows: int, cols: int, mine_count: int, reason: str):
        self.rows = rows
        self.cols = cols
        self.mine_count = mine_count
        super().__init__(f"Invalid board {rows}x{cols} with {mine_count} mines: {reason}")


@dataclass
class Cell(object):
    """View of a single cell, shaped the way clients render it."""
    isMine: bool
    isOpen: bool
    isFlagged: bool
    nearbyMines: int

    def to_dict(self) -> dict:
        return {
            'isMine': self.isMine,
            'isOpen': self.isOpen,
            'isFlagged': self.isFlagged,
            'nearbyMines': self.nearbyMines,
        }


@dataclass(frozen=True)
class BoardConfig(object):
    """Dimensions and mine count a room uses whenever it (re)creates a board.

    Attributes
    ----------
    rows : int
        Board height
    cols : int
        Board width
    mines : int
        Number of mines
    difficulty : str
        Preset name, or 'Custom'
    """
    rows: int
    cols: int
    mines: int
    difficulty: str = 'Custom'

    @classmethod
    def from_request(cls, difficulty: Optional[str] = None, rows=None, cols=None, mines=None) -> 'BoardConfig':
        """Build a config from a preset name or explicit custom dimensions.

        Raises
        ------
        InvalidConfiguration
            If the preset is unknown or the custom values are not integers,
            or if the resulting board is unplayable
        """
        if difficulty is None and rows is None and cols is None and mines is None:
            difficulty = DEFAULT_DIFFICULTY
        if difficulty is not None:
            difficulty = str(difficulty).strip().capitalize()

        if difficulty is not None and difficulty != 'Custom':
            preset = DIFFICULTIES.get(difficulty)
            if preset is None:
                raise InvalidConfiguration(0, 0, 0, f"unknown difficulty '{difficulty}'")
            return preset

        values = []
        for value in (rows, cols, mines):
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidConfiguration(rows, cols, mines, "custom rows, cols and mines must be integers")
            values.append(value)
        validate_dimensions(*values)
        return cls(rows=values[0], cols=values[1], mines=values[2], difficulty='Custom')

    @property
    def total_safe_cells(self) -> int:
        return self.rows * self.cols - self.mines

    def to_dict(self) -> dict:
        return {'rows': self.rows, 'cols': self.cols, 'mines': self.mines,
                'difficulty': self.difficulty}


DIFFICULTIES = {
    'Easy': BoardConfig(9, 9, 10, 'Easy'),
    'Medium': BoardConfig(16, 16, 40, 'Medium'),
    'Hard': BoardConfig(16, 30, 99, 'Hard'),
}
DEFAULT_DIFFICULTY = 'Medium'


class OpenResult(namedtuple('OpenResult', ['opened', 'detonated'])):
    """Outcome of an open or chord.

    ``opened`` lists the coordinates that changed from closed to open during
    this action, in reveal order.  ``detonated`` is True if any of them is a
    mine.  An empty ``opened`` list means the action was a no-op.
    """
    __slots__ = ()

    @property
    def status(self) -> str:
        return DETONATED if self.detonated else CLEARED

    @property
    def changed(self) -> bool:
        return len(self.opened) > 0


NO_CHANGE = OpenResult([], False)


def validate_dimensions(rows: int, cols: int, mine_count: int):
    """Raise InvalidConfiguration unless the parameters make a playable board."""
    if rows < 1 or cols < 1 or rows > MAX_DIMENSION or cols > MAX_DIMENSION:
        raise InvalidConfiguration(rows, cols, mine_count,
                                   f"rows and cols must be between 1 and {MAX_DIMENSION}")
    if mine_count < 0:
        raise InvalidConfiguration(rows, cols, mine_count, "mine count cannot be negative")
    # The first click and its neighbours are always kept free of mines
    if mine_count >= rows * cols - 9:
        raise InvalidConfiguration(rows, cols, mine_count,
                                   f"mine count must be less than {rows * cols - 9}")


def count_adjacent_mines(mines: np.ndarray) -> np.ndarray:
    """Return, for every cell, how many of its neighbours are mines."""
    rows, cols = mines.shape
    padded = np.pad(mines.astype(np.int8), 1)
    counts = np.zeros((rows, cols), dtype=np.int8)
    for dr, dc in NEIGHBOR_OFFSETS:
        counts += padded[1 + dr:1 + dr + rows, 1 + dc:1 + dc + cols]
    return counts


class Board(object):
    """A rectangular minesweeper grid.

    Mines are placed lazily: a new board has none until ``place_mines`` is
    called, which ``open`` does on the first open so that the clicked cell
    and its neighbours are guaranteed safe.  Once placed, ``nearby`` never
    changes.

    Parameters
    ----------
    rows : int
        Board height
    cols : int
        Board width
    mine_count : int
        Number of mines to place
    rng : np.random.Generator, optional
        Source of randomness for mine placement.  Defaults to a fresh,
        unseeded generator.

    Raises
    ------
    InvalidConfiguration
        If the dimensions are out of range or there are too many mines
    """

    def __init__(self, rows: int, cols: int, mine_count: int, rng: Optional[np.random.Generator] = None):
        validate_dimensions(rows, cols, mine_count)
        self.rows = rows
        self.cols = cols
        self.mine_count = mine_count
        self.mines = np.zeros((rows, cols), dtype=bool)
        self.opened = np.zeros((rows, cols), dtype=bool)
        self.flagged = np.zeros((rows, cols), dtype=bool)
        self.nearby = np.zeros((rows, cols), dtype=np.int8)
        self.mines_placed = False
        self._rng = rng if rng is not None else np.random.default_rng()

    @classmethod
    def from_config(cls, config: BoardConfig, rng: Optional[np.random.Generator] = None) -> 'Board':
        return cls(config.rows, config.cols, config.mines, rng=rng)

    @classmethod
    def generate(cls, rows: int, cols: int, mine_count: int, exclude_cell: Tuple[int, int],
                 rng: Optional[np.random.Generator] = None) -> 'Board':
        """Create a board with mines already placed around ``exclude_cell``."""
        board = cls(rows, cols, mine_count, rng=rng)
        board.place_mines(exclude_cell)
        return board

    @classmethod
    def from_layout(cls, layout: Sequence[str]) -> 'Board':
        """Build a fully mined board from rows of text, '*' marking a mine.

        The mine-count limit is not applied, so tiny hand-drawn boards are
        allowed.  Mainly useful for tests and benchmarks.
        """
        rows = len(layout)
        cols = len(layout[0]) if rows else 0
        board = cls.__new__(cls)
        board.rows = rows
        board.cols = cols
        board.mines = np.array([[ch == '*' for ch in line] for line in layout], dtype=bool).reshape(rows, cols)
        board.mine_count = int(board.mines.sum())
        board.opened = np.zeros((rows, cols), dtype=bool)
        board.flagged = np.zeros((rows, cols), dtype=bool)
        board.nearby = count_adjacent_mines(board.mines)
        board.mines_placed = True
        board._rng = np.random.default_rng()
        return board

    def place_mines(self, exclude_cell: Tuple[int, int]):
        """Scatter ``mine_count`` mines uniformly, avoiding ``exclude_cell``
        and its neighbours, and compute adjacency counts.

        Raises
        ------
        RuntimeError
            If mines were already placed
        """
        if self.mines_placed:
            raise RuntimeError("Mines have already been placed on this board")
        row, col = exclude_cell
        excluded = np.zeros((self.rows, self.cols), dtype=bool)
        excluded[max(row - 1, 0):row + 2, max(col - 1, 0):col + 2] = True

        candidates = np.flatnonzero(~excluded)
        chosen = self._rng.choice(candidates, size=self.mine_count, replace=False)
        self.mines.flat[chosen] = True
        self.nearby = count_adjacent_mines(self.mines)
        self.mines_placed = True

    def contains(self, row: int, col: int) -> bool:
        return 0 <= row < self.rows and 0 <= col < self.cols

    def neighbors(self, row: int, col: int) -> Iterator[Tuple[int, int]]:
        for dr, dc in NEIGHBOR_OFFSETS:
            nr, nc = row + dr, col + dc
            if 0 <= nr < self.rows and 0 <= nc < self.cols:
                yield nr, nc

    def open(self, row: int, col: int) -> OpenResult:
        """Open a cell, flood-filling outwards from zero cells.

        Opening a flagged or already open cell does nothing.  Opening a mine
        marks it open and reports a detonation.  Otherwise the cell is opened
        and, if it has no mined neighbours, every connected zero cell plus
        the numbered border around that region is opened as well.

        The flood fill uses an explicit stack; a cell is marked open when it
        is pushed, so each cell is visited at most once.

        Returns
        -------
        OpenResult
            The newly opened coordinates and whether a mine was hit
        """
        if self.flagged[row, col] or self.opened[row, col]:
            return NO_CHANGE
        if not self.mines_placed:
            self.place_mines((row, col))

        self.opened[row, col] = True
        if self.mines[row, col]:
            return OpenResult([(row, col)], True)

        revealed = []
        stack = [(row, col)]
        while stack:
            r, c = stack.pop()
            revealed.append((r, c))
            if self.nearby[r, c] != 0:
                continue
            for nr, nc in self.neighbors(r, c):
                if not self.opened[nr, nc] and not self.flagged[nr, nc]:
                    self.opened[nr, nc] = True
                    stack.append((nr, nc))
        return OpenResult(revealed, False)

    def toggle_flag(self, row: int, col: int) -> bool:
        """Flip the flag on a closed cell.  Returns False (and does nothing)
        if the cell is open."""
        if self.opened[row, col]:
            return False
        self.flagged[row, col] = not self.flagged[row, col]
        return True

    def chord(self, row: int, col: int) -> OpenResult:
        """Open all unflagged neighbours of a satisfied numbered cell.

        The target must be open and numbered, and the number of flagged
        neighbours must equal its ``nearbyMines``; otherwise the board is left
        untouched.  Each neighbour is opened with ``open``, so zero
        neighbours cascade and a wrongly placed flag leads to a detonation.
        """
        if not self.opened[row, col] or self.nearby[row, col] == 0:
            return NO_CHANGE
        neighbours = list(self.neighbors(row, col))
        flags = sum(1 for nr, nc in neighbours if self.flagged[nr, nc])
        if flags != self.nearby[row, col]:
            return NO_CHANGE

        revealed = []
        detonated = False
        for nr, nc in neighbours:
            result = self.open(nr, nc)
            revealed.extend(result.opened)
            detonated = detonated or result.detonated
        return OpenResult(revealed, detonated)

    def is_cleared(self) -> bool:
        """True iff every non-mine cell is open."""
        return self.mines_placed and not np.any(~self.mines & ~self.opened)

    def progress(self) -> int:
        """Number of open non-mine cells."""
        return int(np.count_nonzero(self.opened & ~self.mines))

    @property
    def total_safe_cells(self) -> int:
        return self.rows * self.cols - self.mine_count

    def cell(self, row: int, col: int, reveal: bool = False) -> Cell:
        """Client view of one cell.

        Closed cells hide their contents unless ``reveal`` is set, which is
        used once a game is over.
        """
        is_open = bool(self.opened[row, col])
        visible = is_open or reveal
        return Cell(
            isMine=bool(self.mines[row, col]) if visible else False,
            isOpen=is_open,
            isFlagged=bool(self.flagged[row, col]),
            nearbyMines=int(self.nearby[row, col]) if visible else 0,
        )

    def cells(self, coords: Sequence[Tuple[int, int]], reveal: bool = False) -> List[dict]:
        return [{'row': int(r), 'col': int(c), 'cell': self.cell(r, c, reveal).to_dict()} for r, c in coords]

    def mine_positions(self) -> List[List[int]]:
        return [[int(r), int(c)] for r, c in zip(*np.nonzero(self.mines))]

    def to_view(self, reveal: bool = False) -> List[List[dict]]:
        return [[self.cell(r, c, reveal).to_dict() for c in range(self.cols)] for r in range(self.rows)]

#!/usr/bin/env python3
"""Performance test for the board engine.

This script benchmarks cascade reveal, chording and snapshot rendering on the
largest allowed boards to make sure a single action stays well below network
latency, since every action holds its room's lock while it runs.
"""

import time
import numpy as np
from minesync.board import Board, MAX_DIMENSION


def create_empty_board():
    """A mine-free 100x100 board: one click floods the whole grid."""
    return Board.from_layout(['.' * MAX_DIMENSION] * MAX_DIMENSION)


def create_dense_board(seed=0):
    """A 100x100 board at roughly 20% density, mines placed around the centre."""
    rng = np.random.default_rng(seed)
    centre = (MAX_DIMENSION // 2, MAX_DIMENSION // 2)
    return Board.generate(MAX_DIMENSION, MAX_DIMENSION, 2000, exclude_cell=centre, rng=rng)


def create_chord_board():
    """A board whose top-left number is satisfied by a flag, with a large
    empty region behind it so the chord cascades."""
    layout = ['*' + '.' * (MAX_DIMENSION - 1)] + ['.' * MAX_DIMENSION] * (MAX_DIMENSION - 1)
    return Board.from_layout(layout)


def benchmark_scenario(name, make_board, action, iterations=50):
    """Benchmark one action against freshly built boards."""
    print(f"\n{name}:")
    boards = [make_board() for _ in range(iterations)]

    start_time = time.perf_counter()
    opened = 0
    for board in boards:
        opened += action(board)
    end_time = time.perf_counter()

    avg_time = (end_time - start_time) / iterations
    print(f"  Average time: {avg_time * 1000:.2f}ms")
    print(f"  Cells opened per action: {opened // iterations}")

    if avg_time < 0.01:
        print("  ✅ FAST (< 10ms)")
    elif avg_time < 0.05:
        print("  ⚠️  ACCEPTABLE (< 50ms)")
    else:
        print("  ❌ SLOW (> 50ms)")
    return avg_time


def open_centre(board):
    return len(board.open(MAX_DIMENSION // 2, MAX_DIMENSION // 2).opened)


def chord_corner(board):
    board.toggle_flag(0, 0)
    board.opened[0, 1] = True
    return len(board.chord(0, 1).opened)


def render_view(board):
    board.open(MAX_DIMENSION // 2, MAX_DIMENSION // 2)
    board.to_view(reveal=True)
    return 0


def main():
    """Run board engine benchmarks."""
    print("=== Minesweeper Board Engine Performance Benchmark ===")
    print(f"Board size: {MAX_DIMENSION}x{MAX_DIMENSION}")

    benchmark_scenario("Full-board flood fill", create_empty_board, open_centre)
    benchmark_scenario("Dense board first click", create_dense_board, open_centre)
    benchmark_scenario("Chord into large empty region", create_chord_board, chord_corner)
    benchmark_scenario("Open plus full snapshot render", create_dense_board, render_view, iterations=10)

    print("\n=== Summary ===")
    print("Single actions should stay under 10ms so room locks are held briefly")


if __name__ == "__main__":
    main()

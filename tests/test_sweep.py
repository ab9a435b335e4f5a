"""
Step sweep against a brute-force simulation of the full lattice.

The reference keeps every position of a box around the origin and topples
each one with its 2*D neighbors directly, without any symmetry reduction.
"""

import gc
import itertools
import weakref

import numpy as np
import pytest

from aether_sim import AetherConfig, AetherSimulator, BIG_INT, INT64, lattice
from aether_sim import sweep
from aether_sim.topple import Neighbor, topple


def reference_run(dimension, initial_value, steps):
    # nothing reaches beyond max |x_i| = steps within ``steps`` steps
    radius = steps + 1
    box = itertools.product(range(-radius, radius + 1), repeat=dimension)
    grid = {position: 0 for position in box}
    grid[(0,) * dimension] = initial_value
    for _ in range(steps):
        nxt = dict.fromkeys(grid, 0)
        for position, value in grid.items():
            neighbors = []
            for axis in range(dimension):
                for step in (1, -1):
                    moved = list(position)
                    moved[axis] += step
                    moved = tuple(moved)
                    neighbors.append(Neighbor(grid.get(moved, 0), 1, 1, moved))
            result = topple(value, neighbors)
            nxt[position] += result.remainder
            for target, amount in result.outgoing:
                nxt[target] += amount
        grid = nxt
    return grid


def make_sim(dimension, initial_value, implementation=BIG_INT, **kwargs):
    config = AetherConfig(
        dimension=dimension,
        initial_value=initial_value,
        implementation=implementation,
        **kwargs,
    )
    return AetherSimulator(config)


@pytest.mark.parametrize("implementation", [BIG_INT, INT64])
@pytest.mark.parametrize(
    "dimension, initial_value, steps",
    [(1, 9, 6), (1, -77, 8), (2, 500, 6), (2, -300, 6), (3, 1000, 4)],
)
def test_matches_full_lattice_reference(implementation, dimension, initial_value, steps):
    expected = reference_run(dimension, initial_value, steps)
    sim = make_sim(dimension, initial_value, implementation)
    for _ in range(steps):
        sim.advance()
    for position, value in expected.items():
        assert sim.value_at(position) == value, position
    assert sim.lattice_sum() == initial_value


def test_one_dimension_first_steps():
    sim = make_sim(1, 9)
    sim.advance()
    assert [sim.value_at((x,)) for x in (-2, -1, 0, 1, 2)] == [0, 3, 3, 3, 0]
    sim.advance()
    assert [sim.value_at((x,)) for x in (-2, -1, 0, 1, 2)] == [1, 2, 3, 2, 1]


@pytest.mark.parametrize("implementation", [BIG_INT, INT64])
@pytest.mark.parametrize("dimension", [1, 2, 3, 4])
def test_lattice_sum_is_conserved(implementation, dimension):
    sim = make_sim(dimension, 2_000, implementation)
    for _ in range(10):
        sim.advance()
        assert sim.lattice_sum() == 2_000


def test_positive_source_stays_non_negative():
    sim = make_sim(2, 10_000)
    for _ in range(15):
        sim.advance()
    assert all(value >= 0 for _, value in sim.state.grid.cells())


@pytest.mark.parametrize("dimension, initial_value", [(2, 12_345), (3, -4_321)])
def test_big_int_and_int64_agree(dimension, initial_value):
    exact = make_sim(dimension, initial_value, BIG_INT)
    fixed = make_sim(dimension, initial_value, INT64)
    for _ in range(12):
        assert exact.advance() == fixed.advance()
        assert exact.bound == fixed.bound
        assert exact.state.grid.flat().tolist() == fixed.state.grid.flat().tolist()


def test_huge_values_need_big_int():
    value = 10**30
    sim = make_sim(2, value)
    for _ in range(5):
        sim.advance()
    assert sim.lattice_sum() == value
    assert sim.value_at((0, 0)) > 2**63


def test_stable_configuration_reports_no_change():
    sim = make_sim(2, 1)
    assert sim.changed is None
    assert sim.run() == 1
    assert sim.changed is False
    assert sim.step == 1
    assert sim.value_at((0, 0)) == 1


@pytest.mark.parametrize("implementation", [BIG_INT, INT64])
def test_stable_configuration_stays_stable(implementation):
    sim = make_sim(1, 9, implementation)
    sim.run()
    assert sim.changed is False
    values = sim.state.grid.flat().tolist()
    bound = sim.bound
    for _ in range(3):
        assert not sim.advance()
        assert sim.bound == bound
        assert sim.state.grid.flat().tolist() == values


def test_negative_source_changes_sign_near_the_origin():
    sim = make_sim(2, -300)
    sim.advance()
    # each of the four neighbors tops the origin up by half the gap
    assert sim.value_at((0, 0)) == 300
    assert sim.value_at((1, 0)) == -150


def test_run_stops_at_max_steps():
    sim = make_sim(2, 1_000)
    assert sim.run(max_steps=4) == 4
    assert sim.step == 4
    assert sim.changed


def test_bound_grows_with_the_frontier():
    sim = make_sim(1, 1_000)
    start = sim.bound
    assert start == 2
    for step in range(1, 16):
        sim.advance()
        assert sim.bound <= start + step
        assert sim.state.grid.n_slices == sim.bound + 3
        for w in (sim.bound + 1, sim.bound + 2):
            assert not np.any(sim.state.grid.slice(w))
    assert sim.bound > start


def test_parity_flag_toggles():
    sim = make_sim(2, 100)
    assert sim.even_turn
    sim.advance()
    assert not sim.even_turn
    sim.advance()
    assert sim.even_turn
    assert not make_sim(2, -100).even_turn


def test_value_at_outside_bound_and_symmetry():
    sim = make_sim(3, 5_000)
    for _ in range(5):
        sim.advance()
    assert sim.value_at((10**6, 0, 0)) == 0
    assert sim.value_at((2, -1, 0)) == sim.value_at((0, 1, -2)) == sim.value_at((-1, 0, 2))
    with pytest.raises(ValueError):
        sim.value_at((1, 0))


def test_consumed_generation_is_released():
    sim = make_sim(2, 100)
    previous = sim.state
    sim.advance()
    assert previous.grid.n_slices == 0
    assert sim.state.grid.n_slices == sim.bound + 3


def test_sweep_holds_one_neighbor_table_at_a_time(tmp_path, monkeypatch):
    built = []
    peak = 0

    def tracking(dimension, w):
        nonlocal peak
        table = lattice.neighbor_table(dimension, w)
        built.append(weakref.ref(table))
        peak = max(peak, sum(1 for ref in built if ref() is not None))
        return table

    monkeypatch.setattr(sweep, "neighbor_table", tracking)
    sim = make_sim(
        3,
        10**15,
        INT64,
        storage="file",
        folder=str(tmp_path),
        track_compliance=True,
    )
    sim.run(max_steps=12)
    gc.collect()
    assert len(built) > 12 * 5
    # the table being built plus the one of the previous slice
    assert peak <= 2
    assert all(ref() is None for ref in built)
    sim.close()


def test_neighbor_tables_use_narrow_integers():
    table = lattice.neighbor_table(3, 6)
    assert table.delta.dtype == np.int8
    assert table.symmetry.dtype == np.int8
    assert table.count.dtype == np.int8
    assert table.index.dtype == np.int32
    assert table.multiplier.dtype == np.int32


def _interrupt_at(slice_index, monkeypatch):
    real = lattice.neighbor_table

    def interrupted(dimension, w):
        if w == slice_index:
            raise KeyboardInterrupt
        return real(dimension, w)

    monkeypatch.setattr(sweep, "neighbor_table", interrupted)


@pytest.mark.parametrize("implementation", [BIG_INT, INT64])
def test_interrupted_step_marks_the_generation_unusable(implementation, monkeypatch):
    sim = make_sim(2, 1_000, implementation)
    sim.run(max_steps=3)
    _interrupt_at(3, monkeypatch)
    with pytest.raises(KeyboardInterrupt):
        sim.advance()
    monkeypatch.undo()

    with pytest.raises(RuntimeError, match="restore the last snapshot"):
        sim.value_at((0, 0))
    with pytest.raises(RuntimeError, match="restore the last snapshot"):
        sim.lattice_sum()
    with pytest.raises(RuntimeError, match="restore the last snapshot"):
        sim.advance()


def test_step_interrupted_before_consuming_anything_can_be_retried(monkeypatch):
    sim = make_sim(2, 1_000)
    sim.run(max_steps=3)
    _interrupt_at(0, monkeypatch)
    with pytest.raises(KeyboardInterrupt):
        sim.advance()
    monkeypatch.undo()

    assert sim.step == 3
    assert sim.lattice_sum() == 1_000
    sim.advance()
    assert sim.step == 4
    assert sim.lattice_sum() == 1_000

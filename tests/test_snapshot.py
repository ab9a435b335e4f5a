# tests/test_snapshot.py
import numpy as np
import pytest

from aether_sim import (
    AetherConfig,
    AetherSimulator,
    BIG_INT,
    INT64,
    SnapshotCompatibilityError,
)
from aether_sim import snapshot


def make_sim(dimension=2, initial_value=4_321, implementation=BIG_INT, **kwargs):
    return AetherSimulator(
        AetherConfig(
            dimension=dimension,
            initial_value=initial_value,
            implementation=implementation,
            **kwargs,
        )
    )


def assert_same_state(a, b):
    assert a.step == b.step
    assert a.bound == b.bound
    assert a.even_turn == b.even_turn
    assert a.changed == b.changed
    assert a.state.grid.flat().tolist() == b.state.grid.flat().tolist()


@pytest.mark.parametrize("implementation", [BIG_INT, INT64])
def test_resumed_run_continues_identically(tmp_path, implementation):
    path = tmp_path / "snap.npz"
    sim = make_sim(implementation=implementation)
    sim.run(max_steps=5)
    sim.save(path)
    sim.run(max_steps=5)

    restored = AetherSimulator.restore(path)
    assert restored.config.implementation == implementation
    assert restored.step == 5
    restored.run(max_steps=5)
    assert_same_state(sim, restored)


def test_big_values_survive_the_round_trip(tmp_path):
    path = tmp_path / "big.npz"
    value = -(10**25)
    sim = make_sim(dimension=3, initial_value=value)
    sim.run(max_steps=3)
    sim.save(path)
    restored = AetherSimulator.restore(path)
    assert restored.lattice_sum() == value
    assert restored.value_at((1, 0, 0)) == sim.value_at((0, 0, -1))


def test_container_tags():
    sim = make_sim()
    sim.advance()
    container = snapshot.to_container(sim.state)
    assert container[snapshot.MODEL] == snapshot.AETHER
    assert container[snapshot.STEP] == 1
    assert container[snapshot.GRID_DIMENSION] == 2
    assert container[snapshot.GRID_SLICES] == sim.bound + 3
    assert container[snapshot.EVEN_TURN] is False
    assert snapshot.TOPPLING_ALTERNATION_COMPLIANCE not in container


@pytest.mark.parametrize(
    "key, value",
    [
        (snapshot.MODEL, "sandpile"),
        (snapshot.INITIAL_CONFIGURATION_TYPE, "random"),
        (snapshot.GRID_TYPE, "finite"),
        (snapshot.GRID_IMPLEMENTATION_TYPE, "isotropic_big_int"),
        (snapshot.COORDINATE_BOUNDS_IMPLEMENTATION_TYPE, "max_coordinate_long"),
        (snapshot.EVEN_TURN, True),
        (snapshot.FORMAT, snapshot.FORMAT_VERSION + 1),
    ],
)
def test_mismatched_tags_are_rejected(key, value):
    sim = make_sim()
    sim.advance()
    container = snapshot.to_container(sim.state)
    container[key] = value
    with pytest.raises(SnapshotCompatibilityError):
        snapshot.from_container(container)


def test_wrong_implementation_or_dimension_is_rejected():
    sim = make_sim()
    sim.advance()
    container = snapshot.to_container(sim.state)
    with pytest.raises(SnapshotCompatibilityError):
        snapshot.from_container(container, implementation=INT64)
    with pytest.raises(SnapshotCompatibilityError):
        snapshot.from_container(container, dimension=3)
    with pytest.raises(SnapshotCompatibilityError):
        snapshot.from_container(container, implementation="float")


def test_missing_or_truncated_grid_is_rejected():
    sim = make_sim()
    sim.advance()
    container = snapshot.to_container(sim.state)
    truncated = dict(container)
    truncated[snapshot.GRID] = container[snapshot.GRID][:-1]
    with pytest.raises(SnapshotCompatibilityError):
        snapshot.from_container(truncated)
    del container[snapshot.GRID]
    with pytest.raises(SnapshotCompatibilityError):
        snapshot.from_container(container)


def test_missing_changed_flag_restores_as_unknown():
    sim = make_sim()
    sim.run(max_steps=2)
    container = snapshot.to_container(sim.state)
    del container[snapshot.CONFIGURATION_CHANGED_FROM_PREVIOUS_STEP]
    state, compliance = snapshot.from_container(container)
    assert state.changed is None
    assert compliance is None
    assert state.step == 2


def test_compliance_is_saved_with_the_grid(tmp_path):
    path = tmp_path / "tracked.npz"
    sim = make_sim(track_compliance=True)
    sim.run(max_steps=3)
    sim.save(path)

    restored = AetherSimulator.restore(path, track_compliance=True)
    assert restored.step == 3
    for position in [(0, 0), (1, 0), (2, 1), (3, 3), (40, 1)]:
        assert restored.compliance_at(position) == sim.compliance_at(position)


def test_missing_compliance_is_recomputed(tmp_path):
    path = tmp_path / "untracked.npz"
    sim = make_sim()
    sim.run(max_steps=3)
    sim.save(path)

    restored = AetherSimulator.restore(path, track_compliance=True)
    assert restored.step == 4
    assert restored.compliance.recorded
    restored.compliance_at((0, 0))


def test_missing_snapshot_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        AetherSimulator.restore(tmp_path / "nothing.npz")


def test_saved_grid_is_a_flat_array(tmp_path):
    path = tmp_path / "flat.npz"
    sim = make_sim(implementation=INT64)
    sim.run(max_steps=2)
    sim.save(path)
    with np.load(path, allow_pickle=True) as data:
        grid = data[snapshot.GRID]
    assert grid.dtype == np.int64
    assert grid.tolist() == sim.state.grid.flat().tolist()

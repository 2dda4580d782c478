"""
Tests for the tolerance based diff engine.
"""

import numpy as np
import pytest

import mdpp
from mdpp import ParseError, Snapshot, SizeMismatchError, TextSink, XyzSink, compare_snapshots, diff


def _write(path, atoms, sink_class=XyzSink, precision=6):
    with sink_class(str(path), precision) as sink:
        sink.write_snapshot(Snapshot(atoms))
    return str(path)


def _random_atoms(n, seed):
    rng = np.random.default_rng(seed)
    atoms = np.zeros(n, dtype=mdpp.PARTICLE_DTYPE)
    atoms["id"] = np.arange(1, n + 1)
    for name in ("x", "y", "z", "vx", "vy", "vz"):
        atoms[name] = rng.uniform(-5.0, 5.0, n)
    return atoms


class TestPeriodicScenario:
    """Atom 2 crossed the x face of a box of length 10."""

    @pytest.fixture
    def files(self, tmp_path, make_atoms):
        a = make_atoms([1, 2, 3])
        b = a.copy()
        b["x"][1] += 10.0
        return _write(tmp_path / "a.xyz", a), _write(tmp_path / "b.xyz", b)

    def test_periodic_accepts_wrapped_atom(self, files):
        report = diff(*files, 1e-6, periodic=True, box_size=(10.0, 10.0, 10.0))
        assert report.passed
        assert report.mismatches == []

    def test_non_periodic_flags_wrapped_atom(self, files):
        report = diff(*files, 1e-6, periodic=False)
        assert report.mismatches == [1]
        assert not report.passed

    def test_zero_box_collapses_to_plain_test(self, files):
        report = diff(*files, 1e-6, periodic=True, box_size=(0.0, 0.0, 0.0))
        assert report.mismatches == [1]

    def test_incomplete_box_defaults_to_zero(self, files):
        report = diff(*files, 1e-6, periodic=True, box_size=(10.0, 10.0))
        assert report.mismatches == [1]


class TestDiffProperties:

    @pytest.mark.parametrize("error", [0.0, 1e-12, 1e-6, 1.0])
    @pytest.mark.parametrize("periodic", [False, True])
    def test_self_diff_has_no_mismatch(self, tmp_path, error, periodic):
        path = _write(tmp_path / "a.txt", _random_atoms(50, seed=1), TextSink)
        report = diff(path, path, error, periodic=periodic, box_size=(3.0, 4.0, 5.0))
        assert report.mismatches == []

    @pytest.mark.parametrize("error", [0.0, 1e-3, 0.5, 2.0])
    def test_periodic_with_zero_box_equals_non_periodic(self, error):
        a = Snapshot(_random_atoms(200, seed=2))
        b = Snapshot(a.atoms.copy())
        rng = np.random.default_rng(3)
        for name in ("x", "y", "z", "vx", "vy", "vz"):
            b.atoms[name] += rng.choice([0.0, 1e-4, 0.3, 1.5], size=200)

        plain = compare_snapshots(a, b, error, periodic=False)
        wrapped = compare_snapshots(a, b, error, periodic=True, box_size=(0.0, 0.0, 0.0))
        assert plain.mismatches == wrapped.mismatches

    def test_zero_error_is_exact_equality(self, make_atoms):
        a = Snapshot(make_atoms([1, 2]))
        b = Snapshot(a.atoms.copy())
        b.atoms["vz"][0] = np.nextafter(b.atoms["vz"][0], 1.0)

        assert compare_snapshots(a, b, 0.0).mismatches == [0]

    def test_velocities_are_never_wrapped(self, make_atoms):
        a = Snapshot(make_atoms([1]))
        b = Snapshot(a.atoms.copy())
        b.atoms["vx"] += 10.0

        report = compare_snapshots(a, b, 1e-6, periodic=True, box_size=(10.0, 10.0, 10.0))
        assert report.mismatches == [0]

    def test_compared_by_position_not_id(self, make_atoms):
        a = Snapshot(make_atoms([1, 2]))
        b = Snapshot(a.atoms[::-1].copy())
        assert compare_snapshots(a, b, 1e-6).mismatches == [0, 1]


class TestDiffErrors:

    def test_size_mismatch(self, tmp_path, make_atoms):
        a = _write(tmp_path / "a.xyz", make_atoms([1, 2]))
        b = _write(tmp_path / "b.xyz", make_atoms([1, 2, 3]))
        with pytest.raises(SizeMismatchError, match="2 vs 3"):
            diff(a, b, 1e-6)

    def test_negative_error(self, make_atoms):
        a = Snapshot(make_atoms([1]))
        with pytest.raises(mdpp.ValidationError):
            compare_snapshots(a, a, -1.0)

    def test_unreadable_file(self, tmp_path):
        with pytest.raises(mdpp.IoError):
            diff(str(tmp_path / "a.xyz"), str(tmp_path / "b.xyz"), 1e-6)

    def test_non_utf8_file(self, tmp_path):
        a = tmp_path / "a.txt"
        a.write_bytes(b"1 0 0 0 0 0 \xff\n")
        with pytest.raises(ParseError, match="UTF-8"):
            diff(str(a), str(a), 1e-6)

    def test_non_finite_file_rejected(self, tmp_path):
        a = tmp_path / "a.txt"
        a.write_text("1 nan 0 0 0 0 0\n")
        with pytest.raises(ParseError, match="non-finite"):
            diff(str(a), str(a), 0.0)


class TestLegacyVelocity:

    def test_legacy_mapping_hides_vy_difference(self, tmp_path):
        a = tmp_path / "a.txt"
        b = tmp_path / "b.txt"
        a.write_text("1 0 0 0 0 5 9\n")
        b.write_text("1 0 0 0 0 7 9\n")

        assert diff(str(a), str(b), 1e-6).mismatches == [0]
        assert diff(str(a), str(b), 1e-6, legacy_velocity=True).passed

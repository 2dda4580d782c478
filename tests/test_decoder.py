"""
Tests for binary standards and the rank shard decoder.
"""

import numpy as np
import pytest

import mdpp
from mdpp import FormatError, ValidationError, decode, get_standard


BOX = (0.0, 10.0, 0.0, 20.0, 0.0, 30.0)


class TestStandards:

    def test_record_sizes(self):
        assert mdpp.STANDARDS["misa"].record_size == 4 + 6 * 8
        assert mdpp.STANDARDS["compact"].record_size == 4 + 6 * 4
        assert mdpp.STANDARDS["plain-be"].record_size == 6 * 8

    def test_framed_header_size(self):
        assert mdpp.STANDARDS["misa-framed"].header_dtype.itemsize == 8 + 8 + 6 * 8

    def test_lookup_is_case_insensitive(self):
        assert get_standard("MISA") is mdpp.STANDARDS["misa"]

    def test_unknown_standard(self):
        with pytest.raises(ValidationError, match="unsupported binary standard"):
            get_standard("lammps-binary")

    def test_standard_is_immutable(self):
        with pytest.raises(AttributeError):
            mdpp.STANDARDS["misa"].byteorder = ">"


class TestDecode:

    def test_misa_single_frame(self, make_atoms, encode_shard):
        atoms = make_atoms([3, 1, 2])
        snaps = decode("misa", encode_shard("misa", [(atoms, 0, BOX)]))

        assert len(snaps) == 1
        assert snaps[0].atoms.tolist() == atoms.tolist()
        assert snaps[0].time is None
        assert snaps[0].box is None

    def test_empty_buffer_is_empty_snapshot(self):
        snaps = decode("misa", b"")
        assert len(snaps) == 1
        assert snaps[0].natoms == 0

    def test_length_not_multiple_of_record(self, make_atoms, encode_shard):
        raw = encode_shard("misa", [(make_atoms([1, 2]), 0, BOX)])
        with pytest.raises(FormatError, match="not a multiple"):
            decode("misa", raw + b"\x00")

    def test_compact_widens_floats(self, make_atoms, encode_shard):
        atoms = make_atoms([1, 2, 3, 4])
        snap = decode("compact", encode_shard("compact", [(atoms, 0, BOX)]))[0]

        assert snap.atoms.dtype == mdpp.PARTICLE_DTYPE
        np.testing.assert_array_equal(snap.atoms["id"], atoms["id"])
        for name in ("x", "y", "z", "vx", "vy", "vz"):
            np.testing.assert_allclose(snap.atoms[name], atoms[name], rtol=1e-6)

    def test_big_endian_without_ids(self, make_atoms, encode_shard):
        atoms = make_atoms([7, 8, 9])
        raw = encode_shard("plain-be", [(atoms, 0, BOX)])
        snap = decode("plain-be", raw)[0]

        assert snap.atoms["id"].tolist() == [1, 2, 3]
        np.testing.assert_array_equal(snap.atoms["x"], atoms["x"])
        np.testing.assert_array_equal(snap.atoms["vz"], atoms["vz"])

    def test_framed_multiple_timesteps(self, make_atoms, encode_shard):
        first, second = make_atoms([1, 2]), make_atoms([1, 2, 3], offset=0.5)
        raw = encode_shard("misa-framed", [(first, 100, BOX), (second, 200, BOX)])
        snaps = decode("misa-framed", raw)

        assert [s.time for s in snaps] == [100, 200]
        assert [s.natoms for s in snaps] == [2, 3]
        assert snaps[1].atoms.tolist() == second.tolist()
        assert snaps[0].box == BOX

    def test_declared_count_exceeds_bytes(self, make_atoms, encode_shard):
        raw = encode_shard("misa-framed", [(make_atoms([1, 2, 3, 4, 5]), 0, BOX)])
        truncated = raw[:len(raw) - 3 * mdpp.STANDARDS["misa-framed"].record_size]

        with pytest.raises(FormatError, match="declares 5 atoms"):
            decode("misa-framed", truncated)

    def test_truncated_frame_header(self, make_atoms, encode_shard):
        raw = encode_shard("misa-framed", [(make_atoms([1]), 0, BOX)])
        with pytest.raises(FormatError, match="truncated"):
            decode("misa-framed", raw + b"\x00" * 10)

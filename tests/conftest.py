"""Shared fixtures: synthetic particles and binary rank shards."""

import numpy as np
import pytest

import mdpp


def _make_atoms(ids, offset=0.0):
    rows = [(i, offset + i, offset + 2.0 * i, offset + 3.0 * i, 0.5 * i, -0.25 * i, 0.125 * i) for i in ids]
    return np.array(rows, dtype=mdpp.PARTICLE_DTYPE)


def _encode_shard(standard, frames):
    """frames: list of (atoms, time, box); time/box only used by framed standards."""
    std = mdpp.STANDARDS[standard]
    chunks = []
    for atoms, time, box in frames:
        records = np.zeros(len(atoms), dtype=std.record_dtype)
        for name in std.record_dtype.names:
            records[name] = atoms[name]
        if std.framed:
            header = np.zeros(1, dtype=std.header_dtype)
            header["time"] = time
            header["natoms"] = len(atoms)
            header["box"] = box
            chunks.append(header.tobytes())
        chunks.append(records.tobytes())
    return b"".join(chunks)


@pytest.fixture
def make_atoms():
    return _make_atoms


@pytest.fixture
def encode_shard():
    return _encode_shard


@pytest.fixture
def write_shards(tmp_path):
    """Write <name>.0 ... <name>.N-1, one shard per entry of ``ranks``; returns the logical path."""

    def _write(name, ranks, standard="misa"):
        path = tmp_path / name
        for rank, frames in enumerate(ranks):
            (tmp_path / f"{name}.{rank}").write_bytes(_encode_shard(standard, frames))
        return str(path)

    return _write

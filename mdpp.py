#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
MD Post Processing (Python 3)
-----------------------------

Single-file tool for post-processing distributed particle simulation output:

  1) conv: decode per-rank binary snapshot dumps, merge the ranks of each
     timestep in rank order and write them as xyz, text or LAMMPS-style dump.

  2) diff: compare two text trajectories atom by atom within a tolerance,
     optionally accepting atoms that crossed a periodic box face.

  3) ans: run an analysis routine (Voronoi neighbour counts by default) over
     text trajectories read from disk or from MinIO/S3 object storage.

Command-line usage:

  mdpp conv -i run.bin -o run.xyz -f xyz -r 4 -s misa
  mdpp conv -i step1.bin step2.bin -o merged.dump -f dump -r 2
  mdpp diff -e 1e-6 --periodic-checking --sim-box 10 10 10 a.xyz b.xyz
  mdpp ans -i a.xyz b.xyz -o voronoi.txt --box-start 0 0 --box-size 20

Important options:

  conv
    -i, --input PATH [PATH ...]  logical input(s); rank shards are PATH.0, PATH.1, ...
    -o, --output NAME            output file (or suffix when several inputs are
                                 converted to xyz/text)
    -f, --format {xyz,text,dump} output format
    -p, --precision N            digits after the decimal point (default: 6)
    -s, --standard NAME          binary layout (misa, misa-framed, compact, plain-be)
    -r, --ranks N                shards per timestep (default: 1)
    --dry                        only report what would be converted
    --keep-going                 continue with the next input after a failure

  diff
    -e, --error TOL              absolute tolerance per component
    --periodic-checking          accept differences of one box length on x/y/z
    --sim-box LX LY LZ           box lengths used by --periodic-checking
    --legacy-velocity            read vy and vz from the 7th column (old reader)

Notes
-----
* Binary standards are immutable layout descriptions (byte order, field width,
  id presence, per-frame header); see STANDARDS.
* Dump files use the LAMMPS text grammar and are also readable by `diff` and
  `ans`; the dump reader follows the Pizza.py dump tool.
* Batches stop at the first failing input unless --keep-going is given.
"""

from __future__ import annotations

import argparse
import enum
import gzip
import math
import os
import re
import sys
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import QhullError, Voronoi

MINIO_ENV_PREFIX = "MDPP_MINIO_"

# -----------------------------------------------------------------------------
# Utility: robust prints depending on quiet/debug flags
# -----------------------------------------------------------------------------

def _println(*args, file=None, quiet=False, end="\n"):
    if not quiet:
        file = file or sys.stdout
        print(*args, file=file, end=end)
        file.flush()

# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------

class MdppError(Exception):
    """Base class of every error reported by mdpp."""


class ValidationError(MdppError):
    """Bad arguments, detected before any file is touched."""


class FormatError(MdppError):
    """Binary input does not match the selected standard."""


class SizeMismatchError(MdppError):
    pass


class RankCountError(MdppError):
    """Fewer rank shards than declared for a timestep."""


class MissingBoxBoundsError(MdppError):
    pass


class IoError(MdppError, OSError):
    pass


class ParseError(MdppError, ValueError):
    """A text trajectory line could not be parsed."""

# -----------------------------------------------------------------------------
# Particles and snapshots
# -----------------------------------------------------------------------------

FIELDS = ("id", "x", "y", "z", "vx", "vy", "vz")

PARTICLE_DTYPE = np.dtype([
    ("id", np.uint32),
    ("x", np.float64), ("y", np.float64), ("z", np.float64),
    ("vx", np.float64), ("vy", np.float64), ("vz", np.float64),
])

MAX_ID = 2 ** 32 - 1


class ParticleRecord:
    """One particle: id, position and velocity."""
    __slots__ = FIELDS

    def __init__(self, id: int = 0, x: float = 0.0, y: float = 0.0, z: float = 0.0,
                 vx: float = 0.0, vy: float = 0.0, vz: float = 0.0):
        self.id = id
        self.x, self.y, self.z = x, y, z
        self.vx, self.vy, self.vz = vx, vy, vz

    @classmethod
    def parse(cls, line: str, legacy_velocity: bool = False, lineno: Optional[int] = None) -> "ParticleRecord":
        """
        Parse "id x y z vx vy vz". With ``legacy_velocity`` both vy and vz are
        taken from the 7th token, as the historical reader did.
        """
        where = f"line {lineno}: " if lineno is not None else ""
        words = line.split()
        if len(words) != 7:
            raise ParseError(f"{where}expected 7 columns, got {len(words)}")
        try:
            values = [float(w) for w in words]
        except ValueError:
            raise ParseError(f"{where}invalid number in {line.strip()!r}") from None
        if not math.isfinite(values[0]) or not 0 <= values[0] <= MAX_ID:
            raise ParseError(f"{where}invalid particle id {words[0]!r}")
        if not all(math.isfinite(v) for v in values[1:]):
            raise ParseError(f"{where}non-finite value in {line.strip()!r}")
        if legacy_velocity:
            values[5] = values[6]
        return cls(int(values[0]), *values[1:])

    def astuple(self) -> Tuple:
        return tuple(getattr(self, name) for name in FIELDS)

    def format(self, precision: int = 6) -> str:
        return _line_format(precision).format(*self.astuple())

    def __eq__(self, other):
        if not isinstance(other, ParticleRecord):
            return NotImplemented
        return self.astuple() == other.astuple()

    def __repr__(self):
        return "ParticleRecord(id={}, position=({}, {}, {}), v=({}, {}, {}))".format(*self.astuple())


def _line_format(precision: int) -> str:
    return " ".join(["{:d}"] + ["{:.%df}" % precision] * 6)


def _rows_to_atoms(rows: Sequence[Tuple]) -> np.ndarray:
    if not rows:
        return np.zeros(0, dtype=PARTICLE_DTYPE)
    return np.array(rows, dtype=PARTICLE_DTYPE)


class Snapshot:
    """All particles of one timestep, in file order."""
    __slots__ = ("time", "atoms", "box")

    def __init__(self, atoms: Optional[np.ndarray] = None, time: Optional[int] = None,
                 box: Optional[Tuple[float, ...]] = None):
        self.atoms: np.ndarray = np.zeros(0, dtype=PARTICLE_DTYPE) if atoms is None else atoms
        self.time = time
        # xlo, xhi, ylo, yhi, zlo, zhi
        self.box = box

    @property
    def natoms(self) -> int:
        return len(self.atoms)

    def __len__(self):
        return self.natoms

    def records(self) -> List[ParticleRecord]:
        return [ParticleRecord(*row) for row in self.atoms.tolist()]

    def extent(self) -> Optional[Tuple[float, ...]]:
        """Bounding box of the particle positions, or None for an empty snapshot."""
        if self.natoms == 0:
            return None
        bounds = []
        for name in ("x", "y", "z"):
            col = self.atoms[name]
            bounds += [float(col.min()), float(col.max())]
        return tuple(bounds)

    @classmethod
    def concat(cls, parts: Sequence["Snapshot"]) -> "Snapshot":
        atoms = np.concatenate([p.atoms for p in parts])
        return cls(atoms, time=parts[0].time, box=parts[0].box)

# -----------------------------------------------------------------------------
# Binary standards and decoder
# -----------------------------------------------------------------------------

class BinaryStandard(NamedTuple):
    """Layout of one binary rank shard. Immutable, selected once per run."""
    name: str
    byteorder: str          # "<" little endian, ">" big endian
    float_type: str         # "f8" or "f4"
    has_id: bool
    framed: bool            # every frame starts with (timestep, natoms, box)

    @property
    def record_dtype(self) -> np.dtype:
        fields = [("id", self.byteorder + "u4")] if self.has_id else []
        fields += [(name, self.byteorder + self.float_type) for name in FIELDS[1:]]
        return np.dtype(fields)

    @property
    def header_dtype(self) -> np.dtype:
        return np.dtype([
            ("time", self.byteorder + "u8"),
            ("natoms", self.byteorder + "u8"),
            ("box", self.byteorder + "f8", (6,)),
        ])

    @property
    def record_size(self) -> int:
        return self.record_dtype.itemsize


STANDARDS: Dict[str, BinaryStandard] = {s.name: s for s in (
    BinaryStandard("misa", "<", "f8", has_id=True, framed=False),
    BinaryStandard("misa-framed", "<", "f8", has_id=True, framed=True),
    BinaryStandard("compact", "<", "f4", has_id=True, framed=False),
    BinaryStandard("plain-be", ">", "f8", has_id=False, framed=False),
)}


def get_standard(name) -> BinaryStandard:
    if isinstance(name, BinaryStandard):
        return name
    try:
        return STANDARDS[name.lower()]
    except (KeyError, AttributeError):
        raise ValidationError(
            f"unsupported binary standard {name!r}, expected one of: {', '.join(STANDARDS)}"
        ) from None


def _decode_records(standard: BinaryStandard, raw: bytes, offset: int, natoms: int,
                    first_id: int) -> np.ndarray:
    atoms = np.zeros(natoms, dtype=PARTICLE_DTYPE)
    if natoms == 0:
        return atoms
    records = np.frombuffer(raw, dtype=standard.record_dtype, count=natoms, offset=offset)
    for name in FIELDS[1:]:
        atoms[name] = records[name]
    if standard.has_id:
        atoms["id"] = records["id"]
    else:
        atoms["id"] = np.arange(first_id, first_id + natoms, dtype=np.uint32)
    return atoms


def iter_frames(standard: BinaryStandard, raw: bytes, first_id: int = 1) -> Iterator[Snapshot]:
    """
    Decode the frames of one rank shard.

    Unframed standards hold exactly one frame, the whole buffer, whose length
    must be a multiple of the record size. Framed standards hold a sequence of
    header + records blocks; a header declaring more atoms than the remaining
    bytes is an error.
    """
    size = standard.record_size
    if not standard.framed:
        if len(raw) % size:
            raise FormatError(
                f"{len(raw)} bytes is not a multiple of the {standard.name} record size ({size} bytes)"
            )
        yield Snapshot(_decode_records(standard, raw, 0, len(raw) // size, first_id))
        return

    header_dtype = standard.header_dtype
    offset = 0
    while offset < len(raw):
        if len(raw) - offset < header_dtype.itemsize:
            raise FormatError(f"truncated {standard.name} frame header at byte {offset}")
        header = np.frombuffer(raw, dtype=header_dtype, count=1, offset=offset)[0]
        natoms = int(header["natoms"])
        offset += header_dtype.itemsize
        available = (len(raw) - offset) // size
        if natoms > available:
            raise FormatError(
                f"frame at byte {offset - header_dtype.itemsize} declares {natoms} atoms, "
                f"only {available} records remain"
            )
        atoms = _decode_records(standard, raw, offset, natoms, first_id)
        offset += natoms * size
        yield Snapshot(atoms, time=int(header["time"]), box=tuple(float(v) for v in header["box"]))


def decode(standard, raw: bytes) -> List[Snapshot]:
    return list(iter_frames(get_standard(standard), raw))

# -----------------------------------------------------------------------------
# Byte sources: local files and object storage
# -----------------------------------------------------------------------------

class ByteSource:
    """Read access to input files, chosen once per batch."""

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def read_bytes(self, path: str) -> bytes:
        raise NotImplementedError

    def read_text(self, path: str) -> str:
        try:
            return self.read_bytes(path).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"{path}: not valid UTF-8 text (byte {e.start})") from e


class LocalSource(ByteSource):
    """Local filesystem; ``.gz`` files are decompressed transparently."""

    def exists(self, path: str) -> bool:
        return os.path.isfile(path)

    def read_bytes(self, path: str) -> bytes:
        try:
            if path.endswith(".gz"):
                with gzip.open(path, "rb") as f:
                    return f.read()
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise IoError(f"cannot read {path}: {e.strerror or e}") from e


def _minio_client_from_env():
    try:
        from minio import Minio
    except ImportError as e:
        raise MdppError("reading from object storage requires the 'minio' package "
                        "(pip install 'mdpp[minio]')") from e
    endpoint = os.environ.get(MINIO_ENV_PREFIX + "ENDPOINT")
    if not endpoint:
        raise ValidationError(f"{MINIO_ENV_PREFIX}ENDPOINT is not set")
    return Minio(
        endpoint,
        access_key=os.environ.get(MINIO_ENV_PREFIX + "ACCESS_KEY"),
        secret_key=os.environ.get(MINIO_ENV_PREFIX + "SECRET_KEY"),
        secure=os.environ.get(MINIO_ENV_PREFIX + "SECURE", "1").lower() not in ("0", "false", "no"),
    )


class MinioSource(ByteSource):
    """
    Objects in a MinIO/S3 bucket. Without an explicit client one is built from
    MDPP_MINIO_ENDPOINT, MDPP_MINIO_ACCESS_KEY, MDPP_MINIO_SECRET_KEY and
    MDPP_MINIO_SECURE; the bucket defaults to MDPP_MINIO_BUCKET.
    """

    def __init__(self, client=None, bucket: Optional[str] = None):
        self.client = client if client is not None else _minio_client_from_env()
        self.bucket = bucket or os.environ.get(MINIO_ENV_PREFIX + "BUCKET", "")
        if not self.bucket:
            raise ValidationError(f"no bucket given and {MINIO_ENV_PREFIX}BUCKET is not set")

    def exists(self, path: str) -> bool:
        try:
            self.client.stat_object(self.bucket, path)
        except Exception as e:
            if getattr(e, "code", None) in ("NoSuchKey", "NoSuchObject"):
                return False
            raise
        return True

    def read_bytes(self, path: str) -> bytes:
        try:
            response = self.client.get_object(self.bucket, path)
        except Exception as e:
            raise IoError(f"cannot read s3://{self.bucket}/{path}: {e}") from e
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

# -----------------------------------------------------------------------------
# Rank merging
# -----------------------------------------------------------------------------

def shard_paths(input_path: str, ranks: int, source: ByteSource) -> List[str]:
    """Shard files of one logical input, in rank order."""
    if ranks == 1 and source.exists(input_path):
        return [input_path]
    paths = [f"{input_path}.{rank}" for rank in range(ranks)]
    missing = [p for p in paths if not source.exists(p)]
    if missing:
        raise RankCountError(
            f"{input_path}: found {ranks - len(missing)} of {ranks} rank shards, missing {', '.join(missing)}"
        )
    return paths


def merge(standard, input_path: str, ranks: int, source: Optional[ByteSource] = None,
          debug: bool = False) -> Iterator[Snapshot]:
    """
    Yield one snapshot per timestep, concatenating rank 0, 1, ... ranks-1.

    Every shard must provide the same number of timesteps. Standards without
    an id field get ids numbered from 1 in merged order.
    """
    standard = get_standard(standard)
    if ranks <= 0:
        raise ValidationError(f"unsupported ranks value: {ranks}")
    source = source or LocalSource()
    paths = shard_paths(input_path, ranks, source)
    streams = [iter_frames(standard, source.read_bytes(p)) for p in paths]

    step = 0
    while True:
        parts = [next(stream, None) for stream in streams]
        present = [p for p in parts if p is not None]
        if not present:
            return
        if len(present) != ranks:
            raise RankCountError(
                f"{input_path}: timestep #{step} has {len(present)} of {ranks} rank shards"
            )
        times = {p.time for p in parts}
        if len(times) > 1:
            raise FormatError(f"{input_path}: rank shards disagree on timestep: {sorted(times)}")
        for rank, part in enumerate(parts):
            _println(f"  {paths[rank]}: {part.natoms} atoms", quiet=not debug)
        snap = Snapshot.concat(parts)
        if not standard.has_id:
            snap.atoms["id"] = np.arange(1, snap.natoms + 1, dtype=np.uint32)
        yield snap
        step += 1

# -----------------------------------------------------------------------------
# Output sinks
# -----------------------------------------------------------------------------

class OutputSink:
    """
    Writes snapshots to one destination. The file is opened on construction
    and stays open until close(); use as a context manager.
    """
    format_name = ""

    def __init__(self, path: str, precision: int = 6):
        if precision < 0:
            raise ValidationError(f"precision must be non-negative, got {precision}")
        self.path = path
        self.precision = precision
        self.nframes = 0
        try:
            self._f = open(path, "w")
        except OSError as e:
            raise IoError(f"cannot write {path}: {e.strerror or e}") from e

    def write_snapshot(self, snap: Snapshot):
        self._write(self._f, snap)
        self.nframes += 1

    def _write(self, f, snap: Snapshot):
        raise NotImplementedError

    def _atom_lines(self, snap: Snapshot) -> Iterator[str]:
        fmt = _line_format(self.precision)
        for row in snap.atoms.tolist():
            yield fmt.format(*row)

    def _timestep(self, snap: Snapshot) -> int:
        return snap.time if snap.time is not None else self.nframes

    def close(self):
        if not self._f.closed:
            self._f.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class XyzSink(OutputSink):
    format_name = "xyz"

    def _write(self, f, snap):
        print(snap.natoms, file=f)
        print(f"mdpp timestep {self._timestep(snap)} id x y z vx vy vz", file=f)
        for line in self._atom_lines(snap):
            print(line, file=f)


class TextSink(OutputSink):
    format_name = "text"

    def _write(self, f, snap):
        print(f"# timestep {self._timestep(snap)} atoms {snap.natoms}", file=f)
        for line in self._atom_lines(snap):
            print(line, file=f)


class DumpSink(OutputSink):
    """LAMMPS text dump; box bounds default to the extent of the positions."""
    format_name = "dump"

    def _write(self, f, snap):
        box = snap.box or snap.extent()
        if box is None:
            raise MissingBoxBoundsError(
                f"{self.path}: timestep {self._timestep(snap)} has no box bounds and no atoms"
            )
        bound = "{:.%df} {:.%df}" % (self.precision, self.precision)
        print("ITEM: TIMESTEP", file=f)
        print(self._timestep(snap), file=f)
        print("ITEM: NUMBER OF ATOMS", file=f)
        print(snap.natoms, file=f)
        print("ITEM: BOX BOUNDS pp pp pp", file=f)
        print(bound.format(box[0], box[1]), file=f)
        print(bound.format(box[2], box[3]), file=f)
        print(bound.format(box[4], box[5]), file=f)
        print("ITEM: ATOMS", " ".join(FIELDS), file=f)
        for line in self._atom_lines(snap):
            print(line, file=f)


SINKS: Dict[str, type] = {cls.format_name: cls for cls in (XyzSink, TextSink, DumpSink)}


def get_sink_class(fmt) -> type:
    try:
        return SINKS[fmt.lower()]
    except (KeyError, AttributeError):
        raise ValidationError(f"unsupported format {fmt!r}, expected one of: {', '.join(SINKS)}") from None

# -----------------------------------------------------------------------------
# Text trajectory reader (xyz, text and dump frames)
# -----------------------------------------------------------------------------

_TIMESTEP_RE = re.compile(r"timestep\s+(\d+)")
_ATOMS_RE = re.compile(r"atoms\s+(\d+)")

# dump column aliases, as in the Pizza.py reader
_DUMP_ALIASES = {"xu": "x", "yu": "y", "zu": "z"}


def _read_xyz_frame(lines: List[str], i: int, legacy_velocity: bool) -> Tuple[Snapshot, int]:
    try:
        natoms = int(lines[i].split()[0])
    except ValueError:
        raise ParseError(f"line {i + 1}: expected an atom count, got {lines[i].strip()!r}") from None
    comment = lines[i + 1] if i + 1 < len(lines) else ""
    start = i + 2
    if start + natoms > len(lines):
        raise ParseError(
            f"line {i + 1}: frame declares {natoms} atoms, file ends after {max(0, len(lines) - start)}"
        )
    rows = [ParticleRecord.parse(lines[k], legacy_velocity, lineno=k + 1).astuple()
            for k in range(start, start + natoms)]
    m = _TIMESTEP_RE.search(comment)
    return Snapshot(_rows_to_atoms(rows), time=int(m.group(1)) if m else None), start + natoms


def _read_text_frame(lines: List[str], i: int, legacy_velocity: bool) -> Tuple[Snapshot, int]:
    header = ""
    while i < len(lines) and lines[i].lstrip().startswith("#"):
        header = lines[i] if _TIMESTEP_RE.search(lines[i]) or not header else header
        i += 1
    rows = []
    while i < len(lines):
        stripped = lines[i].strip()
        if stripped.startswith(("#", "ITEM:")):
            break
        if stripped:
            rows.append(ParticleRecord.parse(lines[i], legacy_velocity, lineno=i + 1).astuple())
        i += 1
    declared = _ATOMS_RE.search(header)
    if declared and int(declared.group(1)) != len(rows):
        raise ParseError(f"frame header declares {declared.group(1)} atoms, found {len(rows)}")
    m = _TIMESTEP_RE.search(header)
    return Snapshot(_rows_to_atoms(rows), time=int(m.group(1)) if m else None), i


def _read_dump_frame(lines: List[str], i: int) -> Tuple[Snapshot, int]:
    start = i
    try:
        if not lines[i + 2].startswith("ITEM: NUMBER OF ATOMS") or not lines[i + 4].startswith("ITEM: BOX"):
            raise ValueError
        time = int(lines[i + 1].split()[0])
        natoms = int(lines[i + 3])
        box = tuple(float(w) for k in range(5, 8) for w in lines[i + k].split()[:2])
        if len(box) != 6 or not lines[i + 8].startswith("ITEM: ATOMS"):
            raise ValueError
        columns = lines[i + 8].split()[2:]
    except (IndexError, ValueError):
        raise ParseError(f"line {start + 1}: malformed dump snapshot header") from None

    names = {_DUMP_ALIASES.get(w, w): k for k, w in enumerate(columns)}
    missing = [name for name in FIELDS if name not in names]
    if missing:
        raise ParseError(f"line {start + 9}: dump has no column(s) {' '.join(missing)}")
    index = [names[name] for name in FIELDS]

    first = i + 9
    if first + natoms > len(lines):
        raise ParseError(f"line {start + 1}: dump snapshot declares {natoms} atoms, file is shorter")
    rows = []
    for k in range(first, first + natoms):
        words = lines[k].split()
        if len(words) != len(columns):
            raise ParseError(f"line {k + 1}: expected {len(columns)} columns, got {len(words)}")
        try:
            values = [float(words[c]) for c in index]
        except ValueError:
            raise ParseError(f"line {k + 1}: invalid number in {lines[k].strip()!r}") from None
        if not all(math.isfinite(v) for v in values):
            raise ParseError(f"line {k + 1}: non-finite value in {lines[k].strip()!r}")
        rows.append((int(values[0]),) + tuple(values[1:]))
    return Snapshot(_rows_to_atoms(rows), time=time, box=box), first + natoms


def read_snapshots(text: str, legacy_velocity: bool = False) -> List[Snapshot]:
    """Parse every frame of an xyz, text or dump trajectory."""
    lines = text.splitlines()
    snaps = []
    i = 0
    while i < len(lines):
        stripped = lines[i].strip()
        if not stripped:
            i += 1
        elif stripped.startswith("ITEM:"):
            snap, i = _read_dump_frame(lines, i)
            snaps.append(snap)
        elif stripped.startswith("#") or len(stripped.split()) > 1:
            snap, i = _read_text_frame(lines, i, legacy_velocity)
            snaps.append(snap)
        else:
            snap, i = _read_xyz_frame(lines, i, legacy_velocity)
            snaps.append(snap)
    return snaps


def read_snapshot_file(path: str, source: Optional[ByteSource] = None,
                       legacy_velocity: bool = False) -> List[Snapshot]:
    source = source or LocalSource()
    snaps = read_snapshots(source.read_text(path), legacy_velocity=legacy_velocity)
    if not snaps:
        raise ParseError(f"{path}: no snapshot found")
    return snaps

# -----------------------------------------------------------------------------
# Conversion pipeline
# -----------------------------------------------------------------------------

class NamingPolicy(enum.Enum):
    SINGLE = "single"        # one input, the declared output path
    SUFFIXED = "suffixed"    # one output per input: <input name>.<output>
    MERGED = "merged"        # dump: every input appended to the declared path


def naming_policy(sink_class: type, ninputs: int) -> NamingPolicy:
    if sink_class is DumpSink:
        return NamingPolicy.MERGED
    if ninputs > 1:
        return NamingPolicy.SUFFIXED
    return NamingPolicy.SINGLE


def suffixed_path(input_path: str, output: str, sep: str = ".") -> str:
    """<basename of input><sep><output name>, placed in the output's directory."""
    directory, name = os.path.split(output)
    return os.path.join(directory, f"{os.path.basename(input_path)}{sep}{name}")


def output_paths(inputs: Sequence[str], output: str, policy: NamingPolicy) -> List[str]:
    if policy is NamingPolicy.SUFFIXED:
        return [suffixed_path(p, output) for p in inputs]
    return [output] * len(inputs)


class ConversionPlan(NamedTuple):
    standard: BinaryStandard
    sink_class: type
    ranks: int
    precision: int
    output: str
    policy: NamingPolicy
    jobs: List[Tuple[str, str]]


class ConversionResult(NamedTuple):
    input: str
    output: str
    snapshots: int
    error: Optional[MdppError]


def plan_conversion(inputs: Sequence[str], output: str, fmt, standard, ranks: int,
                    precision: int = 6, policy: Optional[NamingPolicy] = None) -> ConversionPlan:
    """Validate the arguments and decide the output path of every input. Touches no file."""
    if not isinstance(ranks, int) or ranks <= 0:
        raise ValidationError(f"unsupported ranks value: {ranks}")
    sink_class = get_sink_class(fmt)
    standard = get_standard(standard)
    if precision < 0:
        raise ValidationError(f"precision must be non-negative, got {precision}")
    if not inputs:
        raise ValidationError("no matching input files")
    if not output:
        raise ValidationError("no output file given")
    if policy is None:
        policy = naming_policy(sink_class, len(inputs))
    jobs = list(zip(inputs, output_paths(inputs, output, policy)))
    return ConversionPlan(standard, sink_class, ranks, precision, output, policy, jobs)


def convert(standard, input_path: str, ranks: int, sink: OutputSink,
            source: Optional[ByteSource] = None, debug: bool = False) -> int:
    """Decode, merge and write one logical input. Returns the number of snapshots written."""
    n = 0
    for snap in merge(standard, input_path, ranks, source, debug=debug):
        sink.write_snapshot(snap)
        _println(f"  snapshot #{n}: {snap.natoms} atoms written to {sink.path}", quiet=not debug)
        n += 1
    return n


class ConversionPipeline:
    """
    Runs a ConversionPlan input by input. With the MERGED policy a single sink
    receives every input in list order; otherwise each input gets its own sink.
    The first failure aborts the batch unless keep_going is set.
    """

    def __init__(self, plan: ConversionPlan, source: Optional[ByteSource] = None,
                 keep_going: bool = False, quiet: bool = False, debug: bool = False):
        self.plan = plan
        self.source = source or LocalSource()
        self.keep_going = keep_going
        self.quiet = quiet
        self.debug = debug

    def run(self, dry: bool = False) -> List[ConversionResult]:
        plan = self.plan
        results: List[ConversionResult] = []
        shared = None
        if not dry and plan.policy is NamingPolicy.MERGED:
            shared = plan.sink_class(plan.output, plan.precision)
        try:
            for input_path, output_path in plan.jobs:
                _println(f"converting file {input_path}", quiet=self.quiet)
                if dry:
                    _println(f"file {input_path} would be saved at {output_path} "
                             f"({plan.sink_class.format_name}, {plan.standard.name}, ranks={plan.ranks})",
                             quiet=self.quiet)
                    results.append(ConversionResult(input_path, output_path, 0, None))
                    continue
                try:
                    n = self._convert_one(input_path, output_path, shared)
                except MdppError as e:
                    _println(f"file {input_path} failed: {e}", file=sys.stderr)
                    if not self.keep_going:
                        raise
                    results.append(ConversionResult(input_path, output_path, 0, e))
                    continue
                _println(f"file {input_path} converted, saved at {output_path} ({n} snapshots)",
                         quiet=self.quiet)
                results.append(ConversionResult(input_path, output_path, n, None))
        finally:
            if shared is not None:
                shared.close()
        return results

    def _convert_one(self, input_path: str, output_path: str, shared: Optional[OutputSink]) -> int:
        plan = self.plan
        if shared is not None:
            return convert(plan.standard, input_path, plan.ranks, shared, self.source, debug=self.debug)
        with plan.sink_class(output_path, plan.precision) as sink:
            return convert(plan.standard, input_path, plan.ranks, sink, self.source, debug=self.debug)

# -----------------------------------------------------------------------------
# Diff engine
# -----------------------------------------------------------------------------

class DiffReport:
    """Positions (0-based) of the atoms that differ beyond the tolerance."""
    __slots__ = ("natoms", "mismatches")

    def __init__(self, natoms: int, mismatches: List[int]):
        self.natoms = natoms
        self.mismatches = mismatches

    @property
    def passed(self) -> bool:
        return not self.mismatches

    def __repr__(self):
        return f"DiffReport(natoms={self.natoms}, mismatches={self.mismatches})"


def sim_box_size(sim_box: Optional[Sequence[float]]) -> Tuple[float, float, float]:
    if sim_box is None or len(sim_box) != 3:
        return (0.0, 0.0, 0.0)
    return (float(sim_box[0]), float(sim_box[1]), float(sim_box[2]))


def _near(delta: np.ndarray, error_limit: float) -> np.ndarray:
    # a zero difference always matches, so error_limit == 0 means exact equality
    return (delta < error_limit) | (delta == 0.0)


def compare_snapshots(a: Snapshot, b: Snapshot, error_limit: float, periodic: bool = False,
                      box_size: Optional[Sequence[float]] = None) -> DiffReport:
    """
    Compare two snapshots atom by atom, by position in the file (not by id).

    Periodic checking also accepts a spatial difference within the tolerance
    of the box length on that axis. Velocities are never wrapped. A zero box
    length makes the wrapped test identical to the plain one.
    """
    if error_limit < 0:
        raise ValidationError(f"error limit must be non-negative, got {error_limit}")
    if a.natoms != b.natoms:
        raise SizeMismatchError(f"atom counts differ: {a.natoms} vs {b.natoms}")
    box = sim_box_size(box_size)

    equal = np.ones(a.natoms, dtype=bool)
    for axis, name in enumerate(("x", "y", "z")):
        delta = np.abs(a.atoms[name] - b.atoms[name])
        near = _near(delta, error_limit)
        if periodic:
            near |= _near(np.abs(delta - box[axis]), error_limit)
        equal &= near
    for name in ("vx", "vy", "vz"):
        equal &= _near(np.abs(a.atoms[name] - b.atoms[name]), error_limit)
    return DiffReport(a.natoms, np.flatnonzero(~equal).tolist())


def diff(file1: str, file2: str, error_limit: float, periodic: bool = False,
         box_size: Optional[Sequence[float]] = None, source: Optional[ByteSource] = None,
         legacy_velocity: bool = False) -> DiffReport:
    """Compare the first snapshot of two text trajectories."""
    if error_limit < 0:
        raise ValidationError(f"error limit must be non-negative, got {error_limit}")
    snap1 = read_snapshot_file(file1, source, legacy_velocity)[0]
    snap2 = read_snapshot_file(file2, source, legacy_velocity)[0]
    return compare_snapshots(snap1, snap2, error_limit, periodic, box_size)

# -----------------------------------------------------------------------------
# Box configuration and analysis
# -----------------------------------------------------------------------------

def normalize_box(input_box_start: Sequence[float] = (), input_box_size: Sequence[int] = ()
                  ) -> Tuple[Tuple[float, float, float], Tuple[int, int, int]]:
    """Pad box origin and size to three axes with zeros. No positivity check."""
    if len(input_box_start) > 3 or len(input_box_size) > 3:
        raise ValidationError("box start and box size take at most 3 values")
    start = [float(v) for v in input_box_start] + [0.0] * (3 - len(input_box_start))
    size = [int(v) for v in input_box_size] + [0] * (3 - len(input_box_size))
    return tuple(start), tuple(size)


class BoxConfig:
    """Box passed to an analysis routine; one instance per analysed file."""
    __slots__ = ("input_box_start", "input_box_size", "box_start", "box_size")

    def __init__(self, input_box_start: Sequence[float] = (), input_box_size: Sequence[int] = ()):
        self.input_box_start = list(input_box_start)
        self.input_box_size = list(input_box_size)
        self.box_start: Tuple[float, float, float] = (0.0, 0.0, 0.0)
        self.box_size: Tuple[int, int, int] = (0, 0, 0)

    def normalize(self) -> "BoxConfig":
        self.box_start, self.box_size = normalize_box(self.input_box_start, self.input_box_size)
        return self

    def mask(self, atoms: np.ndarray) -> np.ndarray:
        """Atoms inside [start, start + size) on every axis with a non-zero size."""
        inside = np.ones(len(atoms), dtype=bool)
        for axis, name in enumerate(("x", "y", "z")):
            if self.box_size[axis]:
                lo = self.box_start[axis]
                inside &= (atoms[name] >= lo) & (atoms[name] < lo + self.box_size[axis])
        return inside


def voronoi_neighbours(snap: Snapshot, box: BoxConfig) -> Tuple[np.ndarray, np.ndarray]:
    """Number of Voronoi neighbours of every atom inside the box."""
    atoms = snap.atoms[box.mask(snap.atoms)]
    if len(atoms) < 5:
        raise ValidationError(f"voronoi analysis needs at least 5 atoms in the box, got {len(atoms)}")
    points = np.column_stack([atoms["x"], atoms["y"], atoms["z"]])
    try:
        ridges = Voronoi(points).ridge_points
    except QhullError as e:
        reason = (str(e).strip().splitlines() or ["qhull failed"])[0]
        raise ValidationError(f"voronoi analysis failed on degenerate points: {reason}") from e
    counts = np.zeros(len(points), dtype=int)
    np.add.at(counts, ridges.ravel(), 1)
    return atoms["id"], counts


ANALYSES: Dict[str, Callable[[Snapshot, BoxConfig], Tuple[np.ndarray, np.ndarray]]] = {
    "voronoi": voronoi_neighbours,
}


def analysis_outputs(inputs: Sequence[str], outputs: Sequence[str]) -> List[str]:
    if not inputs:
        raise ValidationError("no matching input files")
    if len(outputs) == len(inputs):
        return list(outputs)
    if len(outputs) == 1:
        return [suffixed_path(p, outputs[0], sep="-") for p in inputs]
    raise ValidationError(
        f"{len(outputs)} output files given for {len(inputs)} input files; "
        "give one per input or a single shared suffix"
    )


def analyse(input_path: str, output_path: str, box: BoxConfig, algorithm: str = "voronoi",
            source: Optional[ByteSource] = None, verbose: bool = False) -> int:
    """Run one analysis routine on every snapshot of a file. Returns the snapshot count."""
    try:
        routine = ANALYSES[algorithm]
    except KeyError:
        raise ValidationError(
            f"unsupported algorithm {algorithm!r}, expected one of: {', '.join(ANALYSES)}"
        ) from None
    box.normalize()
    _println(f"  box start {box.box_start}, box size {box.box_size}", quiet=not verbose)
    snaps = read_snapshot_file(input_path, source)
    try:
        f = open(output_path, "w")
    except OSError as e:
        raise IoError(f"cannot write {output_path}: {e.strerror or e}") from e
    with f:
        for n, snap in enumerate(snaps):
            time = snap.time if snap.time is not None else n
            try:
                ids, values = routine(snap, box)
            except ValidationError as e:
                raise ValidationError(f"{input_path}: timestep {time}: {e}") from e
            _println(f"  timestep {time}: {len(ids)} of {snap.natoms} atoms in box", quiet=not verbose)
            print(f"# timestep {time} atoms {len(ids)} {algorithm}", file=f)
            for atom_id, value in zip(ids.tolist(), values.tolist()):
                print(atom_id, value, file=f)
    return len(snaps)

# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------

def _unsigned(value: str) -> int:
    n = int(value)
    if n < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {value}")
    return n


def build_arg_parser():
    fmt = argparse.ArgumentDefaultsHelpFormatter
    p = argparse.ArgumentParser(
        description="MD trajectory post processing: binary conversion, diff and analysis",
        formatter_class=fmt,
    )
    p.add_argument("--debug", action="store_true", help="enable debug output")
    p.add_argument("--quiet", action="store_true", help="suppress output (overrides --debug)")
    sub = p.add_subparsers(dest="command", metavar="{conv,diff,ans}")
    sub.required = True

    conv = sub.add_parser("conv", help="convert binary rank shards to text formats", formatter_class=fmt)
    conv.add_argument("--dry", action="store_true", help="only report what would be converted")
    conv.add_argument("-i", "--input", nargs="+", required=True, help="logical input file(s)")
    conv.add_argument("-o", "--output", required=True, help="output file, or suffix for several inputs")
    conv.add_argument("-f", "--format", default="xyz", help=f"output format: {', '.join(SINKS)}")
    conv.add_argument("-p", "--precision", type=_unsigned, default=6, help="digits after the decimal point")
    conv.add_argument("-s", "--standard", default="misa", help=f"binary layout: {', '.join(STANDARDS)}")
    conv.add_argument("-r", "--ranks", type=int, default=1, help="rank shards per timestep")
    conv.add_argument("--keep-going", action="store_true", help="continue with the next input after a failure")

    dif = sub.add_parser("diff", help="compare two text trajectories", formatter_class=fmt)
    dif.add_argument("-e", "--error", type=float, default=1e-4, help="absolute tolerance per component")
    dif.add_argument("file_1")
    dif.add_argument("file_2")
    dif.add_argument("--periodic-checking", action="store_true", help="accept one box length of difference on x/y/z")
    dif.add_argument("--sim-box", nargs="*", type=float, default=[], metavar="L", help="box lengths (0 or 3 values)")
    dif.add_argument("--legacy-velocity", action="store_true", help="read vy and vz from the 7th column")

    ans = sub.add_parser("ans", help="analyse text trajectories", formatter_class=fmt)
    ans.add_argument("-i", "--input", nargs="+", required=True, help="input file(s)")
    ans.add_argument("-o", "--output", nargs="+", required=True, help="one output per input, or a shared suffix")
    ans.add_argument("-v", "--verbose", action="store_true", help="print box and per-snapshot details")
    ans.add_argument("--input-from-minio", action="store_true", help="read inputs from MinIO/S3 (MDPP_MINIO_* env)")
    ans.add_argument("--box-start", nargs="*", type=float, default=[], metavar="X", help="box origin (0..3 values)")
    ans.add_argument("--box-size", nargs="*", type=_unsigned, default=[], metavar="N", help="box size (0..3 values)")
    ans.add_argument("-a", "--algorithm", default="voronoi", help=f"analysis routine: {', '.join(ANALYSES)}")
    return p


def run_conv(args, quiet: bool = False, debug: bool = False) -> bool:
    plan = plan_conversion(args.input, args.output, args.format, args.standard, args.ranks, args.precision)
    pipeline = ConversionPipeline(plan, LocalSource(), keep_going=args.keep_going, quiet=quiet, debug=debug)
    results = pipeline.run(dry=args.dry)
    failed = [r for r in results if r.error is not None]
    if failed:
        _println(f"{len(failed)} of {len(results)} files failed", file=sys.stderr)
    return not failed


def run_diff(args, quiet: bool = False, debug: bool = False) -> bool:
    if args.sim_box and len(args.sim_box) != 3:
        _println(f"ignoring --sim-box with {len(args.sim_box)} values, 3 expected", file=sys.stderr)
    report = diff(args.file_1, args.file_2, args.error, args.periodic_checking, args.sim_box,
                  legacy_velocity=args.legacy_velocity)
    shown = report.mismatches if debug else report.mismatches[:10]
    for index in shown:
        _println(f"atom #{index} differs", quiet=quiet)
    if len(shown) < len(report.mismatches):
        _println(f"... and {len(report.mismatches) - len(shown)} more", quiet=quiet)
    _println(f"{report.natoms - len(report.mismatches)} of {report.natoms} atoms match "
             f"within {args.error}", quiet=quiet)
    return report.passed


def run_ans(args, quiet: bool = False, debug: bool = False) -> bool:
    outputs = analysis_outputs(args.input, args.output)
    if args.algorithm not in ANALYSES:
        raise ValidationError(f"unsupported algorithm {args.algorithm!r}, expected one of: {', '.join(ANALYSES)}")
    normalize_box(args.box_start, args.box_size)
    if args.input_from_minio:
        _println("reading input files from minio/s3", quiet=quiet)
        source: ByteSource = MinioSource()
    else:
        source = LocalSource()
    verbose = (args.verbose or debug) and not quiet
    for input_path, output_path in zip(args.input, outputs):
        _println(f"analysing file {input_path}", quiet=quiet)
        box = BoxConfig(args.box_start, args.box_size)
        analyse(input_path, output_path, box, args.algorithm, source, verbose=verbose)
        _println(f"file {input_path} analysed, saved at {output_path}", quiet=quiet)
    return True


COMMANDS = {"conv": run_conv, "diff": run_diff, "ans": run_ans}


def main(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)
    quiet = args.quiet
    debug = args.debug and not quiet
    try:
        ok = COMMANDS[args.command](args, quiet=quiet, debug=debug)
    except KeyboardInterrupt:
        _println("aborted by user", file=sys.stderr)
        return 1
    except Exception as e:
        _println(f"aborting due to errors: {e}", file=sys.stderr)
        return 1
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())

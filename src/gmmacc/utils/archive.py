"""Keyed archives of per-utterance features, frame weights and candidate lists.

An archive is addressed by an *rspecifier* (when read) or a *wspecifier*
(when written): ``npz:<path>`` for a numpy ``.npz`` archive, ``txt:<path>``
for a text archive, or a bare path whose format is inferred from its suffix
(``.npz`` is binary, anything else is text).

Text layout for matrices and vectors, one entry per key::

    utt1  [
      0.1 0.2
      0.3 0.4 ]
    utt2  [ 1.0 0.0 2.0 ]

and for per-frame candidate lists, one utterance per line with frames
separated by ``;``::

    utt1  0 3 ; 1 ; 2 0 ;

In ``.npz`` archives candidate lists are int matrices of shape
``(n_frames, max_candidates)`` padded with ``-1``.
"""
from collections.abc import Iterator, Mapping
from pathlib import Path

import numpy as np

from gmmacc._types import FramesArray2D, Gselect


def parse_rspecifier(rspecifier: str) -> tuple[str, Path]:
    """Split an r/wspecifier into ``(kind, path)`` with kind ``"npz"`` or ``"txt"``."""
    if not rspecifier:
        raise ValueError("empty archive specifier")
    kind, sep, path = rspecifier.partition(":")
    if sep and kind in ("npz", "txt"):
        if not path:
            raise ValueError(f"archive specifier {rspecifier!r} has no path")
        return kind, Path(path).expanduser()
    fpath = Path(rspecifier).expanduser()
    return ("npz" if fpath.suffix == ".npz" else "txt"), fpath


def _iter_bracketed(fpath: Path) -> Iterator[tuple[str, list[list[str]]]]:
    """Yield ``(key, rows)`` from a bracketed text archive, rows as token lists."""
    with open(fpath) as f:
        lines = enumerate(f, start=1)
        for lineno, line in lines:
            tokens = line.split()
            if not tokens:
                continue
            key = tokens[0]
            if len(tokens) < 2 or tokens[1] != "[":
                raise ValueError(
                    f"{fpath}:{lineno}: expected '<key> [', got {line.strip()!r}"
                )
            rows = []
            rest = tokens[2:]
            while True:
                closed = bool(rest) and rest[-1] == "]"
                if closed:
                    rest = rest[:-1]
                if rest:
                    rows.append(rest)
                if closed:
                    break
                try:
                    lineno, line = next(lines)
                except StopIteration:
                    raise ValueError(
                        f"{fpath}: unterminated entry for key {key!r}"
                    ) from None
                rest = line.split()
            yield key, rows


def _rows_to_matrix(key: str, rows: list[list[str]]) -> np.ndarray:
    if not rows:
        return np.zeros((0, 0), dtype=np.float64)
    n_cols = len(rows[0])
    if any(len(row) != n_cols for row in rows):
        raise ValueError(f"ragged rows in matrix for key {key!r}")
    try:
        return np.array(rows, dtype=np.float64)
    except ValueError as err:
        raise ValueError(f"non-numeric value in matrix for key {key!r}") from err


def _parse_gselect_line(key: str, tokens: list[str]) -> Gselect:
    frames = [[]]
    for token in tokens:
        if token == ";":
            frames.append([])
        else:
            try:
                frames[-1].append(int(token))
            except ValueError as err:
                raise ValueError(
                    f"non-integer candidate index {token!r} for key {key!r}"
                ) from err
    # A trailing ';' closes the last frame
    if not frames[-1]:
        frames.pop()
    return frames


def _gselect_from_padded(key: str, padded: np.ndarray) -> Gselect:
    if padded.ndim != 2 or not np.issubdtype(padded.dtype, np.integer):
        raise ValueError(
            f"candidate lists for key {key!r} must be a 2D int array, got "
            f"{padded.ndim}D {padded.dtype}"
        )
    gselect = []
    for i, row in enumerate(padded):
        # -1 is only valid as trailing padding
        n_valid = int(np.count_nonzero(row != -1))
        if np.any(row[:n_valid] < 0) or np.any(row[n_valid:] != -1):
            raise ValueError(
                f"malformed candidate list {row.tolist()} for key {key!r}, frame {i}: "
                "indices must be >= 0 and followed only by -1 padding"
            )
        gselect.append([int(c) for c in row[:n_valid]])
    return gselect


class SequentialMatrixReader:
    """Forward-only reader of ``(key, matrix)`` pairs.

    Each matrix has shape ``(n_frames, dim)``. Iterating opens the archive and
    streams its entries in stored order; end of archive simply ends the
    iteration.
    """

    def __init__(self, rspecifier: str):
        self.rspecifier = rspecifier
        self.kind, self.path = parse_rspecifier(rspecifier)
        if not self.path.is_file():
            raise FileNotFoundError(f"feature archive not found: {self.path}")

    def __iter__(self) -> Iterator[tuple[str, FramesArray2D]]:
        if self.kind == "npz":
            with np.load(self.path, allow_pickle=False) as archive:
                for key in archive.files:
                    mat = archive[key]
                    if mat.ndim != 2:
                        raise ValueError(
                            f"feature matrix for key {key!r} must be 2D, got {mat.ndim}D"
                        )
                    yield key, mat
        else:
            for key, rows in _iter_bracketed(self.path):
                yield key, _rows_to_matrix(key, rows)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.rspecifier!r})"


class _RandomAccessReader:
    """Keyed lookup into an archive; entries are decoded on access."""

    def __init__(self, rspecifier: str):
        self.rspecifier = rspecifier
        self.kind, self.path = parse_rspecifier(rspecifier)
        if not self.path.is_file():
            raise FileNotFoundError(f"archive not found: {self.path}")
        if self.kind == "npz":
            self._npz = np.load(self.path, allow_pickle=False)
            self._entries = None
        else:
            self._npz = None
            self._entries = dict(self._parse_text(self.path))

    def _parse_text(self, fpath: Path):
        raise NotImplementedError  # pragma: no cover

    def _convert(self, key: str, value: np.ndarray):
        raise NotImplementedError  # pragma: no cover

    def __contains__(self, key: str) -> bool:
        if self._npz is not None:
            return key in self._npz.files
        return key in self._entries

    def __getitem__(self, key: str):
        if self._npz is not None:
            return self._convert(key, self._npz[key])
        return self._entries[key]

    def get(self, key: str, default=None):
        return self[key] if key in self else default

    def keys(self) -> list[str]:
        if self._npz is not None:
            return list(self._npz.files)
        return list(self._entries)

    def close(self) -> None:
        if self._npz is not None:
            self._npz.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.rspecifier!r})"


class RandomAccessVectorReader(_RandomAccessReader):
    """Keyed lookup of float vectors, e.g. per-frame weights."""

    def _parse_text(self, fpath: Path):
        for key, rows in _iter_bracketed(fpath):
            flat = [token for row in rows for token in row]
            yield key, self._convert(key, np.array(flat, dtype=np.float64))

    def _convert(self, key: str, value: np.ndarray) -> np.ndarray:
        if value.ndim != 1:
            raise ValueError(f"vector for key {key!r} must be 1D, got {value.ndim}D")
        return value.astype(np.float64, copy=False)


class RandomAccessGselectReader(_RandomAccessReader):
    """Keyed lookup of per-frame candidate component lists."""

    def _parse_text(self, fpath: Path):
        with open(fpath) as f:
            for line in f:
                tokens = line.split()
                if not tokens:
                    continue
                key = tokens[0]
                yield key, _parse_gselect_line(key, tokens[1:])

    def _convert(self, key: str, value: np.ndarray) -> Gselect:
        return _gselect_from_padded(key, value)


def _format_row(values) -> str:
    return " ".join(repr(float(v)) for v in values)


def write_matrix_archive(wspecifier: str, entries: Mapping[str, np.ndarray]) -> Path:
    """Write ``{key: (n_frames, dim) matrix}`` to an archive, in insertion order."""
    kind, fpath = parse_rspecifier(wspecifier)
    if kind == "npz":
        with open(fpath, "wb") as f:
            np.savez(f, **{k: np.asarray(v) for k, v in entries.items()})
        return fpath
    with open(fpath, "w") as f:
        for key, mat in entries.items():
            mat = np.asarray(mat)
            if mat.ndim != 2:
                raise ValueError(f"matrix for key {key!r} must be 2D, got {mat.ndim}D")
            if mat.shape[0] == 0:
                f.write(f"{key}  [ ]\n")
                continue
            f.write(f"{key}  [\n")
            for i, row in enumerate(mat):
                end = " ]" if i == mat.shape[0] - 1 else ""
                f.write(f"  {_format_row(row)}{end}\n")
    return fpath


def write_vector_archive(wspecifier: str, entries: Mapping[str, np.ndarray]) -> Path:
    """Write ``{key: 1D vector}`` to an archive, in insertion order."""
    kind, fpath = parse_rspecifier(wspecifier)
    if kind == "npz":
        with open(fpath, "wb") as f:
            np.savez(f, **{k: np.asarray(v, dtype=np.float64) for k, v in entries.items()})
        return fpath
    with open(fpath, "w") as f:
        for key, vec in entries.items():
            f.write(f"{key}  [ {_format_row(np.ravel(vec))} ]\n")
    return fpath


def write_gselect_archive(wspecifier: str, entries: Mapping[str, Gselect]) -> Path:
    """Write ``{key: per-frame candidate lists}`` to an archive."""
    kind, fpath = parse_rspecifier(wspecifier)
    if kind == "npz":
        padded = {}
        for key, gselect in entries.items():
            width = max((len(frame) for frame in gselect), default=0)
            arr = np.full((len(gselect), width), -1, dtype=np.int32)
            for i, frame in enumerate(gselect):
                arr[i, :len(frame)] = frame
            padded[key] = arr
        with open(fpath, "wb") as f:
            np.savez(f, **padded)
        return fpath
    with open(fpath, "w") as f:
        for key, gselect in entries.items():
            frames = " ".join(
                " ".join(str(int(c)) for c in frame) + " ;" for frame in gselect
            )
            f.write(f"{key}  {frames}\n")
    return fpath

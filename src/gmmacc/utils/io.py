"""Reading and writing GMM models and accumulators.

Two serializations are supported for both objects:

- binary: a numpy ``.npz`` archive holding a ``kind`` tag, a
  ``format_version`` and the arrays;
- text: a ``gmmacc-<kind> <version>`` header line followed by ``key values...``
  lines. Matrices repeat their key once per row.

Readers detect the format from the file contents, not from the file name.
"""
import os
import tempfile
from pathlib import Path

import numpy as np
import torch

from gmmacc.constants import ACCS_FORMAT_VERSION, GMM_FORMAT_VERSION, NPZ_MAGIC
from gmmacc.model import DiagGmm
from gmmacc.state import GmmAccumulators, UpdateFlags

GMM_KIND = "diag-gmm"
ACCS_KIND = "diag-gmm-accs"


def _is_binary(fpath: Path) -> bool:
    with open(fpath, "rb") as f:
        return f.read(len(NPZ_MAGIC)) == NPZ_MAGIC


def _default_file_mode() -> int:
    # os.umask can only be read by setting it
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def _atomic_write(fpath: Path, binary: bool, write) -> Path:
    """Call ``write(file_obj)`` on a temp file next to ``fpath``, then rename it.

    The renamed file gets the permissions a plain ``open(fpath, "w")`` would
    give it, not the owner-only mode of the temp file.
    """
    fpath = Path(fpath).expanduser().resolve()
    fd, tmp_name = tempfile.mkstemp(dir=fpath.parent, prefix=f".{fpath.name}.")
    try:
        with os.fdopen(fd, "wb" if binary else "w") as f:
            write(f)
        os.chmod(tmp_name, _default_file_mode())
        os.replace(tmp_name, fpath)
    except BaseException:
        os.unlink(tmp_name)
        raise
    return fpath


def _write_text_fields(f, kind: str, version: int, fields: dict) -> None:
    f.write(f"gmmacc-{kind} {version}\n")
    for key, value in fields.items():
        if isinstance(value, np.ndarray) and value.ndim == 2:
            for row in value:
                f.write(f"{key} {' '.join(repr(float(v)) for v in row)}\n")
        elif isinstance(value, np.ndarray):
            f.write(f"{key} {' '.join(repr(float(v)) for v in value)}\n")
        else:
            f.write(f"{key} {value}\n")


def _read_text_fields(fpath: Path, kind: str, max_version: int) -> dict[str, list[list[str]]]:
    with open(fpath) as f:
        header = f.readline().split()
        if len(header) != 2 or header[0] != f"gmmacc-{kind}":
            raise ValueError(f"{fpath} is not a gmmacc {kind} file (header {header!r})")
        _check_version(fpath, int(header[1]), max_version)
        fields: dict[str, list[list[str]]] = {}
        for line in f:
            tokens = line.split()
            if tokens:
                fields.setdefault(tokens[0], []).append(tokens[1:])
    return fields


def _check_version(fpath: Path, version: int, max_version: int) -> None:
    if version < 1 or version > max_version:
        raise ValueError(
            f"{fpath}: unsupported format version {version} (this reader supports "
            f"up to {max_version})"
        )


def _text_scalar(fields, key: str, fpath: Path) -> str:
    if key not in fields or len(fields[key]) != 1 or len(fields[key][0]) != 1:
        raise ValueError(f"{fpath}: missing or malformed field {key!r}")
    return fields[key][0][0]


def _text_array(fields, key: str, fpath: Path, ndim: int) -> np.ndarray:
    if key not in fields:
        raise ValueError(f"{fpath}: missing field {key!r}")
    rows = fields[key]
    try:
        arr = np.array([[float(v) for v in row] for row in rows], dtype=np.float64)
    except ValueError as err:
        raise ValueError(f"{fpath}: malformed values in field {key!r}") from err
    if ndim == 1:
        if arr.shape[0] != 1:
            raise ValueError(f"{fpath}: field {key!r} must be a single line")
        return arr[0]
    return arr


def _npz_fields(fpath: Path, kind: str, max_version: int) -> dict[str, np.ndarray]:
    with np.load(fpath, allow_pickle=False) as archive:
        fields = {key: archive[key] for key in archive.files}
    if "kind" not in fields or str(fields["kind"]) != kind:
        raise ValueError(f"{fpath} is not a gmmacc {kind} file")
    if "format_version" not in fields:
        raise ValueError(f"{fpath}: missing format_version")
    _check_version(fpath, int(fields["format_version"]), max_version)
    return fields


def write_gmm(gmm: DiagGmm, fpath, binary: bool = True) -> Path:
    """Write ``gmm`` (weights, means, variances) to ``fpath``.

    Returns
    -------
    path : Path
        The path to the saved file.
    """
    arrays = {
        "weights": gmm.weights.cpu().numpy(),
        "means": gmm.means.cpu().numpy(),
        "variances": gmm.variances.cpu().numpy(),
    }
    if binary:
        def write(f):
            np.savez(f, kind=GMM_KIND, format_version=GMM_FORMAT_VERSION, **arrays)
    else:
        def write(f):
            fields = {"n_components": gmm.n_components, "dim": gmm.dim, **arrays}
            _write_text_fields(f, GMM_KIND, GMM_FORMAT_VERSION, fields)
    return _atomic_write(fpath, binary, write)


def read_gmm(fpath) -> DiagGmm:
    """Read a model written by :func:`write_gmm` (binary or text)."""
    fpath = Path(fpath).expanduser()
    if not fpath.is_file():
        raise FileNotFoundError(f"model file not found: {fpath}")
    if _is_binary(fpath):
        fields = _npz_fields(fpath, GMM_KIND, GMM_FORMAT_VERSION)
        missing = {"weights", "means", "variances"} - set(fields)
        if missing:
            raise ValueError(f"{fpath}: missing arrays {sorted(missing)}")
        return DiagGmm.from_params(fields["weights"], fields["means"], fields["variances"])

    fields = _read_text_fields(fpath, GMM_KIND, GMM_FORMAT_VERSION)
    n_components = int(_text_scalar(fields, "n_components", fpath))
    dim = int(_text_scalar(fields, "dim", fpath))
    weights = _text_array(fields, "weights", fpath, ndim=1)
    means = _text_array(fields, "means", fpath, ndim=2)
    variances = _text_array(fields, "variances", fpath, ndim=2)
    if means.shape != (n_components, dim):
        raise ValueError(
            f"{fpath}: means shape {means.shape} != ({n_components}, {dim})"
        )
    return DiagGmm.from_params(weights, means, variances)


def write_accs(accs: GmmAccumulators, fpath, binary: bool = True) -> Path:
    """Write the populated accumulator buffers to ``fpath``.

    Only the buffers selected by ``accs.flags`` are stored, together with the
    component count, dimension and flag string.
    """
    arrays = accs.to_numpy()
    header = {
        "n_components": accs.n_components,
        "dim": accs.dim,
        "flags": accs.flags.to_string(),
    }
    if binary:
        def write(f):
            np.savez(
                f,
                kind=ACCS_KIND,
                format_version=ACCS_FORMAT_VERSION,
                **header,
                **arrays,
            )
    else:
        def write(f):
            _write_text_fields(f, ACCS_KIND, ACCS_FORMAT_VERSION, {**header, **arrays})
    return _atomic_write(fpath, binary, write)


def read_accs(fpath) -> GmmAccumulators:
    """Read accumulators written by :func:`write_accs` (binary or text)."""
    fpath = Path(fpath).expanduser()
    if not fpath.is_file():
        raise FileNotFoundError(f"accumulator file not found: {fpath}")
    if _is_binary(fpath):
        fields = _npz_fields(fpath, ACCS_KIND, ACCS_FORMAT_VERSION)
        n_components = int(fields["n_components"])
        dim = int(fields["dim"])
        flags = str(fields["flags"])
        get = fields.get
    else:
        text_fields = _read_text_fields(fpath, ACCS_KIND, ACCS_FORMAT_VERSION)
        n_components = int(_text_scalar(text_fields, "n_components", fpath))
        dim = int(_text_scalar(text_fields, "dim", fpath))
        flags = _text_scalar(text_fields, "flags", fpath)

        def get(key):
            if key not in text_fields:
                return None
            return _text_array(text_fields, key, fpath, ndim=1 if key == "occupancy" else 2)

    accs = GmmAccumulators.zeros(n_components, dim, UpdateFlags.from_string(flags))
    buffers = [("occupancy", accs.occupancy, True)]
    buffers.append(("mean_accumulator", accs.mean_accumulator, accs.flags.needs_means))
    buffers.append(
        ("variance_accumulator", accs.variance_accumulator, accs.flags.needs_variances)
    )
    for key, out, required in buffers:
        if not required:
            continue
        value = get(key)
        if value is None:
            raise ValueError(f"{fpath}: missing accumulator buffer {key!r}")
        value = torch.as_tensor(np.asarray(value), dtype=out.dtype)
        if value.shape != out.shape:
            raise ValueError(
                f"{fpath}: buffer {key!r} has shape {tuple(value.shape)}, "
                f"expected {tuple(out.shape)}"
            )
        out.copy_(value)
    return accs

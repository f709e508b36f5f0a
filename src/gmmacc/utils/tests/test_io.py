"""Tests for model and accumulator serialization."""
import os
import stat
import sys

import numpy as np
import pytest
import torch
from numpy.testing import assert_allclose

from gmmacc.model import DiagGmm
from gmmacc.state import GmmAccumulators
from gmmacc.utils import generate_toy_data, generate_toy_gmm
from gmmacc.utils.io import read_accs, read_gmm, write_accs, write_gmm

@pytest.mark.parametrize("binary", [True, False])
def test_gmm_io(tmp_path, binary):
    gmm = generate_toy_gmm(n_components=3, dim=4, seed=1)
    fpath = write_gmm(gmm, tmp_path / "final.mdl", binary=binary)
    assert fpath.name == "final.mdl"
    gmm_in = read_gmm(fpath)
    assert (gmm_in.n_components, gmm_in.dim) == (3, 4)
    assert_allclose(gmm_in.weights, gmm.weights, rtol=1e-15)
    assert_allclose(gmm_in.means, gmm.means, rtol=1e-15)
    assert_allclose(gmm_in.gconsts, gmm.gconsts, rtol=1e-12)
    # No temporary files left behind
    assert [p.name for p in tmp_path.iterdir()] == ["final.mdl"]

def test_text_gmm_layout(tmp_path):
    fpath = tmp_path / "1.mdl"
    fpath.write_text(
        "gmmacc-diag-gmm 1\n"
        "n_components 2\n"
        "dim 1\n"
        "weights 0.5 0.5\n"
        "means 0.0\n"
        "means 10.0\n"
        "variances 1.0\n"
        "variances 4.0\n"
    )
    gmm = read_gmm(fpath)
    assert_allclose(gmm.means, [[0.0], [10.0]])
    assert_allclose(gmm.inv_vars, [[1.0], [0.25]])

@pytest.mark.parametrize(
    "content, match",
    [
        ("gmmacc-diag-gmm-accs 1\n", "not a gmmacc diag-gmm file"),
        ("gmmacc-diag-gmm 7\n", "unsupported format version 7"),
        ("gmmacc-diag-gmm 1\nn_components 1\ndim 1\nweights 1\nmeans 0\n", "variances"),
        (
            "gmmacc-diag-gmm 1\nn_components 2\ndim 1\nweights 1\nmeans 0\nvariances 1\n",
            r"means shape",
        ),
        (
            "gmmacc-diag-gmm 1\nn_components 1\ndim 1\nweights 1\nmeans 0\nvariances -1\n",
            "variances must be > 0",
        ),
    ],
)
def test_malformed_gmm(tmp_path, content, match):
    fpath = tmp_path / "bad.mdl"
    fpath.write_text(content)
    with pytest.raises(ValueError, match=match):
        read_gmm(fpath)

def test_binary_gmm_version(tmp_path):
    fpath = tmp_path / "future.mdl"
    with open(fpath, "wb") as f:
        np.savez(
            f, kind="diag-gmm", format_version=2,
            weights=np.ones(1), means=np.zeros((1, 1)), variances=np.ones((1, 1)),
        )
    with pytest.raises(ValueError, match="unsupported format version 2"):
        read_gmm(fpath)

def test_missing_gmm(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_gmm(tmp_path / "nope.mdl")

@pytest.mark.parametrize("binary", [True, False])
@pytest.mark.parametrize("flags", ["w", "m", "mv", "mvw"])
def test_accs_io(tmp_path, binary, flags):
    gmm = generate_toy_gmm(n_components=3, dim=2, seed=2)
    frames, _ = generate_toy_data(gmm, n_frames=30, seed=3)
    accs = GmmAccumulators.resize(gmm, flags)
    for x in frames:
        accs.accumulate_from_diag(gmm, x, 1.0)
    fpath = write_accs(accs, tmp_path / "1.acc", binary=binary)
    accs_in = read_accs(fpath)
    assert accs_in.flags == accs.flags
    assert (accs_in.n_components, accs_in.dim) == (3, 2)
    for key, want in accs.to_numpy().items():
        assert_allclose(getattr(accs_in, key), want, rtol=1e-15)
    assert accs_in.mean_accumulator.shape == accs.mean_accumulator.shape
    assert accs_in.variance_accumulator.shape == accs.variance_accumulator.shape

def test_accs_only_store_populated_buffers(tmp_path):
    accs = GmmAccumulators.zeros(2, 3, "w")
    accs.accumulate_for_component([1.0, 2.0, 3.0], 0, 1.0)
    write_accs(accs, tmp_path / "w.acc", binary=False)
    text = (tmp_path / "w.acc").read_text()
    assert "flags w" in text
    assert "mean_accumulator" not in text
    assert "variance_accumulator" not in text
    with np.load(write_accs(accs, tmp_path / "w.npz")) as archive:
        assert "mean_accumulator" not in archive.files
        assert_allclose(archive["occupancy"], [1.0, 0.0])

def test_accs_missing_buffer(tmp_path):
    fpath = tmp_path / "bad.acc"
    fpath.write_text(
        "gmmacc-diag-gmm-accs 1\nn_components 1\ndim 1\nflags mv\noccupancy 2.0\n"
        "mean_accumulator 1.0\n"
    )
    with pytest.raises(ValueError, match="variance_accumulator"):
        read_accs(fpath)

def test_accs_text_values(tmp_path):
    accs = GmmAccumulators.zeros(1, 2, "m")
    accs.accumulate_for_component([0.1, -3.0], 0, 0.5)
    write_accs(accs, tmp_path / "1.acc", binary=False)
    accs_in = read_accs(tmp_path / "1.acc")
    assert torch.equal(accs_in.mean_accumulator, accs.mean_accumulator)
    assert DiagGmm.from_params([1.0], [[0.0, 0.0]], [[1.0, 1.0]]).dim == accs_in.dim


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")
@pytest.mark.parametrize("binary", [True, False])
def test_written_files_follow_umask(tmp_path, binary):
    """Atomic writes end up with the same mode as a plainly opened file."""
    old_umask = os.umask(0o022)
    try:
        reference = tmp_path / "reference"
        reference.write_text("")
        fpath = write_accs(GmmAccumulators.zeros(2, 1), tmp_path / "0.acc", binary=binary)
    finally:
        os.umask(old_umask)
    mode = stat.S_IMODE(fpath.stat().st_mode)
    assert mode == stat.S_IMODE(reference.stat().st_mode) == 0o644

import math

import numpy as np
import pytest
import torch
from numpy.testing import assert_allclose

from gmmacc.kernels import (
    accumulate_mean_stats,
    accumulate_occupancy_stats,
    accumulate_variance_stats,
    compute_component_loglikelihoods,
    compute_preselect_loglikelihoods,
    normalize_loglikes,
)
from gmmacc.model import DiagGmm
from gmmacc.utils import generate_toy_data, generate_toy_gmm

torch.set_default_dtype(torch.float64)

gmm = generate_toy_gmm(n_components=5, dim=4, seed=0)
frames, _ = generate_toy_data(gmm, n_frames=50, seed=1)
X = torch.from_numpy(frames).to(torch.float64)


def direct_loglikelihoods(X, weights, means, variances):
    """log w + log N(x; m, v) written out term by term."""
    diff = X[:, None, :] - means[None, :, :]
    quad = (diff ** 2 / variances[None, :, :]).sum(dim=-1)
    log_det = torch.log(2 * math.pi * variances).sum(dim=-1)
    return torch.log(weights)[None, :] - 0.5 * (quad + log_det[None, :])


def test_compute_component_loglikelihoods():
    """Test the expanded quadratic form against the textbook density."""
    loglikes = compute_component_loglikelihoods(
        X=X, means=gmm.means, inv_vars=gmm.inv_vars, gconsts=gmm.gconsts,
    )
    assert loglikes.size() == (50, 5)
    want = direct_loglikelihoods(X, gmm.weights, gmm.means, gmm.variances)
    assert_allclose(loglikes, want, rtol=1e-10, atol=1e-9)


def test_compute_preselect_loglikelihoods():
    """Test that preselected scores are the matching columns of the full scores."""
    full = compute_component_loglikelihoods(
        X=X, means=gmm.means, inv_vars=gmm.inv_vars, gconsts=gmm.gconsts,
    )
    candidates = torch.tensor([[3, 0, 1]] * 50)
    mask = torch.ones_like(candidates, dtype=torch.bool)
    mask[::2, 2] = False  # every other frame only has two candidates
    loglikes = compute_preselect_loglikelihoods(
        X=X,
        candidates=candidates,
        mask=mask,
        means=gmm.means,
        inv_vars=gmm.inv_vars,
        gconsts=gmm.gconsts,
    )
    assert loglikes.size() == (50, 3)
    assert_allclose(loglikes[:, 0], full[:, 3], rtol=1e-12)
    assert_allclose(loglikes[:, 1], full[:, 0], rtol=1e-12)
    assert_allclose(loglikes[1::2, 2], full[1::2, 1], rtol=1e-12)
    assert torch.all(torch.isneginf(loglikes[::2, 2]))


@pytest.mark.parametrize("offset", [0.0, -1e4, 1e4, -1e300])
def test_normalize_loglikes_sums_to_one(offset):
    """Test that posteriors sum to one whatever the magnitude of the inputs."""
    rng = np.random.default_rng(0)
    loglikes = torch.from_numpy(rng.normal(scale=50.0, size=(20, 7))) + offset
    posteriors, total = normalize_loglikes(loglikes)
    assert posteriors.size() == (20, 7)
    assert total.size() == (20,)
    assert torch.all(torch.isfinite(total))
    assert_allclose(posteriors.sum(dim=-1), 1.0, atol=1e-6)
    if offset != -1e300:
        assert_allclose(total, torch.logsumexp(loglikes, dim=-1), rtol=1e-12)


def test_normalize_loglikes_single_frame():
    """Test the 1D form, including underflowing and -inf entries."""
    loglikes = torch.tensor([-1000.0, -1001.0, float("-inf"), -5000.0])
    posteriors, total = normalize_loglikes(loglikes)
    assert total.ndim == 0
    assert_allclose(float(total), -1000.0 + math.log1p(math.exp(-1.0)))
    assert_allclose(posteriors, [1 / (1 + math.exp(-1)), math.exp(-1) / (1 + math.exp(-1)), 0, 0])
    assert posteriors[2] == 0.0


def test_normalize_loglikes_ties_at_large_magnitude():
    """Tied candidates share the mass even when log(sum) is below the ulp of max."""
    posteriors, total = normalize_loglikes(torch.tensor([-1e17, -1e17], dtype=torch.float64))
    assert_allclose(posteriors, [0.5, 0.5], rtol=1e-12)
    assert float(total) == -1e17

    posteriors, _ = normalize_loglikes(torch.full((3, 4), 1e17, dtype=torch.float64))
    assert_allclose(posteriors.sum(dim=-1), 1.0, rtol=1e-12)
    assert_allclose(posteriors, 0.25, rtol=1e-12)


def test_normalize_loglikes_single_candidate():
    """A single candidate always takes all of the mass."""
    posteriors, total = normalize_loglikes(torch.tensor([[-3.5], [12.0]]))
    assert_allclose(posteriors, [[1.0], [1.0]])
    assert_allclose(total, [-3.5, 12.0])


def test_accumulate_stats_scatter_matches_dense():
    """Test scattering candidate posteriors against the dense path."""
    posteriors_full = torch.rand((6, 3))
    frames = torch.randn((6, 2))
    candidates = torch.tensor([[2, 0, 1]] * 6)
    mask = torch.ones_like(candidates, dtype=torch.bool)
    # Column j of the candidate posteriors belongs to component candidates[:, j]
    posteriors_cand = posteriors_full[:, [2, 0, 1]]

    dense = [torch.zeros(3), torch.zeros((3, 2)), torch.zeros((3, 2))]
    accumulate_occupancy_stats(posteriors=posteriors_full, out_occupancy=dense[0])
    accumulate_mean_stats(X=frames, posteriors=posteriors_full, out_mean=dense[1])
    accumulate_variance_stats(X=frames, posteriors=posteriors_full, out_var=dense[2])

    scatter = [torch.zeros(3), torch.zeros((3, 2)), torch.zeros((3, 2))]
    kwargs = dict(candidates=candidates, mask=mask)
    accumulate_occupancy_stats(posteriors=posteriors_cand, out_occupancy=scatter[0], **kwargs)
    accumulate_mean_stats(X=frames, posteriors=posteriors_cand, out_mean=scatter[1], **kwargs)
    accumulate_variance_stats(X=frames, posteriors=posteriors_cand, out_var=scatter[2], **kwargs)

    for got, want in zip(scatter, dense):
        assert_allclose(got, want, rtol=1e-12)
    assert_allclose(dense[0], posteriors_full.sum(dim=0))
    assert_allclose(dense[2], posteriors_full.T @ frames ** 2)


def test_accumulate_stats_drops_padding():
    """Padded candidate slots never reach the accumulators."""
    frames = torch.tensor([[1.0], [2.0]])
    candidates = torch.tensor([[1, 0], [0, 0]])
    mask = torch.tensor([[True, True], [True, False]])
    posteriors = torch.tensor([[0.25, 0.75], [1.0, 123.0]])
    occupancy = accumulate_occupancy_stats(
        posteriors=posteriors, out_occupancy=torch.zeros(2), candidates=candidates, mask=mask,
    )
    assert_allclose(occupancy, [1.75, 0.25])
    means = accumulate_mean_stats(
        X=frames, posteriors=posteriors, out_mean=torch.zeros((2, 1)),
        candidates=candidates, mask=mask,
    )
    assert_allclose(means, [[0.75 + 2.0], [0.25]])


def test_two_component_scenario():
    """Frame at the mean of one of two far-apart unit Gaussians."""
    model = DiagGmm.from_params([0.5, 0.5], [[0.0], [10.0]], [[1.0], [1.0]])
    loglikes = model.log_likelihoods([0.0])
    posteriors, total = normalize_loglikes(loglikes)
    # Component 1 sits 10 standard deviations away: relative weight exp(-50)
    assert_allclose(posteriors, [1.0, math.exp(-50.0)], rtol=1e-9, atol=0)
    assert_allclose(float(total), math.log(0.5) - 0.5 * math.log(2 * math.pi), rtol=1e-12)

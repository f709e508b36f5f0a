"""Utility functions for simulating models and data."""
import numpy as np

from gmmacc.model import DiagGmm


def generate_toy_gmm(n_components=4, dim=3, spread=5.0, seed=None):
    """
    Generate a random diagonal GMM with well separated components.

    Parameters
    ----------
    n_components : int, optional
        The number of Gaussians. Default is 4.
    dim : int, optional
        The feature dimension. Default is 3.
    spread : float, optional
        Standard deviation of the component means around the origin.

    Returns
    -------
    gmm : DiagGmm
        The model.
    """
    rng = np.random.default_rng(seed)
    weights = rng.dirichlet(np.full(n_components, 2.0))
    means = spread * rng.standard_normal((n_components, dim))
    variances = rng.uniform(0.5, 2.0, size=(n_components, dim))
    return DiagGmm.from_params(weights, means, variances)


def generate_toy_data(gmm, n_frames=100, seed=None):
    """
    Draw frames from a diagonal GMM.

    Parameters
    ----------
    gmm : DiagGmm
        The model to sample from.
    n_frames : int, optional
        The number of frames to generate. Default is 100.

    Returns
    -------
    frames : ndarray, shape (n_frames, dim)
        The sampled frames, as float32 like features read from disk.
    labels : ndarray, shape (n_frames,)
        The component each frame was drawn from.
    """
    rng = np.random.default_rng(seed)
    weights = gmm.weights.numpy()
    labels = rng.choice(gmm.n_components, size=n_frames, p=weights / weights.sum())
    means = gmm.means.numpy()[labels]
    stds = np.sqrt(gmm.variances.numpy()[labels])
    frames = means + stds * rng.standard_normal((n_frames, gmm.dim))
    return frames.astype(np.float32), labels

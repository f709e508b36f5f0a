"""Diagonal-covariance Gaussian mixture model used for scoring frames."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import torch

from gmmacc._types import ComponentsVector, FramesTensor2D, ParamsTensor
from gmmacc.constants import LOG_2PI
from gmmacc.kernels import (
    compute_component_loglikelihoods,
    compute_preselect_loglikelihoods,
    normalize_loglikes,
)


@dataclass(slots=True, frozen=True, repr=False)
class DiagGmm:
    """Read-only diagonal GMM.

    Arrays (all float64):
    - weights:  (n_components,)       mixture weights
    - means:    (n_components, dim)   component means
    - inv_vars: (n_components, dim)   diagonal precisions, 1 / variance
    - gconsts:  (n_components,)       cached log-normalizer per component

    Build instances with :meth:`from_params` so that ``gconsts`` is consistent
    with the other arrays.
    """

    weights: ComponentsVector
    means: ParamsTensor
    inv_vars: ParamsTensor
    gconsts: ComponentsVector

    @classmethod
    def from_params(cls, weights, means, variances) -> DiagGmm:
        """Create a model from weights, means and diagonal variances.

        Parameters
        ----------
        weights : array-like, shape (n_components,)
            Mixture weights. Must be strictly positive. They are not
            renormalized.
        means : array-like, shape (n_components, dim)
            Component means.
        variances : array-like, shape (n_components, dim)
            Diagonal variances. Must be strictly positive.

        Returns
        -------
        gmm : DiagGmm
            The model, with ``gconsts`` precomputed.
        """
        weights = torch.as_tensor(np.asarray(weights), dtype=torch.float64).clone()
        means = torch.as_tensor(np.asarray(means), dtype=torch.float64).clone()
        variances = torch.as_tensor(np.asarray(variances), dtype=torch.float64)

        if weights.ndim != 1 or weights.shape[0] == 0:
            raise ValueError(
                f"weights must be a non-empty 1D array, got shape {tuple(weights.shape)}"
            )
        if means.ndim != 2:
            raise ValueError(f"means must be 2D, got {means.ndim}D")
        if variances.shape != means.shape:
            raise ValueError(
                f"variances shape {tuple(variances.shape)} != "
                f"means shape {tuple(means.shape)}"
            )
        if means.shape[0] != weights.shape[0]:
            raise ValueError(
                f"means have {means.shape[0]} components but weights have "
                f"{weights.shape[0]}"
            )
        if means.shape[1] == 0:
            raise ValueError("feature dimension must be at least 1")
        if not torch.all(weights > 0):
            raise ValueError("all mixture weights must be > 0")
        if not torch.all(variances > 0):
            raise ValueError("all variances must be > 0")
        if not (torch.all(torch.isfinite(means)) and torch.all(torch.isfinite(variances))):
            raise ValueError("means and variances must be finite")

        inv_vars = 1.0 / variances
        gconsts = compute_gconsts(weights=weights, means=means, inv_vars=inv_vars)
        return cls(weights=weights, means=means, inv_vars=inv_vars, gconsts=gconsts)

    @property
    def n_components(self) -> int:
        return self.weights.shape[0]

    @property
    def dim(self) -> int:
        return self.means.shape[1]

    @property
    def variances(self) -> ParamsTensor:
        return 1.0 / self.inv_vars

    def _check_frames(self, x) -> FramesTensor2D:
        x = torch.as_tensor(x, dtype=torch.float64)
        if x.ndim not in (1, 2):
            raise ValueError(f"frames must be 1D or 2D, got {x.ndim}D")
        if x.shape[-1] != self.dim:
            raise ValueError(
                f"frame dimension {x.shape[-1]} does not match model dimension "
                f"{self.dim}"
            )
        return x

    def log_likelihoods(self, x) -> torch.Tensor:
        """Weighted log-likelihood of every component.

        Parameters
        ----------
        x : array-like, shape (dim,) or (n_frames, dim)
            One frame or a batch of frames.

        Returns
        -------
        loglikes : tensor, shape (n_components,) or (n_frames, n_components)
        """
        x = self._check_frames(x)
        X = x if x.ndim == 2 else x[None, :]
        loglikes = compute_component_loglikelihoods(
            X=X, means=self.means, inv_vars=self.inv_vars, gconsts=self.gconsts,
        )
        return loglikes if x.ndim == 2 else loglikes[0]

    def log_likelihoods_preselect(self, x, candidates: Sequence[int]) -> torch.Tensor:
        """Weighted log-likelihood of the listed components for a single frame.

        The output is ordered like ``candidates``. An empty candidate list is
        a caller bug and raises ``RuntimeError``.
        """
        x = self._check_frames(x)
        if x.ndim != 1:
            raise ValueError("log_likelihoods_preselect scores a single frame")
        if len(candidates) == 0:
            raise RuntimeError("empty candidate set passed to the scorer")
        cand = torch.as_tensor(candidates, dtype=torch.int64)
        if torch.any(cand < 0) or torch.any(cand >= self.n_components):
            raise IndexError(
                f"candidate indices must lie in [0, {self.n_components}), "
                f"got {cand.tolist()}"
            )
        loglikes = compute_preselect_loglikelihoods(
            X=x[None, :],
            candidates=cand[None, :],
            mask=torch.ones((1, cand.shape[0]), dtype=torch.bool),
            means=self.means,
            inv_vars=self.inv_vars,
            gconsts=self.gconsts,
        )
        return loglikes[0]

    def log_likelihood(self, x) -> torch.Tensor:
        """Total log-likelihood of one frame (or of each frame in a batch)."""
        _, total_loglike = normalize_loglikes(self.log_likelihoods(x))
        return total_loglike

    def component_posteriors(self, x) -> torch.Tensor:
        """Responsibilities of every component for one frame or a batch."""
        posteriors, _ = normalize_loglikes(self.log_likelihoods(x))
        return posteriors

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(n_components={self.n_components}, "
            f"dim={self.dim})"
        )


def compute_gconsts(
        *,
        weights: ComponentsVector,
        means: ParamsTensor,
        inv_vars: ParamsTensor,
) -> ComponentsVector:
    """Per-component constant part of the log-likelihood.

    ``gconst_c = log w_c - 0.5 * (D log 2pi - sum_d log inv_var_cd
    + sum_d mean_cd^2 * inv_var_cd)``
    """
    dim = means.shape[1]
    gconsts = torch.log(weights) - 0.5 * dim * LOG_2PI
    gconsts += 0.5 * torch.log(inv_vars).sum(dim=1)
    gconsts -= 0.5 * (torch.square(means) * inv_vars).sum(dim=1)
    if not torch.all(torch.isfinite(gconsts)):
        raise RuntimeError("Non-finite gconst encountered while building the model.")
    return gconsts

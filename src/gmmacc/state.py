"""
Accumulator state for the E-step of diagonal GMM training.

``GmmAccumulators`` owns the running sufficient statistics. Buffers are
allocated once, sized against the model, and only the ones requested by the
update flags are ever written.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

import numpy as np
import torch

from gmmacc._types import ComponentsVector, FrameVector, FramesTensor2D, ParamsTensor
from gmmacc.kernels import (
    accumulate_mean_stats,
    accumulate_occupancy_stats,
    accumulate_variance_stats,
    normalize_loglikes,
)
from gmmacc.model import DiagGmm


class UpdateFlags(enum.Flag):
    """Which GMM parameters the statistics will be used to update."""

    WEIGHTS = enum.auto()
    MEANS = enum.auto()
    VARIANCES = enum.auto()

    @classmethod
    def from_string(cls, flags: str) -> UpdateFlags:
        """Parse a combination of the letters ``m``, ``v`` and ``w``.

        Examples
        --------
        >>> UpdateFlags.from_string("mv")
        <UpdateFlags.MEANS|VARIANCES: 6>
        """
        letters = {"w": cls.WEIGHTS, "m": cls.MEANS, "v": cls.VARIANCES}
        if not flags:
            raise ValueError("update flags must name at least one of 'm', 'v', 'w'")
        out = cls(0)
        for char in flags:
            if char not in letters:
                raise ValueError(
                    f"Invalid update flag {char!r} in {flags!r}; "
                    "expected a subset of 'mvw'"
                )
            out |= letters[char]
        return out

    def to_string(self) -> str:
        return "".join(
            char for char, flag in (
                ("m", UpdateFlags.MEANS),
                ("v", UpdateFlags.VARIANCES),
                ("w", UpdateFlags.WEIGHTS),
            )
            if flag in self
        )

    @property
    def needs_means(self) -> bool:
        # The variance update needs the mean statistics too
        return bool(self & (UpdateFlags.MEANS | UpdateFlags.VARIANCES))

    @property
    def needs_variances(self) -> bool:
        return UpdateFlags.VARIANCES in self


@dataclass(slots=True, repr=False)
class GmmAccumulators:
    """Running E-step statistics for a diagonal GMM.

    Shapes:
    - occupancy:            (n_components,)      always allocated
    - mean_accumulator:     (n_components, dim)  iff means or variances requested
    - variance_accumulator: (n_components, dim)  iff variances requested

    Buffers that are not requested are empty ``(0, 0)`` tensors.
    """

    n_components: int
    dim: int
    flags: UpdateFlags
    occupancy: ComponentsVector
    mean_accumulator: ParamsTensor
    variance_accumulator: ParamsTensor

    @classmethod
    def zeros(
        cls,
        n_components: int,
        dim: int,
        flags: UpdateFlags | str = "mvw",
        dtype: torch.dtype = torch.float64,
    ) -> GmmAccumulators:
        """Allocate zeroed accumulators for ``n_components`` Gaussians of ``dim``."""
        if isinstance(flags, str):
            flags = UpdateFlags.from_string(flags)
        if not flags:
            raise ValueError("update flags must not be empty")
        if n_components < 1 or dim < 1:
            raise ValueError(
                f"n_components and dim must be positive, got {n_components} and {dim}"
            )
        shape_2 = (n_components, dim) if flags.needs_means else (0, 0)
        mean_accumulator = torch.zeros(shape_2, dtype=dtype)
        shape_2 = (n_components, dim) if flags.needs_variances else (0, 0)
        variance_accumulator = torch.zeros(shape_2, dtype=dtype)
        return cls(
            n_components=n_components,
            dim=dim,
            flags=flags,
            occupancy=torch.zeros(n_components, dtype=dtype),
            mean_accumulator=mean_accumulator,
            variance_accumulator=variance_accumulator,
        )

    @classmethod
    def resize(cls, gmm: DiagGmm, flags: UpdateFlags | str = "mvw") -> GmmAccumulators:
        """Allocate accumulators sized against ``gmm``."""
        return cls.zeros(gmm.n_components, gmm.dim, flags)

    def zeros_like(self) -> GmmAccumulators:
        return GmmAccumulators.zeros(
            self.n_components, self.dim, self.flags, dtype=self.occupancy.dtype
        )

    def set_zero(self) -> None:
        """Zero all buffers in-place, keeping the allocations."""
        self.occupancy.fill_(0.0)
        self.mean_accumulator.fill_(0.0)
        self.variance_accumulator.fill_(0.0)

    @property
    def total_occupancy(self) -> float:
        return float(self.occupancy.sum())

    def _check_frame(self, x) -> FrameVector:
        x = torch.as_tensor(x, dtype=self.occupancy.dtype)
        if x.shape != (self.dim,):
            raise ValueError(
                f"frame shape {tuple(x.shape)} does not match accumulator "
                f"dimension {self.dim}"
            )
        return x

    def accumulate_for_component(self, x, comp_index: int, weight: float) -> None:
        """Add one frame to one component with responsibility ``weight``.

        A weight of exactly 0 leaves every buffer untouched.
        """
        if weight < 0:
            raise ValueError(f"responsibility must be >= 0, got {weight}")
        if weight == 0.0:
            return
        if not 0 <= comp_index < self.n_components:
            raise IndexError(
                f"component index {comp_index} out of range [0, {self.n_components})"
            )
        x = self._check_frame(x)
        self.occupancy[comp_index] += weight
        if self.flags.needs_means:
            self.mean_accumulator[comp_index].add_(x, alpha=weight)
        if self.flags.needs_variances:
            self.variance_accumulator[comp_index].add_(torch.square(x), alpha=weight)

    def accumulate_from_posteriors(self, x, posteriors) -> None:
        """Add one frame to every component, weighted by ``posteriors``."""
        x = self._check_frame(x)
        posteriors = torch.as_tensor(posteriors, dtype=self.occupancy.dtype)
        if posteriors.shape != (self.n_components,):
            raise ValueError(
                f"posteriors shape {tuple(posteriors.shape)} != "
                f"({self.n_components},)"
            )
        self.accumulate_batch(X=x[None, :], posteriors=posteriors[None, :])

    def accumulate_from_diag(self, gmm: DiagGmm, x, frame_weight: float) -> float:
        """Score ``x`` against all of ``gmm`` and accumulate its posteriors.

        Posteriors are scaled by ``frame_weight`` before accumulation. A zero
        weight leaves every buffer untouched; a negative one is a ``ValueError``.

        Returns
        -------
        loglike : float
            The unweighted total log-likelihood of the frame.
        """
        if frame_weight < 0:
            raise ValueError(f"frame_weight must be >= 0, got {frame_weight}")
        self._check_model(gmm)
        x = self._check_frame(x)
        posteriors, loglike = normalize_loglikes(gmm.log_likelihoods(x))
        if frame_weight == 0:
            return float(loglike)
        if frame_weight != 1.0:
            posteriors = posteriors * frame_weight
        self.accumulate_from_posteriors(x, posteriors)
        return float(loglike)

    def accumulate_batch(
        self,
        *,
        X: FramesTensor2D,
        posteriors: torch.Tensor,
        candidates: torch.Tensor | None = None,
        mask: torch.Tensor | None = None,
    ) -> None:
        """Add a batch of frames with already-weighted posteriors.

        Parameters
        ----------
        X : tensor, shape (n_frames, dim)
            Feature frames.
        posteriors : tensor, shape (n_frames, n_components) or (n_frames, max_candidates)
            Responsibilities, already scaled by the frame weights.
        candidates : tensor of int64, shape (n_frames, max_candidates), optional
            Component index for each column of ``posteriors``. If None the
            columns are all components in order.
        mask : tensor of bool, optional
            Valid entries of ``candidates``. Required with ``candidates``.
        """
        if candidates is not None and mask is None:
            mask = torch.ones_like(candidates, dtype=torch.bool)
        accumulate_occupancy_stats(
            posteriors=posteriors,
            out_occupancy=self.occupancy,
            candidates=candidates,
            mask=mask,
        )
        if self.flags.needs_means:
            accumulate_mean_stats(
                X=X,
                posteriors=posteriors,
                out_mean=self.mean_accumulator,
                candidates=candidates,
                mask=mask,
            )
        if self.flags.needs_variances:
            accumulate_variance_stats(
                X=X,
                posteriors=posteriors,
                out_var=self.variance_accumulator,
                candidates=candidates,
                mask=mask,
            )

    def _check_model(self, gmm: DiagGmm) -> None:
        if gmm.n_components != self.n_components or gmm.dim != self.dim:
            raise ValueError(
                f"model with {gmm.n_components} components of dim {gmm.dim} does not "
                f"match accumulators sized ({self.n_components}, {self.dim})"
            )

    def add(self, other: GmmAccumulators, scale: float = 1.0) -> None:
        """Merge ``other`` into this accumulator by elementwise summation."""
        if (
            other.n_components != self.n_components
            or other.dim != self.dim
            or other.flags != self.flags
        ):
            raise ValueError(
                f"cannot add accumulators ({other.n_components}, {other.dim}, "
                f"{other.flags.to_string()!r}) to ({self.n_components}, {self.dim}, "
                f"{self.flags.to_string()!r})"
            )
        self.occupancy.add_(other.occupancy, alpha=scale)
        self.mean_accumulator.add_(other.mean_accumulator, alpha=scale)
        self.variance_accumulator.add_(other.variance_accumulator, alpha=scale)

    def scale(self, factor: float) -> None:
        self.occupancy.mul_(factor)
        self.mean_accumulator.mul_(factor)
        self.variance_accumulator.mul_(factor)

    def to_numpy(self) -> dict[str, np.ndarray]:
        """Return the populated buffers as numpy arrays."""
        out = {"occupancy": self.occupancy.cpu().numpy()}
        if self.flags.needs_means:
            out["mean_accumulator"] = self.mean_accumulator.cpu().numpy()
        if self.flags.needs_variances:
            out["variance_accumulator"] = self.variance_accumulator.cpu().numpy()
        return out

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(n_components={self.n_components}, "
            f"dim={self.dim}, flags={self.flags.to_string()!r}, "
            f"total_occupancy={self.total_occupancy:.4f})"
        )


__all__ = [
    "UpdateFlags",
    "GmmAccumulators",
]

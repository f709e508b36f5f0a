from __future__ import annotations

from collections.abc import Iterator
from warnings import warn

import numpy as np
import psutil
import torch


class FrameBatchLoader:
    """Iterate over the frames of an utterance in fixed-size batches.

    Yields views of the input (``X[start:stop]``) together with the slice
    used, so that per-frame side data (weights, candidate lists) can be cut the
    same way.

    Example:
        X: (n_frames, dim)
        it = FrameBatchLoader(X, batch_size=4096)
        for X_blk, sl in it:
            # X_blk is X[sl] where sl is slice(start, end)
            ...
    """

    def __init__(self, X: torch.Tensor, batch_size: int | None = None):
        cls_name = self.__class__.__name__
        if not isinstance(X, torch.Tensor):
            raise TypeError(f"{cls_name} expects a torch.Tensor")  # pragma: no cover
        if X.ndim != 2:
            raise ValueError(f"{cls_name} expects a 2D (n_frames, dim) tensor")
        self.X = X

        n_frames = X.shape[0]
        if batch_size is None:
            # Treat as a single batch spanning every frame
            batch_size = max(n_frames, 1)
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive. Got {batch_size}.")
        # A batch larger than the utterance is simply clipped
        self.batch_size = int(batch_size)

    def __getitem__(self, idx: int) -> torch.Tensor:
        start = idx * self.batch_size
        stop = min(start + self.batch_size, self.X.shape[0])
        return self.X[start:stop]

    def __iter__(self) -> Iterator[tuple[torch.Tensor, slice]]:
        n_frames = self.X.shape[0]
        step = self.batch_size
        for s in range(0, n_frames, step):
            batch_slice = slice(s, min(s + step, n_frames))
            yield self.X[batch_slice], batch_slice

    def __len__(self) -> int:
        return (self.X.shape[0] + self.batch_size - 1) // self.batch_size

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(Data shape: {self.X.shape}, "
            f"batch_size: {self.batch_size}, n_batches: {len(self)})"
        )


def choose_batch_size(
        *,
        n_components: int,
        dim: int,
        max_candidates: int | None = None,
        dtype: np.dtype = np.float64,
        memory_fraction: float = 0.25,      # use up to 25% of available memory
        memory_cap: float = 1.5 * 1024**3,  # 1.5 GB absolute ceiling
        ) -> int:
    """
    Choose how many frames to score at once.

    Parameters
    ----------
    n_components : int
        Number of Gaussians in the model.
    dim : int
        Feature dimension.
    max_candidates : int, optional
        Largest per-frame candidate list when pruning with a selection list.
        If None, every frame is scored against all components.
    dtype : np.dtype, optional
        Data type of the scoring buffers, by default np.float64.
    memory_fraction : float, optional
        Fraction of the currently available memory the hot buffers may use.
    memory_cap : float, optional
        Budget (in bytes) used when available memory cannot be queried, by
        default ``1.5 * 1024**3`` (1.5 GB).

    Notes
    -----
    Per frame, the hot buffers are:
    - Two arrays of shape (dim,): the frame and its square
    - Without pruning, two arrays of shape (n_components,):
        - loglikes
        - posteriors
    - With pruning, the gathered parameters dominate, two arrays of shape
      (max_candidates, dim), plus loglikes and posteriors over candidates.
    """
    dtype_size = np.dtype(dtype).itemsize
    if max_candidates is None:
        per_frame = 2 * dim + 2 * n_components
    else:
        per_frame = 2 * dim + 2 * max_candidates * dim + 2 * max_candidates
    # Plus small headroom for intermediates
    bytes_per_frame = int(per_frame * dtype_size * 1.2)

    try:
        hard_cap = 4 * 1024**3  # 4 GiB (avoid runaway memory use)
        avail_mem = psutil.virtual_memory().available
        mem_cap = min(avail_mem * memory_fraction, hard_cap)
    except Exception:
        mem_cap = memory_cap  # fallback to user-specified cap

    batch_size = int(mem_cap // bytes_per_frame)
    if batch_size < 1:
        raise MemoryError(
            f"Cannot fit even 1 frame within memory cap of "
            f"{mem_cap / 1024**3:.2f} GiB. "
            f"Per-frame memory cost is {bytes_per_frame / 1024**3:.2f} GB."
        )
    # Scoring is matmul-bound; batches much larger than this do not go faster
    batch_size = min(batch_size, 65536)
    min_batch_size = 256
    if batch_size < min_batch_size:
        warn(
            f"Warning: To stay within the memory cap, batch size is {batch_size} "
            f"frames, which is below the recommended minimum of {min_batch_size}."
        )
    return batch_size

"""Type hints for GMM accumulation arrays."""
from typing import Annotated, TypeAlias

import numpy as np
import numpy.typing as npt
import torch

FrameVector: TypeAlias = Annotated[torch.Tensor, "(dim,)", 1]
"""Alias for a single feature frame with shape (dim,)."""

FramesTensor2D: TypeAlias = Annotated[torch.Tensor, "(n_frames, dim)", 2]
"""Alias for a 2D Tensor of feature frames with shape (n_frames, dim)."""

FramesArray2D: TypeAlias = Annotated[npt.NDArray[np.floating], "(n_frames, dim)"]
"""Alias for a 2D array of feature frames as read from an archive."""

FrameWeightsVector: TypeAlias = Annotated[torch.Tensor, "(n_frames,)", 1]
"""Alias for a 1D Tensor of per-frame weights with shape (n_frames,)."""

ComponentsVector: TypeAlias = Annotated[torch.Tensor, "(n_components,)", 1]
"""Alias for a 1D Tensor with shape (n_components,)."""

ParamsTensor: TypeAlias = Annotated[torch.Tensor, "(n_components, dim)", 2]
"""Alias for a 2D Tensor with shape (n_components, dim)."""

LoglikesTensor: TypeAlias = Annotated[torch.Tensor, "(n_frames, n_candidates)", 2]
"""Alias for a 2D Tensor of per-frame, per-candidate log-likelihoods."""

CandidatesTensor: TypeAlias = Annotated[torch.Tensor, "(n_frames, n_candidates)", 2]
"""Alias for a 2D integer Tensor of per-frame candidate component indices."""

Gselect: TypeAlias = list[list[int]]
"""Alias for a per-frame list of candidate component indices."""

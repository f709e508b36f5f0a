import torch

from typing import Optional, Tuple

from gmmacc._types import (
    CandidatesTensor,
    ComponentsVector,
    FramesTensor2D,
    FrameWeightsVector,
    LoglikesTensor,
    ParamsTensor,
)


def compute_component_loglikelihoods(
        *,
        X: FramesTensor2D,  # (n_frames, dim)
        means: ParamsTensor,  # (n_components, dim)
        inv_vars: ParamsTensor,  # (n_components, dim)
        gconsts: ComponentsVector,  # (n_components,)
) -> LoglikesTensor:
    """Compute per-frame, per-component weighted log-likelihoods.

    Parameters
    ----------
    X : tensor, shape (n_frames, dim)
        Feature frames. Not modified.
    means : tensor, shape (n_components, dim)
        Component means.
    inv_vars : tensor, shape (n_components, dim)
        Component diagonal precisions (1 / variance).
    gconsts : tensor, shape (n_components,)
        Cached per-component constant ``log w - 0.5 * (D log 2pi + sum log var +
        sum mean^2 / var)``.

    Returns
    -------
    loglikes : tensor, shape (n_frames, n_components)
        ``log w_c + log N(x_t; mean_c, var_c)`` for every frame and component.

    Notes
    -----
    The quadratic term is expanded as
    ``-0.5 * sum (x - m)^2 / v = sum x m / v - 0.5 * sum x^2 / v - 0.5 * sum m^2 / v``
    so the whole batch reduces to two matrix products. The last term lives in
    ``gconsts``. Everything is evaluated in float64.
    """
    assert X.ndim == 2, f"X must be 2D, got {X.ndim}D"
    assert means.shape == inv_vars.shape, (
        f"means shape {means.shape} != inv_vars shape {inv_vars.shape}"
    )
    assert X.shape[1] == means.shape[1], (
        f"X dim {X.shape[1]} != means dim {means.shape[1]}"
    )
    assert gconsts.shape == (means.shape[0],), (
        f"gconsts shape {gconsts.shape} != (n_components,) = ({means.shape[0]},)"
    )
    means_invvars = means * inv_vars
    loglikes = torch.matmul(X, means_invvars.T)
    loglikes -= 0.5 * torch.matmul(torch.square(X), inv_vars.T)
    loglikes += gconsts
    return loglikes


def compute_preselect_loglikelihoods(
        *,
        X: FramesTensor2D,  # (n_frames, dim)
        candidates: CandidatesTensor,  # (n_frames, max_candidates)
        mask: torch.Tensor,  # (n_frames, max_candidates)
        means: ParamsTensor,
        inv_vars: ParamsTensor,
        gconsts: ComponentsVector,
) -> LoglikesTensor:
    """Compute log-likelihoods restricted to per-frame candidate components.

    Parameters
    ----------
    X : tensor, shape (n_frames, dim)
        Feature frames. Not modified.
    candidates : tensor of int64, shape (n_frames, max_candidates)
        Candidate component indices for each frame, padded on the right.
        Padded slots may hold any value; they are ignored.
    mask : tensor of bool, shape (n_frames, max_candidates)
        True where ``candidates`` holds a real index.
    means, inv_vars, gconsts : tensor
        Model parameters, see :func:`compute_component_loglikelihoods`.

    Returns
    -------
    loglikes : tensor, shape (n_frames, max_candidates)
        Log-likelihood of each candidate; ``-inf`` in padded slots so that
        they receive zero posterior mass.
    """
    assert candidates.shape == mask.shape, (
        f"candidates shape {candidates.shape} != mask shape {mask.shape}"
    )
    assert candidates.shape[0] == X.shape[0], (
        f"candidates n_frames {candidates.shape[0]} != X n_frames {X.shape[0]}"
    )
    idx = torch.where(mask, candidates, torch.zeros_like(candidates))
    # Gather the candidate parameters: (n_frames, max_candidates, dim)
    means_invvars_sel = (means * inv_vars)[idx]
    inv_vars_sel = inv_vars[idx]
    loglikes = torch.einsum("td,tkd->tk", X, means_invvars_sel)
    loglikes -= 0.5 * torch.einsum("td,tkd->tk", torch.square(X), inv_vars_sel)
    loglikes += gconsts[idx]
    loglikes.masked_fill_(~mask, float("-inf"))
    return loglikes


def normalize_loglikes(
        loglikes: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Turn log-likelihoods into posteriors with a max-shifted log-sum-exp.

    Parameters
    ----------
    loglikes : tensor, shape (n_candidates,) or (n_frames, n_candidates)
        Raw log-likelihoods of one frame, or of a batch of frames (one row per
        frame). Must not be empty along the last axis and must hold at least
        one finite value per row.

    Returns
    -------
    posteriors : tensor, same shape as ``loglikes``
        Responsibilities; each row sums to 1 within rounding.
    total_loglike : tensor, shape () or (n_frames,)
        ``log sum_i exp(loglikes_i)`` per frame.

    Notes
    -----
    ``m = max(l)``, ``s = sum(exp(l - m))``, ``L = m + log(s)`` and
    ``p_i = exp(l_i - m) / s``. Posteriors come from the shifted values, so
    they stay normalized even when ``log(s)`` is lost in ``m + log(s)``.
    """
    assert loglikes.shape[-1] > 0, "cannot normalize an empty set of log-likelihoods"
    max_loglike = torch.amax(loglikes, dim=-1, keepdim=True)
    shifted = loglikes - max_loglike
    exp_shifted = torch.exp(shifted)
    sum_exp = torch.sum(exp_shifted, dim=-1, keepdim=True)
    posteriors = exp_shifted / sum_exp
    total_loglike = max_loglike + torch.log(sum_exp)
    return posteriors, total_loglike.squeeze(-1)


def accumulate_occupancy_stats(
        *,
        posteriors: torch.Tensor,  # (n_frames, n_candidates)
        out_occupancy: ComponentsVector,
        candidates: Optional[CandidatesTensor] = None,
        mask: Optional[torch.Tensor] = None,
) -> ComponentsVector:
    """Add the per-component posterior mass of a batch to ``out_occupancy``.

    If ``candidates`` is None the columns of ``posteriors`` are the model's
    components in order. Otherwise each posterior is scattered into the
    component named by the matching entry of ``candidates`` (padded slots,
    where ``mask`` is False, are dropped). ``out_occupancy`` is mutated
    in-place and returned.
    """
    if candidates is None:
        assert posteriors.shape[1] == out_occupancy.shape[0], (
            f"posteriors n_components {posteriors.shape[1]} != "
            f"occupancy n_components {out_occupancy.shape[0]}"
        )
        out_occupancy += posteriors.sum(dim=0)
    else:
        out_occupancy.index_add_(0, candidates[mask], posteriors[mask])
    return out_occupancy


def accumulate_mean_stats(
        *,
        X: FramesTensor2D,
        posteriors: torch.Tensor,
        out_mean: ParamsTensor,
        candidates: Optional[CandidatesTensor] = None,
        mask: Optional[torch.Tensor] = None,
) -> ParamsTensor:
    """Add ``sum_t p_tc * x_t`` for every component to ``out_mean``.

    See :func:`accumulate_occupancy_stats` for the meaning of ``candidates``
    and ``mask``. ``out_mean`` is mutated in-place and returned.
    """
    if candidates is None:
        out_mean += torch.matmul(posteriors.T, X)
    else:
        frame_idx = mask.nonzero(as_tuple=True)[0]
        weighted = posteriors[mask][:, None] * X[frame_idx]
        out_mean.index_add_(0, candidates[mask], weighted)
    return out_mean


def accumulate_variance_stats(
        *,
        X: FramesTensor2D,
        posteriors: torch.Tensor,
        out_var: ParamsTensor,
        candidates: Optional[CandidatesTensor] = None,
        mask: Optional[torch.Tensor] = None,
) -> ParamsTensor:
    """Add ``sum_t p_tc * x_t^2`` (elementwise square) to ``out_var``.

    See :func:`accumulate_occupancy_stats` for the meaning of ``candidates``
    and ``mask``. ``out_var`` is mutated in-place and returned.
    """
    X_sq = torch.square(X)
    if candidates is None:
        out_var += torch.matmul(posteriors.T, X_sq)
    else:
        frame_idx = mask.nonzero(as_tuple=True)[0]
        weighted = posteriors[mask][:, None] * X_sq[frame_idx]
        out_var.index_add_(0, candidates[mask], weighted)
    return out_var


def compute_weighted_loglike(
        *,
        total_loglike: torch.Tensor,  # (n_frames,)
        frame_weights: FrameWeightsVector,  # (n_frames,)
) -> Tuple[float, float]:
    """Return ``(sum_t w_t * L_t, sum_t w_t)`` for a batch of frames."""
    assert total_loglike.shape == frame_weights.shape, (
        f"total_loglike shape {total_loglike.shape} != "
        f"frame_weights shape {frame_weights.shape}"
    )
    return (
        float(torch.dot(frame_weights, total_loglike)),
        float(frame_weights.sum()),
    )

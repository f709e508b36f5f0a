"""E-step statistics accumulation for a diagonal GMM over a corpus of utterances."""
from __future__ import annotations

import enum
import math
import queue
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Optional, Union

import numpy as np
import torch

from gmmacc._batching import FrameBatchLoader, choose_batch_size
from gmmacc._types import CandidatesTensor, FramesArray2D, Gselect
from gmmacc.kernels import (
    compute_preselect_loglikelihoods,
    compute_weighted_loglike,
    normalize_loglikes,
)
from gmmacc.model import DiagGmm
from gmmacc.state import GmmAccumulators, UpdateFlags
from gmmacc.utils import logger
from gmmacc.utils._logging import log
from gmmacc.utils.archive import (
    RandomAccessGselectReader,
    RandomAccessVectorReader,
    SequentialMatrixReader,
)
from gmmacc.utils.io import read_gmm, write_accs


class ExitStatus(enum.IntEnum):
    """Process exit status of a run."""

    SUCCESS = 0  # at least one utterance processed
    NO_UTTERANCES = 1  # ran to completion but nothing was processed
    ERROR = 255  # fatal error, nothing written


@dataclass(slots=True, frozen=True)
class AccStatsConfig:
    """Immutable configuration for one accumulation run."""

    binary: bool = True
    update_flags: str = "mvw"
    gselect_rspecifier: str = ""
    weights_rspecifier: str = ""

    # Execution
    n_jobs: int = 1
    batch_size: int | None = None  # frames scored at once; None picks from memory

    def __post_init__(self):
        # Fail early on a bad flag string
        UpdateFlags.from_string(self.update_flags)
        if self.n_jobs < 1:
            raise ValueError(f"n_jobs must be >= 1, got {self.n_jobs}")
        if self.batch_size is not None and self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")

    @property
    def flags(self) -> UpdateFlags:
        return UpdateFlags.from_string(self.update_flags)


class SkipReason(enum.Enum):
    """Recoverable per-utterance conditions that skip the whole utterance."""

    MISSING_WEIGHTS = "no per-frame weights available"
    WEIGHTS_LENGTH_MISMATCH = "per-frame weights have the wrong length"
    MISSING_GSELECT = "no gselect information available"
    GSELECT_LENGTH_MISMATCH = "gselect information has the wrong length"


@dataclass(slots=True, frozen=True)
class Success:
    """An utterance whose frames were all accumulated."""

    key: str
    loglike: float  # sum of w_t * L_t over contributing frames
    weight: float  # sum of w_t over contributing frames
    n_frames: int

    @property
    def average_loglike(self) -> float | None:
        return self.loglike / self.weight if self.weight != 0 else None


@dataclass(slots=True, frozen=True)
class Skipped:
    """An utterance that contributed nothing because its side data was unusable."""

    key: str
    reason: SkipReason
    detail: str = ""


UtteranceResult = Union[Success, Skipped]


@dataclass(slots=True)
class CorpusStats:
    """Running corpus totals, used only for reporting."""

    tot_like: float = 0.0
    tot_weight: float = 0.0
    num_done: int = 0
    num_err: int = 0

    def add_result(self, result: UtteranceResult) -> None:
        if isinstance(result, Skipped):
            self.num_err += 1
        else:
            self.tot_like += result.loglike
            self.tot_weight += result.weight
            self.num_done += 1

    def merge(self, other: CorpusStats) -> None:
        self.tot_like += other.tot_like
        self.tot_weight += other.tot_weight
        self.num_done += other.num_done
        self.num_err += other.num_err

    @property
    def average_loglike(self) -> float | None:
        """Weighted average log-likelihood per frame, None if undefined."""
        return self.tot_like / self.tot_weight if self.tot_weight != 0 else None


@dataclass(slots=True, frozen=True)
class ResolvedUtterance:
    """Per-frame side data of one utterance, checked against its frame count."""

    key: str
    feats: FramesArray2D
    weights: Optional[np.ndarray] = None
    gselect: Optional[Gselect] = None


def resolve_frame_weights(
        key: str,
        n_frames: int,
        weights_reader: Optional[RandomAccessVectorReader],
) -> np.ndarray | Skipped | None:
    """Look up the per-frame weights of ``key``.

    Returns None when no weight source is configured (every frame weighs 1),
    the weight vector when it is usable, and a :class:`Skipped` otherwise.
    """
    if weights_reader is None:
        return None
    if key not in weights_reader:
        return Skipped(key, SkipReason.MISSING_WEIGHTS)
    weights = np.asarray(weights_reader[key], dtype=np.float64)
    if weights.shape[0] != n_frames:
        return Skipped(
            key,
            SkipReason.WEIGHTS_LENGTH_MISMATCH,
            f"{weights.shape[0]} vs. {n_frames}",
        )
    if np.any(weights < 0) or not np.all(np.isfinite(weights)):
        raise ValueError(f"per-frame weights for utterance {key!r} must be finite and >= 0")
    return weights


def resolve_gselect(
        key: str,
        n_frames: int,
        gselect_reader: Optional[RandomAccessGselectReader],
) -> Gselect | Skipped | None:
    """Look up the per-frame candidate lists of ``key``.

    Returns None when no selection source is configured (score all
    components), the lists when they are usable, and a :class:`Skipped`
    otherwise.
    """
    if gselect_reader is None:
        return None
    if key not in gselect_reader:
        return Skipped(key, SkipReason.MISSING_GSELECT)
    gselect = gselect_reader[key]
    if len(gselect) != n_frames:
        return Skipped(
            key,
            SkipReason.GSELECT_LENGTH_MISMATCH,
            f"{len(gselect)} vs. {n_frames}",
        )
    return gselect


def resolve_utterance(
        key: str,
        feats: FramesArray2D,
        weights_reader: Optional[RandomAccessVectorReader] = None,
        gselect_reader: Optional[RandomAccessGselectReader] = None,
) -> ResolvedUtterance | Skipped:
    """Resolve weights, then candidate lists, before any frame is touched."""
    n_frames = feats.shape[0]
    weights = resolve_frame_weights(key, n_frames, weights_reader)
    if isinstance(weights, Skipped):
        return weights
    gselect = resolve_gselect(key, n_frames, gselect_reader)
    if isinstance(gselect, Skipped):
        return gselect
    return ResolvedUtterance(key=key, feats=feats, weights=weights, gselect=gselect)


def pad_gselect(
        gselect: Gselect,
        n_components: int,
        frame_weights: Optional[torch.Tensor] = None,
) -> tuple[CandidatesTensor, torch.Tensor]:
    """Pack ragged per-frame candidate lists into ``(candidates, mask)`` tensors.

    Every frame that will be scored must list at least one component; an
    empty list is an internal invariant violation and raises
    ``RuntimeError``. Frames whose entry in ``frame_weights`` is 0 are never
    scored: their lists are not checked and their mask rows stay False.
    """
    n_frames = len(gselect)
    if frame_weights is None:
        scored = [True] * n_frames
    else:
        scored = (frame_weights != 0).tolist()
    width = max(
        (len(frame) for frame, keep in zip(gselect, scored) if keep), default=0,
    )
    candidates = torch.zeros((n_frames, width), dtype=torch.int64)
    mask = torch.zeros((n_frames, width), dtype=torch.bool)
    for i, (frame, keep) in enumerate(zip(gselect, scored)):
        if not keep:
            continue
        if len(frame) == 0:
            raise RuntimeError(f"empty candidate set for frame {i}")
        if len(set(frame)) != len(frame):
            raise ValueError(f"duplicate candidate indices {list(frame)} for frame {i}")
        candidates[i, :len(frame)] = torch.as_tensor(frame, dtype=torch.int64)
        mask[i, :len(frame)] = True
    if torch.any(candidates[mask] < 0) or torch.any(candidates[mask] >= n_components):
        raise ValueError(f"candidate indices must lie in [0, {n_components})")
    return candidates, mask


def accumulate_utterance(
        gmm: DiagGmm,
        accs: GmmAccumulators,
        key: str,
        feats: FramesArray2D,
        weights: Optional[np.ndarray] = None,
        gselect: Optional[Gselect] = None,
        batch_size: int | None = None,
) -> Success:
    """Accumulate every frame of one utterance into ``accs``.

    Parameters
    ----------
    gmm : DiagGmm
        The model frames are scored against. Not modified.
    accs : GmmAccumulators
        Accumulators, mutated in-place.
    key : str
        Utterance identifier, used for diagnostics.
    feats : array, shape (n_frames, dim)
        Feature frames.
    weights : array, shape (n_frames,), optional
        Per-frame weights. If None every frame weighs 1. Frames of weight 0
        are dropped before scoring and contribute nothing at all; their
        ``gselect`` lists are not checked.
    gselect : list of list of int, optional
        Per-frame candidate components. If None every frame is scored against
        all components.
    batch_size : int, optional
        Number of frames scored at once. If None, chosen from available memory.

    Returns
    -------
    result : Success
        The weighted log-likelihood and weight totals of the utterance.

    Notes
    -----
    Side data lengths are the caller's responsibility (see
    :func:`resolve_utterance`); mismatches here are programming errors.
    """
    X = torch.as_tensor(np.asarray(feats), dtype=torch.float64)
    n_frames = X.shape[0]
    if n_frames == 0:
        return Success(key=key, loglike=0.0, weight=0.0, n_frames=0)
    if X.ndim != 2 or X.shape[1] != gmm.dim:
        raise ValueError(
            f"features for utterance {key!r} have shape {tuple(X.shape)}, "
            f"expected (n_frames, {gmm.dim})"
        )
    w = (
        torch.ones(n_frames, dtype=torch.float64)
        if weights is None
        else torch.as_tensor(np.asarray(weights), dtype=torch.float64)
    )
    assert w.shape == (n_frames,), f"weights shape {tuple(w.shape)} != ({n_frames},)"
    if gselect is not None:
        assert len(gselect) == n_frames, f"gselect length {len(gselect)} != {n_frames}"
        candidates, mask = pad_gselect(gselect, gmm.n_components, frame_weights=w)

    if batch_size is None:
        batch_size = choose_batch_size(
            n_components=gmm.n_components,
            dim=gmm.dim,
            max_candidates=None if gselect is None else candidates.shape[1],
        )

    file_like = 0.0
    file_weight = 0.0
    for X_blk, sl in FrameBatchLoader(X, batch_size=batch_size):
        w_blk = w[sl]
        # Zero-weight frames are fully inert
        keep = w_blk != 0
        if not torch.any(keep):
            continue
        X_blk = X_blk[keep]
        w_blk = w_blk[keep]
        if gselect is None:
            loglikes = gmm.log_likelihoods(X_blk)
            cand_blk = mask_blk = None
        else:
            cand_blk = candidates[sl][keep]
            mask_blk = mask[sl][keep]
            loglikes = compute_preselect_loglikelihoods(
                X=X_blk,
                candidates=cand_blk,
                mask=mask_blk,
                means=gmm.means,
                inv_vars=gmm.inv_vars,
                gconsts=gmm.gconsts,
            )
        posteriors, frame_loglikes = normalize_loglikes(loglikes)
        if not torch.all(torch.isfinite(frame_loglikes)):
            raise RuntimeError(f"Non-finite log-likelihood in utterance {key!r}")
        posteriors *= w_blk[:, None]
        accs.accumulate_batch(
            X=X_blk, posteriors=posteriors, candidates=cand_blk, mask=mask_blk,
        )
        blk_like, blk_weight = compute_weighted_loglike(
            total_loglike=frame_loglikes, frame_weights=w_blk,
        )
        file_like += blk_like
        file_weight += blk_weight
    return Success(key=key, loglike=file_like, weight=file_weight, n_frames=n_frames)


def _report_result(result: UtteranceResult) -> None:
    if isinstance(result, Skipped):
        detail = f" ({result.detail})" if result.detail else ""
        logger.warning(f"Utterance {result.key}: {result.reason.value}{detail}")
    elif result.average_loglike is None:
        logger.debug(
            f"File '{result.key}': Average likelihood undefined over 0 (weighted) frames."
        )
    else:
        logger.debug(
            f"File '{result.key}': Average likelihood = {result.average_loglike:.6g} "
            f"over {result.weight:.6g} frames."
        )


def accumulate_corpus(
        gmm: DiagGmm,
        accs: GmmAccumulators,
        feature_reader: Iterable[tuple[str, FramesArray2D]],
        weights_reader: Optional[RandomAccessVectorReader] = None,
        gselect_reader: Optional[RandomAccessGselectReader] = None,
        n_jobs: int = 1,
        batch_size: int | None = None,
) -> CorpusStats:
    """Accumulate statistics for every utterance delivered by ``feature_reader``.

    Utterances are resolved in delivery order; one whose weights or candidate
    lists are missing or of the wrong length is skipped whole and counted as
    an error. Fatal errors (unreadable archives, bad dimensions, empty
    candidate sets) propagate and abort the run.

    With ``n_jobs > 1`` utterances are accumulated on a thread pool. Each
    worker owns a private accumulator; the private accumulators are summed
    into ``accs`` once the corpus is exhausted.

    Returns
    -------
    stats : CorpusStats
        Corpus totals for reporting.
    """
    if accs.n_components != gmm.n_components or accs.dim != gmm.dim:
        raise ValueError(
            f"accumulators sized ({accs.n_components}, {accs.dim}) do not match "
            f"model ({gmm.n_components}, {gmm.dim})"
        )
    if n_jobs == 1:
        stats = CorpusStats()
        for key, feats in feature_reader:
            resolved = resolve_utterance(key, feats, weights_reader, gselect_reader)
            if isinstance(resolved, Skipped):
                result = resolved
            else:
                result = accumulate_utterance(
                    gmm, accs, key, feats,
                    weights=resolved.weights,
                    gselect=resolved.gselect,
                    batch_size=batch_size,
                )
            _report_result(result)
            stats.add_result(result)
        return stats
    return _accumulate_corpus_threaded(
        gmm, accs, feature_reader, weights_reader, gselect_reader, n_jobs, batch_size,
    )


def _accumulate_corpus_threaded(
        gmm, accs, feature_reader, weights_reader, gselect_reader, n_jobs, batch_size,
) -> CorpusStats:
    private_accs = [accs.zeros_like() for _ in range(n_jobs)]
    free_accs: queue.SimpleQueue[GmmAccumulators] = queue.SimpleQueue()
    for private in private_accs:
        free_accs.put(private)

    def work(resolved: ResolvedUtterance) -> Success:
        # Exactly one worker holds a given private accumulator at a time
        private = free_accs.get()
        try:
            return accumulate_utterance(
                gmm, private, resolved.key, resolved.feats,
                weights=resolved.weights,
                gselect=resolved.gselect,
                batch_size=batch_size,
            )
        finally:
            free_accs.put(private)

    stats = CorpusStats()
    pending = deque()

    def drain(limit: int) -> None:
        while len(pending) > limit:
            item = pending.popleft()
            result = item if isinstance(item, Skipped) else item.result()
            _report_result(result)
            stats.add_result(result)

    with ThreadPoolExecutor(max_workers=n_jobs) as executor:
        try:
            for key, feats in feature_reader:
                # Archive lookups stay on this thread
                resolved = resolve_utterance(key, feats, weights_reader, gselect_reader)
                if isinstance(resolved, Skipped):
                    pending.append(resolved)
                else:
                    pending.append(executor.submit(work, resolved))
                drain(2 * n_jobs)
            drain(0)
        except BaseException:
            for item in pending:
                if not isinstance(item, Skipped):
                    item.cancel()
            raise

    for private in private_accs:
        accs.add(private)
    return stats


def gmm_global_acc_stats(
        model_in,
        feature_rspecifier: str,
        accs_out,
        cfg: AccStatsConfig | None = None,
) -> ExitStatus:
    """Accumulate E-step statistics for a diagonal GMM and write them out.

    Parameters
    ----------
    model_in : str or Path
        Model file, see :func:`gmmacc.utils.read_gmm`.
    feature_rspecifier : str
        Feature archive, e.g. ``npz:train.npz``.
    accs_out : str or Path
        Where the accumulators are written.
    cfg : AccStatsConfig, optional
        Run options. Defaults to ``AccStatsConfig()``.

    Returns
    -------
    status : ExitStatus
        ``SUCCESS`` if at least one utterance was processed, ``NO_UTTERANCES``
        otherwise. Fatal errors raise instead, and nothing is written.
    """
    if cfg is None:
        cfg = AccStatsConfig()
    gmm = read_gmm(model_in)
    accs = GmmAccumulators.resize(gmm, cfg.flags)
    logger.debug(f"Read {gmm!r}; accumulating with flags {cfg.update_flags!r}")

    feature_reader = SequentialMatrixReader(feature_rspecifier)
    weights_reader = gselect_reader = None
    try:
        if cfg.weights_rspecifier:
            weights_reader = RandomAccessVectorReader(cfg.weights_rspecifier)
        if cfg.gselect_rspecifier:
            gselect_reader = RandomAccessGselectReader(cfg.gselect_rspecifier)
        stats = accumulate_corpus(
            gmm,
            accs,
            feature_reader,
            weights_reader=weights_reader,
            gselect_reader=gselect_reader,
            n_jobs=cfg.n_jobs,
            batch_size=cfg.batch_size,
        )
    finally:
        for reader in (weights_reader, gselect_reader):
            if reader is not None:
                reader.close()

    logger.info(f"Done {stats.num_done} files; {stats.num_err} with errors.")
    avg = stats.average_loglike
    if avg is None or not math.isfinite(avg):
        logger.info(
            f"Overall likelihood per frame is undefined over {stats.tot_weight:.6g} "
            "(weighted) frames."
        )
    else:
        logger.info(
            f"Overall likelihood per frame = {avg:.6g} over {stats.tot_weight:.6g} "
            "(weighted) frames."
        )

    write_accs(accs, accs_out, binary=cfg.binary)
    log(f"Written accs to {accs_out}", color="green")
    return ExitStatus.SUCCESS if stats.num_done != 0 else ExitStatus.NO_UTTERANCES

"""Command-line entry point: ``gmm-global-acc-stats``."""
import argparse
import sys

from gmmacc.core import AccStatsConfig, ExitStatus, gmm_global_acc_stats
from gmmacc.utils import logger, set_log_level

USAGE = (
    "Accumulate stats for training a diagonal-covariance GMM.\n"
    "e.g.: gmm-global-acc-stats 1.mdl npz:train.npz 1.acc"
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gmm-global-acc-stats", description=USAGE)
    parser.add_argument("model_in", help="Model file (binary or text)")
    parser.add_argument(
        "feature_rspecifier",
        help="Feature archive: npz:<path>, txt:<path>, or a path",
    )
    parser.add_argument("accs_out", help="Where to write the accumulated stats")
    parser.add_argument(
        "--binary",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Write output in binary mode",
    )
    parser.add_argument(
        "--update-flags",
        default="mvw",
        help="Which GMM parameters will be updated: subset of mvw.",
    )
    parser.add_argument(
        "--gselect",
        default="",
        help="rspecifier for gselect objects to limit the #Gaussians accessed on "
        "each frame.",
    )
    parser.add_argument(
        "--weights",
        default="",
        help="rspecifier for a vector of floats for each utterance, that's a "
        "per-frame weight.",
    )
    parser.add_argument(
        "--num-threads",
        type=int,
        default=1,
        help="Number of utterances accumulated in parallel.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Frames scored at once (default: chosen from available memory).",
    )
    parser.add_argument(
        "--verbose",
        default="INFO",
        help="Log level: DEBUG prints one line per utterance.",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    set_log_level(args.verbose)
    try:
        cfg = AccStatsConfig(
            binary=args.binary,
            update_flags=args.update_flags,
            gselect_rspecifier=args.gselect,
            weights_rspecifier=args.weights,
            n_jobs=args.num_threads,
            batch_size=args.batch_size,
        )
        status = gmm_global_acc_stats(
            args.model_in, args.feature_rspecifier, args.accs_out, cfg
        )
    except Exception as err:
        logger.error(f"{type(err).__name__}: {err}")
        return int(ExitStatus.ERROR)
    return int(status)


if __name__ == "__main__":
    sys.exit(main())

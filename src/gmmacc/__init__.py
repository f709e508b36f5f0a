from . import utils
from .core import AccStatsConfig, ExitStatus, accumulate_corpus, gmm_global_acc_stats
from .model import DiagGmm
from .state import GmmAccumulators, UpdateFlags

__all__ = [
    'AccStatsConfig',
    'DiagGmm',
    'ExitStatus',
    'GmmAccumulators',
    'UpdateFlags',
    'accumulate_corpus',
    'gmm_global_acc_stats',
    'utils',
]

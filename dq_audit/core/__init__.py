"""
Core audit algorithms: normalization, classification, aggregation,
rolling smoothing and ranking.
"""

from .aggregator import DailyAggregator, PartialAggregate, merge_partials
from .classifier import JoinClassifier, TransactionIndex, is_invalid_record
from .normalizer import NormalizationResult, RecordDefect, RecordNormalizer
from .ranker import rank_daily, rank_load_date
from .smoother import RollingSmoother, rolling_history

__all__ = [
    "RecordNormalizer",
    "NormalizationResult",
    "RecordDefect",
    "JoinClassifier",
    "TransactionIndex",
    "is_invalid_record",
    "DailyAggregator",
    "PartialAggregate",
    "merge_partials",
    "RollingSmoother",
    "rolling_history",
    "rank_daily",
    "rank_load_date",
]

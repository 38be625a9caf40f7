"""Cross-provider matching, merging and reconciliation."""

from mediaweave.aggregation.matcher import (
    IdentityMatcher,
    normalize_title,
    score_candidate,
    title_similarity,
)
from mediaweave.aggregation.merger import DataAggregator
from mediaweave.aggregation.reconciler import AggregationError, MetadataReconciler

__all__ = [
    "AggregationError",
    "DataAggregator",
    "IdentityMatcher",
    "MetadataReconciler",
    "normalize_title",
    "score_candidate",
    "title_similarity",
]

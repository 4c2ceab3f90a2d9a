"""Weighted score aggregation and ranking."""

from vendoreval.aggregation.cache import ResultCache, compute_cache_key
from vendoreval.aggregation.engine import AggregationEngine

__all__ = ["AggregationEngine", "ResultCache", "compute_cache_key"]

"""Aggregation engine.

Deterministic roll-up of evaluator scores:

1. criterion value = locked consensus if present, else the configured
   combination (mean or median) of submitted scores
2. no submitted scores -> 0, flagged unscored; unresolved reconciliation
   -> 0, flagged unresolved (never averaged)
3. category score = sum(criterion value x criterion weight / 100)
4. vendor total = sum(category score x category weight / 100)

Unscored and unresolved criteria keep their weight in the denominator.
Results are cached per evaluation version and rounded only for display.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from vendoreval.aggregation.cache import ResultCache
from vendoreval.cancellation import CancellationToken, check_cancelled
from vendoreval.config import CombinationMethod, EngineConfig
from vendoreval.errors import ValidationError
from vendoreval.models.aggregation import (
    CategoryResult,
    CriterionResult,
    CriterionStatus,
    RankedVendor,
    Ranking,
    TieBreak,
    VendorTotal,
)
from vendoreval.models.evaluation import Category, Criterion, Vendor
from vendoreval.models.score import ConsensusScore, Score, ScoreStatus
from vendoreval.numeric import mean, median, round_half_up
from vendoreval.persistence.catalog import EvaluationCatalog
from vendoreval.persistence.repository import ScoreRepository

logger = logging.getLogger(__name__)

# totals are compared at this many decimals so float noise does not beat a tie-break
TIE_DECIMALS = 9

UnresolvedLookup = Callable[[str], set[tuple[str, str]]]


def _no_unresolved(evaluation_id: str) -> set[tuple[str, str]]:
    return set()


class _Snapshot:
    """Scores and consensus of one evaluation, indexed by (vendor, criterion)."""

    def __init__(
        self,
        scores: list[Score],
        consensus: list[ConsensusScore],
        unresolved: set[tuple[str, str]],
    ) -> None:
        self.submitted: dict[tuple[str, str], list[Score]] = {}
        for s in scores:
            self.submitted.setdefault((s.vendor_id, s.criterion_id), []).append(s)
        self.consensus = {(c.vendor_id, c.criterion_id): c for c in consensus if c.locked}
        self.unresolved = unresolved


class AggregationEngine:
    """Computes criterion, category and vendor scores and rankings."""

    def __init__(
        self,
        repository: ScoreRepository,
        catalog: EvaluationCatalog,
        config: EngineConfig,
        *,
        unresolved_lookup: UnresolvedLookup | None = None,
        cache: ResultCache | None = None,
    ) -> None:
        self._repo = repository
        self._catalog = catalog
        self._config = config
        self._unresolved = unresolved_lookup or _no_unresolved
        self._cache = cache if cache is not None else ResultCache(config.cache_enabled)

    @property
    def cache(self) -> ResultCache:
        return self._cache

    def round_for_display(self, value: float, decimals: int | None = None) -> float:
        """Round half-up at the display boundary."""
        places = self._config.display_decimals if decimals is None else decimals
        return round_half_up(value, places)

    def criterion_score(
        self, evaluation_id: str, vendor_id: str, criterion_id: str
    ) -> CriterionResult:
        """Resolve the value of one criterion for one vendor."""
        criterion = self._catalog.get_criterion(criterion_id)
        snapshot = self._snapshot(evaluation_id, vendor_id=vendor_id)
        return self._criterion(snapshot, vendor_id, criterion)

    def category_score(
        self, evaluation_id: str, vendor_id: str, category_id: str
    ) -> CategoryResult:
        """Weighted score of one category for one vendor."""
        category = self._catalog.get_category(category_id)
        if category.evaluation_id != evaluation_id:
            raise ValidationError(
                f"Category {category_id} is not part of evaluation {evaluation_id}"
            )
        snapshot = self._snapshot(evaluation_id, vendor_id=vendor_id)
        criteria = self._catalog.list_criteria(evaluation_id, category_id=category_id)
        return self._category(snapshot, vendor_id, category, criteria, None)

    def vendor_total(
        self,
        evaluation_id: str,
        vendor_id: str,
        *,
        token: CancellationToken | None = None,
    ) -> VendorTotal:
        """Total weighted score of a vendor with per-category breakdown."""
        version = self._repo.get_version(evaluation_id)
        cached = self._cache.get(evaluation_id, version, "vendor_total", vendor_id)
        if cached is not None:
            return cached
        vendor = self._catalog.get_vendor(vendor_id)
        if vendor.evaluation_id != evaluation_id:
            raise ValidationError(f"Vendor {vendor_id} is not part of evaluation {evaluation_id}")
        snapshot = self._snapshot(evaluation_id, vendor_id=vendor_id)
        result = self._vendor_total(evaluation_id, snapshot, vendor, token)
        self._cache.put(evaluation_id, version, "vendor_total", vendor_id, result)
        return result

    def rank_vendors(
        self, evaluation_id: str, *, token: CancellationToken | None = None
    ) -> Ranking:
        """Rank active vendors by total, highest first.

        Ties on total are broken by the score in the highest-weighted
        category, then by earlier vendor creation time, then by vendor id.
        """
        version = self._repo.get_version(evaluation_id)
        cached = self._cache.get(evaluation_id, version, "rank_vendors")
        if cached is not None:
            return cached

        categories = self._catalog.list_categories(evaluation_id)
        top = (
            min(categories, key=lambda c: (-c.weight, c.sort_order, c.category_id))
            if categories
            else None
        )
        snapshot = self._snapshot(evaluation_id)
        rows: list[tuple[Vendor, VendorTotal, float]] = []
        for vendor in self._catalog.list_vendors(evaluation_id, active_only=True):
            check_cancelled(token)
            total = self._vendor_total(evaluation_id, snapshot, vendor, token)
            top_score = 0.0
            if top is not None:
                top_result = total.category(top.category_id)
                top_score = top_result.score if top_result is not None else 0.0
            rows.append((vendor, total, top_score))

        rows.sort(
            key=lambda r: (
                -round(r[1].total, TIE_DECIMALS),
                -round(r[2], TIE_DECIMALS),
                r[0].created_at,
                r[0].vendor_id,
            )
        )
        ranked: list[RankedVendor] = []
        previous: tuple[Vendor, VendorTotal, float] | None = None
        for position, (vendor, total, top_score) in enumerate(rows, start=1):
            tie_break = None
            if previous is not None and round(previous[1].total, TIE_DECIMALS) == round(
                total.total, TIE_DECIMALS
            ):
                tie_break = self._tie_break(previous[0], previous[2], vendor, top_score)
            ranked.append(
                RankedVendor(
                    rank=position,
                    vendor_id=vendor.vendor_id,
                    vendor_name=vendor.name,
                    total=total.total,
                    display_total=self.round_for_display(total.total),
                    top_category_score=top_score if top is not None else None,
                    tie_break=tie_break,
                    complete=total.complete,
                )
            )
            previous = (vendor, total, top_score)

        result = Ranking(
            evaluation_id=evaluation_id,
            version=version,
            top_category_id=top.category_id if top is not None else None,
            vendors=tuple(ranked),
        )
        self._cache.put(evaluation_id, version, "rank_vendors", None, result)
        logger.info(
            "Ranked %d vendors for evaluation %s (v%d)", len(ranked), evaluation_id, version
        )
        return result

    def _snapshot(self, evaluation_id: str, *, vendor_id: str | None = None) -> _Snapshot:
        scores = self._repo.list_scores(
            evaluation_id, vendor_id=vendor_id, status=ScoreStatus.SUBMITTED
        )
        consensus = self._repo.list_consensus(evaluation_id)
        if vendor_id is not None:
            consensus = [c for c in consensus if c.vendor_id == vendor_id]
        return _Snapshot(scores, consensus, self._unresolved(evaluation_id))

    def _combine(self, values: list[float]) -> float:
        if self._config.combination == CombinationMethod.MEDIAN:
            return median(values)
        return mean(values)

    def _criterion(
        self, snapshot: _Snapshot, vendor_id: str, criterion: Criterion
    ) -> CriterionResult:
        pair = (vendor_id, criterion.criterion_id)
        submitted = snapshot.submitted.get(pair, [])
        base = {
            "vendor_id": vendor_id,
            "criterion_id": criterion.criterion_id,
            "category_id": criterion.category_id,
            "weight": criterion.weight,
            "submitted_count": len(submitted),
        }
        consensus = snapshot.consensus.get(pair)
        if consensus is not None:
            return CriterionResult(
                **base,
                value=consensus.value,
                status=CriterionStatus.CONSENSUS,
                consensus_id=consensus.consensus_id,
                fallback_applied=consensus.fallback_applied,
            )
        if pair in snapshot.unresolved:
            return CriterionResult(**base, value=0.0, status=CriterionStatus.UNRESOLVED)
        if not submitted:
            return CriterionResult(**base, value=0.0, status=CriterionStatus.UNSCORED)
        return CriterionResult(
            **base,
            value=self._combine([s.value for s in submitted]),
            status=CriterionStatus.SCORED,
        )

    def _category(
        self,
        snapshot: _Snapshot,
        vendor_id: str,
        category: Category,
        criteria: list[Criterion],
        token: CancellationToken | None,
    ) -> CategoryResult:
        results = []
        for criterion in criteria:
            check_cancelled(token)
            results.append(self._criterion(snapshot, vendor_id, criterion))
        return CategoryResult(
            vendor_id=vendor_id,
            category_id=category.category_id,
            name=category.name,
            weight=category.weight,
            score=sum(r.weighted_value for r in results),
            criteria=tuple(results),
        )

    def _vendor_total(
        self,
        evaluation_id: str,
        snapshot: _Snapshot,
        vendor: Vendor,
        token: CancellationToken | None,
    ) -> VendorTotal:
        categories = []
        for category in self._catalog.list_categories(evaluation_id):
            criteria = self._catalog.list_criteria(evaluation_id, category_id=category.category_id)
            categories.append(self._category(snapshot, vendor.vendor_id, category, criteria, token))
        return VendorTotal(
            evaluation_id=evaluation_id,
            vendor_id=vendor.vendor_id,
            vendor_name=vendor.name,
            total=sum(c.weighted_score for c in categories),
            categories=tuple(categories),
        )

    @staticmethod
    def _tie_break(
        previous: Vendor, previous_top: float, vendor: Vendor, top_score: float
    ) -> TieBreak:
        if round(previous_top, TIE_DECIMALS) != round(top_score, TIE_DECIMALS):
            return TieBreak.TOP_CATEGORY
        if previous.created_at != vendor.created_at:
            return TieBreak.CREATED_AT
        return TieBreak.VENDOR_ID

"""Traceability linker.

Joins requirements, criteria, scores, consensus, evidence, questions and
vendor responses into the requirement x vendor matrix. All lookups go
through a TraceIndex built once per evaluation version; build_matrix,
coverage and drilldown never re-scan the catalog or the score store.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from vendoreval.aggregation.cache import ResultCache
from vendoreval.cancellation import CancellationToken, check_cancelled
from vendoreval.config import EngineConfig
from vendoreval.errors import NotFoundError, ValidationError
from vendoreval.models.evaluation import (
    Criterion,
    Evidence,
    Question,
    Requirement,
    Vendor,
    VendorResponse,
)
from vendoreval.models.score import ConsensusScore, Score, ScoreStatus
from vendoreval.models.traceability import (
    CellType,
    CoverageGap,
    CoverageReport,
    Drilldown,
    MatrixCell,
    MatrixFilters,
    MatrixRow,
    RagStatus,
    TraceabilityMatrix,
    VendorCoverage,
    VendorSummary,
)
from vendoreval.numeric import mean
from vendoreval.persistence.catalog import EvaluationCatalog
from vendoreval.persistence.repository import ScoreRepository

logger = logging.getLogger(__name__)

UnresolvedLookup = Callable[[str], set[tuple[str, str]]]

_NO_VALUE = (CellType.UNSCORED, CellType.UNRESOLVED)


def classify_rag(value: float | None, config: EngineConfig) -> RagStatus:
    """Green at or above config.rag.green, amber at or above config.rag.amber, else red."""
    if value is None:
        return RagStatus.NONE
    if value >= config.rag.green:
        return RagStatus.GREEN
    if value >= config.rag.amber:
        return RagStatus.AMBER
    return RagStatus.RED


def _percent(part: int, whole: int) -> float:
    return part / whole * 100.0 if whole else 0.0


class TraceIndex:
    """Lookup tables for one evaluation at one version."""

    def __init__(
        self,
        evaluation_id: str,
        version: int,
        catalog: EvaluationCatalog,
        repository: ScoreRepository,
        unresolved: set[tuple[str, str]],
    ) -> None:
        self.evaluation_id = evaluation_id
        self.version = version
        self.unresolved = unresolved
        self.vendors: list[Vendor] = catalog.list_vendors(evaluation_id, active_only=True)
        self.requirements: dict[str, Requirement] = {
            r.requirement_id: r for r in catalog.list_requirements(evaluation_id)
        }
        self.category_order: dict[str, int] = {
            c.category_id: i for i, c in enumerate(catalog.list_categories(evaluation_id))
        }
        self.criteria: dict[str, Criterion] = {
            c.criterion_id: c for c in catalog.list_criteria(evaluation_id)
        }

        links: dict[str, set[str]] = {rid: set() for rid in self.requirements}
        for rid, requirement in self.requirements.items():
            links[rid].update(cid for cid in requirement.criterion_ids if cid in self.criteria)
        for cid, criterion in self.criteria.items():
            for rid in criterion.requirement_ids:
                if rid in links:
                    links[rid].add(cid)
        self.requirement_criteria: dict[str, tuple[str, ...]] = {
            rid: tuple(sorted(cids, key=lambda c: (self.criteria[c].sort_order, c)))
            for rid, cids in links.items()
        }

        self.scores: dict[tuple[str, str], list[Score]] = {}
        for score in repository.list_scores(evaluation_id, status=ScoreStatus.SUBMITTED):
            self.scores.setdefault((score.vendor_id, score.criterion_id), []).append(score)
        self.consensus: dict[tuple[str, str], ConsensusScore] = {
            (c.vendor_id, c.criterion_id): c
            for c in repository.list_consensus(evaluation_id)
            if c.locked
        }

        vendor_ids = {v.vendor_id for v in self.vendors}
        self.evidence: dict[tuple[str, str], list[Evidence]] = {}
        criterion_requirements: dict[str, set[str]] = {}
        for rid, cids in self.requirement_criteria.items():
            for cid in cids:
                criterion_requirements.setdefault(cid, set()).add(rid)
        for ev in catalog.list_evidence(vendor_ids=vendor_ids, criterion_ids=set(self.criteria)):
            targets = set(criterion_requirements.get(ev.criterion_id, ()))
            if ev.requirement_id in self.requirements:
                targets.add(ev.requirement_id)
            for rid in targets:
                self.evidence.setdefault((ev.vendor_id, rid), []).append(ev)

        self.questions: dict[str, list[Question]] = {}
        for question in catalog.list_questions():
            targets = set()
            if question.requirement_id in self.requirements:
                targets.add(question.requirement_id)
            if question.criterion_id in criterion_requirements:
                targets.update(criterion_requirements[question.criterion_id])
            for rid in targets:
                self.questions.setdefault(rid, []).append(question)

        self.responses: dict[tuple[str, str], list[VendorResponse]] = {}
        for response in catalog.list_responses():
            if response.vendor_id in vendor_ids:
                self.responses.setdefault((response.question_id, response.vendor_id), []).append(
                    response
                )

    def row_key(self, requirement: Requirement) -> tuple[int, str]:
        order = self.category_order.get(requirement.category_id or "", len(self.category_order))
        return (order, requirement.requirement_id)


class TraceabilityLinker:
    """Builds the traceability matrix, coverage report and cell drilldowns."""

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
        self._unresolved = unresolved_lookup or (lambda evaluation_id: set())
        self._cache = cache if cache is not None else ResultCache(config.cache_enabled)

    def index(self, evaluation_id: str) -> TraceIndex:
        """Return the lookup index for the evaluation's current version."""
        self._catalog.get_evaluation(evaluation_id)
        version = self._repo.get_version(evaluation_id)
        cached = self._cache.get(evaluation_id, version, "trace_index")
        if cached is not None:
            return cached
        index = TraceIndex(
            evaluation_id, version, self._catalog, self._repo, self._unresolved(evaluation_id)
        )
        self._cache.put(evaluation_id, version, "trace_index", None, index)
        logger.debug(
            "Built trace index for %s v%d: %d requirements, %d vendors",
            evaluation_id,
            version,
            len(index.requirements),
            len(index.vendors),
        )
        return index

    def cell(self, index: TraceIndex, requirement_id: str, vendor_id: str) -> MatrixCell:
        """Resolve one cell: consensus, then mean of submitted scores, else no value.

        With several linked criteria each criterion is resolved on its own and
        the cell value is the mean of the resolved criteria. Any linked
        criterion with unresolved reconciliation makes the whole cell
        unresolved.
        """
        criterion_ids = index.requirement_criteria.get(requirement_id, ())
        evidence_ids = tuple(
            e.evidence_id for e in index.evidence.get((vendor_id, requirement_id), ())
        )
        values: list[float] = []
        all_consensus = True
        score_count = 0
        unresolved = False
        for cid in criterion_ids:
            pair = (vendor_id, cid)
            submitted = index.scores.get(pair, [])
            score_count += len(submitted)
            consensus = index.consensus.get(pair)
            if consensus is not None:
                values.append(consensus.value)
            elif pair in index.unresolved:
                unresolved = True
            elif submitted:
                values.append(mean([s.value for s in submitted]))
                all_consensus = False

        if unresolved:
            cell_type, value = CellType.UNRESOLVED, None
        elif not values:
            cell_type, value = CellType.UNSCORED, None
        else:
            cell_type = CellType.CONSENSUS if all_consensus else CellType.SCORED
            value = mean(values)
        return MatrixCell(
            requirement_id=requirement_id,
            vendor_id=vendor_id,
            criterion_ids=criterion_ids,
            cell_type=cell_type,
            value=value,
            rag=classify_rag(value, self._config),
            score_count=score_count,
            evidence_ids=evidence_ids,
        )

    def build_matrix(
        self,
        evaluation_id: str,
        filters: MatrixFilters | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> TraceabilityMatrix:
        """Requirement x vendor grid with vendor summaries.

        Rows are ordered by category sort order (uncategorized last), then
        requirement id. Vendor summaries and progress cover the filtered rows.
        """
        filters = filters or MatrixFilters()
        index = self.index(evaluation_id)
        vendors = [
            v
            for v in index.vendors
            if filters.vendor_ids is None or v.vendor_id in filters.vendor_ids
        ]
        requirements = sorted(index.requirements.values(), key=index.row_key)

        rows: list[MatrixRow] = []
        for requirement in requirements:
            check_cancelled(token)
            categories = filters.category_ids
            if categories is not None and requirement.category_id not in categories:
                continue
            if filters.priorities is not None and requirement.priority not in filters.priorities:
                continue
            rid = requirement.requirement_id
            cells = tuple(self.cell(index, rid, v.vendor_id) for v in vendors)
            if filters.rag is not None and not any(c.rag in filters.rag for c in cells):
                continue
            if filters.gaps_only and not any(c.cell_type in _NO_VALUE for c in cells):
                continue
            rows.append(
                MatrixRow(
                    requirement_id=requirement.requirement_id,
                    title=requirement.title,
                    priority=requirement.priority,
                    category_id=requirement.category_id,
                    cells=cells,
                )
            )

        summaries = tuple(self._vendor_summary(index, vendor, rows) for vendor in vendors)
        total_cells = len(rows) * len(vendors)
        valued = sum(1 for r in rows for c in r.cells if c.has_value)
        return TraceabilityMatrix(
            evaluation_id=evaluation_id,
            version=index.version,
            vendor_ids=tuple(v.vendor_id for v in vendors),
            rows=tuple(rows),
            vendor_summaries=summaries,
            overall_progress=_percent(valued, total_cells),
        )

    def coverage(
        self, evaluation_id: str, *, token: CancellationToken | None = None
    ) -> CoverageReport:
        """Share of requirements with a value for every active vendor, plus per-vendor gaps."""
        matrix = self.build_matrix(evaluation_id, token=token)
        covered = sum(1 for r in matrix.rows if r.cells and all(c.has_value for c in r.cells))
        gaps = [
            CoverageGap(
                requirement_id=r.requirement_id, vendor_id=c.vendor_id, cell_type=c.cell_type
            )
            for r in matrix.rows
            for c in r.cells
            if not c.has_value
        ]
        by_vendor = []
        for vendor_id in matrix.vendor_ids:
            cells = [r.cell(vendor_id) for r in matrix.rows]
            by_vendor.append(
                VendorCoverage(
                    vendor_id=vendor_id,
                    total=len(cells),
                    scored=sum(1 for c in cells if c is not None and c.has_value),
                    with_evidence=sum(1 for c in cells if c is not None and c.evidence_ids),
                    missing=tuple(
                        c.requirement_id for c in cells if c is not None and not c.has_value
                    ),
                )
            )
        total_cells = len(matrix.rows) * len(matrix.vendor_ids)
        return CoverageReport(
            evaluation_id=evaluation_id,
            total_requirements=len(matrix.rows),
            covered_requirements=covered,
            coverage_pct=_percent(covered, len(matrix.rows)),
            scored_cell_pct=_percent(sum(v.scored for v in by_vendor), total_cells),
            evidence_cell_pct=_percent(sum(v.with_evidence for v in by_vendor), total_cells),
            by_vendor=tuple(by_vendor),
            gaps=tuple(gaps),
        )

    def drilldown(self, evaluation_id: str, requirement_id: str, vendor_id: str) -> Drilldown:
        """Resolve the chain behind one cell, from requirement through to consensus."""
        index = self.index(evaluation_id)
        requirement = index.requirements.get(requirement_id)
        if requirement is None:
            raise NotFoundError("Requirement", requirement_id)
        if vendor_id not in {v.vendor_id for v in index.vendors}:
            raise ValidationError(
                f"Vendor {vendor_id} is not an active vendor of evaluation {evaluation_id}"
            )
        criterion_ids = index.requirement_criteria.get(requirement_id, ())
        questions = index.questions.get(requirement_id, [])
        responses = [
            r for q in questions for r in index.responses.get((q.question_id, vendor_id), [])
        ]
        scores = [s for cid in criterion_ids for s in index.scores.get((vendor_id, cid), [])]
        consensus = [
            index.consensus[(vendor_id, cid)]
            for cid in criterion_ids
            if (vendor_id, cid) in index.consensus
        ]
        return Drilldown(
            requirement=requirement,
            vendor_id=vendor_id,
            cell=self.cell(index, requirement_id, vendor_id),
            criteria=tuple(index.criteria[cid] for cid in criterion_ids),
            questions=tuple(questions),
            responses=tuple(responses),
            evidence=tuple(index.evidence.get((vendor_id, requirement_id), ())),
            scores=tuple(sorted(scores, key=lambda s: (s.criterion_id, s.evaluator_id))),
            consensus=tuple(consensus),
        )

    def _vendor_summary(
        self, index: TraceIndex, vendor: Vendor, rows: list[MatrixRow]
    ) -> VendorSummary:
        values: list[float] = []
        weighted = 0.0
        total_weight = 0.0
        for row in rows:
            cell = row.cell(vendor.vendor_id)
            if cell is None or cell.value is None:
                continue
            weights = [index.criteria[cid].weight for cid in cell.criterion_ids]
            weight = mean(weights) if weights else 1.0
            values.append(cell.value)
            weighted += cell.value * weight
            total_weight += weight
        weighted_score = weighted / total_weight if total_weight > 0 else None
        return VendorSummary(
            vendor_id=vendor.vendor_id,
            vendor_name=vendor.name,
            average_score=mean(values) if values else None,
            weighted_score=weighted_score,
            scored_cells=len(values),
            progress=_percent(len(values), len(rows)),
            rag=classify_rag(weighted_score, self._config),
        )

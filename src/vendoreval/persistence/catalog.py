"""In-memory evaluation catalog.

Holds the data the engine consumes but does not own the lifecycle of:
evaluations, categories, criteria, vendors, the evaluator directory and
the traceability entities (requirements, evidence, questions, responses).
"""

from __future__ import annotations

import threading
from typing import Any

from vendoreval.errors import NotFoundError
from vendoreval.models.evaluation import (
    Category,
    Criterion,
    Evaluation,
    EvaluationPhase,
    Evaluator,
    Evidence,
    Question,
    Requirement,
    Vendor,
    VendorResponse,
)


class EvaluationCatalog:
    """Thread-safe in-memory catalog keyed by entity id."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._evaluations: dict[str, Evaluation] = {}
        self._categories: dict[str, Category] = {}
        self._criteria: dict[str, Criterion] = {}
        self._vendors: dict[str, Vendor] = {}
        self._evaluators: dict[str, Evaluator] = {}
        self._requirements: dict[str, dict[str, Requirement]] = {}
        self._evidence: dict[str, Evidence] = {}
        self._questions: dict[str, Question] = {}
        self._responses: dict[str, VendorResponse] = {}

    # -- evaluations ---------------------------------------------------------

    def add_evaluation(self, evaluation: Evaluation) -> Evaluation:
        with self._lock:
            self._evaluations[evaluation.evaluation_id] = evaluation
        return evaluation

    def get_evaluation(self, evaluation_id: str) -> Evaluation:
        with self._lock:
            evaluation = self._evaluations.get(evaluation_id)
        if evaluation is None:
            raise NotFoundError("Evaluation", evaluation_id)
        return evaluation

    def update_evaluation(self, evaluation_id: str, **changes: Any) -> Evaluation:
        """Replace an evaluation with a copy carrying the given field changes."""
        with self._lock:
            current = self.get_evaluation(evaluation_id)
            updated = current.model_copy(update=changes)
            self._evaluations[evaluation_id] = updated
        return updated

    def set_phase(self, evaluation_id: str, phase: EvaluationPhase) -> Evaluation:
        return self.update_evaluation(evaluation_id, phase=phase)

    # -- weighted structure --------------------------------------------------

    def add_category(self, category: Category) -> Category:
        self.get_evaluation(category.evaluation_id)
        with self._lock:
            self._categories[category.category_id] = category
        return category

    def get_category(self, category_id: str) -> Category:
        with self._lock:
            category = self._categories.get(category_id)
        if category is None:
            raise NotFoundError("Category", category_id)
        return category

    def list_categories(self, evaluation_id: str) -> list[Category]:
        with self._lock:
            items = [c for c in self._categories.values() if c.evaluation_id == evaluation_id]
        return sorted(items, key=lambda c: (c.sort_order, c.category_id))

    def set_category_weight(self, category_id: str, weight: float) -> Category:
        with self._lock:
            updated = self.get_category(category_id).model_copy(update={"weight": weight})
            self._categories[category_id] = updated
        return updated

    def add_criterion(self, criterion: Criterion) -> Criterion:
        self.get_category(criterion.category_id)
        with self._lock:
            self._criteria[criterion.criterion_id] = criterion
        return criterion

    def get_criterion(self, criterion_id: str) -> Criterion:
        with self._lock:
            criterion = self._criteria.get(criterion_id)
        if criterion is None:
            raise NotFoundError("Criterion", criterion_id)
        return criterion

    def list_criteria(
        self, evaluation_id: str, *, category_id: str | None = None
    ) -> list[Criterion]:
        with self._lock:
            category_ids = {
                c.category_id for c in self._categories.values() if c.evaluation_id == evaluation_id
            }
            items = [
                c
                for c in self._criteria.values()
                if c.category_id in category_ids
                and (category_id is None or c.category_id == category_id)
            ]
        return sorted(items, key=lambda c: (c.category_id, c.sort_order, c.criterion_id))

    def set_criterion_weight(self, criterion_id: str, weight: float) -> Criterion:
        with self._lock:
            updated = self.get_criterion(criterion_id).model_copy(update={"weight": weight})
            self._criteria[criterion_id] = updated
        return updated

    def evaluation_of_criterion(self, criterion_id: str) -> str:
        return self.get_category(self.get_criterion(criterion_id).category_id).evaluation_id

    # -- participants --------------------------------------------------------

    def add_vendor(self, vendor: Vendor) -> Vendor:
        self.get_evaluation(vendor.evaluation_id)
        with self._lock:
            self._vendors[vendor.vendor_id] = vendor
        return vendor

    def get_vendor(self, vendor_id: str) -> Vendor:
        with self._lock:
            vendor = self._vendors.get(vendor_id)
        if vendor is None:
            raise NotFoundError("Vendor", vendor_id)
        return vendor

    def list_vendors(self, evaluation_id: str, *, active_only: bool = False) -> list[Vendor]:
        with self._lock:
            items = [
                v
                for v in self._vendors.values()
                if v.evaluation_id == evaluation_id and (not active_only or v.is_active)
            ]
        return sorted(items, key=lambda v: v.vendor_id)

    def add_evaluator(self, evaluator: Evaluator) -> Evaluator:
        with self._lock:
            self._evaluators[evaluator.evaluator_id] = evaluator
        return evaluator

    def get_evaluator(self, evaluator_id: str) -> Evaluator:
        with self._lock:
            evaluator = self._evaluators.get(evaluator_id)
        if evaluator is None:
            raise NotFoundError("Evaluator", evaluator_id)
        return evaluator

    # -- traceability inputs -------------------------------------------------

    def add_requirement(self, evaluation_id: str, requirement: Requirement) -> Requirement:
        self.get_evaluation(evaluation_id)
        with self._lock:
            self._requirements.setdefault(evaluation_id, {})[requirement.requirement_id] = (
                requirement
            )
        return requirement

    def list_requirements(self, evaluation_id: str) -> list[Requirement]:
        with self._lock:
            items = list(self._requirements.get(evaluation_id, {}).values())
        return sorted(items, key=lambda r: r.requirement_id)

    def get_requirement(self, evaluation_id: str, requirement_id: str) -> Requirement:
        with self._lock:
            requirement = self._requirements.get(evaluation_id, {}).get(requirement_id)
        if requirement is None:
            raise NotFoundError("Requirement", requirement_id)
        return requirement

    def add_evidence(self, evidence: Evidence) -> Evidence:
        with self._lock:
            self._evidence[evidence.evidence_id] = evidence
        return evidence

    def get_evidence(self, evidence_id: str) -> Evidence:
        with self._lock:
            evidence = self._evidence.get(evidence_id)
        if evidence is None:
            raise NotFoundError("Evidence", evidence_id)
        return evidence

    def list_evidence(
        self, *, vendor_ids: set[str] | None = None, criterion_ids: set[str] | None = None
    ) -> list[Evidence]:
        with self._lock:
            items = [
                e
                for e in self._evidence.values()
                if (vendor_ids is None or e.vendor_id in vendor_ids)
                and (criterion_ids is None or e.criterion_id in criterion_ids)
            ]
        return sorted(items, key=lambda e: e.evidence_id)

    def add_question(self, question: Question) -> Question:
        with self._lock:
            self._questions[question.question_id] = question
        return question

    def list_questions(self) -> list[Question]:
        with self._lock:
            return sorted(self._questions.values(), key=lambda q: q.question_id)

    def add_response(self, response: VendorResponse) -> VendorResponse:
        with self._lock:
            self._responses[response.response_id] = response
        return response

    def list_responses(self) -> list[VendorResponse]:
        with self._lock:
            return sorted(self._responses.values(), key=lambda r: r.response_id)

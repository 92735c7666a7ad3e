from __future__ import annotations

from typing import Any, Mapping

from .models import INCLUDED_DECISIONS, Decision, DecisionStatus, FilteredChangeSet, Recommendation
from .registry import StepDef


class DecisionReconciler:
    """Turns a review draft plus human decisions into the change-set a finalize step consumes.

    Recommendations are addressed as ``{kind}-{index}`` with a zero-based
    index into the category list, so ids stay stable as long as the review
    content itself is unchanged.
    """

    def recommendations(self, step: StepDef, content: Mapping[str, Any]) -> list[Recommendation]:
        found: list[Recommendation] = []
        for category in step.review_categories:
            for index, item in enumerate(content.get(category.field) or []):
                found.append(
                    Recommendation(
                        recommendation_id=f"{category.kind}-{index}",
                        kind=category.kind,
                        category=category.field,
                        index=index,
                        text=category.text(item),
                        item=dict(item),
                    )
                )
        return found

    def recommendation_ids(self, step: StepDef, content: Mapping[str, Any]) -> set[str]:
        return {item.recommendation_id for item in self.recommendations(step, content)}

    def filter(
        self,
        step: StepDef,
        content: Mapping[str, Any],
        decisions: Mapping[str, Decision],
    ) -> FilteredChangeSet:
        """Keep exactly the recommendations decided ``applied`` or ``edited``.

        Every category of the step is present in the result, possibly empty.
        Each kept item is the original recommendation plus its id and the
        ``accepted_text``: the human's replacement for edited decisions,
        otherwise the recommendation's own text. Missing decisions exclude an
        item here; ``can_approve`` is what refuses undecided reviews.
        """
        categories: dict[str, list[dict[str, Any]]] = {category.field: [] for category in step.review_categories}
        for recommendation in self.recommendations(step, content):
            decision = decisions.get(recommendation.recommendation_id)
            if decision is None or decision.status not in INCLUDED_DECISIONS:
                continue
            accepted = dict(recommendation.item)
            accepted["recommendation_id"] = recommendation.recommendation_id
            accepted["accepted_text"] = decision.edited_text if decision.edited_text else recommendation.text
            accepted["edited"] = decision.status == DecisionStatus.EDITED
            categories[recommendation.category].append(accepted)
        return FilteredChangeSet(categories=categories)

    def missing_decisions(
        self,
        step: StepDef,
        content: Mapping[str, Any],
        decisions: Mapping[str, Decision],
    ) -> list[str]:
        return sorted(self.recommendation_ids(step, content) - set(decisions))

    def can_approve(self, step: StepDef, content: Mapping[str, Any], decisions: Mapping[str, Decision]) -> bool:
        return not self.missing_decisions(step, content, decisions)

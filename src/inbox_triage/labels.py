"""Applies category labels to items, one category per item."""

import logging

from inbox_triage.models import ClassificationResult, Item, LabelOutcome

logger = logging.getLogger(__name__)


def collapse_decisions(results: list[ClassificationResult]) -> dict[str, ClassificationResult]:
    """Reduce results to one decision per item id.

    The last result for an id wins; ids keep the order in which they
    first appeared.
    """
    decisions: dict[str, ClassificationResult] = {}
    for result in results:
        decisions[result.id] = result
    return decisions


class LabelApplier:
    """Labels items in the store while keeping at most one category label each.

    An item that already carries any category label is skipped, which
    also makes re-running a partially completed cycle safe.
    """

    def __init__(self, item_store, categories: list[str]) -> None:
        self._store = item_store
        self._categories = frozenset(categories)

    def apply(self, item: Item, category: str, dry_run: bool) -> LabelOutcome:
        if category not in self._categories:
            logger.error("Refusing to label %s with unknown category %r", item.id, category)
            return LabelOutcome.ERROR

        try:
            existing = self._store.get_labels(item) & self._categories
            if existing:
                logger.info(
                    "Skipped %s: already labelled %s", item.id, ", ".join(sorted(existing))
                )
                return LabelOutcome.SKIPPED

            if dry_run:
                logger.info("[dry-run] Would label %s as %s", item.id, category)
                return LabelOutcome.WOULD_LABEL

            self._store.add_label(item, category)
        except Exception:
            logger.exception("Failed to label %s as %s", item.id, category)
            return LabelOutcome.ERROR

        logger.info("Labelled %s as %s", item.id, category)
        return LabelOutcome.LABELED

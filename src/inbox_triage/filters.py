"""Pre-classification rules that pin a category without a model call."""

import logging
import re

from inbox_triage.config import Config
from inbox_triage.models import ClassificationResult, ItemSummary

logger = logging.getLogger(__name__)


def _matches(pattern: str, value: str) -> bool:
    if pattern.startswith("regex:"):
        return re.search(pattern[len("regex:"):], value, re.IGNORECASE) is not None
    return pattern.lower() in value.lower()


def pre_classify(summary: ItemSummary, config: Config) -> ClassificationResult | None:
    """Apply the configured rules to an item summary.

    Rules are evaluated in configuration order and the first match wins.
    Each rule checks one field (``sender`` by default, or ``subject``)
    against a case-insensitive substring, or a regular expression when
    the pattern starts with ``regex:``.

    Returns:
        A ClassificationResult with reason ``rule:<pattern>``, or None when
        no rule matches and the item should go to the model.
    """
    for rule in config.rules:
        field = rule.get("field", "sender")
        value = summary.sender if field == "sender" else summary.subject
        if _matches(rule["pattern"], value):
            logger.debug("Rule %r pinned %s to %s", rule["pattern"], summary.id, rule["category"])
            return ClassificationResult(
                id=summary.id,
                category=rule["category"],
                reason=f"rule:{rule['pattern']}",
            )
    return None

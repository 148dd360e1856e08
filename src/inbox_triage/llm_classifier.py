"""Batch email classifier driven by a language model.

:meth:`Classifier.classify` is total: every input item receives exactly
one result whose category belongs to the configured set. Budget
exhaustion, transport failures and malformed model output all degrade to
the configured fallback category instead of raising.
"""

from __future__ import annotations

import json
import logging

from inbox_triage.budget import MODEL_CALL, BudgetTracker
from inbox_triage.config import Config
from inbox_triage.models import (
    REASON_BUDGET_EXCEEDED,
    REASON_FALLBACK_ON_ERROR,
    REASON_INVALID_OR_MISSING,
    ClassificationResult,
    ItemSummary,
    KnowledgeBundle,
)
from inbox_triage.prompt import build_prompt
from inbox_triage.transport import TransportError

logger = logging.getLogger(__name__)

MAX_REASON_CHARS = 200

_decoder = json.JSONDecoder()


def extract_json_object(text: str) -> dict | None:
    """Return the first well-formed JSON object embedded in ``text``.

    Leading and trailing prose, including markdown code fences, is
    ignored. Returns None when no object can be decoded.
    """
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = text.find("{", start + 1)
    return None


def normalize_category(value, categories: list[str]) -> str | None:
    """Map a model-supplied label onto the closed category set, or None."""
    if not isinstance(value, str):
        return None
    candidate = "-".join(value.strip().lower().replace("_", " ").split())
    return candidate if candidate in categories else None


def _fallback(batch: list[ItemSummary], category: str, reason: str) -> list[ClassificationResult]:
    return [ClassificationResult(id=summary.id, category=category, reason=reason) for summary in batch]


class Classifier:
    def __init__(self, transport, budget: BudgetTracker, config: Config) -> None:
        self._transport = transport
        self._budget = budget
        self._config = config

    def classify(
        self,
        items: list[ItemSummary],
        policy_text: str,
        knowledge: KnowledgeBundle | None = None,
    ) -> list[ClassificationResult]:
        """Classify ``items`` batch by batch, preserving input order."""
        size = self._config.batch_size
        results: list[ClassificationResult] = []

        for start in range(0, len(items), size):
            batch = items[start : start + size]
            try:
                batch_results = self._classify_batch(batch, policy_text, knowledge)
            except Exception:
                logger.exception("Unexpected failure classifying batch at offset %d", start)
                batch_results = _fallback(batch, self._config.fallback_category, REASON_FALLBACK_ON_ERROR)
            results.extend(batch_results)

        return self._ensure_coverage(items, results)

    # -- per batch -----------------------------------------------------------

    def _classify_batch(
        self,
        batch: list[ItemSummary],
        policy_text: str,
        knowledge: KnowledgeBundle | None,
    ) -> list[ClassificationResult]:
        config = self._config
        prompt = build_prompt(policy_text, batch, config.categories, knowledge)
        models = [config.model] + [config.effective_retry_model] * config.classify_retries

        for attempt, model in enumerate(models, start=1):
            if not self._budget.try_consume(MODEL_CALL, 1):
                logger.warning(
                    "Daily model-call budget exhausted; %d items fall back to '%s'",
                    len(batch),
                    config.fallback_category,
                )
                return _fallback(batch, config.fallback_category, REASON_BUDGET_EXCEEDED)

            try:
                text = self._transport.complete(model, prompt)
            except TransportError as exc:
                logger.warning("Classification attempt %d with %s failed: %s", attempt, model, exc)
                continue

            entries = self._parse_entries(text, batch)
            if entries is None:
                logger.warning(
                    "Classification attempt %d with %s returned unusable output: %r",
                    attempt,
                    model,
                    text[:300],
                )
                continue

            return self._resolve(batch, entries)

        logger.warning(
            "Classification failed after %d attempts; %d items fall back to '%s'",
            len(models),
            len(batch),
            config.fallback_category,
        )
        return _fallback(batch, config.fallback_category, REASON_FALLBACK_ON_ERROR)

    def _parse_entries(self, text: str, batch: list[ItemSummary]) -> dict[str, dict] | None:
        """Index the model's results by id; None unless every batch id is covered."""
        obj = extract_json_object(text)
        if obj is None:
            return None
        raw_results = obj.get("results")
        if not isinstance(raw_results, list):
            return None

        entries: dict[str, dict] = {}
        for entry in raw_results:
            if isinstance(entry, dict) and "id" in entry:
                entries[str(entry["id"])] = entry  # repeated ids: last wins

        missing = [summary.id for summary in batch if summary.id not in entries]
        if missing:
            logger.debug("Model output is missing ids: %s", ", ".join(missing))
            return None
        return entries

    def _resolve(self, batch: list[ItemSummary], entries: dict[str, dict]) -> list[ClassificationResult]:
        config = self._config
        results = []
        for summary in batch:
            entry = entries[summary.id]
            category = normalize_category(entry.get("category"), config.categories)
            if category is None:
                logger.info(
                    "Invalid category %r for %s; using '%s'",
                    entry.get("category"),
                    summary.id,
                    config.fallback_category,
                )
                results.append(
                    ClassificationResult(
                        id=summary.id,
                        category=config.fallback_category,
                        reason=REASON_INVALID_OR_MISSING,
                    )
                )
                continue
            reason = str(entry.get("reason") or "").strip()[:MAX_REASON_CHARS]
            results.append(ClassificationResult(id=summary.id, category=category, reason=reason))
        return results

    # -- postcondition -------------------------------------------------------

    def _ensure_coverage(
        self, items: list[ItemSummary], results: list[ClassificationResult]
    ) -> list[ClassificationResult]:
        """Check that results line up one-to-one with items, repairing if not."""
        if [r.id for r in results] == [summary.id for summary in items]:
            return results

        logger.error(
            "Classifier postcondition violated: %d results for %d items; repairing",
            len(results),
            len(items),
        )
        by_id = {r.id: r for r in results}
        return [
            by_id.get(summary.id)
            or ClassificationResult(
                id=summary.id,
                category=self._config.fallback_category,
                reason=REASON_FALLBACK_ON_ERROR,
            )
            for summary in items
        ]

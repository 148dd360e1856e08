"""One triage cycle: fetch, classify, label, then dispatch agents."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from inbox_triage.budget import MODEL_CALL, BudgetTracker
from inbox_triage.config import Config
from inbox_triage.filters import pre_classify
from inbox_triage.knowledge import load_knowledge
from inbox_triage.labels import LabelApplier, collapse_decisions
from inbox_triage.llm_classifier import Classifier
from inbox_triage.models import (
    REASON_BUDGET_EXCEEDED,
    REASON_FALLBACK_ON_ERROR,
    REASON_INVALID_OR_MISSING,
    CycleSummary,
    ExecutionContext,
    KnowledgeBundle,
    LabelOutcome,
)
from inbox_triage.prompt import summarize_item
from inbox_triage.registry import AgentRegistry

logger = logging.getLogger(__name__)

_FALLBACK_REASONS = {REASON_BUDGET_EXCEEDED, REASON_FALLBACK_ON_ERROR, REASON_INVALID_OR_MISSING}


def check_preconditions(config: Config) -> None:
    """Raise ValueError if the configuration cannot support a cycle."""
    problems = []
    if not config.model.strip():
        problems.append("model is not set")
    if not config.ollama_url.strip():
        problems.append("ollama_url is not set")
    if config.api_key_required and not config.api_key:
        problems.append("api_key is required but not set (config or INBOX_TRIAGE_API_KEY)")
    if not config.policy_text.strip():
        problems.append("classification policy text is empty")
    if config.fallback_category not in config.categories:
        problems.append(f"fallback_category '{config.fallback_category}' is not a configured category")
    if problems:
        raise ValueError("; ".join(problems))


class Orchestrator:
    def __init__(
        self,
        config: Config,
        *,
        item_store,
        transport,
        knowledge_provider,
        counter_store,
        registry: AgentRegistry,
        today=date.today,
    ) -> None:
        self._config = config
        self._item_store = item_store
        self._knowledge_provider = knowledge_provider
        self._registry = registry
        budget = BudgetTracker(counter_store, {MODEL_CALL: config.daily_model_call_limit}, today)
        self._classifier = Classifier(transport, budget, config)
        self._applier = LabelApplier(item_store, config.categories)

    def run_cycle(self, dry_run: bool | None = None, now: datetime | None = None) -> CycleSummary:
        """Run one cycle and return its summary.

        Only a failed precondition check raises; every later failure is
        logged and counted so the cycle always reaches its summary.
        """
        config = self._config
        check_preconditions(config)

        dry_run = config.dry_run if dry_run is None else dry_run
        now = now or datetime.now(timezone.utc)
        summary = CycleSummary()
        self._registry.begin_cycle(config.agent_run_budget)

        logger.info("Cycle started%s", " (dry-run)" if dry_run else "")

        try:
            candidates = self._item_store.find_unlabeled(config.max_candidates)
        except Exception:
            logger.exception("Failed to fetch candidates")
            summary.errors += 1
            candidates = []
        summary.candidates = len(candidates)

        summaries = []
        for item in candidates:
            try:
                summaries.append(summarize_item(item, config.body_excerpt_chars, now))
            except Exception:
                logger.exception("Failed to summarise %s; leaving it for the next cycle", item.id)
                summary.errors += 1

        try:
            results = self._classify(summaries) if summaries else []
        except Exception:
            logger.exception("Failed to prepare candidates for classification")
            summary.errors += 1
            results = []

        if results:
            summary.fallbacks = sum(1 for r in results if r.reason in _FALLBACK_REASONS)
            decisions = collapse_decisions(results)
            items_by_id = {item.id: item for item in candidates}

            for item_id, decision in decisions.items():
                item = items_by_id[item_id]
                outcome = self._applier.apply(item, decision.category, dry_run)
                if outcome is LabelOutcome.SKIPPED:
                    summary.skipped += 1
                    continue
                if outcome is LabelOutcome.ERROR:
                    summary.errors += 1
                    continue
                if outcome is LabelOutcome.LABELED:
                    summary.labeled += 1
                else:
                    summary.would_label += 1

                ctx = ExecutionContext(
                    category=decision.category,
                    decision=decision,
                    item_id=item_id,
                    item=item,
                    global_config=config,
                    dry_run=dry_run,
                    log=logger.info,
                )
                summary.agent_results.extend(self._registry.run_on_classify(decision.category, ctx))

        summary.agent_results.extend(self._registry.run_scan(config, self._item_store, dry_run))

        agent_errors = sum(1 for r in summary.agent_results if r.status == "error")
        logger.info(
            "Cycle finished: candidates=%d labeled=%d would_label=%d skipped=%d errors=%d "
            "fallbacks=%d agent_runs=%d agent_errors=%d",
            summary.candidates,
            summary.labeled,
            summary.would_label,
            summary.skipped,
            summary.errors,
            summary.fallbacks,
            len(summary.agent_results),
            agent_errors,
        )
        return summary

    def _classify(self, summaries):
        config = self._config
        pinned = {}
        for s in summaries:
            result = pre_classify(s, config)
            if result is not None:
                pinned[s.id] = result
        remaining = [s for s in summaries if s.id not in pinned]

        classified = {}
        if remaining:
            try:
                knowledge = load_knowledge(self._knowledge_provider, config)
            except Exception:
                logger.exception("Knowledge unavailable; classifying without it")
                knowledge = KnowledgeBundle()
            for result in self._classifier.classify(remaining, config.policy_text, knowledge):
                classified[result.id] = result

        # Back to fetch order
        results = [pinned.get(s.id) or classified[s.id] for s in summaries]
        for r in results:
            logger.debug("Decision %s -> %s (%s)", r.id, r.category, r.reason)
        return results

"""Tests for the LLM batch classifier."""

import json
import logging
from datetime import date

from inbox_triage.budget import MODEL_CALL, BudgetTracker, InMemoryCounterStore
from inbox_triage.config import Config
from inbox_triage.llm_classifier import Classifier, extract_json_object, normalize_category
from inbox_triage.models import ClassificationResult, ItemSummary
from inbox_triage.transport import TransportError

CATEGORIES = ["needs-reply", "review", "todo", "digest"]
DAY = date(2024, 5, 1)


class FakeTransport:
    """Replays canned replies (strings or exceptions) and records each call."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def complete(self, model, prompt):
        self.calls.append((model, prompt))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def make_items(*ids) -> list[ItemSummary]:
    return [
        ItemSummary(
            id=item_id,
            subject=f"subject {item_id}",
            sender="alice@example.com",
            date="2024-05-01T09:00:00+00:00",
            age_days=0,
            body_excerpt="body",
        )
        for item_id in ids
    ]


def make_config(**overrides) -> Config:
    """Create a Config with defaults, overriding specific fields."""
    config = Config()
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def reply(*entries) -> str:
    return json.dumps(
        {"results": [{"id": i, "category": c, "reason": f"because {i}"} for i, c in entries]}
    )


def make_classifier(transport, limit=100, store=None, **config_overrides):
    store = store or InMemoryCounterStore()
    budget = BudgetTracker(store, {MODEL_CALL: limit}, lambda: DAY)
    return Classifier(transport, budget, make_config(**config_overrides)), budget


# ── Helpers ────────────────────────────────────────────────────────


class TestExtractJsonObject:
    def test_plain_object(self):
        assert extract_json_object('{"a": 1}') == {"a": 1}

    def test_surrounding_prose(self):
        text = 'Sure! Here you go:\n{"results": []}\nLet me know if you need more.'
        assert extract_json_object(text) == {"results": []}

    def test_code_fence(self):
        text = '```json\n{"results": [{"id": "x"}]}\n```'
        assert extract_json_object(text) == {"results": [{"id": "x"}]}

    def test_skips_malformed_braces(self):
        text = 'Using {placeholders} here. {"ok": true}'
        assert extract_json_object(text) == {"ok": True}

    def test_returns_outermost_object(self):
        assert extract_json_object('{"outer": {"inner": 1}}') == {"outer": {"inner": 1}}

    def test_no_object(self):
        assert extract_json_object("no json at all") is None
        assert extract_json_object("[1, 2, 3]") is None


class TestNormalizeCategory:
    def test_exact(self):
        assert normalize_category("todo", CATEGORIES) == "todo"

    def test_case_whitespace_and_separators(self):
        assert normalize_category("  Needs_Reply ", CATEGORIES) == "needs-reply"
        assert normalize_category("needs reply", CATEGORIES) == "needs-reply"

    def test_unknown(self):
        assert normalize_category("unknown_label", CATEGORIES) is None

    def test_non_string(self):
        assert normalize_category(None, CATEGORIES) is None
        assert normalize_category(3, CATEGORIES) is None


# ── Example scenarios ──────────────────────────────────────────────


class TestSuccessfulClassification:
    def test_valid_reply_covers_batch(self):
        transport = FakeTransport(reply(("a", "todo"), ("b", "digest"), ("c", "needs-reply")))
        classifier, budget = make_classifier(transport)

        results = classifier.classify(make_items("a", "b", "c"), "policy")

        assert results == [
            ClassificationResult("a", "todo", "because a"),
            ClassificationResult("b", "digest", "because b"),
            ClassificationResult("c", "needs-reply", "because c"),
        ]
        assert budget.used(MODEL_CALL) == 1

    def test_reply_order_does_not_matter(self):
        transport = FakeTransport(reply(("b", "digest"), ("a", "todo")))
        classifier, _ = make_classifier(transport)

        results = classifier.classify(make_items("a", "b"), "policy")

        assert [(r.id, r.category) for r in results] == [("a", "todo"), ("b", "digest")]

    def test_uses_primary_model_and_policy(self):
        transport = FakeTransport(reply(("a", "todo")))
        classifier, _ = make_classifier(transport, model="primary")

        classifier.classify(make_items("a"), "MY POLICY")

        model, prompt = transport.calls[0]
        assert model == "primary"
        assert "MY POLICY" in prompt

    def test_long_reason_truncated(self):
        transport = FakeTransport(json.dumps({"results": [{"id": "a", "category": "todo", "reason": "x" * 500}]}))
        classifier, _ = make_classifier(transport)

        [result] = classifier.classify(make_items("a"), "policy")

        assert len(result.reason) == 200

    def test_empty_input(self):
        transport = FakeTransport()
        classifier, budget = make_classifier(transport)

        assert classifier.classify([], "policy") == []
        assert transport.calls == []
        assert budget.used(MODEL_CALL) == 0


class TestRetry:
    def test_unparseable_then_valid(self):
        transport = FakeTransport(
            "I'm sorry, I can't format that.",
            reply(("a", "todo"), ("b", "review"), ("c", "digest")),
        )
        classifier, budget = make_classifier(transport)

        results = classifier.classify(make_items("a", "b", "c"), "policy")

        assert [r.category for r in results] == ["todo", "review", "digest"]
        assert all(r.reason.startswith("because") for r in results)
        assert budget.used(MODEL_CALL) == 2

    def test_retry_uses_retry_model(self):
        transport = FakeTransport("garbage", reply(("a", "todo")))
        classifier, _ = make_classifier(transport, model="small", retry_model="large")

        classifier.classify(make_items("a"), "policy")

        assert [model for model, _ in transport.calls] == ["small", "large"]

    def test_incomplete_coverage_triggers_retry(self):
        transport = FakeTransport(reply(("a", "todo")), reply(("a", "todo"), ("b", "review")))
        classifier, budget = make_classifier(transport)

        results = classifier.classify(make_items("a", "b"), "policy")

        assert [r.category for r in results] == ["todo", "review"]
        assert budget.used(MODEL_CALL) == 2

    def test_transport_error_triggers_retry(self):
        transport = FakeTransport(TransportError("timeout"), reply(("a", "todo")))
        classifier, _ = make_classifier(transport)

        [result] = classifier.classify(make_items("a"), "policy")

        assert result.category == "todo"

    def test_retry_also_fails_falls_back(self):
        transport = FakeTransport("nope", "still nope")
        classifier, budget = make_classifier(transport, fallback_category="review")

        results = classifier.classify(make_items("a", "b"), "policy")

        assert [(r.category, r.reason) for r in results] == [
            ("review", "fallback-on-error"),
            ("review", "fallback-on-error"),
        ]
        assert budget.used(MODEL_CALL) == 2

    def test_zero_retries(self):
        transport = FakeTransport("nope")
        classifier, _ = make_classifier(transport, classify_retries=0)

        [result] = classifier.classify(make_items("a"), "policy")

        assert result.reason == "fallback-on-error"
        assert len(transport.calls) == 1


class TestBudget:
    def test_budget_exhausted_before_batch(self):
        store = InMemoryCounterStore({"2024-05-01:model-call": 3})
        transport = FakeTransport()
        classifier, budget = make_classifier(transport, limit=3, store=store, fallback_category="review")

        results = classifier.classify(make_items("a", "b", "c", "d", "e"), "policy")

        assert len(results) == 5
        assert all(r.category == "review" and r.reason == "budget-exceeded" for r in results)
        assert transport.calls == []
        assert budget.used(MODEL_CALL) == 3

    def test_budget_runs_out_between_batches(self):
        transport = FakeTransport(reply(("a", "todo"), ("b", "todo")))
        classifier, _ = make_classifier(transport, limit=1, batch_size=2)

        results = classifier.classify(make_items("a", "b", "c"), "policy")

        assert [r.reason for r in results] == ["because a", "because b", "budget-exceeded"]
        assert len(transport.calls) == 1

    def test_budget_runs_out_before_retry(self):
        transport = FakeTransport("garbage")
        classifier, _ = make_classifier(transport, limit=1)

        [result] = classifier.classify(make_items("a"), "policy")

        assert result.reason == "budget-exceeded"
        assert len(transport.calls) == 1


class TestValidation:
    def test_unknown_category_replaced(self):
        transport = FakeTransport(reply(("x", "unknown_label"), ("y", "todo")))
        classifier, _ = make_classifier(transport, fallback_category="review")

        results = classifier.classify(make_items("x", "y"), "policy")

        assert results[0] == ClassificationResult("x", "review", "invalid-or-missing")
        assert results[1].category == "todo"

    def test_missing_category_replaced(self):
        transport = FakeTransport(json.dumps({"results": [{"id": "x", "reason": "?"}]}))
        classifier, _ = make_classifier(transport, fallback_category="digest")

        [result] = classifier.classify(make_items("x"), "policy")

        assert result == ClassificationResult("x", "digest", "invalid-or-missing")

    def test_repeated_id_last_wins(self):
        transport = FakeTransport(reply(("a", "todo"), ("a", "digest")))
        classifier, _ = make_classifier(transport)

        [result] = classifier.classify(make_items("a"), "policy")

        assert result.category == "digest"

    def test_extra_ids_ignored(self):
        transport = FakeTransport(reply(("a", "todo"), ("zzz", "digest")))
        classifier, _ = make_classifier(transport)

        results = classifier.classify(make_items("a"), "policy")

        assert [r.id for r in results] == ["a"]

    def test_numeric_ids_matched_as_strings(self):
        transport = FakeTransport(json.dumps({"results": [{"id": 7, "category": "todo", "reason": ""}]}))
        classifier, _ = make_classifier(transport)

        [result] = classifier.classify(make_items("7"), "policy")

        assert result.category == "todo"


class TestTotalCoverage:
    def test_batches_preserve_input_order(self):
        transport = FakeTransport(
            reply(("a", "todo"), ("b", "review")),
            "garbage",
            "garbage",
            reply(("e", "digest")),
        )
        classifier, _ = make_classifier(transport, batch_size=2)

        results = classifier.classify(make_items("a", "b", "c", "d", "e"), "policy")

        assert [r.id for r in results] == ["a", "b", "c", "d", "e"]
        assert [r.category for r in results] == ["todo", "review", "review", "review", "digest"]
        assert all(r.category in CATEGORIES for r in results)

    def test_unexpected_exception_falls_back(self):
        class ExplodingTransport:
            def complete(self, model, prompt):
                raise RuntimeError("boom")

        classifier, _ = make_classifier(ExplodingTransport())

        results = classifier.classify(make_items("a", "b"), "policy")

        assert [r.reason for r in results] == ["fallback-on-error", "fallback-on-error"]

    def test_postcondition_repairs_and_logs(self, mocker, caplog):
        classifier, _ = make_classifier(FakeTransport())
        mocker.patch.object(
            classifier, "_classify_batch", return_value=[ClassificationResult("a", "todo", "ok")]
        )

        with caplog.at_level(logging.ERROR):
            results = classifier.classify(make_items("a", "b"), "policy")

        assert [(r.id, r.category) for r in results] == [("a", "todo"), ("b", "review")]
        assert "postcondition violated" in caplog.text


class TestLogging:
    def test_fallback_logs_warning(self, caplog):
        classifier, _ = make_classifier(FakeTransport("x", "y"))

        with caplog.at_level(logging.WARNING):
            classifier.classify(make_items("a"), "policy")

        assert "Classification failed after 2 attempts" in caplog.text

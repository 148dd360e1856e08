"""Classifier prompt construction.

Everything here is pure: no I/O and no clock reads beyond the ``now``
passed in by the caller.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from inbox_triage.models import Item, ItemSummary, KnowledgeBundle

TASK_FRAMING = """\
You are classifying email threads. Follow the policy below and assign each
thread exactly one category."""


def summarize_item(item: Item, body_excerpt_chars: int, now: datetime) -> ItemSummary:
    """Reduce an item to the fields sent to the model.

    Sender and date come from the latest message; the body excerpt is cut
    to ``body_excerpt_chars`` characters.
    """
    latest = item.latest
    if latest is None:
        return ItemSummary(
            id=item.id, subject=item.subject, sender="", date="", age_days=0, body_excerpt=""
        )

    body = " ".join(latest.body.split())
    if len(body) > body_excerpt_chars:
        body = body[:body_excerpt_chars].rstrip() + "…"

    # Naive timestamps are UTC, as in the JSON item store.
    sent = latest.timestamp
    if sent.tzinfo is None:
        sent = sent.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    age_days = max(0, (now - sent).days)
    return ItemSummary(
        id=item.id,
        subject=item.subject,
        sender=latest.sender,
        date=sent.isoformat(),
        age_days=age_days,
        body_excerpt=body,
    )


def _output_schema(categories: list[str]) -> str:
    example = {
        "results": [
            {"id": "<item id>", "category": "<one of the categories>", "reason": "<short justification>"}
        ]
    }
    return (
        "Respond with a single JSON object of this shape and nothing else:\n"
        f"{json.dumps(example, indent=2)}\n"
        f"\"category\" must be exactly one of: {', '.join(categories)}.\n"
        "\"reason\" is one short sentence."
    )


def build_prompt(
    policy_text: str,
    batch: list[ItemSummary],
    categories: list[str],
    knowledge: KnowledgeBundle | None = None,
) -> str:
    """Assemble the classifier input for one batch.

    Sections, in order: task framing and policy, global knowledge,
    category knowledge, output schema, the batch as JSON, and the
    instruction to return one result per item.
    """
    sections = [TASK_FRAMING, "## Policy\n" + policy_text.strip()]

    if knowledge is not None and knowledge.global_text:
        sections.append("## Background knowledge\n" + knowledge.global_text.strip())

    if knowledge is not None and knowledge.category_texts:
        notes = [
            f"### {category}\n{knowledge.category_texts[category].strip()}"
            for category in categories
            if knowledge.category_texts.get(category)
        ]
        if notes:
            sections.append("## Category notes\n" + "\n\n".join(notes))

    sections.append("## Output format\n" + _output_schema(categories))

    payload = json.dumps([summary.to_dict() for summary in batch], indent=2, ensure_ascii=False)
    sections.append(f"## Email threads ({len(batch)})\n{payload}")

    ids = ", ".join(json.dumps(summary.id) for summary in batch)
    sections.append(
        f"Return exactly {len(batch)} results, one for every id listed above "
        f"({ids}). Do not skip any thread and do not invent ids."
    )

    return "\n\n".join(sections) + "\n"

"""Scan agent that posts recent digest items to a Slack channel.

Posted items get the ``digest-posted`` label, which is how the agent
avoids posting the same thread twice.
"""

from __future__ import annotations

import logging
import os

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from inbox_triage.models import Item, ScanContext

logger = logging.getLogger(__name__)

CATEGORY = "digest"
POSTED_LABEL = "digest-posted"

# Look further back than we post so already-posted items don't crowd out new ones.
_LOOKUP_FACTOR = 4


def format_digest(items: list[Item]) -> str:
    lines = [f"*Email digest* ({len(items)} thread{'s' if len(items) != 1 else ''})"]
    for item in items:
        latest = item.latest
        sender = latest.sender if latest is not None else "unknown"
        lines.append(f"• {item.subject or '(no subject)'} — {sender}")
    return "\n".join(lines)


def scan(ctx: ScanContext) -> dict:
    config = ctx.global_config
    token = os.environ.get("SLACK_BOT_TOKEN")
    if not token or not config.slack_channel:
        return {"status": "not-configured", "info": "SLACK_BOT_TOKEN or slack_channel missing"}

    items = ctx.item_store.find_by_label(
        ctx.category, config.digest_max_age_days, config.digest_max_items * _LOOKUP_FACTOR
    )
    pending = [item for item in items if POSTED_LABEL not in item.labels][: config.digest_max_items]
    if not pending:
        return {"status": "ok", "info": "nothing to post"}

    client = WebClient(token=token)
    try:
        client.chat_postMessage(channel=config.slack_channel, text=format_digest(pending))
    except SlackApiError as exc:
        if exc.response.status_code == 429:
            retry_after = int(exc.response.headers.get("Retry-After", 30))
            logger.warning("Slack rate limited the digest; retry in %ds", retry_after)
            return {"status": "rate-limited", "retry_after_ms": retry_after * 1000}
        raise

    # At-least-once: an item whose marker fails to save is posted again next scan.
    unmarked = []
    for item in pending:
        try:
            ctx.item_store.add_label(item, POSTED_LABEL)
        except Exception:
            logger.exception("Posted %s but could not mark it %s", item.id, POSTED_LABEL)
            unmarked.append(item.id)

    ctx.log("Posted %d digest items to %s", len(pending), config.slack_channel)
    if unmarked:
        return {"status": "ok", "info": f"posted {len(pending)} items; {len(unmarked)} not marked"}
    return {"status": "ok", "info": f"posted {len(pending)} items"}

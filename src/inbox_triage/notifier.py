"""Desktop notification agent using libnotify (notify-send)."""

import logging
import subprocess

from inbox_triage.config import Config
from inbox_triage.models import ExecutionContext, Item

logger = logging.getLogger(__name__)

CATEGORY = "needs-reply"


def notify(item: Item, reason: str, *, config: Config) -> None:
    """Send a desktop notification for an item that is waiting on a reply.

    Args:
        item: The classified email thread.
        reason: Human-readable explanation from the classifier.
        config: Application configuration (used for notification_timeout).
    """
    latest = item.latest
    sender = latest.sender if latest is not None else "unknown sender"
    title = f"Reply needed: {sender}"

    # Build body: truncated subject + reason
    body = f"{item.subject[:200]}\n\n{reason}" if reason else item.subject[:200]

    # Convert timeout from seconds to milliseconds
    ms = config.notification_timeout * 1000

    subprocess.run(
        ["notify-send", "--urgency=normal", f"--expire-time={ms}", title, body],
        check=True,
    )

    logger.info("Notification sent: title=%r expire=%dms", title, ms)


def on_classify(ctx: ExecutionContext) -> dict:
    notify(ctx.item, ctx.decision.reason, config=ctx.global_config)
    return {"status": "ok", "info": "notified"}

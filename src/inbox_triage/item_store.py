"""Item stores: where email threads and their labels live.

Stores know the closed category set so they can tell "unlabelled" items
(no category label yet) from everything else.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Protocol

from inbox_triage.models import Item, Message

logger = logging.getLogger(__name__)


class ItemStore(Protocol):
    def find_unlabeled(self, max_count: int) -> list[Item]: ...

    def get_labels(self, item: Item) -> set[str]: ...

    def add_label(self, item: Item, label: str) -> None: ...

    def find_by_label(self, label: str, max_age_days: int, max_count: int) -> list[Item]: ...


def _last_activity(item: Item) -> datetime | None:
    latest = item.latest
    return latest.timestamp if latest is not None else None


class InMemoryItemStore:
    """Keeps items in insertion order; hands out copies so callers can't mutate state."""

    def __init__(self, categories: list[str], items: list[Item] | None = None, clock=None) -> None:
        self._categories = set(categories)
        self._items: dict[str, Item] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        for item in items or []:
            self.put(item)

    def put(self, item: Item) -> None:
        self._items[item.id] = copy.deepcopy(item)

    def get(self, item_id: str) -> Item:
        return copy.deepcopy(self._items[item_id])

    def find_unlabeled(self, max_count: int) -> list[Item]:
        found = [
            copy.deepcopy(item)
            for item in self._items.values()
            if not (item.labels & self._categories)
        ]
        return found[:max_count]

    def get_labels(self, item: Item) -> set[str]:
        return set(self._items[item.id].labels)

    def add_label(self, item: Item, label: str) -> None:
        stored = self._items[item.id]
        if label not in stored.labels:
            stored.labels.add(label)
            try:
                self._changed()
            except Exception:
                stored.labels.discard(label)
                raise
        item.labels.add(label)

    def find_by_label(self, label: str, max_age_days: int, max_count: int) -> list[Item]:
        cutoff = self._clock() - timedelta(days=max_age_days)
        found = []
        for item in self._items.values():
            if label not in item.labels:
                continue
            activity = _last_activity(item)
            if activity is None or activity < cutoff:
                continue
            found.append(copy.deepcopy(item))
            if len(found) >= max_count:
                break
        return found

    def _changed(self) -> None:
        """Hook for persistent subclasses."""


def _parse_item(raw: dict) -> Item:
    messages = [
        Message(
            sender=str(m.get("sender", "")),
            timestamp=datetime.fromisoformat(m["date"]),
            body=str(m.get("body", "")),
        )
        for m in raw.get("messages", [])
    ]
    for message in messages:
        if message.timestamp.tzinfo is None:
            message.timestamp = message.timestamp.replace(tzinfo=timezone.utc)
    return Item(
        id=str(raw["id"]),
        subject=str(raw.get("subject", "")),
        messages=messages,
        labels=set(raw.get("labels", [])),
    )


def _dump_item(item: Item) -> dict:
    return {
        "id": item.id,
        "subject": item.subject,
        "labels": sorted(item.labels),
        "messages": [
            {"sender": m.sender, "date": m.timestamp.isoformat(), "body": m.body} for m in item.messages
        ],
    }


class JsonItemStore(InMemoryItemStore):
    """A mailbox file stored as JSON; label changes are written back.

    Another process may append threads to the file at any time, so every
    read goes back to disk and every label write re-reads the file and
    changes only the labelled item.

    File format::

        {"items": [{"id": "...", "subject": "...", "labels": [...],
                    "messages": [{"sender": "...", "date": "ISO-8601", "body": "..."}]}]}
    """

    def __init__(self, path: str, categories: list[str], clock=None) -> None:
        self._path = os.path.expanduser(path)
        super().__init__(categories, clock=clock)
        self._reload()
        logger.info("Loaded %d items from %s", len(self._items), self._path)

    def _reload(self) -> None:
        with open(self._path) as f:
            raw = json.load(f)
        if not isinstance(raw, dict) or not isinstance(raw.get("items"), list):
            raise ValueError(f"Item store {self._path} must contain an object with an 'items' list")
        try:
            items = [_parse_item(entry) for entry in raw["items"]]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Malformed item in {self._path}: {exc}")
        self._items = {item.id: item for item in items}

    def find_unlabeled(self, max_count: int) -> list[Item]:
        self._reload()
        return super().find_unlabeled(max_count)

    def get_labels(self, item: Item) -> set[str]:
        self._reload()
        return super().get_labels(item)

    def add_label(self, item: Item, label: str) -> None:
        self._reload()
        super().add_label(item, label)

    def find_by_label(self, label: str, max_age_days: int, max_count: int) -> list[Item]:
        self._reload()
        return super().find_by_label(label, max_age_days, max_count)

    def _changed(self) -> None:
        directory = os.path.dirname(self._path) or "."
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".items-")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump({"items": [_dump_item(i) for i in self._items.values()]}, f, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException:
            os.unlink(tmp_path)
            raise

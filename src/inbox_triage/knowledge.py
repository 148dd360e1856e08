"""File-based knowledge provider.

A knowledge source is a path to a text file, or to a directory whose
``*.md`` and ``*.txt`` files are concatenated in name order. Sources that
are missing, empty or unreadable degrade to "not configured".
"""

from __future__ import annotations

import logging
import math
import os
import time

from inbox_triage.config import Config
from inbox_triage.models import KnowledgeBundle, KnowledgeDocument, KnowledgeMetadata

logger = logging.getLogger(__name__)

_DOC_SUFFIXES = (".md", ".txt")
_CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


class FileKnowledgeProvider:
    """Reads knowledge sources from disk with a small time-bounded cache."""

    def __init__(self, max_chars: int = 20000, cache_seconds: int = 600, clock=time.monotonic) -> None:
        self._max_chars = max_chars
        self._cache_seconds = cache_seconds
        self._clock = clock
        # ref -> (fetched_at, signature, document)
        self._cache: dict[str, tuple[float, tuple, KnowledgeDocument]] = {}

    def fetch(self, source_ref: str | None) -> KnowledgeDocument:
        if not source_ref:
            return KnowledgeDocument()

        path = os.path.expanduser(source_ref)
        paths = self._document_paths(path)
        if not paths:
            logger.debug("Knowledge source %s not found or empty", source_ref)
            return KnowledgeDocument()

        signature = tuple((p, os.path.getmtime(p)) for p in paths)
        cached = self._cache.get(source_ref)
        if cached is not None:
            fetched_at, cached_signature, document = cached
            if cached_signature == signature and self._clock() - fetched_at < self._cache_seconds:
                return document

        document = self._read(source_ref, paths)
        self._cache[source_ref] = (self._clock(), signature, document)
        return document

    def _document_paths(self, path: str) -> list[str]:
        if os.path.isfile(path):
            return [path]
        if os.path.isdir(path):
            return [
                os.path.join(path, name)
                for name in sorted(os.listdir(path))
                if name.endswith(_DOC_SUFFIXES) and os.path.isfile(os.path.join(path, name))
            ]
        return []

    def _read(self, source_ref: str, paths: list[str]) -> KnowledgeDocument:
        parts = []
        for p in paths:
            try:
                with open(p, encoding="utf-8") as f:
                    content = f.read().strip()
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Skipping unreadable knowledge file %s: %s", p, exc)
                continue
            if content:
                parts.append(content)

        if not parts:
            return KnowledgeDocument()

        text = "\n\n".join(parts)
        truncated = len(text) > self._max_chars
        if truncated:
            logger.warning(
                "Knowledge source %s truncated from %d to %d chars",
                source_ref,
                len(text),
                self._max_chars,
            )
            text = text[: self._max_chars]

        metadata = KnowledgeMetadata(
            doc_count=len(parts),
            estimated_tokens=estimate_tokens(text),
            truncated=truncated,
        )
        logger.debug(
            "Loaded knowledge %s: %d docs, ~%d tokens", source_ref, metadata.doc_count, metadata.estimated_tokens
        )
        return KnowledgeDocument(text=text, configured=True, metadata=metadata)


def load_knowledge(provider, config: Config) -> KnowledgeBundle:
    """Build the knowledge bundle for a cycle from the configured sources."""
    bundle = KnowledgeBundle()
    sources = config.knowledge or {}

    document = provider.fetch(sources.get("global"))
    if document.configured:
        bundle.global_text = document.text

    for category, ref in (sources.get("categories") or {}).items():
        if category not in config.categories:
            logger.warning("Knowledge configured for unknown category '%s' — ignoring", category)
            continue
        document = provider.fetch(ref)
        if document.configured:
            bundle.category_texts[category] = document.text

    return bundle

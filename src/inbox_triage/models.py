"""Shared data structures used across all components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable


class LabelOutcome(Enum):
    LABELED = "labeled"
    WOULD_LABEL = "would-label"
    SKIPPED = "skipped"
    ERROR = "error"


class RunWhen(Enum):
    LIVE = "live"  # only outside dry-run
    ALWAYS = "always"


# Reasons attached to synthesised classification results.
REASON_BUDGET_EXCEEDED = "budget-exceeded"
REASON_FALLBACK_ON_ERROR = "fallback-on-error"
REASON_INVALID_OR_MISSING = "invalid-or-missing"


@dataclass
class Message:
    sender: str
    timestamp: datetime
    body: str


@dataclass
class Item:
    id: str
    subject: str = ""
    messages: list[Message] = field(default_factory=list)
    labels: set[str] = field(default_factory=set)

    @property
    def latest(self) -> Message | None:
        return self.messages[-1] if self.messages else None


@dataclass
class ItemSummary:
    """One entry of a classification request, as sent to the model."""

    id: str
    subject: str
    sender: str
    date: str  # ISO-8601 timestamp of the latest message
    age_days: int
    body_excerpt: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subject": self.subject,
            "sender": self.sender,
            "date": self.date,
            "ageDays": self.age_days,
            "bodyExcerpt": self.body_excerpt,
        }


@dataclass
class ClassificationResult:
    id: str
    category: str
    reason: str  # audit only, never used for control flow


@dataclass
class KnowledgeMetadata:
    doc_count: int = 0
    estimated_tokens: int = 0
    truncated: bool = False


@dataclass
class KnowledgeDocument:
    text: str = ""
    configured: bool = False
    metadata: KnowledgeMetadata = field(default_factory=KnowledgeMetadata)


@dataclass
class KnowledgeBundle:
    global_text: str | None = None
    category_texts: dict[str, str] = field(default_factory=dict)


@dataclass
class AgentHooks:
    on_classify: Callable[[ExecutionContext], Any] | None = None
    scan: Callable[[ScanContext], Any] | None = None


@dataclass
class AgentOptions:
    enabled: bool = True
    run_when: RunWhen = RunWhen.LIVE
    soft_timeout_ms: int | None = None
    max_runs: int | None = None  # per-cycle cap for this agent's on_classify hook


@dataclass
class AgentRegistration:
    name: str
    category: str
    hooks: AgentHooks
    options: AgentOptions = field(default_factory=AgentOptions)


@dataclass
class ExecutionContext:
    category: str
    decision: ClassificationResult
    item_id: str
    item: Item
    global_config: Any
    dry_run: bool
    log: Callable[..., None]


@dataclass
class ScanContext:
    category: str
    global_config: Any
    dry_run: bool
    item_store: Any
    log: Callable[..., None]


@dataclass
class AgentResult:
    agent: str
    category: str
    hook: str  # "on_classify" or "scan"
    status: str
    info: str | None = None
    retry_after_ms: int | None = None
    item_id: str | None = None
    duration_ms: float | None = None


@dataclass
class CycleSummary:
    candidates: int = 0
    labeled: int = 0
    would_label: int = 0
    skipped: int = 0
    errors: int = 0
    fallbacks: int = 0
    agent_results: list[AgentResult] = field(default_factory=list)

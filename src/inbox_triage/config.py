"""Configuration loading and validation for inbox-triage."""

import logging
import os
import re
from dataclasses import dataclass, field

import yaml

from inbox_triage.models import RunWhen

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = ["needs-reply", "review", "todo", "digest"]

DEFAULT_POLICY = """\
You are an email triage assistant. Assign every email thread exactly one
category:

needs-reply - a person is waiting on an answer from me
review - I should read this carefully, but no reply is expected
todo - contains a task, deadline or request I must act on
digest - newsletters, notifications and other low-priority reading

When unsure between two categories, prefer the one that asks less of me.
"""

KNOWN_KEYS = {
    "model",
    "retry_model",
    "ollama_url",
    "ollama_timeout",
    "api_key",
    "api_key_required",
    "categories",
    "fallback_category",
    "batch_size",
    "classify_retries",
    "body_excerpt_chars",
    "max_candidates",
    "daily_model_call_limit",
    "agent_run_budget",
    "dry_run",
    "policy_text",
    "policy_path",
    "knowledge",
    "knowledge_max_chars",
    "knowledge_cache_seconds",
    "rules",
    "agents",
    "item_store_path",
    "counter_store_path",
    "cycle_interval_seconds",
    "notification_timeout",
    "slack_channel",
    "digest_max_age_days",
    "digest_max_items",
}

VALID_AGENT_KEYS = {"enabled", "run_when", "soft_timeout_ms", "max_runs"}

VALID_RULE_FIELDS = {"sender", "subject"}

_POSITIVE_INT_FIELDS = (
    "batch_size",
    "body_excerpt_chars",
    "max_candidates",
    "cycle_interval_seconds",
    "notification_timeout",
    "digest_max_age_days",
    "digest_max_items",
)

_NON_NEGATIVE_INT_FIELDS = (
    "classify_retries",
    "daily_model_call_limit",
    "agent_run_budget",
    "knowledge_max_chars",
    "knowledge_cache_seconds",
)


@dataclass
class Config:
    model: str = "llama3.2:3b"
    retry_model: str | None = None
    ollama_url: str = "http://localhost:11434"
    ollama_timeout: int = 60
    api_key: str | None = None
    api_key_required: bool = False
    categories: list[str] = field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    fallback_category: str = "review"
    batch_size: int = 10
    classify_retries: int = 1
    body_excerpt_chars: int = 1200
    max_candidates: int = 50
    daily_model_call_limit: int = 200
    agent_run_budget: int = 25
    dry_run: bool = False
    policy_text: str = DEFAULT_POLICY
    knowledge: dict = field(default_factory=dict)  # {"global": ref, "categories": {cat: ref}}
    knowledge_max_chars: int = 20000
    knowledge_cache_seconds: int = 600
    rules: list[dict] = field(default_factory=list)
    agents: dict[str, dict] = field(default_factory=dict)
    item_store_path: str = "~/.local/share/inbox-triage/items.json"
    counter_store_path: str = "~/.local/share/inbox-triage/counters.json"
    cycle_interval_seconds: int = 300
    notification_timeout: int = 10
    slack_channel: str | None = None
    digest_max_age_days: int = 1
    digest_max_items: int = 20

    @property
    def effective_retry_model(self) -> str:
        return self.retry_model or self.model


def _validate_config(config: Config) -> None:
    """Validate config values, raising ValueError on invalid fields."""
    for name in _POSITIVE_INT_FIELDS:
        value = getattr(config, name)
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"{name} must be an integer, got {type(value).__name__}")
        if value <= 0:
            raise ValueError(f"{name} must be positive, got {value}")

    for name in _NON_NEGATIVE_INT_FIELDS:
        value = getattr(config, name)
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"{name} must be an integer, got {type(value).__name__}")
        if value < 0:
            raise ValueError(f"{name} must not be negative, got {value}")

    if not isinstance(config.ollama_timeout, (int, float)):
        raise ValueError(
            f"ollama_timeout must be a number, got {type(config.ollama_timeout).__name__}"
        )
    if config.ollama_timeout <= 0:
        raise ValueError(f"ollama_timeout must be positive, got {config.ollama_timeout}")

    # Categories form a closed set
    if not config.categories:
        raise ValueError("categories must not be empty")
    if len(set(config.categories)) != len(config.categories):
        raise ValueError("categories must not contain duplicates")
    if config.fallback_category not in config.categories:
        raise ValueError(
            f"fallback_category '{config.fallback_category}' is not one of: "
            f"{', '.join(config.categories)}"
        )

    for i, rule in enumerate(config.rules):
        for required in ("pattern", "category"):
            if required not in rule:
                raise ValueError(f"rules[{i}] is missing required field '{required}'")
        if not isinstance(rule["pattern"], str):
            raise ValueError(f"rules[{i}].pattern must be a string")
        if rule["category"] not in config.categories:
            raise ValueError(f"rules[{i}].category '{rule['category']}' is not a known category")
        if rule.get("field", "sender") not in VALID_RULE_FIELDS:
            raise ValueError(
                f"rules[{i}].field must be one of: {', '.join(sorted(VALID_RULE_FIELDS))}"
            )
        if rule["pattern"].startswith("regex:"):
            try:
                re.compile(rule["pattern"][len("regex:"):])
            except re.error as exc:
                raise ValueError(f"rules[{i}].pattern is not a valid regex: {exc}")


def _parse_agent_overrides(raw_agents) -> dict[str, dict]:
    if not isinstance(raw_agents, dict):
        raise ValueError("'agents' must be a mapping")
    agents = {}
    for name, overrides in raw_agents.items():
        if overrides is None:
            overrides = {}
        if not isinstance(overrides, dict):
            raise ValueError(f"agents.{name} must be a mapping")
        parsed = {}
        for key, value in overrides.items():
            if key not in VALID_AGENT_KEYS:
                logger.warning("Unknown agent option '%s.%s' — ignoring", name, key)
                continue
            if key == "run_when":
                try:
                    value = RunWhen(value)
                except ValueError:
                    valid = ", ".join(r.value for r in RunWhen)
                    raise ValueError(
                        f"Invalid run_when '{value}' in agents.{name}. Must be one of: {valid}"
                    )
            parsed[key] = value
        agents[name] = parsed
    return agents


def load_config(path: str | None = None) -> Config:
    """Load configuration from a YAML file.

    Config path resolution order:
    1. Explicit path argument
    2. INBOX_TRIAGE_CONFIG environment variable
    3. ~/.config/inbox-triage/config.yaml
    """
    if path is None:
        path = os.environ.get("INBOX_TRIAGE_CONFIG")
    if path is None:
        path = os.path.expanduser("~/.config/inbox-triage/config.yaml")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}

    if not isinstance(raw, dict):
        raise ValueError(f"Config file must contain a YAML mapping, got {type(raw).__name__}")

    # Warn about unknown keys
    for key in raw:
        if key not in KNOWN_KEYS:
            logger.warning("Unknown config key '%s' — ignoring", key)

    config = Config()

    # Simple scalar fields
    for name in ("model", "ollama_url", "fallback_category", "item_store_path", "counter_store_path"):
        if name in raw:
            setattr(config, name, str(raw[name]))
    for name in ("retry_model", "api_key", "slack_channel"):
        if raw.get(name) is not None:
            setattr(config, name, str(raw[name]))
    for name in ("ollama_timeout",) + _POSITIVE_INT_FIELDS + _NON_NEGATIVE_INT_FIELDS:
        if name in raw:
            setattr(config, name, raw[name])
    if "dry_run" in raw:
        config.dry_run = bool(raw["dry_run"])
    if "api_key_required" in raw:
        config.api_key_required = bool(raw["api_key_required"])

    if config.api_key is None:
        config.api_key = os.environ.get("INBOX_TRIAGE_API_KEY")

    # Policy: inline text wins over a policy file
    if "policy_text" in raw:
        config.policy_text = str(raw["policy_text"])
    elif "policy_path" in raw:
        with open(os.path.expanduser(str(raw["policy_path"]))) as f:
            config.policy_text = f.read()

    if "categories" in raw:
        raw_categories = raw["categories"]
        if not isinstance(raw_categories, list):
            raise ValueError("'categories' must be a list")
        config.categories = [str(c) for c in raw_categories]

    if "knowledge" in raw:
        raw_knowledge = raw["knowledge"]
        if not isinstance(raw_knowledge, dict):
            raise ValueError("'knowledge' must be a mapping")
        category_refs = raw_knowledge.get("categories") or {}
        if not isinstance(category_refs, dict):
            raise ValueError("'knowledge.categories' must be a mapping")
        config.knowledge = {"global": raw_knowledge.get("global"), "categories": dict(category_refs)}

    if "rules" in raw:
        raw_rules = raw["rules"]
        if not isinstance(raw_rules, list):
            raise ValueError("'rules' must be a list")
        for i, entry in enumerate(raw_rules):
            if not isinstance(entry, dict):
                raise ValueError(f"rules[{i}] must be a mapping")
            config.rules.append(dict(entry))  # copy to avoid mutating input

    if "agents" in raw:
        config.agents = _parse_agent_overrides(raw["agents"])

    _validate_config(config)

    return config

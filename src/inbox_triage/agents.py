"""Built-in agents and the bootstrap sequence that registers them.

Agents are plain :class:`AgentRegistration` values collected in a list;
their order here is their dispatch order.
"""

import dataclasses
import logging

from inbox_triage import notifier, slack_digest
from inbox_triage.config import Config
from inbox_triage.models import AgentHooks, AgentOptions, AgentRegistration
from inbox_triage.registry import AgentRegistry

logger = logging.getLogger(__name__)

BUILTIN_AGENTS = [
    AgentRegistration(
        name="desktop-notify",
        category=notifier.CATEGORY,
        hooks=AgentHooks(on_classify=notifier.on_classify),
        options=AgentOptions(soft_timeout_ms=2000),
    ),
    AgentRegistration(
        name="slack-digest",
        category=slack_digest.CATEGORY,
        hooks=AgentHooks(scan=slack_digest.scan),
        options=AgentOptions(soft_timeout_ms=10000),
    ),
]


def bootstrap_registry(config: Config, agents: list[AgentRegistration] = BUILTIN_AGENTS) -> AgentRegistry:
    """Create a registry and register ``agents`` with config overrides applied."""
    registry = AgentRegistry(config.categories)
    known = set()
    for agent in agents:
        known.add(agent.name)
        if agent.category not in config.categories:
            logger.warning(
                "Agent %s targets category '%s', which is not configured — not registering",
                agent.name,
                agent.category,
            )
            continue
        options = agent.options
        overrides = config.agents.get(agent.name)
        if overrides:
            options = dataclasses.replace(options, **overrides)
        registry.register(agent.category, agent.name, agent.hooks, options)

    for name in config.agents:
        if name not in known:
            logger.warning("Config has options for unknown agent '%s' — ignoring", name)

    return registry

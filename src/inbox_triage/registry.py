"""Registry and dispatcher for post-classification agents.

Agents register under a category with an ``on_classify`` hook (called
once per newly labelled item), a ``scan`` hook (called once per cycle),
or both. A failing agent never stops the others.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Any

from inbox_triage.models import (
    AgentHooks,
    AgentOptions,
    AgentRegistration,
    AgentResult,
    ExecutionContext,
    RunWhen,
    ScanContext,
)

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_ERROR = "error"
STATUS_DISABLED = "disabled"
STATUS_BUDGET_EXCEEDED = "budget-exceeded"
STATUS_DRY_RUN = "dry-run"


def agent_logger(name: str) -> logging.Logger:
    """Logger handed to an agent's hooks."""
    return logging.getLogger(f"inbox_triage.agents.{name}")


def normalize_result(value: Any) -> tuple[str, str | None, int | None]:
    """Turn whatever a hook returned into ``(status, info, retry_after_ms)``.

    ``None`` means success, a string is taken as the status, and a mapping
    may carry ``status``, ``info`` and ``retry_after_ms``.
    """
    if value is None:
        return STATUS_OK, None, None
    if isinstance(value, str):
        return value or STATUS_OK, None, None
    if isinstance(value, dict):
        status = value.get("status") or STATUS_OK
        info = value.get("info")
        retry_after_ms = value.get("retry_after_ms")
        return (
            str(status),
            None if info is None else str(info),
            None if retry_after_ms is None else int(retry_after_ms),
        )
    logger.debug("Ignoring unexpected hook return value %r", value)
    return STATUS_OK, None, None


class AgentRegistry:
    """Holds agent registrations and runs their hooks.

    Parameters
    ----------
    categories:
        When given, registrations for any other category are rejected.
    """

    def __init__(self, categories: list[str] | None = None) -> None:
        self._categories = None if categories is None else frozenset(categories)
        self._registrations: list[AgentRegistration] = []
        self._run_budget: int | None = None
        self._runs: dict[tuple[str, str], int] = {}

    # -- registration --------------------------------------------------------

    def register(
        self,
        category: str,
        name: str,
        hooks: AgentHooks,
        options: AgentOptions | None = None,
    ) -> None:
        if not callable(hooks.on_classify) and not callable(hooks.scan):
            raise ValueError(f"Agent '{name}' must provide an on_classify or scan hook")
        if self._categories is not None and category not in self._categories:
            raise ValueError(f"Agent '{name}' registered for unknown category '{category}'")
        if any(r.category == category and r.name == name for r in self._registrations):
            raise ValueError(f"Agent '{name}' is already registered for category '{category}'")

        registration = AgentRegistration(
            name=name,
            category=category,
            hooks=hooks,
            options=options or AgentOptions(),
        )
        self._registrations.append(registration)
        logger.info(
            "Registered agent %s for %s (on_classify=%s, scan=%s, enabled=%s)",
            name,
            category,
            hooks.on_classify is not None,
            hooks.scan is not None,
            registration.options.enabled,
        )

    def registrations(self, category: str | None = None) -> list[AgentRegistration]:
        return [r for r in self._registrations if category is None or r.category == category]

    # -- cycle state ---------------------------------------------------------

    def begin_cycle(self, run_budget: int | None) -> None:
        """Reset the shared on_classify budget for a new cycle (None = unlimited)."""
        self._run_budget = run_budget
        self._runs = {}

    @property
    def remaining_runs(self) -> int | None:
        return self._run_budget

    def _budget_available(self, registration: AgentRegistration) -> bool:
        if self._run_budget is not None and self._run_budget <= 0:
            return False
        max_runs = registration.options.max_runs
        key = (registration.category, registration.name)
        return max_runs is None or self._runs.get(key, 0) < max_runs

    def _consume_budget(self, registration: AgentRegistration) -> None:
        if self._run_budget is not None:
            self._run_budget -= 1
        key = (registration.category, registration.name)
        self._runs[key] = self._runs.get(key, 0) + 1

    # -- dispatch ------------------------------------------------------------

    def run_on_classify(self, category: str, ctx: ExecutionContext) -> list[AgentResult]:
        """Run every on_classify hook registered for ``category``, in order."""
        results = []
        for registration in self.registrations(category):
            if registration.hooks.on_classify is None:
                continue

            if not registration.options.enabled:
                skip = STATUS_DISABLED
            elif not self._budget_available(registration):
                skip = STATUS_BUDGET_EXCEEDED
            else:
                skip = self._skip_status(registration, ctx.dry_run)
            if skip is not None:
                logger.debug("Agent %s skipped for %s: %s", registration.name, ctx.item_id, skip)
                results.append(
                    AgentResult(
                        agent=registration.name,
                        category=category,
                        hook="on_classify",
                        status=skip,
                        item_id=ctx.item_id,
                    )
                )
                continue

            self._consume_budget(registration)
            agent_ctx = dataclasses.replace(ctx, log=agent_logger(registration.name).info)
            results.append(
                self._invoke(registration, "on_classify", registration.hooks.on_classify, agent_ctx, ctx.item_id)
            )
        return results

    def run_scan(self, global_config, item_store, dry_run: bool) -> list[AgentResult]:
        """Run every scan hook once, across all categories, in registration order.

        Scan hooks do not draw on the cycle's on_classify budget.
        """
        results = []
        for registration in self._registrations:
            if registration.hooks.scan is None:
                continue

            skip = self._skip_status(registration, dry_run)
            if skip is not None:
                logger.debug("Scan %s skipped: %s", registration.name, skip)
                results.append(
                    AgentResult(
                        agent=registration.name,
                        category=registration.category,
                        hook="scan",
                        status=skip,
                    )
                )
                continue

            ctx = ScanContext(
                category=registration.category,
                global_config=global_config,
                dry_run=dry_run,
                item_store=item_store,
                log=agent_logger(registration.name).info,
            )
            results.append(self._invoke(registration, "scan", registration.hooks.scan, ctx, None))
        return results

    def _skip_status(self, registration: AgentRegistration, dry_run: bool) -> str | None:
        if not registration.options.enabled:
            return STATUS_DISABLED
        if dry_run and registration.options.run_when is not RunWhen.ALWAYS:
            return STATUS_DRY_RUN
        return None

    def _invoke(self, registration: AgentRegistration, hook: str, fn, ctx, item_id: str | None) -> AgentResult:
        started = time.monotonic()
        try:
            value = fn(ctx)
            status, info, retry_after_ms = normalize_result(value)
        except Exception as exc:
            logger.exception("Agent %s %s hook failed", registration.name, hook)
            status, info, retry_after_ms = STATUS_ERROR, f"{type(exc).__name__}: {exc}", None
        duration_ms = (time.monotonic() - started) * 1000

        soft_timeout_ms = registration.options.soft_timeout_ms
        if soft_timeout_ms is not None and duration_ms > soft_timeout_ms:
            logger.warning(
                "Agent %s %s hook took %.0f ms, over its soft timeout of %d ms",
                registration.name,
                hook,
                duration_ms,
                soft_timeout_ms,
            )

        logger.info(
            "Agent %s %s%s -> %s",
            registration.name,
            hook,
            f" ({item_id})" if item_id else "",
            status,
        )
        return AgentResult(
            agent=registration.name,
            category=registration.category,
            hook=hook,
            status=status,
            info=info,
            retry_after_ms=retry_after_ms,
            item_id=item_id,
            duration_ms=duration_ms,
        )

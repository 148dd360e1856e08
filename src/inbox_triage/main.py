"""Entry point and cycle loop for inbox-triage."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

from inbox_triage.agents import bootstrap_registry
from inbox_triage.budget import JsonFileCounterStore
from inbox_triage.config import load_config
from inbox_triage.item_store import JsonItemStore
from inbox_triage.knowledge import FileKnowledgeProvider
from inbox_triage.orchestrator import Orchestrator, check_preconditions
from inbox_triage.transport import OllamaTransport

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="inbox-triage",
        description="Classify email threads with a language model and run follow-up agents.",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        default=None,
        help="Path to config YAML (default: ~/.config/inbox-triage/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        metavar="LEVEL",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Classify and report without labelling items or running live agents",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit instead of looping",
    )
    return parser.parse_args(argv)


def build_orchestrator(config) -> Orchestrator:
    """Wire the file-backed collaborators described by ``config``."""
    return Orchestrator(
        config,
        item_store=JsonItemStore(config.item_store_path, config.categories),
        transport=OllamaTransport(config),
        knowledge_provider=FileKnowledgeProvider(
            max_chars=config.knowledge_max_chars,
            cache_seconds=config.knowledge_cache_seconds,
        ),
        counter_store=JsonFileCounterStore(config.counter_store_path),
        registry=bootstrap_registry(config),
    )


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    logging.basicConfig(
        format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
        level=getattr(logging, args.log_level),
    )

    try:
        config = load_config(args.config)
        check_preconditions(config)
        orchestrator = build_orchestrator(config)
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        sys.exit(1)
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)

    logger.info("Configuration loaded successfully")

    dry_run = True if args.dry_run else None

    if args.once:
        orchestrator.run_cycle(dry_run=dry_run)
        return

    stop = threading.Event()

    # Graceful shutdown on SIGTERM / SIGINT.
    def _shutdown(signum, _frame):
        sig_name = signal.Signals(signum).name
        logger.info("Received %s — shutting down", sig_name)
        stop.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    logger.info("Starting inbox-triage (every %ds)", config.cycle_interval_seconds)
    while not stop.is_set():
        orchestrator.run_cycle(dry_run=dry_run)
        stop.wait(config.cycle_interval_seconds)

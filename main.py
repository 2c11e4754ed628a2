# main.py — Disaster report pipeline entry point
from __future__ import annotations
import os
from dotenv import load_dotenv

# Load .env.dev if present (for local dev), otherwise fall back to .env
if os.path.exists('.env.dev'):
    load_dotenv('.env.dev', override=True)
else:
    load_dotenv()

import argparse
import json
import signal
import sys
import threading

from marshmallow import ValidationError

from core.schemas import SubscriberSchema

# Initialize logging early (before any logger usage)
from logging_config import get_logger, setup_logging
setup_logging("disaster-pipeline")
logger = get_logger("disaster.main")

from config import CONFIG
from enrichment_stages import build_enrichment_pipeline
from health_check import get_health_status
from notification_dispatcher import NotificationDispatcher
from notification_ledger import build_ledger
from pipeline_orchestrator import PipelineOrchestrator
from models import Subscriber
from repository import Repository, build_repository
from verification_matcher import VerificationMatcher, default_sources


def build_orchestrator() -> PipelineOrchestrator:
    """Wire every component from CONFIG."""
    repository = build_repository()
    ledger = build_ledger(repository)
    sources = default_sources() if CONFIG.verification.sources_enabled else []
    return PipelineOrchestrator(
        repository=repository,
        pipeline=build_enrichment_pipeline(repository),
        dispatcher=NotificationDispatcher(repository, ledger),
        matcher=VerificationMatcher(repository, sources),
    )


def ingest_file(orchestrator: PipelineOrchestrator, path: str) -> int:
    """Queue one post per JSON line; invalid lines are logged and skipped."""
    queued = 0
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                orchestrator.submit(json.loads(line))
                queued += 1
            except (ValueError, ValidationError) as e:
                logger.warning("ingest_line_invalid", path=path, line=line_no, error=str(e))
    logger.info("ingest_file_loaded", path=path, queued=queued)
    return queued


def load_subscribers(repository: Repository, path: str) -> int:
    """Upsert subscribers from a JSON array file; invalid entries are logged and skipped."""
    with open(path, "r", encoding="utf-8") as f:
        entries = json.load(f)
    schema = SubscriberSchema()
    loaded = 0
    for entry in entries:
        try:
            repository.save_subscriber(Subscriber(**schema.load(entry)))
            loaded += 1
        except ValidationError as e:
            logger.warning("subscriber_invalid", path=path, subscriber_id=entry.get("id"), errors=e.messages)
    logger.info("subscribers_loaded", path=path, loaded=loaded)
    return loaded


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Disaster report enrichment and alerting pipeline")
    parser.add_argument("command", choices=["run", "once", "health", "alerts", "migrate"], nargs="?", default="run")
    parser.add_argument("--ingest", metavar="JSONL", help="Queue posts from a JSON-lines file before starting")
    parser.add_argument("--subscribers", metavar="JSON", help="Load subscribers from a JSON array file")
    parser.add_argument("--limit", type=int, default=20, help="Number of alerts listed by the alerts command")
    args = parser.parse_args(argv)

    problems = CONFIG.validate()
    if problems:
        for problem in problems:
            logger.error("config_invalid", problem=problem)
        return 2

    if args.command == "migrate":
        from apply_migration import apply_migration
        return 0 if apply_migration() else 1

    orchestrator = build_orchestrator()
    if args.subscribers:
        load_subscribers(orchestrator.repository, args.subscribers)
    if args.ingest:
        ingest_file(orchestrator, args.ingest)

    if args.command == "health":
        report = get_health_status(orchestrator.repository, orchestrator.dispatcher.ledger, orchestrator)
        print(json.dumps(report, indent=2, default=str))
        return 0 if report["status"] != "unhealthy" else 1

    if args.command == "alerts":
        alerts = orchestrator.repository.list_alerts(args.limit)
        print(json.dumps([a.to_dict() for a in alerts], indent=2, default=str))
        return 0

    if args.command == "once":
        summary = orchestrator.run_cycle()
        if orchestrator.matcher is not None:
            orchestrator.matcher.run_once()
        print(json.dumps(summary, indent=2, default=str))
        return 0

    shutdown = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("shutdown_requested", signal=signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    orchestrator.start()
    logger.info("disaster_pipeline_started", env=CONFIG.app.env)
    shutdown.wait()
    orchestrator.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())

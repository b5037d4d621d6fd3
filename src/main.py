"""CLI for the sprint assistant: run the API server or interpret a batch of utterances."""
from __future__ import annotations

import argparse
import json
import time
from pathlib import Path
from typing import Any, Dict, List, Tuple

import uvicorn

from api import create_app
from config import AppConfig
from logging_utils import configure_from, logger
from models import EntityType, TenantContext, Utterance
from retrieval import load_entities
from service import AssistantService, build_service


def load_utterances(path: Path) -> List[Tuple[Utterance, TenantContext]]:
    """Load utterances from a JSON list of ``{tenant_id, user_id, text, ...}`` records."""
    with path.open("r", encoding="utf-8") as handle:
        raw_requests = json.load(handle)

    requests: List[Tuple[Utterance, TenantContext]] = []
    for entry in raw_requests:
        tenant_id = str(entry.get("tenant_id", "")).strip()
        user_id = str(entry.get("user_id", "")).strip()
        hint = entry.get("entity_type_hint")
        context = TenantContext(
            tenant_id=tenant_id,
            user_id=user_id,
            project_id=entry.get("project_id"),
            active_sprint_id=entry.get("active_sprint_id"),
            entity_type_hint=EntityType(hint) if hint else None,
        )
        requests.append((Utterance(tenant_id=tenant_id, user_id=user_id, text=str(entry.get("text", ""))), context))
    return requests


def process_utterances(service: AssistantService, requests: List[Tuple[Utterance, TenantContext]]) -> List[Dict[str, Any]]:
    """Run every utterance through interpret; auto-executable ones are executed."""
    results = []
    for utterance, context in requests:
        outcome = service.interpret(utterance, context)
        results.append({"utterance_hash": utterance.content_hash, **outcome.to_dict()})
    return results


def build_from_args(args: argparse.Namespace) -> AssistantService:
    config = AppConfig.from_env()
    config.validate()
    configure_from(config.logging)
    service = build_service(config)
    if args.entities:
        count = service.retrieval.index(load_entities(Path(args.entities).resolve()))
        logger.info("Seeded search indexes", extra={"extra": {"count": count, "path": args.entities}})
    return service


def main() -> None:
    parser = argparse.ArgumentParser(description="sprint_assistant CLI")
    parser.add_argument("--entities", help="JSON snapshot of stories/tasks/sprints to index at startup")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    interpret = commands.add_parser("interpret", help="Interpret a batch of utterances")
    interpret.add_argument("--input", required=True, help="Path to the input JSON file")

    args = parser.parse_args()
    service = build_from_args(args)

    if args.command == "serve":
        uvicorn.run(create_app(service), host=args.host, port=args.port, log_config=None)
        return

    start = time.time()
    results = process_utterances(service, load_utterances(Path(args.input).resolve()))
    total_latency_ms = int((time.time() - start) * 1000)
    logger.info("Completed batch", extra={"extra": {"total_latency_ms": total_latency_ms, "count": len(results)}})
    service.shutdown()
    print(json.dumps(results, indent=2))


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Rank rule documents against a context, and optionally render a decision.

Loads rule documents from a JSON file into an in-memory store so authors can
see why a rule would or would not apply without touching the live store.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional
import sys

from shared.config import get_config
from shared.logging import configure_logging
from service_rules.app.persistence import InMemoryRuleDocumentStore
from service_rules.app.rules.models import EvaluationContext, family_key
from service_rules.app.service import RuleService


def _load_json(path: Path) -> Any:
    return json.loads(path.read_text())


def _documents(raw: Any) -> List[Dict[str, Any]]:
    if isinstance(raw, dict):
        raw = raw.get("rules", [])
    if not isinstance(raw, list):
        raise ValueError("rules file must hold a list of rule documents or {\"rules\": [...]}")
    return raw


async def run(
    *,
    documents: List[Dict[str, Any]],
    context: EvaluationContext,
    family: Optional[str],
    decide: bool,
    inputs: Dict[str, Any],
) -> dict:
    """Score the documents and return a JSON-ready summary."""
    config = get_config(audit_enabled=False, metrics_enabled=False)
    service = RuleService(InMemoryRuleDocumentStore(documents), config=config)
    context = service.resolver.prepare_context(context.organization_id, context)

    parsed = service.adapter.parse_documents(documents)
    rules = [
        rule for rule in parsed
        if family is None or rule.family_key == family_key(family)
    ]
    summary: Dict[str, Any] = {
        "context": context.snapshot(),
        "family": family_key(family) if family else None,
        "ranking": [match.to_dict() for match in service.score(rules, context)],
        "skipped": len(documents) - len(parsed),
    }

    if decide:
        decision = await service.decide(family, context, inputs)
        summary["resolved"] = [rule.rule_id for rule in await service.resolve(context.organization_id, family, context)]
        summary["decision"] = decision.to_dict()

    return summary


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rank rule documents against a context.")
    parser.add_argument("--rules", type=Path, required=True, help="JSON file with rule documents")
    parser.add_argument("--context", type=Path, required=True, help="JSON file with the evaluation context")
    parser.add_argument("--family", default=None, help="Only consider rules of this family")
    parser.add_argument("--decide", action="store_true", help="Also render a decision for --family")
    parser.add_argument("--inputs", type=Path, default=None, help="JSON file with decision inputs")
    parser.add_argument("--log-level", default="warning", help="Log level")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    if args.decide and not args.family:
        print("[score-rules] --decide requires --family", file=sys.stderr)
        return 2

    configure_logging("rules", args.log_level)
    try:
        documents = _documents(_load_json(args.rules))
        context = EvaluationContext.from_dict(_load_json(args.context))
        inputs = _load_json(args.inputs) if args.inputs else {}
        summary = asyncio.run(
            run(
                documents=documents,
                context=context,
                family=args.family,
                decide=args.decide,
                inputs=inputs,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[score-rules] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

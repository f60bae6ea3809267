#!/usr/bin/env python3
"""
Run example conversations through the orchestrated chat flow against a live model.

Needs the configured Ollama endpoint. Each scenario prints the reply, the
confidence and which tools ran; exit status is non-zero if any check fails.
"""
import sys
import json
import asyncio
import logging
import argparse
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

# Add backend to path
backend_path = Path(__file__).parent.parent
sys.path.insert(0, str(backend_path))

from mealwise.db.session import init_db
from mealwise.services.orchestration import OrchestrationResult, get_orchestrated_chat_flow

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

Check = Callable[[OrchestrationResult], bool]


def _tools(result: OrchestrationResult) -> List[str]:
    return sorted(result.tool_results or {})


SCENARIOS: List[Tuple[str, Dict[str, Any], Check]] = [
    (
        "meal plan",
        {
            "message": "Plan a 3 day vegetarian meal plan",
            "session_id": "scenario-plan",
            "conversation_history": [],
            "user_preferences": {"dietary": "vegetarian"},
        },
        lambda r: "generateMealPlan" in _tools(r) and r.confidence.value == "high",
    ),
    (
        "grocery list for that plan",
        {
            "message": "Give me a grocery list for that meal plan",
            "session_id": "scenario-plan",
            "conversation_history": [
                {"role": "user", "content": "Plan a 3 day vegetarian meal plan"},
                {"role": "assistant", "content": "Here's your meal plan."},
            ],
            "location_data": {"city": "Lisbon", "country": "Portugal", "currencySymbol": "€"},
        },
        lambda r: "generateGroceryList" in _tools(r),
    ),
    (
        "conversational",
        {
            "message": "What are the benefits of a vegetarian diet?",
            "conversation_history": [],
        },
        lambda r: r.debug.intent.value == "CONVERSATIONAL" and not r.tool_results,
    ),
    (
        "grocery list without a plan",
        {
            "message": "Give me a grocery list",
            "conversation_history": [],
        },
        lambda r: not r.tool_results and r.confidence.value == "low",
    ),
]


async def run(names: List[str], verbose: bool) -> int:
    init_db()
    flow = get_orchestrated_chat_flow()
    failures = 0

    for name, request, check in SCENARIOS:
        if names and name not in names:
            continue
        logger.info(f"--- {name} ---")
        result = await flow.process_message(request)
        ok = check(result)
        failures += int(not ok)

        print(f"\n[{'PASS' if ok else 'FAIL'}] {name}")
        print(f"  intent:     {result.debug.intent.value} ({result.debug.intent_source.value})")
        print(f"  confidence: {result.confidence.value}")
        print(f"  tools:      {_tools(result)}")
        print(f"  response:   {result.response[:300]}")
        if verbose:
            print(json.dumps(result.model_dump(mode="json", by_alias=True, exclude_none=True), indent=2))

    await flow.dispatcher.drain()
    return failures


def main():
    parser = argparse.ArgumentParser(description="Run example chat scenarios against the live model")
    parser.add_argument("--only", nargs="*", default=[], help="Scenario names to run (default: all)")
    parser.add_argument("--verbose", action="store_true", help="Print the full result JSON")
    args = parser.parse_args()

    failures = asyncio.run(run(args.only, args.verbose))
    if failures:
        logger.error(f"{failures} scenario(s) failed")
        sys.exit(1)
    logger.info("All scenarios passed")


if __name__ == "__main__":
    main()

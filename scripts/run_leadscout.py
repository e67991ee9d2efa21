"""
CLI wrapper to run one lead discovery job and print the summary.

Usage:
    python scripts/run_leadscout.py --niche dentist --location France --limit 20
    python scripts/run_leadscout.py --niche cafe --location "Dhaka" --no-website --stream
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Any, Dict

# Ensure repo root on path
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.append(ROOT)

from leadscout.database import close_pool
from leadscout.events import EventKind
from leadscout.models import LeadSource
from leadscout.orchestrator import Orchestrator


def _preferences(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "niche": args.niche,
        "locations": args.location,
        "lead_limit": args.limit,
        "services": args.services,
        "sources": args.source or [s.value for s in LeadSource],
        "filters": {
            "wants_no_website": args.no_website,
            "wants_email": args.with_email,
            "wants_phone": args.with_phone,
            "auto_verify_whatsapp": args.verify_whatsapp,
            "auto_find_email": args.find_email,
            "auto_verify_email": args.verify_email,
        },
    }


async def _run(args: argparse.Namespace) -> Dict[str, Any]:
    orch = Orchestrator()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orch.stop)
    except (NotImplementedError, RuntimeError):
        pass
    prefs = _preferences(args)
    if not args.stream:
        summary = await orch.run(prefs)
        return summary.model_dump(mode="json")
    summary = None
    async for ev in orch.stream(prefs):
        if ev.kind is EventKind.LEAD_FOUND:
            lead = ev.payload.get("lead")
            print(json.dumps(lead.model_dump(mode="json"), ensure_ascii=False), flush=True)
        elif ev.kind is EventKind.STOPPED:
            summary = ev.payload.get("summary")
    return summary.model_dump(mode="json", exclude={"leads"}) if summary else {}


def main():
    parser = argparse.ArgumentParser(description="Run the lead discovery loop once.")
    parser.add_argument("--niche", required=True, help="Business category, e.g. 'dentist'")
    parser.add_argument("--location", action="append", required=True, help="City or country (repeatable)")
    parser.add_argument("--limit", type=int, default=20, help="Number of leads to collect")
    parser.add_argument("--services", default=None, help="What you sell, used to steer city research")
    parser.add_argument("--source", action="append", choices=[s.value for s in LeadSource], help="Enabled source (repeatable)")
    parser.add_argument("--no-website", action="store_true", help="Keep only businesses without a website")
    parser.add_argument("--with-email", action="store_true", help="Keep only businesses with an email")
    parser.add_argument("--with-phone", action="store_true", help="Keep only businesses with a phone")
    parser.add_argument("--verify-whatsapp", action="store_true")
    parser.add_argument("--find-email", action="store_true")
    parser.add_argument("--verify-email", action="store_true")
    parser.add_argument("--stream", action="store_true", help="Print leads as JSON lines while running")
    args = parser.parse_args()

    logging.basicConfig(format="%(asctime)s %(levelname)s:%(name)s:%(message)s", level=logging.INFO)
    # Suppress OpenAI, LangChain and HTTP request logs at INFO level
    logging.getLogger("openai").setLevel(logging.ERROR)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("langchain").setLevel(logging.ERROR)
    logging.getLogger("langchain_openai").setLevel(logging.ERROR)

    try:
        result = asyncio.run(_run(args))
    finally:
        close_pool()
    print(json.dumps(result, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
klyro CLI: run the service and talk to it.

Commands:
    serve    - Run the HTTP API (and in-process workers unless disabled)
    worker   - Run queue workers only, no HTTP
    score    - Score a merged-data JSON file offline
    submit   - Submit an analysis to a running API
    status   - Show (or wait for) an analysis status
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Optional


def _output(data: dict, args: argparse.Namespace, human_fn=None):
    """Output data as JSON or pretty-printed."""
    if getattr(args, 'json', False):
        print(json.dumps(data, indent=2, default=str))
    elif human_fn:
        human_fn(data)
    else:
        print(json.dumps(data, indent=2, default=str))


def _client(args):
    from klyro.client import KlyroClient
    return KlyroClient(args.url, timeout=args.timeout)


# ─── Commands ──────────────────────────────────────────────────────

def cmd_serve(args):
    """Run the API with uvicorn."""
    import uvicorn

    from klyro.config import Settings
    from klyro.security import setup_structured_logging

    settings = Settings.from_env()
    setup_structured_logging(settings.log_level)
    uvicorn.run("klyro.api:create_app", factory=True, host=args.host, port=args.port,
                log_level=settings.log_level.lower())
    return {"served": True}


async def _run_worker(concurrency: Optional[int]):
    from klyro.config import Settings
    from klyro.runtime import Runtime
    from klyro.security import setup_structured_logging

    settings = Settings.from_env()
    if concurrency:
        settings.worker_concurrency = concurrency
    logger = setup_structured_logging(settings.log_level)

    runtime = Runtime.build(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # windows

    await runtime.start(workers=True)
    logger.info("Worker running (concurrency=%d)", settings.worker_concurrency)
    try:
        await stop.wait()
    finally:
        await runtime.close()
    return settings.worker_concurrency


def cmd_worker(args):
    """Run queue workers until SIGINT/SIGTERM."""
    concurrency = asyncio.run(_run_worker(args.concurrency))
    return {"stopped": True, "concurrency": concurrency}


def cmd_score(args):
    """Score merged collector data from a JSON file."""
    from klyro.scoring import ScoreConfigLoader, compute_score

    if args.file == "-":
        merged = json.load(sys.stdin)
    else:
        with open(args.file) as f:
            merged = json.load(f)
    if "mergedData" in merged:
        merged = merged["mergedData"]

    config = ScoreConfigLoader(args.config).current() if args.config else None
    result = compute_score(merged, config).to_dict()

    def human(d):
        print(f"📊 Score (config {d['configVersion']})")
        print(f"   Total:        {d['totalScore']}")
        print(f"   Web2:         {d['web2Total']}")
        print(f"   Web3:         {d['web3Total']}")
        print(f"   Level:        {d['verificationLevel']}")
        print(f"   Worth:        ${d['developerWorth']:,.2f}")

    _output(result, args, human)
    return result


def cmd_submit(args):
    """Submit an analysis."""
    with _client(args) as client:
        result = client.submit(args.subject, args.address or [], email=args.email,
                               force_refresh=args.force)

    def human(d):
        verb = "Created" if d["created"] else "Already running"
        print(f"✅ {verb}: {d['subjectKey']} ({d['status']})")

    _output(result, args, human)
    return result


def cmd_status(args):
    """Show status, optionally polling until the analysis finishes."""
    with _client(args) as client:
        if args.wait:
            outcome = client.wait_for_completion(args.subject, timeout=args.wait,
                                                 interval=args.interval)
            result = dict(outcome.snapshot, finished=outcome.finished)
        else:
            result = client.status(args.subject)

    def human(d):
        print(f"🔎 {d['subjectKey']}: {d['status']}")
        for stage, status in d.get("progress", {}).items():
            print(f"   {stage:<18} {status}")
        if d.get("score"):
            print(f"   Score:             {d['score']['totalScore']} ({d['score']['verificationLevel']})")
        for stage, error in (d.get("errors") or {}).items():
            print(f"   ⚠️  {stage}: {error}")
        if d.get("finished") is False:
            print("   ⏳ Still processing")

    _output(result, args, human)
    return result


# ─── Parser ────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="klyro",
        description="klyro: developer reputation pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    sub = parser.add_subparsers(dest="command", help="Available commands")

    # serve
    p = sub.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=8000)

    # worker
    p = sub.add_parser("worker", help="Run queue workers only")
    p.add_argument("-c", "--concurrency", type=int, help="Override KLYRO_WORKER_CONCURRENCY")

    # score
    p = sub.add_parser("score", help="Score merged data offline")
    p.add_argument("file", help="Merged data JSON file (- for stdin)")
    p.add_argument("--config", help="Score configuration JSON file")

    # submit / status talk to a running API
    for name, help_text in (("submit", "Submit an analysis"), ("status", "Show analysis status")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("subject", help="GitHub username")
        p.add_argument("-u", "--url", default="http://localhost:8000", help="API base URL")
        p.add_argument("--timeout", type=float, default=10.0, help="HTTP timeout in seconds")
        if name == "submit":
            p.add_argument("-a", "--address", action="append", help="Wallet address (repeatable)")
            p.add_argument("-e", "--email")
            p.add_argument("-f", "--force", action="store_true", help="Force a fresh analysis")
        else:
            p.add_argument("-w", "--wait", type=float, default=0,
                           help="Poll up to N seconds for a terminal status")
            p.add_argument("-i", "--interval", type=float, default=2.0, help="Polling interval")

    return parser


def main(argv: Optional[list[str]] = None) -> Optional[dict]:
    """CLI entry point. Returns result dict for testing."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "serve": cmd_serve,
        "worker": cmd_worker,
        "score": cmd_score,
        "submit": cmd_submit,
        "status": cmd_status,
    }

    from klyro.client import ApiError

    try:
        return commands[args.command](args)
    except FileNotFoundError as e:
        print(f"❌ File not found: {e}", file=sys.stderr)
        sys.exit(1)
    except ApiError as e:
        print(f"❌ API error {e.status}: {e.detail}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

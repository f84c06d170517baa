"""
Command line entry point.

    python -m lightning_gateway serve [--host HOST] [--port PORT]
    python -m lightning_gateway scheduled
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .config import get_settings
from .payouts import run_scheduled


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="lightning_gateway", description="Pay-per-request Lightning gateway")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP gateway")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    sub.add_parser("scheduled", help="Sweep platform fees and run earner auto-payouts once")

    args = parser.parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        import uvicorn

        from .app import create_app

        uvicorn.run(create_app(settings), host=args.host, port=args.port, log_config=None)
        return 0

    asyncio.run(run_scheduled(settings))
    return 0


if __name__ == "__main__":
    sys.exit(main())

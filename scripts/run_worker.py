#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal

from advisor.runtime import build_runtime


async def _run(args: argparse.Namespace) -> dict[str, int]:
    runtime = build_runtime()
    if args.drain:
        return await runtime.worker.drain(max_iterations=args.max_iterations)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    return await runtime.worker.run_forever(stop=stop)


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the advice worker pool against the configured queue.")
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Process until the queue is empty, then exit.",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=1000,
        help="Upper bound on polling rounds in --drain mode.",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("ADVISOR_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    stats = asyncio.run(_run(args))
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import List, Optional

from .config import Config, _parse_bool, parse_config
from .errors import EXIT_INTERRUPTED, HarnessError
from .runner import HarnessRunner

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"

logger = logging.getLogger("node-harness")


async def run(config: Config, args: argparse.Namespace) -> int:
    runner = HarnessRunner("node-harness cli", config)
    async with runner.group() as ctx:
        if ctx.handle is None:
            raise RuntimeError("node handle missing after setup")
        endpoint = config.ws_url if config.provider == "ws" else config.http_url
        print(f"Node ready at {endpoint} (pid {ctx.handle.pid})", flush=True)

        for i in range(args.blocks):
            result = await ctx.create_and_finalize_block()
            logger.info("Finalized block %d/%d: %s", i + 1, args.blocks, result)

        if _parse_bool(args.hold):
            logger.info("Holding node until interrupted (Ctrl-C)")
            returncode = await ctx.handle.process.wait()
            logger.warning("Node exited with code %s", returncode)
            return 1 if returncode else 0
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    config, args = parse_config(argv)
    try:
        return asyncio.run(run(config, args))
    except HarnessError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED

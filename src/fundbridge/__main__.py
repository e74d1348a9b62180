import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import uvicorn

from fundbridge.app import build_engine, close_engine, create_app, probe_chain
from fundbridge.config import load_config
from fundbridge.engine import Reconciler, start_loops
from fundbridge.errors import ConfigError, KeyFileError
from fundbridge.keys import load_key_file
from fundbridge.logging_config import setup_logging

log = logging.getLogger("fundbridge")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="fundbridge", description="Fund CARMA requests on a Bazo chain.")
    parser.add_argument("keyfile",
                        type=Path,
                        help="Issuer key file (pub X, pub Y, priv D as hex lines).",
                        )
    parser.add_argument("-c", "--config",
                        type=Path,
                        help="TOML file merged over the packaged defaults.",
                        )
    parser.add_argument("--headless",
                        action="store_true",
                        help="Run the loops without the HTTP status API.",
                        )
    parser.add_argument("--host",
                        help="API bind address (overrides api.host).",
                        )
    parser.add_argument("--port",
                        type=int,
                        help="API port (overrides api.port).",
                        )
    return parser.parse_args(argv)


async def run_headless(cfg: dict[str, Any], engine: Reconciler) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await probe_chain(engine)
    try:
        async with asyncio.TaskGroup() as tg:
            start_loops(tg, engine, stop, cfg["engine"])
            log.info("Running headless, send SIGINT/SIGTERM to stop after the current cycle")
    finally:
        await close_engine(engine)
    log.info("Shutdown complete")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging()
    try:
        cfg = load_config(args.config)
        key = load_key_file(args.keyfile)
    except (ConfigError, KeyFileError) as e:
        log.error("%s", e)
        return 2

    engine = build_engine(cfg, key)
    if args.headless:
        asyncio.run(run_headless(cfg, engine))
        return 0

    api = cfg["api"]
    uvicorn.run(
        create_app(cfg, engine),
        host=args.host or api["host"],
        port=args.port or api["port"],
        lifespan="on",
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())

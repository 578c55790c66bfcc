from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from chatrelay.config import RelayConfig, load_config
from chatrelay.server.runtime import RelayServer

log = logging.getLogger("chatrelay.cmd.server")


def _stop_on_signals(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops: Ctrl+C surfaces as KeyboardInterrupt instead
            return


async def _run(config: RelayConfig) -> None:
    stop_event = asyncio.Event()
    _stop_on_signals(stop_event)
    await RelayServer(config).serve_until(stop_event)
    log.info("Relay stopped")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Authenticated direct-message relay")
    parser.add_argument("--config", help="Path to server YAML config")
    parser.add_argument("--log-level", help="Override the configured log level")
    args = parser.parse_args(argv)

    load_dotenv()
    config_path: Optional[Path] = Path(args.config) if args.config else None
    config = load_config(config_path)

    logging.basicConfig(
        level=(args.log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(_run(config))


if __name__ == "__main__":
    main()

"""Main entry point - runs the relayer and, unless disabled, the API."""

import argparse
import asyncio
import json
import logging
import signal
from typing import Optional

import uvicorn

from swaprelay.api.app import create_app
from swaprelay.config import Settings, get_settings
from swaprelay.ledger.database import close_db, init_db
from swaprelay.runtime import Relayer, build_relayer

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # httpx logs every feed and gateway request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


class Application:
    """Relayer process: event monitor, orchestrator, sweeps and the HTTP API."""

    def __init__(self, serve_api: bool = True):
        self.settings = get_settings()
        self.serve_api = serve_api
        self.relayer: Optional[Relayer] = None
        self._shutdown_event = asyncio.Event()

    def _log_startup(self) -> None:
        settings = self.settings
        logger.info(f"Starting SwapRelay ({settings.environment})")
        if settings.dry_run:
            logger.warning("DRY RUN: chains are simulated in memory, no funds move")
        for name, adapter in self.relayer.adapters.items():
            logger.info(f"  {name}: {type(adapter).__name__}")
        logger.info(
            f"Feeds: {', '.join(settings.feed_names) or '(fallback only)'}; "
            f"fee {settings.fee_rate_bps} bps; "
            f"{'self-fill' if settings.self_fill else 'resolver'} mode"
        )
        if not settings.telegram_bot_token:
            logger.warning("TELEGRAM_BOT_TOKEN not set - operator alerts are log/database only")

    async def start(self):
        """Start the relayer and block until shutdown is requested."""
        configure_logging(self.settings)

        await init_db()

        self.relayer = build_relayer(self.settings)
        self._log_startup()
        await self.relayer.start()

        api_task = None
        if self.serve_api:
            api_task = asyncio.create_task(self._run_api())
        else:
            logger.info("API disabled, running relayer only")

        await self._shutdown_event.wait()

        if api_task is not None:
            api_task.cancel()
            await asyncio.gather(api_task, return_exceptions=True)

        await self._cleanup()

    async def _run_api(self):
        """Serve the API for the running relayer."""
        try:
            app = create_app(self.relayer)
            config = uvicorn.Config(
                app,
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")
        except Exception as e:
            logger.error(f"API error: {e}")
            raise

    async def _cleanup(self):
        """Stop the relayer and report where each chain stopped."""
        logger.info("Cleaning up...")

        if self.relayer is not None:
            for chain, stats in self.relayer.monitor.stats().items():
                logger.info(
                    f"{chain}: cursor {stats['cursor']}, {stats['in_flight']} in flight, "
                    f"{stats['delivered']} delivered"
                )
            await self.relayer.stop()

        await close_db()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Cross-chain HTLC swap relayer")
    parser.add_argument("--no-api", action="store_true", help="Run the relayer without the HTTP API")
    parser.add_argument(
        "--check-config", action="store_true", help="Print the effective settings (secrets redacted) and exit"
    )
    args = parser.parse_args()

    if args.check_config:
        print(json.dumps(get_settings().get_safe_dict(), indent=2, default=str))
        return

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    app = Application(serve_api=not args.no_api)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()

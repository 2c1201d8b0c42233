import argparse
import asyncio
import json
import logging
import signal
import sys
import time
import uvicorn

from .config import settings
from .state import StateManager
from .clients.device_api import DeviceApiClient
from .clients.host_api import HostApiClient
from .engine import ReconciliationService
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class SyncService:
    def __init__(self):
        self.running = True
        self.state_manager = StateManager(settings.STATE_PATH)
        self.vendor = DeviceApiClient()
        self.host = HostApiClient()
        self.service = ReconciliationService(
            vendor=self.vendor,
            state_manager=self.state_manager,
            directory=self.host,
            ads_provider=self.host,
        )

        # Link service to server module
        server.service = self.service

    async def close(self):
        await self.vendor.close()
        await self.host.close()

    async def sweep_loop(self):
        if not settings.SWEEP_ENABLED:
            logger.info("Periodic sweep disabled")
            return
        logger.info(f"Sweep loop started (interval={settings.SWEEP_INTERVAL_SECONDS}s)")
        while self.running:
            start_time = time.time()
            try:
                await self.service.sweep()
            except Exception as e:
                logger.error(f"Error in sweep loop: {e}", exc_info=True)

            # Wait for remainder of interval
            elapsed = time.time() - start_time
            sleep_time = max(1, settings.SWEEP_INTERVAL_SECONDS - elapsed)
            await asyncio.sleep(sleep_time)

    async def start(self):
        tasks = [asyncio.create_task(self.sweep_loop())]

        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            server_task = uvicorn.Server(config).serve()
            tasks.append(asyncio.create_task(server_task))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            self.state_manager.save()
            await self.close()

    async def run_once(self, command: str, location_id: str = None):
        try:
            if command == "sweep":
                out = await self.service.sweep()
                print(json.dumps(out, indent=2))
                return
            if command == "reconcile":
                out = await self.service.reconcile(location_id)
            elif command == "reset":
                out = await self.service.force_reset(location_id)
            else:
                out = await self.service.get_canonical_status(location_id, live=True)
            print(out.model_dump_json(indent=2))
        finally:
            await self.close()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="screensync", description="Screen content reconciliation")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the sweep loop (and HTTP server if enabled)")
    sub.add_parser("sweep", help="Reconcile every linked location once")
    for name, help_text in (
        ("reconcile", "Reconcile one location"),
        ("reset", "Force-reset one location to baseline, then reconcile"),
        ("status", "Show the canonical status of one location (live read, no writes)"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("location_id")
    return parser

def main(argv=None):
    args = build_parser().parse_args(argv)
    command = args.command or "serve"
    service = SyncService()
    if command == "serve":
        signal.signal(signal.SIGTERM, handle_sigterm)
        try:
            asyncio.run(service.start())
        except KeyboardInterrupt:
            logger.info("Interrupted by user")
    else:
        asyncio.run(service.run_once(command, getattr(args, "location_id", None)))

if __name__ == "__main__":
    main()

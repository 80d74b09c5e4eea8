import argparse
import asyncio
import logging
import signal

import uvicorn
from dotenv import load_dotenv

from meter_sync.api.app import create_application
from meter_sync.exception import ConfigError
from meter_sync.schema.sync_config_schema import SyncConfig
from meter_sync.sync_agent import SyncAgent
from meter_sync.util.config_manager import ConfigManager
from meter_sync.util.logger_config import setup_logging
from meter_sync.util.logging_noise import quiet_library_logs

logger = logging.getLogger("SyncMain")


async def main(sync_config_path: str):
    load_dotenv()

    try:
        config: SyncConfig = ConfigManager.load_sync_config(sync_config_path)
    except ConfigError as e:
        setup_logging()
        logger.error(f"Startup aborted: {e}")
        raise SystemExit(2) from e

    setup_logging(
        log_level=config.logging.level,
        log_to_file=config.logging.log_to_file,
        log_dir=config.logging.log_dir,
        backup_count=config.logging.backup_count,
    )
    quiet_library_logs()
    logger.info(f"Config loaded from {sync_config_path} ({len(config.enabled_devices)} enabled devices)")

    agent = SyncAgent(config)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    api_server: uvicorn.Server | None = None
    api_task: asyncio.Task | None = None

    try:
        await agent.start()

        if config.api.enabled:
            api_server = uvicorn.Server(
                uvicorn.Config(
                    create_application(agent),
                    host=config.api.host,
                    port=config.api.port,
                    log_level="warning",
                )
            )
            api_task = asyncio.create_task(api_server.serve())
            logger.info(f"[API] listening on http://{config.api.host}:{config.api.port}")

        # uvicorn handles SIGINT/SIGTERM itself while serving, so its exit also means shutdown
        waiters: list[asyncio.Task] = [asyncio.create_task(stop_event.wait())]
        if api_task:
            waiters.append(api_task)
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        waiters[0].cancel()

    finally:
        logger.info("Shutting down...")

        if api_server and api_task:
            api_server.should_exit = True
            try:
                await api_task
            except asyncio.CancelledError:
                pass
            logger.info("[API] stopped")

        await agent.stop()


def run():
    parser = argparse.ArgumentParser(description="Meter reading sync agent")
    parser.add_argument("--sync_config", default="res/sync_config.yml", help="Path to sync config YAML")
    args = parser.parse_args()
    asyncio.run(main(sync_config_path=args.sync_config))


if __name__ == "__main__":
    run()

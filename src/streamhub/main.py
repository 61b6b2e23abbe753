"""
streamhub - Main entry point.

Runs the stream hub next to an RTMP media server:
1. Receive publish hooks and track live sessions
2. Record every live stream with ffmpeg
3. Relay live streams to configured destinations
4. Serve the dashboard API and WebSocket feed
5. Persist recording history and destinations
"""

import asyncio
import signal
from typing import Optional

import yaml
from aiohttp import web

from .api import create_app
from .config import Config, load_config
from .hub import StreamHub
from .logger import get_logger, setup_logging
from .notifier import TelegramNotifier


class StreamHubApp:
    """
    Main application.

    Handles:
    - Hub startup (recording directory, persisted state)
    - HTTP server lifecycle
    - Optional Telegram notifications
    - Graceful shutdown on SIGINT/SIGTERM
    """

    def __init__(self, config: Config):
        """Initialize application with configuration."""
        self.config = config
        self._logger = get_logger('app')

        self.hub = StreamHub(config)
        self.notifier: Optional[TelegramNotifier] = None
        if config.telegram.enabled:
            self.notifier = TelegramNotifier(
                api_id=config.telegram.api_id,
                api_hash=config.telegram.api_hash,
                channel_id=config.telegram.channel_id,
                session_name=config.telegram.session_name,
            )

        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        """Start the application and run until a shutdown signal."""
        self._logger.info("Starting streamhub...")

        await self.hub.startup()

        if self.notifier:
            if await self.notifier.connect():
                self.notifier.attach(self.hub.bridge)
            else:
                self._logger.warning("Telegram notifications disabled")
                self.notifier = None

        self._runner = web.AppRunner(create_app(self.hub))
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.server.host, self.config.server.port)
        await site.start()
        self._logger.info(
            f"API listening on http://{self.config.server.host}:{self.config.server.port}"
        )

        # Wait for shutdown signal
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        try:
            await stop_event.wait()
        finally:
            self._logger.info("Shutdown signal received...")
            await self._cleanup()

    async def _cleanup(self) -> None:
        """Cleanup resources."""
        self._logger.info("Cleaning up...")

        # Stop accepting hooks before tearing down processes
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        await self.hub.shutdown()

        if self.notifier:
            try:
                await asyncio.wait_for(self.notifier.disconnect(), timeout=5.0)
            except (asyncio.TimeoutError, ConnectionError) as e:
                self._logger.warning(f"Error disconnecting Telegram: {e}")

        self._logger.info("Cleanup complete")


async def main(config_path: str = "config.yaml"):
    """Main entry point."""
    # Load configuration
    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        print("Please create config.yaml from config.example.yaml")
        return
    except (ValueError, OSError, yaml.YAMLError) as e:
        print(f"Configuration error: {e}")
        return

    # Setup logging
    setup_logging(
        level=config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count
    )

    app = StreamHubApp(config)

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    except Exception as e:
        get_logger('app').error(f"Fatal error: {e}")
        raise


def run() -> None:
    asyncio.run(main())


if __name__ == '__main__':
    run()

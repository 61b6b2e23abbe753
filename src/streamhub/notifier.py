"""
Telegram notifier for streamhub.
Posts stream, recording and forwarding transitions to a Telegram channel.
"""

import asyncio
from typing import Callable, Optional

from telethon import TelegramClient
from telethon.errors import FloodWaitError

from .events import (
    Event,
    ForwardingFinished,
    NotificationBridge,
    RecordingFinished,
    StreamEnded,
    StreamStarted,
)
from .logger import get_logger


# Messages waiting to be sent; newer messages are dropped when full
QUEUE_SIZE = 100
# Re-sends after a FloodWaitError before a message is given up
FLOOD_RETRIES = 1


def format_event(event: Event) -> Optional[str]:
    """Telegram text for an event, or None for events that are not announced."""
    if isinstance(event, StreamStarted):
        return f"🔴 Stream live: {event.stream_path}"
    if isinstance(event, StreamEnded):
        return f"⚫ Stream ended: {event.stream_path}"
    if isinstance(event, RecordingFinished):
        if event.status == "completed":
            return f"✅ Recording saved: {event.stream_path} ({event.recording_id})"
        return f"❌ Recording failed: {event.stream_path} (exit code {event.exit_code})"
    if isinstance(event, ForwardingFinished) and event.status == "error":
        return f"❌ Forwarding failed: {event.stream_path} -> {event.destination_id}\n{event.error or ''}".rstrip()
    return None


class TelegramNotifier:
    """
    Bridge subscriber that sends notifications through Telethon.

    Events are formatted synchronously and queued; a single worker task does
    the network sends so the event loop core never waits on Telegram.
    """

    def __init__(
        self,
        api_id: int,
        api_hash: str,
        channel_id: int,
        session_name: str = "streamhub",
        client: Optional[TelegramClient] = None
    ):
        """
        Initialize Telegram notifier.

        Args:
            api_id: Telegram API ID.
            api_hash: Telegram API hash.
            channel_id: Target channel ID.
            session_name: Telethon session file name.
            client: Pre-built client, mostly for tests.
        """
        self.api_id = api_id
        self.api_hash = api_hash
        self.channel_id = channel_id
        self.session_name = session_name

        self._client = client
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_SIZE)
        self._worker: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._logger = get_logger('notifier')

    async def connect(self) -> bool:
        """
        Connect to Telegram.

        Returns:
            True if connected successfully.
        """
        try:
            if self._client is None:
                self._client = TelegramClient(self.session_name, self.api_id, self.api_hash)
            await self._client.start()
            me = await self._client.get_me()
            self._logger.info(f"Connected to Telegram as {getattr(me, 'first_name', me)}")
            return True
        except Exception as e:
            self._logger.error(f"Failed to connect: {e}")
            return False

    def attach(self, bridge: NotificationBridge) -> None:
        """Subscribe to the bridge and start the send worker."""
        self._unsubscribe = bridge.subscribe(self.handle_event)
        self._worker = asyncio.get_running_loop().create_task(self._run())

    def handle_event(self, event: Event) -> None:
        text = format_event(event)
        if text is None:
            return
        try:
            self._queue.put_nowait(text)
        except asyncio.QueueFull:
            self._logger.warning(f"Notification queue full, dropping {event.type}")

    async def _run(self) -> None:
        while True:
            text = await self._queue.get()
            try:
                await self.send(text)
            finally:
                self._queue.task_done()

    async def send(self, text: str) -> Optional[int]:
        """
        Send a text message to the channel.

        Returns:
            Message ID or None on error.
        """
        if not self._client:
            return None

        for attempt in range(1 + FLOOD_RETRIES):
            try:
                message = await self._client.send_message(self.channel_id, text)
                return message.id
            except FloodWaitError as e:
                if attempt == FLOOD_RETRIES:
                    self._logger.error(f"Still rate limited, dropping message: {text[:60]}")
                    return None
                self._logger.warning(f"Rate limited! Waiting {e.seconds}s...")
                await asyncio.sleep(e.seconds)
            except Exception as e:
                self._logger.error(f"Failed to send message: {e}")
                return None
        return None

    async def disconnect(self) -> None:
        """Stop the worker and close the Telegram connection."""
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        if self._client:
            await self._client.disconnect()
            self._client = None

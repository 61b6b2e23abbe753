"""
Media server integration for streamhub.
Parses nginx-rtmp style publish hooks and talks to the media server control API.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

import aiohttp

from .errors import ValidationError
from .logger import get_logger, get_stream_logger


# Hook fields consumed directly, everything else goes to metadata
_HOOK_FIELDS = ('call', 'clientid', 'id', 'app', 'name', 'path')


@dataclass
class PublishHook:
    """Publish lifecycle callback from the media server."""
    session_id: str
    stream_path: str
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def stream_key(self) -> str:
        return self.stream_path.rstrip('/').split('/')[-1]


def parse_publish_hook(data: Mapping) -> PublishHook:
    """
    Build a PublishHook from a hook body.

    Accepts nginx-rtmp fields (clientid, app, name, addr) as well as
    id/path pairs.

    Raises:
        ValidationError: If the session id or stream path is missing.
    """
    session_id = str(data.get('clientid') or data.get('id') or '').strip()
    if not session_id:
        raise ValidationError("Hook is missing clientid")

    path = str(data.get('path') or '').strip()
    if not path:
        app = str(data.get('app') or '').strip('/ ')
        name = str(data.get('name') or '').strip('/ ')
        if not app or not name:
            raise ValidationError("Hook is missing app/name")
        path = f"/{app}/{name}"
    elif not path.startswith('/'):
        path = f"/{path}"

    metadata = {
        str(key): str(value)
        for key, value in data.items()
        if key not in _HOOK_FIELDS and value is not None
    }
    return PublishHook(session_id=session_id, stream_path=path, metadata=metadata)


class MediaServerClient:
    """
    Client for the media server control endpoint.

    Used to drop a publisher on request; the session itself ends when the
    media server reports publish_done.
    """

    def __init__(self, control_url: str = "", timeout: float = 5.0):
        """
        Initialize media server client.

        Args:
            control_url: Base control URL, e.g. http://127.0.0.1:8080/control.
                Empty disables control requests.
            timeout: Request timeout in seconds.
        """
        self.control_url = control_url.rstrip('/')
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._logger = get_logger('media_server')

    @property
    def enabled(self) -> bool:
        return bool(self.control_url)

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._logger.debug(f"Control client ready for {self.control_url}")

    async def disconnect(self) -> None:
        """Close session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def drop_publisher(self, stream_path: str) -> bool:
        """
        Disconnect the publisher of a stream.

        Returns:
            True if the media server accepted the request.
        """
        logger = get_stream_logger(stream_path, 'media_server')
        if not self.enabled:
            logger.debug("No control URL configured, cannot drop publisher")
            return False

        parts = stream_path.strip('/').split('/')
        if len(parts) < 2:
            logger.warning("Cannot drop publisher: path has no app")
            return False
        app, name = '/'.join(parts[:-1]), parts[-1]

        await self.connect()
        try:
            async with self._session.get(
                f"{self.control_url}/drop/publisher",
                params={'app': app, 'name': name}
            ) as resp:
                if resp.status != 200:
                    logger.warning(f"Drop publisher failed: HTTP {resp.status}")
                    return False
                logger.info("Publisher dropped")
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Drop publisher request failed: {e}")
            return False

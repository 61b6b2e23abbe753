"""
Snapshot store for streamhub.
JSON documents (one array per entity type) rewritten wholesale on each change.
"""

import asyncio
import json
from pathlib import Path
from typing import List, Set

import aiofiles

from .logger import get_logger


class SnapshotStore:
    """
    Persists a list of records as a single JSON array.

    Features:
    - Atomic writes through a temp file + replace
    - Fire-and-forget saves serialized with an asyncio lock
    - Load failures fall back to an empty list
    """

    def __init__(self, path: str):
        """
        Initialize snapshot store.

        Args:
            path: Path to the JSON document.
        """
        self.path = Path(path)
        self._logger = get_logger('state')
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    async def load(self) -> List[dict]:
        """Load records from file; missing or unreadable files yield []."""
        async with self._lock:
            if not self.path.exists():
                self._logger.info(f"No snapshot at {self.path}, starting fresh")
                return []

            try:
                async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
                    data = json.loads(await f.read())
            except Exception as e:
                self._logger.error(f"Failed to load {self.path}: {e}")
                return []

            if not isinstance(data, list):
                self._logger.error(f"Snapshot {self.path} is not a JSON array, ignoring")
                return []

            return [item for item in data if isinstance(item, dict)]

    async def save(self, records: List[dict]) -> bool:
        """
        Write records to file.

        Returns:
            True if the snapshot was written.
        """
        async with self._lock:
            tmp_file = self.path.with_suffix(self.path.suffix + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(tmp_file, 'w', encoding='utf-8') as f:
                    await f.write(json.dumps(records, indent=2, ensure_ascii=False))
                tmp_file.replace(self.path)
                return True
            except Exception as e:
                self._logger.error(f"Failed to save {self.path}: {e}")
                return False

    def save_soon(self, records: List[dict]) -> asyncio.Task:
        """
        Schedule a save without waiting for it.

        The records list is captured now, so later mutations of the caller's
        collections do not leak into this write.
        """
        task = asyncio.get_running_loop().create_task(self.save(list(records)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def flush(self) -> None:
        """Wait for every scheduled save to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

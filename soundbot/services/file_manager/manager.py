import asyncio
import os
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles

if TYPE_CHECKING:
    from soundbot.context import Context

from soundbot.services.manager import BaseFileServiceManager

# -------------------------------------------------------------- #
# File Manager Service
# -------------------------------------------------------------- #


class FileManagerService(BaseFileServiceManager):
    """Service for the recordings folder: existence checks, reads and deletes."""

    def __init__(self, context: "Context", storage_path: str, poll_interval: float = 0.05):
        super().__init__(context)

        self.storage_path = storage_path
        self.poll_interval = poll_interval

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services):
        await super().on_start(services)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, lambda: os.makedirs(self.storage_path, exist_ok=True)
        )

        await self.services.logging_service.info(
            f"FileManagerService initialized with storage path: {self.storage_path}"
        )

    # -------------------------------------------------------------- #
    # File Management Methods
    # -------------------------------------------------------------- #

    def _resolve(self, filepath: str) -> str:
        """Absolute paths pass through; relative ones are relative to storage_path."""
        if os.path.isabs(filepath):
            return filepath
        return os.path.join(self.storage_path, filepath)

    def get_storage_path(self) -> str:
        return self.storage_path

    async def ensure_parent_dir(self, filepath: str) -> None:
        path = Path(self._resolve(filepath))
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: path.parent.mkdir(parents=True, exist_ok=True))

    async def file_exists(self, filepath: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, os.path.isfile, self._resolve(filepath))

    async def wait_for_file(self, filepath: str, timeout: float) -> bool:
        """
        Poll until a file exists.

        Args:
            filepath: File to wait for
            timeout: Maximum number of seconds to wait

        Returns:
            True if the file appeared in time, False otherwise
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await self.file_exists(filepath):
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.poll_interval)

    async def read_file(self, filepath: str) -> bytes:
        """
        Read a file.

        Args:
            filepath: Can be absolute path or relative to storage_path

        Returns:
            File contents as bytes

        Raises:
            FileNotFoundError: If file doesn't exist
        """
        async with aiofiles.open(self._resolve(filepath), "rb") as f:
            data = await f.read()

        await self.services.logging_service.debug(f"Read file: {filepath} ({len(data)} bytes)")
        return data

    async def delete_file(self, filepath: str) -> bool:
        """
        Delete a file.

        Args:
            filepath: Can be absolute path or relative to storage_path

        Returns:
            True if the file was removed, False if it did not exist
        """
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, os.remove, self._resolve(filepath))
        except FileNotFoundError:
            await self.services.logging_service.warning(f"File already removed: {filepath}")
            return False

        await self.services.logging_service.info(f"Deleted file: {filepath}")
        return True

import asyncio
import contextlib
import sys
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles

if TYPE_CHECKING:
    from soundbot.context import Context

from soundbot.services.manager import BaseAsyncLoggingService

LOG_LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40, "CRITICAL": 50}

# -------------------------------------------------------------- #
# Async Logging Service
# -------------------------------------------------------------- #


class AsyncLoggingService(BaseAsyncLoggingService):
    """Queue backed logger; a single writer task appends lines to the log file."""

    def __init__(
        self,
        context: "Context",
        log_dir: str = "logs",
        log_file: str | None = None,
        use_timestamp: bool = True,
        console_output: bool = True,
        min_level: str = "DEBUG",
    ):
        """Initialize the async logging service.

        Args:
            context: Context instance containing server and services
            log_dir: Directory to store log files
            log_file: Name of the log file (if None and use_timestamp is True,
                     a timestamped filename will be generated)
            use_timestamp: If True and log_file is None, create a timestamped log file.
                          If False, uses "app.log" as default.
            console_output: If True, all log messages are also printed to stdout.
            min_level: Messages below this level are discarded.
        """
        super().__init__(context)
        self.log_dir = Path(log_dir)
        self.console_output = console_output
        self.min_level = LOG_LEVELS.get(min_level.upper(), 10)

        if log_file is None:
            if use_timestamp:
                timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
                self.log_file = f"app_{timestamp}.log"
            else:
                self.log_file = "app.log"
        else:
            self.log_file = log_file

        self.log_path = self.log_dir / self.log_file

        self._log_queue: asyncio.Queue[str] = asyncio.Queue()
        self._writer_task: asyncio.Task | None = None

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services) -> None:
        await super().on_start(services)

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._writer_task = asyncio.create_task(self._process_log_queue())

        await self.info(f"AsyncLoggingService initialized. Logging to: {self.log_path}")

    async def on_close(self) -> None:
        await super().on_close()

        if self._writer_task:
            self._writer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer_task
            self._writer_task = None

        await self._flush_queue()

    # -------------------------------------------------------------- #
    # Public Logging Methods
    # -------------------------------------------------------------- #

    async def log(self, message: str, level: str = "INFO") -> None:
        """Queue a log message.

        Args:
            message: The log message
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        """
        if LOG_LEVELS.get(level, 20) < self.min_level:
            return

        timestamp = datetime.now().isoformat()
        await self._log_queue.put(f"[{timestamp}] [{level}] {message}")

    async def debug(self, message: str) -> None:
        await self.log(message, "DEBUG")

    async def info(self, message: str) -> None:
        await self.log(message, "INFO")

    async def warning(self, message: str) -> None:
        await self.log(message, "WARNING")

    async def error(self, message: str) -> None:
        await self.log(message, "ERROR")

    async def critical(self, message: str) -> None:
        await self.log(message, "CRITICAL")

    async def flush(self) -> None:
        """Wait until every queued message has been written."""
        if self._writer_task and not self._writer_task.done():
            await self._log_queue.join()
        else:
            await self._flush_queue()

    # -------------------------------------------------------------- #
    # Private Methods
    # -------------------------------------------------------------- #

    async def _process_log_queue(self) -> None:
        while True:
            message = await self._log_queue.get()
            try:
                await self._write_to_file(message)
            finally:
                self._log_queue.task_done()

    async def _write_to_file(self, message: str) -> None:
        if self.console_output:
            print(message, file=sys.stdout, flush=True)

        try:
            async with aiofiles.open(self.log_path, mode="a", encoding="utf-8") as f:
                await f.write(message + "\n")
        except OSError as e:
            print(f"[ERROR] Failed to write to log file: {e}", file=sys.stderr, flush=True)

    async def _flush_queue(self) -> None:
        while not self._log_queue.empty():
            message = self._log_queue.get_nowait()
            await self._write_to_file(message)
            self._log_queue.task_done()

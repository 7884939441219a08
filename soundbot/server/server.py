"""
Server manager for external services.

Holds every external server handler the bot talks to and drives their
connect / disconnect lifecycle.
"""

import logging
from typing import TYPE_CHECKING

from soundbot.server.services import BaseServerHandler, SpeechRecognitionHandler

if TYPE_CHECKING:
    from soundbot.context import Context

logger = logging.getLogger(__name__)

# -------------------------------------------------------------- #
# Server Manager
# -------------------------------------------------------------- #


class ServerManager:
    """Manager for handling multiple server instances."""

    def __init__(self, context: "Context", speech_client: SpeechRecognitionHandler):
        self.context = context
        self._initialized = False
        self._speech_client = speech_client

        self._servers: dict[str, BaseServerHandler] = {
            "speech": speech_client,
        }

    # ------------------------------------------------------ #
    # Server Management
    # ------------------------------------------------------ #

    async def connect_all(self) -> None:
        """Connect to all servers."""
        logger.info("=" * 60)
        logger.info("[ServerManager] Connecting all servers...")

        for server in self._servers.values():
            logger.info(f"[ServerManager] Connecting to '{server.name}' server...")
            await server.connect()
            await server.on_startup()
            logger.info(f"[ServerManager] '{server.name}' server is ready.")

        self._initialized = True
        logger.info("[ServerManager] All servers connected successfully.")
        logger.info("=" * 60)

    async def disconnect_all(self) -> None:
        """Disconnect from all servers."""
        logger.info("[ServerManager] Disconnecting all servers...")

        for server in self._servers.values():
            try:
                await server.on_close()
                await server.disconnect()
                logger.info(f"[ServerManager] '{server.name}' server disconnected.")
            except Exception as e:
                logger.error(f"[ServerManager] Failed to disconnect '{server.name}': {e}")

        self._initialized = False

    async def health_check_all(self) -> dict[str, bool]:
        """
        Check health of all registered servers.

        Returns:
            Dictionary mapping server names to health status
        """
        results = {}
        for name, server in self._servers.items():
            results[name] = await server.health_check()
        return results

    def list_servers(self) -> list[str]:
        return list(self._servers.keys())

    # ------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------ #

    @property
    def speech_client(self) -> SpeechRecognitionHandler:
        """Get the speech recognition client."""
        return self._speech_client

    @property
    def is_initialized(self) -> bool:
        return self._initialized

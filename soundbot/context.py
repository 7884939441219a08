import asyncio
from typing import TYPE_CHECKING

from soundbot.config import Settings

if TYPE_CHECKING:
    import discord

    from soundbot.server.server import ServerManager
    from soundbot.services.manager import ServicesManager

# -------------------------------------------------------------- #
# Context Class
# -------------------------------------------------------------- #


class Context:
    """
    Central context object that provides access to the settings, the server
    handlers, the services and the Discord bot instance.

    Services and cogs reach each other through this object instead of
    importing one another.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings: Settings = settings or Settings()
        self.server_manager: ServerManager | None = None
        self.services_manager: ServicesManager | None = None
        self.bot: discord.Bot | None = None
        self._shutting_down: bool = False
        self._shutdown_event: asyncio.Event = asyncio.Event()

    def set_server_manager(self, server_manager: "ServerManager") -> None:
        """Set the server manager instance."""
        self.server_manager = server_manager

    def set_services_manager(self, services_manager: "ServicesManager") -> None:
        """Set the services manager instance."""
        self.services_manager = services_manager

    def set_bot(self, bot: "discord.Bot") -> None:
        """Set the Discord bot instance."""
        self.bot = bot

    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def mark_shutdown_started(self) -> None:
        """Mark that shutdown has been initiated; sessions stop accepting commands."""
        self._shutting_down = True
        self._shutdown_event.set()

    def wait_for_shutdown(self) -> asyncio.Event:
        return self._shutdown_event

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from soundbot.context import Context
    from soundbot.server.services import SpeechRecognitionHandler

from soundbot.constructor import ServerManagerType
from soundbot.server.server import ServerManager

# -------------------------------------------------------------- #
# Constructor for Dynamic Creation of Server Manager
# -------------------------------------------------------------- #


def construct_server_manager(
    client_type: ServerManagerType,
    context: "Context",
    speech_client: "SpeechRecognitionHandler | None" = None,
) -> ServerManager:
    """Construct and return a ServerManager instance for the given environment.

    Args:
        client_type: Environment to build for
        context: Context instance to pass to ServerManager
        speech_client: Testing only, a pre-scripted mock speech client
    """

    if client_type in (ServerManagerType.DEVELOPMENT, ServerManagerType.PRODUCTION):
        from soundbot.server.production.constructor import construct_server_manager

        return construct_server_manager(context)
    elif client_type == ServerManagerType.TESTING:
        from soundbot.server.testing.constructor import construct_server_manager

        return construct_server_manager(context, speech_client=speech_client)

    raise ValueError(f"Unsupported ServerManagerType: {client_type}")

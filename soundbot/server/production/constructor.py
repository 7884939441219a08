from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from soundbot.context import Context

from soundbot.server.common import azure_speech
from soundbot.server.server import ServerManager

# -------------------------------------------------------------- #
# Constructor for Production Server Manager
# -------------------------------------------------------------- #


def load_speech_client(context: "Context") -> azure_speech.AzureSpeechClient:
    """Load and return the Azure speech client from the context settings."""
    settings = context.settings
    if not settings.speech_key or not settings.speech_region:
        raise ValueError("Missing required SPEECH_KEY / SPEECH_REGION environment variables.")

    return azure_speech.construct_azure_speech_client(
        subscription_key=settings.speech_key,
        region=settings.speech_region,
        language=settings.speech_language,
    )


def construct_server_manager(context: "Context") -> ServerManager:
    """
    Construct and return a ServerManager instance.

    Args:
        context: Context instance to pass to ServerManager

    Returns:
        Configured ServerManager instance
    """
    speech_client = load_speech_client(context)
    return ServerManager(context=context, speech_client=speech_client)

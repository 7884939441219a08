from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from soundbot.context import Context
    from soundbot.services.voice_session.transport import VoiceTransport

from soundbot.config import Settings
from soundbot.constructor import ServerManagerType
from soundbot.services.logger import AsyncLoggingService
from soundbot.services.manager import ServicesManager

# -------------------------------------------------------------- #
# Constructor for Dynamic Creation of Services Manager
# -------------------------------------------------------------- #


def construct_services_manager(
    service_type: ServerManagerType,
    context: "Context",
    settings: Settings | None = None,
    transport: "VoiceTransport | None" = None,
    capture_options: dict | None = None,
    log_file: str | None = None,
    use_timestamp_logs: bool = True,
    console_output: bool = True,
) -> ServicesManager:
    """Construct and return a services manager based on the service type.

    Args:
        service_type: DEVELOPMENT / PRODUCTION use the py-cord voice transport,
            TESTING uses the in-memory one
        context: Context instance containing server and services
        settings: Paths and binaries (default: the context's settings)
        transport: Voice transport to use instead of the default for the type
        capture_options: Overrides for CaptureRegistry timings
        log_file: Specific log file name (optional, overrides use_timestamp_logs)
        use_timestamp_logs: If True and log_file is None, creates timestamped log files
        console_output: Mirror log lines to stdout
    """
    settings = settings or context.settings

    from soundbot.services.ffmpeg_manager.manager import FFmpegManagerService
    from soundbot.services.file_manager.manager import FileManagerService
    from soundbot.services.media_queue.manager import MediaQueueService
    from soundbot.services.reaction_dispatch.manager import SoundboardService
    from soundbot.services.recognition_gate.manager import RecognitionGateService
    from soundbot.services.voice_session.manager import VoiceSessionManagerService

    # create logger
    logging_service = AsyncLoggingService(
        context=context,
        log_dir=settings.log_dir,
        log_file=log_file,
        use_timestamp=use_timestamp_logs,
        console_output=console_output,
    )

    if transport is None:
        if service_type in (ServerManagerType.DEVELOPMENT, ServerManagerType.PRODUCTION):
            from soundbot.services.voice_session.transport import PycordVoiceTransport

            transport = PycordVoiceTransport(ffmpeg_path=settings.ffmpeg_path)
        elif service_type == ServerManagerType.TESTING:
            from soundbot.services.voice_session.testing import FakeVoiceTransport

            transport = FakeVoiceTransport()
        else:
            raise ValueError(f"Unsupported service type: {service_type}")

    # -------------------------------------------------------------- #
    # Service Managers Setup
    # -------------------------------------------------------------- #

    file_service_manager = FileManagerService(
        context=context, storage_path=settings.recording_storage_path
    )
    ffmpeg_service_manager = FFmpegManagerService(context=context, ffmpeg_path=settings.ffmpeg_path)

    # one gate for the whole process, shared by every voice session
    recognition_gate = RecognitionGateService(context=context)

    soundboard_service = SoundboardService(
        context=context,
        clips_path=settings.audio_files_path,
        config_path=settings.soundboard_config_path,
    )
    media_queue_service = MediaQueueService(context=context)

    voice_session_manager = VoiceSessionManagerService(
        context=context, transport=transport, capture_options=capture_options
    )

    return ServicesManager(
        context=context,
        logging_service=logging_service,
        file_service_manager=file_service_manager,
        ffmpeg_service_manager=ffmpeg_service_manager,
        recognition_gate=recognition_gate,
        soundboard_service=soundboard_service,
        media_queue_service=media_queue_service,
        voice_session_manager=voice_session_manager,
    )

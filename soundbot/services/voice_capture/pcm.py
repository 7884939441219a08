# -------------------------------------------------------------- #
# PCM Helpers
# -------------------------------------------------------------- #


class PCMFormat:
    """Discord's decoded voice format (see discord.opus.Decoder)."""

    SAMPLE_RATE = 48000  # 48 kHz
    BITS_PER_SAMPLE = 16  # signed little-endian
    CHANNELS = 2  # stereo

    FRAME_MS = 20  # one Opus packet
    BYTES_PER_SAMPLE = BITS_PER_SAMPLE // 8
    BYTES_PER_MS = SAMPLE_RATE * CHANNELS * BYTES_PER_SAMPLE // 1000  # 192
    FRAME_BYTES = BYTES_PER_MS * FRAME_MS  # 3840


def calculate_pcm_duration_ms(
    num_bytes: int,
    sample_rate: int = PCMFormat.SAMPLE_RATE,
    bits_per_sample: int = PCMFormat.BITS_PER_SAMPLE,
    channels: int = PCMFormat.CHANNELS,
) -> int:
    """
    Calculate the duration in milliseconds for a given number of PCM bytes.

    Example:
        >>> calculate_pcm_duration_ms(192000)  # 1 second of Discord PCM
        1000
    """
    bytes_per_ms = sample_rate * (bits_per_sample // 8) * channels / 1000
    return int(num_bytes / bytes_per_ms)


def silent_pcm(num_bytes: int) -> bytes:
    """Signed PCM silence is all zeros."""
    return bytes(num_bytes)


# -------------------------------------------------------------- #
# Frame Decoder
# -------------------------------------------------------------- #


class PCMFrameDecoder:
    """
    Turns the voice receiver's packets into fixed-size PCM frames.

    py-cord hands the sink Opus packets that are already decoded to 48 kHz
    stereo s16le, but packet sizes are not guaranteed to line up with 20 ms
    boundaries. Bytes are buffered until a whole frame is available; `flush()`
    pads whatever is left with silence so the transcoder only ever sees whole
    frames.
    """

    def __init__(self, frame_bytes: int = PCMFormat.FRAME_BYTES):
        if frame_bytes <= 0 or frame_bytes % (PCMFormat.CHANNELS * PCMFormat.BYTES_PER_SAMPLE):
            raise ValueError("frame_bytes must be a positive multiple of one stereo sample")
        self.frame_bytes = frame_bytes
        self.frames_decoded = 0
        self._buffer = bytearray()

    def decode(self, packet: bytes) -> list[bytes]:
        """Buffer a packet and return every complete frame now available."""
        self._buffer.extend(packet)

        frames = []
        while len(self._buffer) >= self.frame_bytes:
            frames.append(bytes(self._buffer[: self.frame_bytes]))
            del self._buffer[: self.frame_bytes]
        self.frames_decoded += len(frames)
        return frames

    def flush(self) -> bytes | None:
        """Return the buffered remainder padded to a full frame, or None if empty."""
        if not self._buffer:
            return None
        frame = bytes(self._buffer) + silent_pcm(self.frame_bytes - len(self._buffer))
        self._buffer.clear()
        self.frames_decoded += 1
        return frame

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

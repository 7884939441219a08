import json
import os
import re
from typing import TYPE_CHECKING

import aiofiles

if TYPE_CHECKING:
    from soundbot.context import Context

from soundbot.services.manager import BaseSoundboardServiceManager

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")
_NON_LETTERS = re.compile(r"[^a-z ]")

# -------------------------------------------------------------- #
# Soundboard Service
# -------------------------------------------------------------- #


class SoundboardService(BaseSoundboardServiceManager):
    """Chooses the reaction clip for a recognized utterance."""

    DEFAULT_CONFIG = {
        "join_cue": "newt.mp3",
        "leave_cue": "goodbye.mp3",
        "fifty_clip": "fifty.wav",
        "keywords": {},
    }

    def __init__(self, context: "Context", clips_path: str, config_path: str | None = None):
        super().__init__(context)
        self.clips_path = clips_path
        self.config_path = config_path

        self.join_cue: str | None = None
        self.leave_cue: str | None = None
        self.fifty_clip: str | None = None
        self.keywords: dict[str, str] = {}

        self._apply_config(self.DEFAULT_CONFIG)

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services) -> None:
        await super().on_start(services)

        if self.config_path and os.path.exists(self.config_path):
            try:
                async with aiofiles.open(self.config_path, encoding="utf-8") as f:
                    config = json.loads(await f.read())
                self._apply_config({**self.DEFAULT_CONFIG, **config})
            except (OSError, json.JSONDecodeError) as e:
                await self.services.logging_service.error(
                    f"Failed to load soundboard config {self.config_path}: {e}"
                )
        elif self.config_path:
            await self.services.logging_service.warning(
                f"Soundboard config not found at {self.config_path}, using defaults"
            )

        await self.services.logging_service.info(
            f"SoundboardService loaded {len(self.keywords)} keyword clips"
        )

    # -------------------------------------------------------------- #
    # Lookups
    # -------------------------------------------------------------- #

    def match(self, text: str) -> str | None:
        """
        Pick a clip for an utterance.

        Any mention of fifty wins; otherwise the text is reduced to lowercase
        letters and spaces and the first configured keyword it contains is used.

        Args:
            text: Recognized utterance

        Returns:
            Path of the clip to play, or None if nothing matches
        """
        if not text:
            return None

        if self._is_fifty(text) and self.fifty_clip:
            return self.fifty_clip

        cleaned = clean_text(text)
        for keyword, clip in self.keywords.items():
            if keyword in cleaned:
                return clip
        return None

    def get_join_cue(self) -> str | None:
        return self.join_cue

    def get_leave_cue(self) -> str | None:
        return self.leave_cue

    # -------------------------------------------------------------- #
    # Private Methods
    # -------------------------------------------------------------- #

    @staticmethod
    def _is_fifty(text: str) -> bool:
        leading = _LEADING_INT.match(text)
        if leading and int(leading.group(1)) == 50:
            return True
        lowered = text.lower()
        return "fifty" in lowered or "50" in lowered

    def _resolve(self, filename: str | None) -> str | None:
        if not filename:
            return None
        if os.path.isabs(filename):
            return filename
        return os.path.join(self.clips_path, filename)

    def _apply_config(self, config: dict) -> None:
        self.join_cue = self._resolve(config.get("join_cue"))
        self.leave_cue = self._resolve(config.get("leave_cue"))
        self.fifty_clip = self._resolve(config.get("fifty_clip"))
        self.keywords = {
            clean_text(keyword): self._resolve(clip)
            for keyword, clip in (config.get("keywords") or {}).items()
            if clean_text(keyword)
        }


def clean_text(text: str) -> str:
    """Lowercase and keep only ASCII letters and spaces."""
    return _NON_LETTERS.sub("", text.lower())

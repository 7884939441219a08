"""Unit tests for reaction clip matching."""

import json
import os

import pytest

from soundbot.context import Context
from soundbot.services.reaction_dispatch.manager import SoundboardService, clean_text


@pytest.fixture
def soundboard(test_settings, tmp_path) -> SoundboardService:
    service = SoundboardService(Context(test_settings), clips_path=str(tmp_path / "clips"))
    service._apply_config(
        {
            **SoundboardService.DEFAULT_CONFIG,
            "keywords": {"bruh": "bruh.mp3", "Air Horn": "airhorn.mp3", "wow": "wow.mp3"},
        }
    )
    return service


def clip(soundboard: SoundboardService, name: str) -> str:
    return os.path.join(soundboard.clips_path, name)


@pytest.mark.unit
def test_clean_text_keeps_lowercase_letters_and_spaces():
    assert clean_text("Bruh!! That's 50% off...") == "bruh thats  off"


@pytest.mark.unit
class TestFiftyMatching:
    @pytest.mark.parametrize("text", ["50", "50 dollars", "It costs 50.", "FIFTY!", "fifty-fifty"])
    def test_mentions_of_fifty(self, soundboard, text):
        assert soundboard.match(text) == clip(soundboard, "fifty.wav")

    def test_fifty_wins_over_keywords(self, soundboard):
        assert soundboard.match("bruh fifty") == clip(soundboard, "fifty.wav")

    def test_other_numbers_do_not_match(self, soundboard):
        assert soundboard.match("15 people") is None


@pytest.mark.unit
class TestKeywordMatching:
    def test_keyword_in_sentence(self, soundboard):
        assert soundboard.match("That was a total Bruh moment.") == clip(soundboard, "bruh.mp3")

    def test_keywords_are_normalized(self, soundboard):
        assert soundboard.match("give me the air horn") == clip(soundboard, "airhorn.mp3")

    def test_first_configured_keyword_wins(self, soundboard):
        assert soundboard.match("wow bruh") == clip(soundboard, "bruh.mp3")

    def test_no_match(self, soundboard):
        assert soundboard.match("hello there") is None
        assert soundboard.match("") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_config_file_is_loaded_on_start(test_context, tmp_path, services_manager):
    config_path = tmp_path / "custom.json"
    config = {"leave_cue": "/abs/bye.mp3", "keywords": {"oof": "oof.mp3"}}
    config_path.write_text(json.dumps(config))

    service = SoundboardService(test_context, clips_path="clips", config_path=str(config_path))
    await service.on_start(services_manager)

    assert service.get_leave_cue() == "/abs/bye.mp3"
    assert service.get_join_cue() == os.path.join("clips", "newt.mp3")
    assert service.match("oof") == os.path.join("clips", "oof.mp3")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_broken_config_falls_back_to_defaults(test_context, tmp_path, services_manager):
    config_path = tmp_path / "broken.json"
    config_path.write_text("{not json")

    service = SoundboardService(test_context, clips_path="clips", config_path=str(config_path))
    await service.on_start(services_manager)

    assert service.keywords == {}
    assert service.get_join_cue() == os.path.join("clips", "newt.mp3")

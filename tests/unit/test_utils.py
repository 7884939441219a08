"""Unit tests for filename helpers."""

import os

import pytest

from soundbot.utils import build_recording_path, sanitize_filename


@pytest.mark.unit
class TestSanitizeFilename:
    def test_replaces_reserved_characters(self):
        assert sanitize_filename('a/b\\c*d?e:f"g<h>i|j') == "a_b_c_d_e_f_g_h_i_j"

    def test_keeps_ordinary_names(self):
        assert sanitize_filename("Mr. Newt 2") == "Mr. Newt 2"

    def test_blank_name_falls_back(self):
        assert sanitize_filename("   ") == "unknown"


@pytest.mark.unit
def test_build_recording_path_is_deterministic(tmp_path):
    path = build_recording_path(str(tmp_path), "al/ice", 42, epoch_ms=1700000000123)

    assert path == os.path.join(str(tmp_path), "recording_al_ice_42_1700000000123.wav")


@pytest.mark.unit
def test_same_display_name_different_participants(tmp_path):
    first = build_recording_path(str(tmp_path), "sam", 1, epoch_ms=1700000000123)
    second = build_recording_path(str(tmp_path), "sam", 2, epoch_ms=1700000000123)

    assert first != second


@pytest.mark.unit
def test_build_recording_path_defaults_to_now(tmp_path):
    path = build_recording_path(str(tmp_path), "bob", 7)

    name = os.path.basename(path)
    assert name.startswith("recording_bob_7_")
    assert name.endswith(".wav")
    assert name[len("recording_bob_7_") : -len(".wav")].isdigit()

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from services.text_to_speech import (
    AudioRenderError,
    SpeechRenderer,
    audio_file_name,
    build_spoken_transcript,
)


def _renderer(client):
    return SpeechRenderer(client=client, model="tts-1", voice="nova", speed=1.1)


def test_render_returns_audio_and_spoken_transcript():
    client = MagicMock()
    client.audio.speech.create.return_value = SimpleNamespace(content=b"ID3-audio")

    artifact = _renderer(client).render("Bike lanes are expanding.", "City News", "abc123")

    assert artifact.audio_bytes == b"ID3-audio"
    assert artifact.file_name == "audio_abc123.mp3"
    assert artifact.spoken_transcript == "Here's a summary of City News: Bike lanes are expanding."
    kwargs = client.audio.speech.create.call_args.kwargs
    assert kwargs["input"] == artifact.spoken_transcript
    assert kwargs["voice"] == "nova"
    assert kwargs["speed"] == 1.1
    assert kwargs["response_format"] == "mp3"


def test_render_wraps_client_errors():
    client = MagicMock()
    client.audio.speech.create.side_effect = RuntimeError("quota exceeded")
    with pytest.raises(AudioRenderError, match="Audio generation failed: quota exceeded"):
        _renderer(client).render("Script.", "Title", "stem")


def test_render_rejects_empty_audio():
    client = MagicMock()
    client.audio.speech.create.return_value = SimpleNamespace(content=b"")
    with pytest.raises(AudioRenderError):
        _renderer(client).render("Script.", "Title", "stem")


def test_render_requires_text():
    with pytest.raises(AudioRenderError):
        _renderer(MagicMock()).render("   ", "", "stem")


def test_transcript_without_title_is_script_only():
    assert build_spoken_transcript("Just  the   script.", "") == "Just the script."


def test_audio_file_name_is_sanitized():
    assert audio_file_name("../etc/passwd") == "audio_etc_passwd.mp3"

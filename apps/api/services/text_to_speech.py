import asyncio
import logging
import re
from typing import Any, Optional

from openai import OpenAI

from config import require_openai_api_key, settings
from services.pipeline_models import AudioArtifact

logger = logging.getLogger(__name__)


class AudioRenderError(Exception):
    """Raised when the speech service does not return usable audio."""


def _safe_stem(name: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_"} else "_" for ch in name or "")
    return cleaned.strip("_") or "audio"


def build_spoken_transcript(script: str, title: str) -> str:
    """Prefix the narration with a short attribution so listeners know what they hear."""
    title = re.sub(r"\s+", " ", title or "").strip()
    script = re.sub(r"\s+", " ", script or "").strip()
    if not title:
        return script
    return f"Here's a summary of {title}: {script}"


def audio_file_name(stem: str) -> str:
    return f"audio_{_safe_stem(stem)}.mp3"


class SpeechRenderer:
    """Audio rendering stage backed by the OpenAI speech endpoint."""

    def __init__(
        self,
        client: Any = None,
        model: Optional[str] = None,
        voice: Optional[str] = None,
        speed: Optional[float] = None,
    ):
        self.client = client if client is not None else OpenAI(api_key=require_openai_api_key())
        self.model = model or settings.TTS_MODEL
        self.voice = voice or settings.TTS_VOICE
        self.speed = speed or settings.TTS_SPEED

    def render(self, script: str, title: str, file_stem: str) -> AudioArtifact:
        """
        Render the narration script to MP3.

        Args:
            script: Narration script produced by the summarization stage
            title: Article title used in the spoken preamble
            file_stem: Stable identifier used to name the audio file

        Returns:
            AudioArtifact with the bytes and the exact transcript that was spoken
        """
        transcript = build_spoken_transcript(script, title)
        if not transcript:
            raise AudioRenderError("Text content is required for audio rendering")

        logger.info("Rendering %s words to speech (%s, voice=%s)", len(transcript.split()), self.model, self.voice)
        try:
            response = self.client.audio.speech.create(
                model=self.model,
                voice=self.voice,
                input=transcript,
                response_format="mp3",
                speed=self.speed,
            )
            audio_bytes = response.content
        except Exception as exc:
            raise AudioRenderError(f"Audio generation failed: {exc}") from exc

        if not audio_bytes:
            raise AudioRenderError("Audio generation returned no audio")

        logger.info("Generated %.1fKB audio for %s", len(audio_bytes) / 1024, file_stem)
        return AudioArtifact(
            audio_bytes=audio_bytes,
            file_name=audio_file_name(file_stem),
            spoken_transcript=transcript,
        )

    async def render_async(self, script: str, title: str, file_stem: str) -> AudioArtifact:
        return await asyncio.to_thread(self.render, script, title, file_stem)

"""Pydantic models passed between the pipeline stages."""

import hashlib
from typing import Optional, Tuple

from pydantic import BaseModel, Field


class LinkJobPayload(BaseModel):
    """Queue payload for one shared link."""

    url: str = Field(min_length=8, max_length=2000)
    thread_id: str  # message timestamp of the thread to reply into
    channel_id: str  # external channel id
    team_id: str  # internal team id
    external_team_id: str

    @property
    def natural_key(self) -> Tuple[str, str, str]:
        return (self.url, self.thread_id, self.channel_id)

    @property
    def file_stem(self) -> str:
        """Stable audio file stem, identical for every run of the same natural key."""
        digest = hashlib.sha256("|".join(self.natural_key).encode("utf-8")).hexdigest()
        return digest[:20]


class ExtractedContent(BaseModel):
    title: str
    text: str
    word_count: int
    url: str
    cover_image_url: Optional[str] = None
    is_stub: bool = False


class AudioArtifact(BaseModel):
    audio_bytes: bytes
    file_name: str
    spoken_transcript: str

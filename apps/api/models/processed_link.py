"""Processed link model (one extraction-to-audio record per shared link)."""

from sqlalchemy import CheckConstraint, Column, String, DateTime, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


STATUS_PENDING = "PENDING"
STATUS_PROCESSING = "PROCESSING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"
PROCESSING_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)


class ProcessedLink(Base):
    """Persistent state of one link-to-audio job, keyed by (url, message_ts, channel_id)."""

    __tablename__ = "processed_links"
    __table_args__ = (
        UniqueConstraint("url", "message_ts", "channel_id", name="uq_processed_links_natural_key"),
        CheckConstraint(
            "processing_status IN (" + ", ".join(f"'{status}'" for status in PROCESSING_STATUSES) + ")",
            name="ck_processed_links_status",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    url = Column(String, nullable=False)
    message_ts = Column(String, nullable=False)
    channel_id = Column(String, ForeignKey("channels.id"), nullable=False, index=True)
    team_id = Column(String, ForeignKey("teams.id"), nullable=False, index=True)
    title = Column(String, nullable=True)
    extracted_text = Column(Text, nullable=True)
    audio_file_url = Column(String, nullable=True)
    audio_file_key = Column(String, nullable=True)
    tts_script = Column(Text, nullable=True)
    og_image = Column(String, nullable=True)
    processing_status = Column(String, nullable=False, default=STATUS_PENDING, index=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    team = relationship("Team", back_populates="processed_links")
    channel = relationship("Channel", back_populates="processed_links")

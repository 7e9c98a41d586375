"""Workspace channel model."""

from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Channel(Base):
    """Conversation channel in which links are shared."""

    __tablename__ = "channels"
    __table_args__ = (
        UniqueConstraint("team_id", "slack_channel_id", name="uq_channels_team_slack_channel"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    team_id = Column(String, ForeignKey("teams.id"), nullable=False, index=True)
    slack_channel_id = Column(String, nullable=False)
    channel_name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    team = relationship("Team", back_populates="channels")
    processed_links = relationship("ProcessedLink", back_populates="channel")

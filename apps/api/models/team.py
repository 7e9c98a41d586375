"""Workspace team model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Team(Base):
    """Chat workspace that installed the bot."""

    __tablename__ = "teams"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    slack_team_id = Column(String, unique=True, nullable=False, index=True)
    team_name = Column(String, nullable=True)
    access_token = Column(String, nullable=True)  # bot token used for thread replies
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    channels = relationship("Channel", back_populates="team", cascade="all, delete-orphan")
    processed_links = relationship("ProcessedLink", back_populates="team", cascade="all, delete-orphan")

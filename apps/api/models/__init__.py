"""Models package."""

from .team import Team
from .channel import Channel
from .processed_link import ProcessedLink

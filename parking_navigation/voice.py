"""
Voice guidance for turn-by-turn navigation
Builds spoken instructions and decides when to speak them
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from .logging_config import get_logger
from .models import RouteStep

logger = get_logger(__name__)

Speaker = Callable[[str], None]


@dataclass
class VoiceAnnouncement:
    """Represents a spoken announcement"""
    text: str
    priority: int  # 1-5, higher is more important
    category: str  # 'instruction', 'alert', 'arrival'
    expires_at: Optional[datetime] = None


class VoiceGuide:
    """Spoken instructions with per-message cooldown"""

    def __init__(
        self,
        speaker: Optional[Speaker] = None,
        cooldown: float = 10.0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.speaker = speaker
        self.announcement_cooldown = cooldown  # seconds between similar announcements
        self.last_announcement_time: Dict[str, float] = {}
        self._clock = clock or datetime.now

    @property
    def is_available(self) -> bool:
        return self.speaker is not None

    def step_announcement(self, step: RouteStep, distance_text: str) -> VoiceAnnouncement:
        """Announcement for a newly active step"""
        return VoiceAnnouncement(
            text=f"In {distance_text}, {step.instruction}",
            priority=3,
            category='instruction'
        )

    def alert_announcement(self, message: str, priority: int = 4) -> VoiceAnnouncement:
        return VoiceAnnouncement(text=message, priority=priority, category='alert')

    def should_announce(self, announcement: VoiceAnnouncement) -> bool:
        """Determine if announcement should be made based on cooldown and priority"""

        if announcement.expires_at is not None and announcement.expires_at < self._clock():
            return False

        key = f"{announcement.category}:{announcement.text}"
        last_time = self.last_announcement_time.get(key, 0)
        current_time = self._clock().timestamp()

        # High priority announcements always go through
        if announcement.priority >= 4:
            self.last_announcement_time[key] = current_time
            return True

        if current_time - last_time > self.announcement_cooldown:
            self.last_announcement_time[key] = current_time
            return True

        return False

    def announce(self, announcement: VoiceAnnouncement, enabled: bool = True) -> bool:
        """Speak announcement if enabled and not on cooldown"""
        if not enabled or self.speaker is None:
            return False

        if not self.should_announce(announcement):
            return False

        try:
            self.speaker(announcement.text)
        except Exception:
            logger.exception("Speech output failed")
            return False

        logger.debug(f"Announced: {announcement.text}")
        return True

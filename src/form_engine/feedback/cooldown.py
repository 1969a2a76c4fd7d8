import time
from typing import Callable, Optional

from .feedback_system import FeedbackRecord


class FeedbackCooldown:
    """Decides which feedback records are worth announcing to the user."""

    def __init__(self, cooldown: float = 4.0, debounce_frames: int = 2,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            cooldown: Minimum seconds between two announcements
            debounce_frames: Frames an issue must persist before it is announced
            clock: Time source in seconds
        """
        self.cooldown = cooldown
        self.debounce_frames = debounce_frames
        self._clock = clock
        self._last_time = None
        self._last_message = None
        self._last_issue = None
        self._issue_persist_count = 0

    def select(self, record: Optional[FeedbackRecord]) -> Optional[str]:
        """Return the message to announce for this record, or None to stay quiet."""
        if record is None or not record.messages:
            return None

        issue_messages = [m for m in record.messages if m.severity is not None and m.type != "success"]
        rep_messages = [m for m in record.messages if m.type == "success" and m.severity is not None]
        if rep_messages:
            # Rep announcements skip the cooldown and debounce
            return self._announce(rep_messages[0].text, force=True)

        if issue_messages:
            issue = issue_messages[0].text
            if issue == self._last_issue:
                self._issue_persist_count += 1
            else:
                self._issue_persist_count = 1
                self._last_issue = issue
            if self._issue_persist_count < self.debounce_frames:
                return None
            return self._announce(issue)

        self._issue_persist_count = 0
        self._last_issue = None
        return self._announce(record.messages[0].text)

    def _announce(self, message: str, force: bool = False) -> Optional[str]:
        now = self._clock()
        if not force:
            if self._last_time is not None and now - self._last_time < self.cooldown:
                return None
            # Only speak if the message changes
            if message == self._last_message:
                return None
        self._last_message = message
        self._last_time = now
        return message

    def reset(self) -> None:
        self._last_time = None
        self._last_message = None
        self._last_issue = None
        self._issue_persist_count = 0

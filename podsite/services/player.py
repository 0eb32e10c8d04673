"""Playback session state for the interactive transcript player."""

from typing import Optional, Sequence

from ..logging import get_logger
from ..models import TranscriptSegment
from .transcript_sync import (
    TranscriptTimeline,
    parse_deep_link,
    seek_to,
    shareable_link,
)

logger = get_logger(__name__)

class PlaybackSession:
    """
    Listener-side player state driven by audio time updates.

    The session owns no audio element. Callers feed it time updates with
    ``tick`` and apply the seeks it reports; it tracks the current position,
    the play state, the active segment and the page URL.
    """

    def __init__(self, segments: Sequence[TranscriptSegment],
                 duration: Optional[float] = None, url: str = ""):
        self.timeline = TranscriptTimeline(segments)
        self.duration = duration
        self.url = url
        self.current_time = 0.0
        self.playing = False
        self.active_index: Optional[int] = None

    @property
    def segments(self):
        return self.timeline.segments

    @property
    def progress(self) -> float:
        """Fraction of the episode played, 0 when the duration is unknown."""
        if not self.duration:
            return 0.0
        return min(max(self.current_time / self.duration, 0.0), 1.0)

    def set_duration(self, duration: Optional[float]) -> None:
        """Record the duration once audio metadata has loaded."""
        self.duration = duration

    def clamp(self, time: float) -> float:
        """Restrict a requested position to the playable range."""
        time = max(time, 0.0)
        if self.duration is not None:
            time = min(time, self.duration)
        return time

    def load(self, url: str) -> Optional[float]:
        """
        Apply a deep link from the page URL.

        Args:
            url: The page URL, possibly carrying a ``t`` parameter.

        Returns:
            Optional[float]: The position seeked to, or None if the URL has no
                usable time.
        """
        self.url = url
        requested = parse_deep_link(url)
        if requested is None:
            return None
        position = self.clamp(requested)
        if position != requested:
            logger.debug("deep_link_clamped", requested=requested, position=position)
        self.seek(position)
        return position

    def seek(self, time: float) -> Optional[int]:
        """Move the playback position and refresh the active segment."""
        self.current_time = time
        return self._refresh()

    def tick(self, current_time: float) -> Optional[int]:
        """
        Handle an audio time update.

        Returns the new active index when it changed, which is the signal to
        scroll the transcript, otherwise None.
        """
        self.current_time = current_time
        return self._refresh()

    def _refresh(self) -> Optional[int]:
        index = self.timeline.active_index(self.current_time)
        if index == self.active_index:
            return None
        self.active_index = index
        return index

    def play(self) -> None:
        self.playing = True

    def pause(self) -> None:
        self.playing = False

    def toggle(self) -> bool:
        """Flip between playing and paused, returning the new state."""
        self.playing = not self.playing
        return self.playing

    def click(self, index: int) -> Optional[str]:
        """
        Jump to a segment, start playback and rewrite the page URL.

        Returns:
            Optional[str]: The updated page URL, or None when the segment has
                no start time.
        """
        segment = self.segments[index]
        position = seek_to(segment)
        if position is None:
            return None
        self.seek(position)
        if not self.playing:
            self.play()
        self.url = shareable_link(self.url, position)
        return self.url

    def share(self, index: int) -> Optional[str]:
        """Shareable link to a segment's start, or None if it is untimed."""
        position = seek_to(self.segments[index])
        if position is None:
            return None
        return shareable_link(self.url, position)

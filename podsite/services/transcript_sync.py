"""Transcript/audio synchronization.

Maps a continuously advancing playback clock onto an ordered list of
transcript segments, and converts between segments, playback times and
deep-link URLs.

A segment with both a start and an end time covers ``[start, end)``. A
segment with only a start time covers everything from its start up to the
start of the next segment in display order; when it is the last segment, or
the next segment has no start time, the range is open ended. Segments without
a start time are never active. When ranges overlap, the earliest segment in
display order wins.
"""

import math
from bisect import bisect_left, bisect_right
from typing import List, Optional, Sequence
from urllib.parse import parse_qs, parse_qsl, urlencode, urlsplit, urlunsplit

from ..models import TranscriptSegment

# Query parameter carrying the playback position in seconds
TIME_PARAM = "t"

def _effective_end(segments: Sequence[TranscriptSegment], index: int) -> Optional[float]:
    """Exclusive upper bound of a segment's range, or None if it is inert."""
    segment = segments[index]
    if segment.start_time is None:
        return None
    if segment.end_time is not None:
        return segment.end_time
    if index + 1 < len(segments):
        next_start = segments[index + 1].start_time
        if next_start is not None:
            return next_start
    return math.inf

def active_segment(current_time: float, segments: Sequence[TranscriptSegment]) -> Optional[int]:
    """
    Find the segment that is playing at ``current_time``.

    Args:
        current_time: Playback position in seconds.
        segments: Segments of one episode in display order.

    Returns:
        Optional[int]: Index of the first matching segment, or None.
    """
    for index, segment in enumerate(segments):
        if segment.start_time is None or current_time < segment.start_time:
            continue
        if current_time < _effective_end(segments, index):
            return index
    return None

class TranscriptTimeline:
    """
    Precomputed lookup over a segment list.

    Gives the same answers as ``active_segment`` in logarithmic time. Timed
    segments are kept in display order, where start times are non-decreasing,
    so the candidates for time ``t`` are a prefix found by binary search. A
    running maximum of effective end times then locates the first candidate
    whose range extends past ``t``.
    """

    def __init__(self, segments: Sequence[TranscriptSegment]):
        self.segments: List[TranscriptSegment] = list(segments)
        self._indices: List[int] = []
        self._starts: List[float] = []
        self._running_end: List[float] = []

        running = -math.inf
        for index, segment in enumerate(self.segments):
            end = _effective_end(self.segments, index)
            if end is None:
                continue
            running = max(running, end)
            self._indices.append(index)
            self._starts.append(segment.start_time)
            self._running_end.append(running)

    def __len__(self) -> int:
        return len(self.segments)

    def active_index(self, current_time: float) -> Optional[int]:
        """Index of the active segment at ``current_time``, or None."""
        if math.isnan(current_time):
            return None
        candidates = bisect_right(self._starts, current_time)
        if candidates == 0:
            return None
        position = bisect_right(self._running_end, current_time, 0, candidates)
        if position >= candidates:
            return None
        return self._indices[position]

    def active(self, current_time: float) -> Optional[TranscriptSegment]:
        """The active segment itself, or None."""
        index = self.active_index(current_time)
        return None if index is None else self.segments[index]

    def index_of(self, segment_id: str) -> Optional[int]:
        """Position of a segment by id."""
        for index, segment in enumerate(self.segments):
            if segment.id == segment_id:
                return index
        return None

    def first_timed_index(self, after: float = -math.inf) -> Optional[int]:
        """First segment whose start time is at or after ``after``."""
        position = bisect_left(self._starts, after)
        if position >= len(self._indices):
            return None
        return self._indices[position]

def seek_to(segment: TranscriptSegment) -> Optional[float]:
    """Playback time to jump to when a segment is selected."""
    return segment.start_time

def shareable_link(base_url: str, time: float) -> str:
    """
    Build a URL that resumes playback at ``time``.

    The ``t`` query parameter is set (replacing any existing value) to the
    time with one decimal place; other parameters and the fragment are kept.
    """
    parts = urlsplit(base_url)
    query = [(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True)
             if key != TIME_PARAM]
    query.append((TIME_PARAM, f"{time:.1f}"))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

def parse_time_value(value: Optional[str]) -> Optional[float]:
    """Parse a raw ``t`` value; anything unusable yields None."""
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except (AttributeError, ValueError):
        return None
    if not math.isfinite(seconds):
        return None
    return seconds

def parse_deep_link(url: str) -> Optional[float]:
    """Extract the playback time from a deep-link URL, or None."""
    try:
        query = parse_qs(urlsplit(url).query)
    except ValueError:
        return None
    values = query.get(TIME_PARAM)
    if not values:
        return None
    return parse_time_value(values[0])

def format_timestamp(seconds: Optional[float]) -> str:
    """Format seconds as ``m:ss`` for display."""
    if seconds is None or not math.isfinite(seconds) or seconds < 0:
        seconds = 0
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}:{secs:02d}"

"""Domain models for the PodSite package."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

class ValidationError(ValueError):
    """Raised when user supplied input is rejected before any side effect."""
    pass

class InvalidTransitionError(Exception):
    """Raised when a status change is not one of the defined transitions."""
    pass

def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)

def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)

def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)

def normalize_email(email: Any) -> str:
    """Lower-case and trim an email address, rejecting obviously invalid input."""
    if not isinstance(email, str) or "@" not in email:
        raise ValidationError("Please provide a valid email address")
    normalized = email.strip().lower()
    if not normalized or normalized.startswith("@") or normalized.endswith("@"):
        raise ValidationError("Please provide a valid email address")
    return normalized

@dataclass
class TranscriptSegment:
    """One timed or untimed unit of transcript text."""
    id: str
    episode_id: str
    content: str
    display_order: int
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    reference_link: Optional[str] = None
    reference_title: Optional[str] = None

    # Fields an editor may change; everything else is fixed at creation
    EDITABLE_FIELDS = ("content", "reference_link", "reference_title")

    @property
    def has_timestamp(self) -> bool:
        """Whether the segment can be clicked to seek."""
        return self.start_time is not None

    def to_dict(self) -> dict:
        """Convert segment to dictionary format."""
        return {
            "id": self.id,
            "episode_id": self.episode_id,
            "content": self.content,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "reference_link": self.reference_link,
            "reference_title": self.reference_title,
            "display_order": self.display_order,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'TranscriptSegment':
        """Create segment from dictionary format."""
        return cls(
            id=str(data["id"]),
            episode_id=str(data["episode_id"]),
            content=data.get("content") or "",
            display_order=int(data["display_order"]),
            start_time=_optional_float(data.get("start_time")),
            end_time=_optional_float(data.get("end_time")),
            reference_link=data.get("reference_link") or None,
            reference_title=data.get("reference_title") or None,
        )

@dataclass
class Episode:
    """A recorded broadcast."""
    id: str
    title: str
    audio_url: str
    summary: Optional[str] = None
    cover_image_url: Optional[str] = None
    is_published: bool = False
    published_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert episode to dictionary format."""
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "audio_url": self.audio_url,
            "cover_image_url": self.cover_image_url,
            "is_published": self.is_published,
            "published_at": _format_datetime(self.published_at),
            "duration_seconds": self.duration_seconds,
            "created_at": _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Episode':
        """Create episode from dictionary format."""
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            audio_url=data.get("audio_url") or "",
            summary=data.get("summary"),
            cover_image_url=data.get("cover_image_url"),
            is_published=bool(data.get("is_published", False)),
            published_at=_parse_datetime(data.get("published_at")),
            duration_seconds=_optional_float(data.get("duration_seconds")),
            created_at=_parse_datetime(data.get("created_at")),
        )

class SubscriberStatus(str, Enum):
    """Lifecycle status of a subscriber."""
    ACTIVE = "active"
    UNSUBSCRIBED = "unsubscribed"
    BANNED = "banned"

    def can_transition_to(self, target: 'SubscriberStatus') -> bool:
        """Whether moving from this status to ``target`` is allowed."""
        if self == target:
            return True
        return target in _STATUS_TRANSITIONS[self]

    @classmethod
    def parse(cls, value: Any) -> 'SubscriberStatus':
        """Parse a status string, raising ValidationError for unknown values."""
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Unknown subscriber status: {value}")

_STATUS_TRANSITIONS = {
    SubscriberStatus.ACTIVE: {SubscriberStatus.UNSUBSCRIBED, SubscriberStatus.BANNED},
    SubscriberStatus.UNSUBSCRIBED: {SubscriberStatus.ACTIVE, SubscriberStatus.BANNED},
    SubscriberStatus.BANNED: {SubscriberStatus.ACTIVE},
}

def check_status_transition(current: SubscriberStatus, target: SubscriberStatus) -> None:
    """Raise InvalidTransitionError unless ``current`` may move to ``target``."""
    if not current.can_transition_to(target):
        raise InvalidTransitionError(
            f"Cannot change subscriber status from {current.value} to {target.value}"
        )

@dataclass
class Subscriber:
    """An email recipient."""
    id: str
    email: str
    notifications_enabled: bool = False
    status: SubscriberStatus = SubscriberStatus.ACTIVE
    subscribed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def receives_broadcasts(self) -> bool:
        """Only active subscribers with notifications enabled are emailed."""
        return self.status == SubscriberStatus.ACTIVE and self.notifications_enabled

    def to_dict(self) -> dict:
        """Convert subscriber to dictionary format."""
        return {
            "id": self.id,
            "email": self.email,
            "notifications_enabled": self.notifications_enabled,
            "status": self.status.value,
            "subscribed_at": _format_datetime(self.subscribed_at),
            "updated_at": _format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Subscriber':
        """Create subscriber from dictionary format."""
        return cls(
            id=str(data["id"]),
            email=data["email"],
            notifications_enabled=bool(data.get("notifications_enabled", False)),
            status=SubscriberStatus(data.get("status") or "active"),
            subscribed_at=_parse_datetime(data.get("subscribed_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )

@dataclass
class InboxMessage:
    """An anonymous note left by a listener."""
    id: str
    message: str
    created_at: Optional[datetime] = None

    # Longest message a listener may submit
    MAX_LENGTH = 1000

    def to_dict(self) -> dict:
        """Convert message to dictionary format."""
        return {
            "id": self.id,
            "message": self.message,
            "created_at": _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'InboxMessage':
        """Create message from dictionary format."""
        return cls(
            id=str(data["id"]),
            message=data.get("message") or "",
            created_at=_parse_datetime(data.get("created_at")),
        )

@dataclass
class User:
    """An authenticated admin user."""
    id: str
    email: Optional[str] = None

@dataclass
class BroadcastResult:
    """Outcome of sending one email to every eligible subscriber."""
    sent_count: int = 0
    error_count: int = 0
    total_subscribers: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """A batch fails only when every send failed."""
        return not (self.error_count > 0 and self.sent_count == 0)

    @property
    def partial_errors(self) -> List[str]:
        """A small sample of error messages for reporting."""
        return self.errors[:3]

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to the API response format."""
        data = {
            "success": self.success,
            "sentCount": self.sent_count,
            "errorCount": self.error_count,
            "totalSubscribers": self.total_subscribers,
        }
        if not self.success:
            data["error"] = f"All emails failed. First error: {self.errors[0] if self.errors else 'Unknown'}"
        elif self.error_count > 0:
            data["partialErrors"] = self.partial_errors
        return data

"""Persistence for episodes, transcripts and subscribers."""

import abc
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests
import yaml

from ..config import StoreConfig
from ..logging import get_logger
from ..models import (
    Episode,
    InboxMessage,
    InvalidTransitionError,
    Subscriber,
    SubscriberStatus,
    TranscriptSegment,
    ValidationError,
    check_status_transition,
    normalize_email,
    utcnow,
)

logger = get_logger(__name__)

class StoreError(Exception):
    """Base exception for store errors."""
    pass

class StoreUnavailableError(StoreError):
    """Raised when the backing database cannot be reached."""
    pass

class NotFoundError(StoreError):
    """Raised when a referenced record does not exist."""
    pass

class SubscriberBannedError(StoreError):
    """Raised when a banned email tries to subscribe again."""
    pass

def _check_segment_update(field: str, value: Any) -> Any:
    """Validate a single-field segment edit and normalize its value."""
    if field not in TranscriptSegment.EDITABLE_FIELDS:
        raise ValidationError(f"Field cannot be edited: {field}")
    if field == "content":
        if not isinstance(value, str):
            raise ValidationError("Segment content must be text")
        return value
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be text")
    # Clearing a reference stores NULL rather than an empty string
    return value.strip() or None

def _check_inbox_message(message: Any) -> str:
    """Trim a listener message, rejecting empty or oversized input."""
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("Message is required")
    message = message.strip()
    if len(message) > InboxMessage.MAX_LENGTH:
        raise ValidationError(f"Message must be at most {InboxMessage.MAX_LENGTH} characters")
    return message

def _sort_time(value: Optional[datetime]) -> float:
    return value.timestamp() if value else float("-inf")

class Store(abc.ABC):
    """Abstract interface to the backing database."""

    @abc.abstractmethod
    def get_episode(self, episode_id: str) -> Optional[Episode]:
        """
        Fetch one episode, published or not.

        Returns:
            Optional[Episode]: The episode, or None if it does not exist

        Raises:
            StoreError: If the lookup fails
        """
        pass

    @abc.abstractmethod
    def list_published_episodes(self) -> List[Episode]:
        """Published episodes, most recently published first."""
        pass

    @abc.abstractmethod
    def list_episodes(self) -> List[Episode]:
        """All episodes including drafts, newest first."""
        pass

    @abc.abstractmethod
    def get_transcript(self, episode_id: str) -> List[TranscriptSegment]:
        """Segments of an episode ordered by display order."""
        pass

    @abc.abstractmethod
    def update_segment(self, segment_id: str, field: str, value: Any) -> TranscriptSegment:
        """
        Change one editable field of a transcript segment.

        Args:
            segment_id: Segment to update
            field: One of TranscriptSegment.EDITABLE_FIELDS
            value: New value

        Returns:
            TranscriptSegment: The updated segment

        Raises:
            ValidationError: If the field is not editable
            NotFoundError: If the segment does not exist
        """
        pass

    @abc.abstractmethod
    def publish_episode(self, episode_id: str, published_at: Optional[datetime] = None) -> Episode:
        """
        Move an episode from draft to published.

        Raises:
            NotFoundError: If the episode does not exist
            InvalidTransitionError: If the episode is already published
        """
        pass

    @abc.abstractmethod
    def get_subscriber_by_email(self, email: str) -> Optional[Subscriber]:
        """Look up a subscriber by normalized email."""
        pass

    @abc.abstractmethod
    def upsert_subscriber(self, email: str, notifications_enabled: bool) -> Tuple[Subscriber, bool]:
        """
        Create a subscriber or refresh an existing one.

        Existing subscribers get their notification preference updated and
        their status set back to active.

        Returns:
            Tuple[Subscriber, bool]: The subscriber and whether it was created

        Raises:
            ValidationError: If the email is malformed
            SubscriberBannedError: If the email is banned; nothing is changed
        """
        pass

    @abc.abstractmethod
    def list_subscribers(self,
                         status: Optional[SubscriberStatus] = None,
                         notifications_enabled: Optional[bool] = None) -> List[Subscriber]:
        """Subscribers matching the filters, newest first."""
        pass

    @abc.abstractmethod
    def set_subscriber_notifications(self, subscriber_id: str, enabled: bool) -> Subscriber:
        """Turn notifications on or off for a subscriber."""
        pass

    @abc.abstractmethod
    def set_subscriber_status(self, subscriber_id: str, status: SubscriberStatus) -> Subscriber:
        """
        Change a subscriber's status.

        Raises:
            NotFoundError: If the subscriber does not exist
            InvalidTransitionError: If the change is not an allowed transition
        """
        pass

    @abc.abstractmethod
    def delete_subscriber(self, subscriber_id: str) -> None:
        """Permanently remove a subscriber."""
        pass

    @abc.abstractmethod
    def count_subscribers(self,
                          status: Optional[SubscriberStatus] = None,
                          notifications_enabled: Optional[bool] = None) -> int:
        """Number of subscribers matching the filters."""
        pass

    @abc.abstractmethod
    def add_inbox_message(self, message: str) -> InboxMessage:
        """
        Store an anonymous listener message.

        Raises:
            ValidationError: If the message is empty or too long
        """
        pass

    @abc.abstractmethod
    def ping(self) -> None:
        """
        Check connectivity.

        Raises:
            StoreUnavailableError: If the database cannot be reached
        """
        pass

    def list_recipients(self) -> List[Subscriber]:
        """Subscribers eligible for broadcasts."""
        return self.list_subscribers(status=SubscriberStatus.ACTIVE, notifications_enabled=True)

    def get_published_episode(self, episode_id: str) -> Optional[Episode]:
        """An episode only if listeners may see it."""
        episode = self.get_episode(episode_id)
        if episode is None or not episode.is_published:
            return None
        return episode

class InMemoryStore(Store):
    """Dictionary backed store for development and testing."""

    def __init__(self):
        """Initialize an empty store."""
        self.episodes: Dict[str, Episode] = {}
        self.segments: Dict[str, TranscriptSegment] = {}
        self.subscribers: Dict[str, Subscriber] = {}
        self.inbox: List[InboxMessage] = []
        self._lock = threading.Lock()

    def add_episode(self, episode: Episode) -> Episode:
        """Insert an episode, stamping its creation time."""
        with self._lock:
            if episode.created_at is None:
                episode.created_at = utcnow()
            self.episodes[episode.id] = episode
        return episode

    def add_segments(self, segments: List[TranscriptSegment]) -> None:
        """Bulk insert transcript segments."""
        with self._lock:
            for segment in segments:
                self.segments[segment.id] = segment

    def add_subscriber(self, subscriber: Subscriber) -> Subscriber:
        """Insert a subscriber record as-is."""
        with self._lock:
            subscriber.email = normalize_email(subscriber.email)
            if subscriber.subscribed_at is None:
                subscriber.subscribed_at = utcnow()
            self.subscribers[subscriber.id] = subscriber
        return subscriber

    def seed(self, data: Dict[str, Any]) -> None:
        """Load episodes, transcript segments and subscribers from plain data."""
        for row in data.get("episodes", []):
            self.add_episode(Episode.from_dict(row))
        self.add_segments([TranscriptSegment.from_dict(row) for row in data.get("transcript_nodes", [])])
        for row in data.get("subscribers", []):
            self.add_subscriber(Subscriber.from_dict(row))
        logger.info("store_seeded",
                    episodes=len(self.episodes),
                    segments=len(self.segments),
                    subscribers=len(self.subscribers))

    def seed_from_file(self, path: str) -> None:
        """Load seed data from a YAML (or JSON) file."""
        with open(path, "r") as f:
            self.seed(yaml.safe_load(f) or {})

    def get_episode(self, episode_id: str) -> Optional[Episode]:
        return self.episodes.get(episode_id)

    def list_published_episodes(self) -> List[Episode]:
        published = [e for e in self.episodes.values() if e.is_published]
        return sorted(published, key=lambda e: _sort_time(e.published_at), reverse=True)

    def list_episodes(self) -> List[Episode]:
        return sorted(self.episodes.values(), key=lambda e: _sort_time(e.created_at), reverse=True)

    def get_transcript(self, episode_id: str) -> List[TranscriptSegment]:
        segments = [s for s in self.segments.values() if s.episode_id == episode_id]
        return sorted(segments, key=lambda s: s.display_order)

    def update_segment(self, segment_id: str, field: str, value: Any) -> TranscriptSegment:
        value = _check_segment_update(field, value)
        with self._lock:
            segment = self.segments.get(segment_id)
            if segment is None:
                raise NotFoundError(f"Segment not found: {segment_id}")
            setattr(segment, field, value)
        logger.debug("segment_updated", segment_id=segment_id, field=field)
        return segment

    def publish_episode(self, episode_id: str, published_at: Optional[datetime] = None) -> Episode:
        with self._lock:
            episode = self.episodes.get(episode_id)
            if episode is None:
                raise NotFoundError(f"Episode not found: {episode_id}")
            if episode.is_published:
                raise InvalidTransitionError(f"Episode already published: {episode_id}")
            episode.is_published = True
            episode.published_at = published_at or utcnow()
        return episode

    def get_subscriber_by_email(self, email: str) -> Optional[Subscriber]:
        email = normalize_email(email)
        for subscriber in self.subscribers.values():
            if subscriber.email == email:
                return subscriber
        return None

    def upsert_subscriber(self, email: str, notifications_enabled: bool) -> Tuple[Subscriber, bool]:
        email = normalize_email(email)
        with self._lock:
            existing = next((s for s in self.subscribers.values() if s.email == email), None)
            if existing is not None:
                if existing.status == SubscriberStatus.BANNED:
                    raise SubscriberBannedError("This email has been blocked")
                existing.notifications_enabled = bool(notifications_enabled)
                existing.status = SubscriberStatus.ACTIVE
                existing.updated_at = utcnow()
                return existing, False

            subscriber = Subscriber(
                id=str(uuid.uuid4()),
                email=email,
                notifications_enabled=bool(notifications_enabled),
                status=SubscriberStatus.ACTIVE,
                subscribed_at=utcnow(),
            )
            self.subscribers[subscriber.id] = subscriber
            return subscriber, True

    def list_subscribers(self,
                         status: Optional[SubscriberStatus] = None,
                         notifications_enabled: Optional[bool] = None) -> List[Subscriber]:
        result = [
            s for s in self.subscribers.values()
            if (status is None or s.status == status)
            and (notifications_enabled is None or s.notifications_enabled == notifications_enabled)
        ]
        return sorted(result, key=lambda s: _sort_time(s.subscribed_at), reverse=True)

    def _get_subscriber(self, subscriber_id: str) -> Subscriber:
        subscriber = self.subscribers.get(subscriber_id)
        if subscriber is None:
            raise NotFoundError(f"Subscriber not found: {subscriber_id}")
        return subscriber

    def set_subscriber_notifications(self, subscriber_id: str, enabled: bool) -> Subscriber:
        with self._lock:
            subscriber = self._get_subscriber(subscriber_id)
            subscriber.notifications_enabled = bool(enabled)
            subscriber.updated_at = utcnow()
        return subscriber

    def set_subscriber_status(self, subscriber_id: str, status: SubscriberStatus) -> Subscriber:
        with self._lock:
            subscriber = self._get_subscriber(subscriber_id)
            check_status_transition(subscriber.status, status)
            subscriber.status = status
            subscriber.updated_at = utcnow()
        return subscriber

    def delete_subscriber(self, subscriber_id: str) -> None:
        with self._lock:
            self._get_subscriber(subscriber_id)
            del self.subscribers[subscriber_id]

    def count_subscribers(self,
                          status: Optional[SubscriberStatus] = None,
                          notifications_enabled: Optional[bool] = None) -> int:
        return len(self.list_subscribers(status, notifications_enabled))

    def add_inbox_message(self, message: str) -> InboxMessage:
        entry = InboxMessage(id=str(uuid.uuid4()), message=_check_inbox_message(message), created_at=utcnow())
        with self._lock:
            self.inbox.append(entry)
        return entry

    def ping(self) -> None:
        return None

class SupabaseStore(Store):
    """Store backed by a Supabase project's PostgREST API."""

    EPISODES = "episodes"
    SEGMENTS = "transcript_nodes"
    SUBSCRIBERS = "subscribers"
    INBOX = "inbox"

    def __init__(self, config: StoreConfig, session: Optional[requests.Session] = None):
        """Initialize the REST client."""
        if not config.url or not config.api_key:
            raise ValueError("Supabase store requires url and an API key")
        if not config.service_role_key:
            logger.warning("supabase_service_role_key_missing",
                           message="Admin operations will use the anon key with reduced permissions")

        self.base_url = f"{config.url.rstrip('/')}/rest/v1"
        self.timeout = config.timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "apikey": config.api_key,
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
        })
        logger.info("supabase_store_initialized", url=config.url)

    def _request(self, method: str, table: str,
                 params: Optional[Dict[str, str]] = None,
                 json: Any = None,
                 prefer: Optional[str] = None) -> requests.Response:
        """Send a request to PostgREST and translate failures into store errors."""
        headers = {"Prefer": prefer} if prefer else None
        url = f"{self.base_url}/{table}"
        try:
            response = self.session.request(
                method, url, params=params, json=json, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error("store_unreachable", method=method, table=table, error=str(e))
            raise StoreUnavailableError(f"Database unreachable: {str(e)}")

        if response.status_code >= 500:
            logger.error("store_server_error", method=method, table=table, status=response.status_code)
            raise StoreUnavailableError(f"Database error {response.status_code}")
        if response.status_code >= 400:
            message = self._error_message(response)
            logger.error("store_request_failed", method=method, table=table,
                         status=response.status_code, error=message)
            raise StoreError(message)
        return response

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            return body.get("message") or body.get("error") or str(body)
        return str(body)

    def _select(self, table: str, params: Dict[str, str]) -> List[dict]:
        params = dict(params)
        params.setdefault("select", "*")
        return self._request("GET", table, params=params).json()

    def _update(self, table: str, record_id: str, values: Dict[str, Any],
                extra: Optional[Dict[str, str]] = None) -> List[dict]:
        params = {"id": f"eq.{record_id}"}
        if extra:
            params.update(extra)
        response = self._request("PATCH", table, params=params, json=values,
                                 prefer="return=representation")
        return response.json()

    @staticmethod
    def _subscriber_filters(status: Optional[SubscriberStatus],
                            notifications_enabled: Optional[bool]) -> Dict[str, str]:
        params = {}
        if status is not None:
            params["status"] = f"eq.{status.value}"
        if notifications_enabled is not None:
            params["notifications_enabled"] = f"eq.{str(notifications_enabled).lower()}"
        return params

    def get_episode(self, episode_id: str) -> Optional[Episode]:
        rows = self._select(self.EPISODES, {"id": f"eq.{episode_id}"})
        return Episode.from_dict(rows[0]) if rows else None

    def list_published_episodes(self) -> List[Episode]:
        rows = self._select(self.EPISODES, {
            "is_published": "eq.true",
            "order": "published_at.desc",
        })
        return [Episode.from_dict(row) for row in rows]

    def list_episodes(self) -> List[Episode]:
        rows = self._select(self.EPISODES, {"order": "created_at.desc"})
        return [Episode.from_dict(row) for row in rows]

    def get_transcript(self, episode_id: str) -> List[TranscriptSegment]:
        rows = self._select(self.SEGMENTS, {
            "episode_id": f"eq.{episode_id}",
            "order": "display_order.asc",
        })
        return [TranscriptSegment.from_dict(row) for row in rows]

    def update_segment(self, segment_id: str, field: str, value: Any) -> TranscriptSegment:
        value = _check_segment_update(field, value)
        rows = self._update(self.SEGMENTS, segment_id, {field: value})
        if not rows:
            raise NotFoundError(f"Segment not found: {segment_id}")
        return TranscriptSegment.from_dict(rows[0])

    def publish_episode(self, episode_id: str, published_at: Optional[datetime] = None) -> Episode:
        episode = self.get_episode(episode_id)
        if episode is None:
            raise NotFoundError(f"Episode not found: {episode_id}")
        if episode.is_published:
            raise InvalidTransitionError(f"Episode already published: {episode_id}")

        values = {"is_published": True, "published_at": (published_at or utcnow()).isoformat()}
        # Guard on the draft state so a concurrent publish cannot happen twice
        rows = self._update(self.EPISODES, episode_id, values, extra={"is_published": "eq.false"})
        if not rows:
            raise InvalidTransitionError(f"Episode already published: {episode_id}")
        return Episode.from_dict(rows[0])

    def get_subscriber_by_email(self, email: str) -> Optional[Subscriber]:
        rows = self._select(self.SUBSCRIBERS, {"email": f"eq.{normalize_email(email)}"})
        return Subscriber.from_dict(rows[0]) if rows else None

    def upsert_subscriber(self, email: str, notifications_enabled: bool) -> Tuple[Subscriber, bool]:
        email = normalize_email(email)
        existing = self.get_subscriber_by_email(email)
        if existing is not None:
            if existing.status == SubscriberStatus.BANNED:
                raise SubscriberBannedError("This email has been blocked")
            rows = self._update(self.SUBSCRIBERS, existing.id, {
                "notifications_enabled": bool(notifications_enabled),
                "status": SubscriberStatus.ACTIVE.value,
                "updated_at": utcnow().isoformat(),
            })
            return Subscriber.from_dict(rows[0]) if rows else existing, False

        response = self._request("POST", self.SUBSCRIBERS, json={
            "email": email,
            "notifications_enabled": bool(notifications_enabled),
            "status": SubscriberStatus.ACTIVE.value,
        }, prefer="return=representation")
        rows = response.json()
        return Subscriber.from_dict(rows[0]), True

    def list_subscribers(self,
                         status: Optional[SubscriberStatus] = None,
                         notifications_enabled: Optional[bool] = None) -> List[Subscriber]:
        params = self._subscriber_filters(status, notifications_enabled)
        params["order"] = "subscribed_at.desc"
        return [Subscriber.from_dict(row) for row in self._select(self.SUBSCRIBERS, params)]

    def _get_subscriber(self, subscriber_id: str) -> Subscriber:
        rows = self._select(self.SUBSCRIBERS, {"id": f"eq.{subscriber_id}"})
        if not rows:
            raise NotFoundError(f"Subscriber not found: {subscriber_id}")
        return Subscriber.from_dict(rows[0])

    def set_subscriber_notifications(self, subscriber_id: str, enabled: bool) -> Subscriber:
        rows = self._update(self.SUBSCRIBERS, subscriber_id, {
            "notifications_enabled": bool(enabled),
            "updated_at": utcnow().isoformat(),
        })
        if not rows:
            raise NotFoundError(f"Subscriber not found: {subscriber_id}")
        return Subscriber.from_dict(rows[0])

    def set_subscriber_status(self, subscriber_id: str, status: SubscriberStatus) -> Subscriber:
        subscriber = self._get_subscriber(subscriber_id)
        check_status_transition(subscriber.status, status)
        if subscriber.status == status:
            return subscriber
        rows = self._update(self.SUBSCRIBERS, subscriber_id, {
            "status": status.value,
            "updated_at": utcnow().isoformat(),
        }, extra={"status": f"eq.{subscriber.status.value}"})
        if not rows:
            raise InvalidTransitionError(f"Subscriber status changed concurrently: {subscriber_id}")
        return Subscriber.from_dict(rows[0])

    def delete_subscriber(self, subscriber_id: str) -> None:
        response = self._request("DELETE", self.SUBSCRIBERS,
                                 params={"id": f"eq.{subscriber_id}"},
                                 prefer="return=representation")
        if not response.json():
            raise NotFoundError(f"Subscriber not found: {subscriber_id}")

    def count_subscribers(self,
                          status: Optional[SubscriberStatus] = None,
                          notifications_enabled: Optional[bool] = None) -> int:
        params = self._subscriber_filters(status, notifications_enabled)
        params["select"] = "id"
        response = self._request("HEAD", self.SUBSCRIBERS, params=params, prefer="count=exact")
        # Content-Range looks like "0-24/25" or "*/0"
        content_range = response.headers.get("Content-Range", "")
        total = content_range.rpartition("/")[2]
        try:
            return int(total)
        except ValueError:
            raise StoreError(f"Unexpected Content-Range header: {content_range!r}")

    def add_inbox_message(self, message: str) -> InboxMessage:
        response = self._request("POST", self.INBOX, json={"message": _check_inbox_message(message)},
                                 prefer="return=representation")
        return InboxMessage.from_dict(response.json()[0])

    def ping(self) -> None:
        self.count_subscribers()

def create_store(config: StoreConfig) -> Store:
    """Create the store selected by configuration."""
    if config.provider == "memory":
        store = InMemoryStore()
        if config.seed_path:
            store.seed_from_file(config.seed_path)
    elif config.provider == "supabase":
        store = SupabaseStore(config)
    else:
        raise ValueError(f"Unsupported store provider: {config.provider}")

    logger.info("store_initialized", provider=config.provider)
    return store

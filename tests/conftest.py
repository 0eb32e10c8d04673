"""Common fixtures for testing."""

from datetime import datetime, timezone

import pytest
from unittest.mock import MagicMock

from podsite.config import Config, AuthConfig, EmailConfig, SiteConfig, StoreConfig, WebServerConfig
from podsite.models import Episode, Subscriber, SubscriberStatus, TranscriptSegment
from podsite.services.notifier import EmailClient, Notifier
from podsite.services.rate_limiter import RateLimiter
from podsite.services.store import InMemoryStore
from podsite.services.web_server import WebServer

ADMIN_TOKEN = "admin-token"

def make_segment(index, start=None, end=None, episode_id="ep-1", **kwargs):
    """Build a transcript segment with a predictable id and display order."""
    return TranscriptSegment(
        id=f"seg-{index}",
        episode_id=episode_id,
        content=kwargs.pop("content", f"Segment {index}"),
        display_order=index,
        start_time=start,
        end_time=end,
        **kwargs
    )

@pytest.fixture
def config():
    """Configuration using the in-memory store and a static admin token."""
    return Config(
        site=SiteConfig(name="Test Pod", url="https://pod.example.com"),
        store=StoreConfig(provider="memory"),
        email=EmailConfig(api_key="re_test_key", send_interval=0.6),
        auth=AuthConfig(provider="static", tokens={ADMIN_TOKEN: "admin@example.com"}),
        web_server=WebServerConfig(host="127.0.0.1", port=0),
    )

@pytest.fixture
def store():
    """An in-memory store with one published episode, one draft and two subscribers."""
    store = InMemoryStore()
    store.add_episode(Episode(
        id="ep-1", title="Pilot", audio_url="https://cdn.example.com/pilot.mp3",
        summary="The first one", is_published=True,
        published_at=datetime(2026, 1, 5, tzinfo=timezone.utc), duration_seconds=30.0,
        created_at=datetime(2026, 1, 4, tzinfo=timezone.utc),
    ))
    store.add_episode(Episode(
        id="ep-0", title="Teaser", audio_url="https://cdn.example.com/teaser.mp3",
        is_published=True, published_at=datetime(2025, 12, 1, tzinfo=timezone.utc),
        created_at=datetime(2025, 11, 30, tzinfo=timezone.utc),
    ))
    store.add_episode(Episode(
        id="ep-2", title="Draft", audio_url="https://cdn.example.com/draft.mp3",
        created_at=datetime(2026, 1, 10, tzinfo=timezone.utc),
    ))
    store.add_segments([
        make_segment(1, 0.0, 5.0),
        make_segment(2, 5.0, 10.0),
        make_segment(3, 10.0),
        make_segment(4),
    ])
    store.add_subscriber(Subscriber(
        id="sub-1", email="fan@example.com", notifications_enabled=True,
        subscribed_at=datetime(2026, 1, 6, tzinfo=timezone.utc),
    ))
    store.add_subscriber(Subscriber(
        id="sub-2", email="troll@example.com", notifications_enabled=True,
        status=SubscriberStatus.BANNED, subscribed_at=datetime(2026, 1, 7, tzinfo=timezone.utc),
    ))
    return store

@pytest.fixture
def mock_message_broker():
    """Mock the message broker."""
    mock_broker = MagicMock()
    mock_broker.subscribe = MagicMock()
    mock_broker.publish = MagicMock()
    mock_broker.start = MagicMock()
    mock_broker.stop = MagicMock()
    return mock_broker

@pytest.fixture
def mock_email_client():
    """Mock email client that accepts every send."""
    client = MagicMock(spec=EmailClient)
    client.send_email.return_value = "msg-id"
    return client

@pytest.fixture
def notifier(store, mock_email_client, config):
    """Notifier that never actually sleeps between sends."""
    return Notifier(store, mock_email_client, config, sleep=MagicMock())

@pytest.fixture
def web_server(config, store, mock_message_broker, notifier):
    """Web server wired to in-memory collaborators, not started."""
    return WebServer(
        config=config,
        message_broker=mock_message_broker,
        store=store,
        notifier=notifier,
        rate_limiter=RateLimiter(),
    )

"""Services module for PodSite."""

from .transcript_sync import (
    TranscriptTimeline,
    active_segment,
    parse_deep_link,
    seek_to,
    shareable_link,
)
from .player import PlaybackSession
from .rate_limiter import RateLimiter, check_rate_limit, get_client_ip
from .store import Store, InMemoryStore, SupabaseStore, create_store
from .notifier import Notifier, EmailClient, ResendEmailClient, create_email_client
from .auth import AuthProvider, StaticAuthProvider, SupabaseAuthProvider, create_auth_provider
from .message_broker import Message, MessageBroker, InMemoryMessageBroker, Topics
from .web_server import WebServer

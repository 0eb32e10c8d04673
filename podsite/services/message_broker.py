"""Message broker for decoupling request handling from follow-up side effects."""

import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional
from ..logging import get_logger

logger = get_logger(__name__)

class Message:
    """A message that can be sent through the message broker."""

    def __init__(self,
                 topic: str,
                 data: Any,
                 message_id: Optional[str] = None,
                 correlation_id: Optional[str] = None):
        """Initialize a message with topic and data."""
        self.topic = topic
        self.data = data
        self.message_id = message_id or str(uuid.uuid4())
        self.correlation_id = correlation_id

class MessageBroker(ABC):
    """Abstract base class for message brokers."""

    @abstractmethod
    def publish(self, message: Message) -> None:
        """Publish a message to a topic."""
        pass

    @abstractmethod
    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> None:
        """Subscribe to a topic with a callback function."""
        pass

    @abstractmethod
    def start(self) -> None:
        """Start the message broker."""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop the message broker."""
        pass

class InMemoryMessageBroker(MessageBroker):
    """In-process broker; callbacks run synchronously in the publishing thread."""

    def __init__(self):
        """Initialize the in-memory message broker."""
        self.subscribers: Dict[str, List[Callable[[Message], None]]] = {}
        self.running = False
        self._lock = threading.Lock()

    def publish(self, message: Message) -> None:
        """Publish a message to a topic."""
        if not self.running:
            logger.warning("message_broker_not_running", topic=message.topic)
            return

        logger.debug("publishing_message", topic=message.topic, message_id=message.message_id)
        with self._lock:
            callbacks = list(self.subscribers.get(message.topic, []))
        for callback in callbacks:
            try:
                callback(message)
            except Exception as e:
                logger.error("subscriber_callback_error", topic=message.topic, error=str(e))

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> None:
        """Subscribe to a topic with a callback function."""
        with self._lock:
            self.subscribers.setdefault(topic, []).append(callback)
        logger.debug("subscribed_to_topic", topic=topic)

    def start(self) -> None:
        """Start the message broker."""
        self.running = True
        logger.info("message_broker_started", broker_type="in_memory")

    def stop(self) -> None:
        """Stop the message broker."""
        self.running = False
        logger.info("message_broker_stopped", broker_type="in_memory")

# Topics used in the system
class Topics:
    """Standard topics used in the PodSite system."""
    SUBSCRIBER_CREATED = "subscriber.created"
    EPISODE_PUBLISHED = "episode.published"

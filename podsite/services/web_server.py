"""Web server for the PodSite API."""

import json
import re
import threading
from dataclasses import dataclass, field
from http.cookies import CookieError, SimpleCookie
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse

from ..config import Config
from ..logging import get_logger
from ..models import (
    Episode,
    InvalidTransitionError,
    SubscriberStatus,
    User,
    ValidationError,
    utcnow,
)
from .auth import AuthProvider, create_auth_provider
from .message_broker import Message, MessageBroker, Topics
from .notifier import EmailError, EmailNotConfiguredError, Notifier, create_email_client
from .player import PlaybackSession
from .rate_limiter import RateLimiter, get_client_ip, get_default_limiter
from .store import (
    NotFoundError,
    Store,
    StoreError,
    StoreUnavailableError,
    SubscriberBannedError,
    create_store,
)
from .transcript_sync import TIME_PARAM, parse_time_value

logger = get_logger(__name__)

Response = Tuple[int, Dict[str, Any]]

TOO_MANY_REQUESTS = "Too many requests. Please try again in a minute."
UNAUTHORIZED = "Unauthorized. Please log in as an admin."

@dataclass
class Request:
    """A parsed API request."""
    method: str
    path: str
    url: str = ""
    query: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)
    body: Dict[str, Any] = field(default_factory=dict)
    client_ip: str = "unknown"
    cookies: Dict[str, str] = field(default_factory=dict)
    user: Optional[User] = None

@dataclass
class Route:
    """Maps a method and path pattern to a WebServer endpoint."""
    method: str
    pattern: str
    endpoint: str
    admin: bool = False

    def __post_init__(self):
        self.regex = re.compile(f"^{self.pattern}$")

# Order matters: literal paths come before the parameterized ones they overlap
ROUTES = [
    Route("GET", "/api/episodes", "list_episodes"),
    Route("GET", "/api/episodes/latest", "latest_episode"),
    Route("GET", "/api/episodes/(?P<episode_id>[^/]+)", "episode_detail"),
    Route("GET", "/api/episodes/(?P<episode_id>[^/]+)/active", "active_segment"),
    Route("GET", "/api/episodes/(?P<episode_id>[^/]+)/share", "share_segment"),
    Route("POST", "/api/subscribe", "subscribe"),
    Route("POST", "/api/verify-subscriber", "verify_subscriber"),
    Route("GET", "/api/notifications/health", "health"),
    Route("GET", "/api/notifications", "get_notifications"),
    Route("POST", "/api/notifications", "set_notifications"),
    Route("GET", "/unsubscribe", "unsubscribe"),
    Route("POST", "/api/inbox", "submit_inbox_message"),
    Route("GET", "/api/admin/episodes", "admin_list_episodes", admin=True),
    Route("GET", "/api/admin/episodes/(?P<episode_id>[^/]+)", "admin_episode_detail", admin=True),
    Route("POST", "/api/admin/episodes/(?P<episode_id>[^/]+)/publish", "publish_episode", admin=True),
    Route("PATCH", "/api/admin/segments/(?P<segment_id>[^/]+)", "update_segment", admin=True),
    Route("GET", "/api/admin/subscribers", "admin_list_subscribers", admin=True),
    Route("POST", "/api/admin/subscribers/(?P<subscriber_id>[^/]+)/notifications",
          "admin_set_notifications", admin=True),
    Route("POST", "/api/admin/subscribers/(?P<subscriber_id>[^/]+)/status",
          "admin_set_status", admin=True),
    Route("DELETE", "/api/admin/subscribers/(?P<subscriber_id>[^/]+)", "admin_delete_subscriber", admin=True),
    Route("POST", "/api/email/broadcast", "broadcast", admin=True),
    Route("POST", "/api/email/notify", "notify", admin=True),
]

def match_route(method: str, path: str) -> Tuple[Optional[Route], Dict[str, str], bool]:
    """
    Find the route for a request.

    Returns:
        Tuple[Optional[Route], Dict[str, str], bool]: The route and its path
            parameters, plus whether the path exists for some other method.
    """
    path_known = False
    for route in ROUTES:
        match = route.regex.match(path)
        if not match:
            continue
        if route.method == method:
            return route, match.groupdict(), True
        path_known = True
    return None, {}, path_known

def _parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "1", "yes"):
        return True
    if isinstance(value, str) and value.lower() in ("false", "0", "no"):
        return False
    raise ValidationError(f"{name} must be true or false")

def _actor(request: Request) -> Optional[str]:
    """Email of the admin making a request, for audit logging."""
    return request.user.email if request.user else None

class RequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the PodSite API."""

    server_version = "PodSite/1.0"

    def do_GET(self):
        """Handle GET requests."""
        self._dispatch("GET")

    def do_POST(self):
        """Handle POST requests."""
        self._dispatch("POST")

    def do_PATCH(self):
        """Handle PATCH requests."""
        self._dispatch("PATCH")

    def do_DELETE(self):
        """Handle DELETE requests."""
        self._dispatch("DELETE")

    def log_message(self, format, *args):
        logger.debug("http_request", client=self.client_address[0], message=format % args)

    def _dispatch(self, method: str):
        server = self.server.web_server
        try:
            parsed_url = urlparse(self.path)
            route, params, path_known = match_route(method, parsed_url.path)
            if route is None:
                if path_known:
                    self._send_json(405, {"error": "Method Not Allowed"})
                else:
                    self._send_json(404, {"error": "Not Found"})
                return

            try:
                body = self._read_json_body() if method in ("POST", "PATCH") else {}
            except ValueError as e:
                self._send_json(400, {"error": str(e)})
                return

            request = Request(
                method=method,
                path=parsed_url.path,
                url=f"{server.site_url}{self.path}",
                query={key: values[0] for key, values in parse_qs(parsed_url.query).items()},
                params=params,
                body=body,
                client_ip=get_client_ip(self.headers, self.client_address[0]),
                cookies=self._read_cookies(),
            )
            status, payload = server.handle(route, request)
            self._send_json(status, payload)
        except BrokenPipeError:
            # Client disconnected, just log and return silently
            logger.info("client_disconnected", path=self.path)
        except ConnectionResetError:
            logger.info("connection_reset", path=self.path)
        except Exception as e:
            logger.error("request_handler_error", path=self.path, error=str(e))
            self.send_error(500, "Internal Server Error")

    def _read_json_body(self) -> Dict[str, Any]:
        length = int(self.headers.get("Content-Length") or 0)
        if length <= 0:
            return {}
        raw = self.rfile.read(length)
        try:
            body = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValueError("Invalid JSON body")
        if not isinstance(body, dict):
            raise ValueError("JSON body must be an object")
        return body

    def _read_cookies(self) -> Dict[str, str]:
        header = self.headers.get("Cookie")
        if not header:
            return {}
        cookie = SimpleCookie()
        try:
            cookie.load(header)
        except CookieError:
            logger.warning("invalid_cookie_header")
            return {}
        return {name: morsel.value for name, morsel in cookie.items()}

    def _send_json(self, status: int, payload: Dict[str, Any]):
        data = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

class WebServer:
    """Web server exposing the listener, subscriber and admin APIs."""

    def __init__(self,
                 config: Config,
                 message_broker: MessageBroker,
                 store: Optional[Store] = None,
                 auth_provider: Optional[AuthProvider] = None,
                 notifier: Optional[Notifier] = None,
                 rate_limiter: Optional[RateLimiter] = None):
        """Initialize the web server and its collaborators."""
        self.config = config
        self.host = config.web_server.host
        self.port = config.web_server.port
        self.site_url = config.site.url
        self.message_broker = message_broker

        self.store = store if store is not None else create_store(config.store)
        self.auth_provider = (auth_provider if auth_provider is not None
                              else create_auth_provider(config.auth, config.store))
        self.notifier = (notifier if notifier is not None
                         else Notifier(self.store, create_email_client(config.email), config))
        # An empty RateLimiter is falsy, so test for None explicitly
        self.rate_limiter = rate_limiter if rate_limiter is not None else get_default_limiter()

        # State tracking
        self.server = None
        self.server_thread = None
        self.running = False

        logger.info("web_server_initialized", host=self.host, port=self.port)

    def start(self) -> None:
        """Start the web server."""
        if self.running:
            return

        self.server = ThreadingHTTPServer((self.host, self.port), RequestHandler)
        self.server.daemon_threads = True
        self.server.web_server = self  # Attach the web server instance
        # Port 0 binds an ephemeral port; report the real one
        self.port = self.server.server_address[1]

        self.server_thread = threading.Thread(target=self.server.serve_forever)
        self.server_thread.daemon = True
        self.server_thread.start()

        self.running = True
        logger.info("web_server_started", host=self.host, port=self.port)

    def stop(self) -> None:
        """Stop the web server."""
        if not self.running:
            return

        self.server.shutdown()
        self.server.server_close()
        if self.server_thread is not None:
            self.server_thread.join()

        self.running = False
        logger.info("web_server_stopped")

    def handle(self, route: Route, request: Request) -> Response:
        """Authorize a request, run its endpoint and map failures to responses."""
        if route.admin:
            request.user = self.auth_provider.get_current_user(request.cookies)
            if request.user is None:
                logger.info("admin_request_rejected", path=request.path)
                return 401, {"error": UNAUTHORIZED}
        return self.respond(getattr(self, route.endpoint), request)

    def respond(self, endpoint: Callable[[Request], Response], request: Request) -> Response:
        """Run an endpoint, converting domain errors into status codes."""
        try:
            return endpoint(request)
        except ValidationError as e:
            return 400, {"error": str(e)}
        except SubscriberBannedError as e:
            return 403, {"error": str(e)}
        except NotFoundError as e:
            return 404, {"error": str(e)}
        except InvalidTransitionError as e:
            return 409, {"error": str(e)}
        except EmailNotConfiguredError as e:
            logger.warning("email_not_configured", path=request.path)
            return 503, {"success": False, "error": str(e)}
        except StoreUnavailableError as e:
            logger.error("store_unavailable", path=request.path, error=str(e))
            return 503, {"error": "Service temporarily unavailable. Please try again."}
        except (StoreError, EmailError) as e:
            logger.error("dependency_failed", path=request.path, error=str(e))
            return 500, {"error": "Something went wrong. Please try again."}
        except Exception as e:
            logger.error("request_handler_error", path=request.path, error=str(e))
            return 500, {"error": "Something went wrong. Please try again."}

    def _rate_limited(self, prefix: str, request: Request) -> bool:
        rule = getattr(self.config.rate_limit, prefix)
        admitted = self.rate_limiter.check(f"{prefix}:{request.client_ip}", rule.max_requests, rule.window_ms)
        if not admitted:
            logger.warning("rate_limited", endpoint=prefix, client_ip=request.client_ip)
        return not admitted

    # Listener endpoints

    def _episode_payload(self, episode: Episode, request: Request,
                         previous: Optional[List[Episode]] = None) -> Dict[str, Any]:
        transcript = self.store.get_transcript(episode.id)
        session = PlaybackSession(transcript, duration=episode.duration_seconds)
        start_time = session.load(request.url) if request.query.get(TIME_PARAM) else None
        payload = {
            "episode": episode.to_dict(),
            "transcript": [segment.to_dict() for segment in transcript],
            "start_time": start_time,
            "active_index": session.active_index,
        }
        if previous is not None:
            payload["previous_episodes"] = [e.to_dict() for e in previous]
        return payload

    def list_episodes(self, request: Request) -> Response:
        episodes = self.store.list_published_episodes()
        return 200, {"episodes": [e.to_dict() for e in episodes]}

    def latest_episode(self, request: Request) -> Response:
        episodes = self.store.list_published_episodes()
        if not episodes:
            raise NotFoundError("No published episodes yet")
        logger.debug("latest_episode_loaded", episode_id=episodes[0].id, total=len(episodes))
        return 200, self._episode_payload(episodes[0], request, previous=episodes[1:])

    def _published_episode(self, episode_id: str) -> Episode:
        episode = self.store.get_published_episode(episode_id)
        if episode is None:
            raise NotFoundError(f"Episode not found: {episode_id}")
        return episode

    def episode_detail(self, request: Request) -> Response:
        episode = self._published_episode(request.params["episode_id"])
        return 200, self._episode_payload(episode, request)

    def active_segment(self, request: Request) -> Response:
        episode = self._published_episode(request.params["episode_id"])
        current_time = parse_time_value(request.query.get(TIME_PARAM))
        if current_time is None:
            raise ValidationError("Missing or invalid t parameter")
        session = PlaybackSession(self.store.get_transcript(episode.id), duration=episode.duration_seconds)
        session.seek(current_time)
        index = session.active_index
        return 200, {
            "time": current_time,
            "index": index,
            "segment": None if index is None else session.segments[index].to_dict(),
        }

    def share_segment(self, request: Request) -> Response:
        episode = self._published_episode(request.params["episode_id"])
        segment_id = request.query.get("segment")
        if not segment_id:
            raise ValidationError("segment is required")
        page_url = request.query.get("url") or f"{self.site_url}/?{urlencode({'episode': episode.id})}"
        session = PlaybackSession(self.store.get_transcript(episode.id), url=page_url)
        index = session.timeline.index_of(segment_id)
        if index is None:
            raise NotFoundError(f"Segment not found: {segment_id}")
        link = session.share(index)
        if link is None:
            raise ValidationError("Segment has no timestamp")
        return 200, {"url": link, "time": session.segments[index].start_time}

    # Subscriber endpoints

    def subscribe(self, request: Request) -> Response:
        if self._rate_limited("subscribe", request):
            return 429, {"error": TOO_MANY_REQUESTS}

        notify_me = _parse_bool(request.body.get("notifyMe", False), "notifyMe")
        subscriber, created = self.store.upsert_subscriber(request.body.get("email"), notify_me)

        if not created:
            logger.info("subscriber_returned", subscriber_id=subscriber.id)
            return 200, {
                "success": True,
                "message": "Welcome back! Your preferences have been updated.",
                "isReturning": True,
            }

        logger.info("subscriber_created", subscriber_id=subscriber.id, notifications=notify_me)
        self.message_broker.publish(Message(
            topic=Topics.SUBSCRIBER_CREATED,
            data={"email": subscriber.email, "notifications_enabled": notify_me},
            correlation_id=subscriber.id
        ))
        return 200, {
            "success": True,
            "message": f"Welcome to {self.config.site.name}!",
            "isReturning": False,
        }

    def verify_subscriber(self, request: Request) -> Response:
        if self._rate_limited("verify", request):
            return 429, {"error": TOO_MANY_REQUESTS}

        subscriber = self.store.get_subscriber_by_email(request.body.get("email"))
        if subscriber is None:
            raise NotFoundError("Email not found. Please subscribe first.")
        if subscriber.status == SubscriberStatus.BANNED:
            raise SubscriberBannedError("This email has been blocked.")
        return 200, {"success": True, "message": "Welcome back!", "email": subscriber.email}

    def _subscriber_for(self, email: Any, not_found: str):
        if not email:
            raise ValidationError("Email is required")
        subscriber = self.store.get_subscriber_by_email(email)
        if subscriber is None:
            raise NotFoundError(not_found)
        return subscriber

    def get_notifications(self, request: Request) -> Response:
        if self._rate_limited("notifications", request):
            return 429, {"error": TOO_MANY_REQUESTS}
        subscriber = self._subscriber_for(request.query.get("email"), "Email not found")
        return 200, {"enabled": subscriber.notifications_enabled}

    def set_notifications(self, request: Request) -> Response:
        if self._rate_limited("notifications", request):
            return 429, {"error": TOO_MANY_REQUESTS}
        subscriber = self._subscriber_for(request.body.get("email"),
                                          "Email not found in our subscriber list")
        enabled = _parse_bool(request.body.get("enabled"), "enabled")
        self.store.set_subscriber_notifications(subscriber.id, enabled)
        return 200, {
            "success": True,
            "enabled": enabled,
            "message": ("You will now receive notifications when new episodes drop!" if enabled
                        else "You have been unsubscribed from notifications."),
        }

    def unsubscribe(self, request: Request) -> Response:
        if self._rate_limited("notifications", request):
            return 429, {"error": TOO_MANY_REQUESTS}
        email = request.query.get("email")
        if not email:
            raise ValidationError("No email address provided")
        resubscribe = _parse_bool(request.query.get("resubscribe", "false"), "resubscribe")
        subscriber = self._subscriber_for(email, "Email not found in our subscriber list")
        self.store.set_subscriber_notifications(subscriber.id, resubscribe)
        logger.info("notification_preference_changed", subscriber_id=subscriber.id, enabled=resubscribe)
        return 200, {
            "success": True,
            "email": subscriber.email,
            "enabled": resubscribe,
            "message": ("You're back! You'll get notified when new episodes drop." if resubscribe
                        else "You won't receive any more email notifications from us."),
        }

    def submit_inbox_message(self, request: Request) -> Response:
        if self._rate_limited("inbox", request):
            return 429, {"error": TOO_MANY_REQUESTS}

        entry = self.store.add_inbox_message(request.body.get("message"))
        logger.info("inbox_message_received", message_id=entry.id, length=len(entry.message))
        return 200, {"success": True, "message": "Message sent. Thanks for writing in!"}

    def health(self, request: Optional[Request] = None) -> Response:
        status = "ok"
        checks = {}

        try:
            self.store.ping()
            checks["database"] = {"status": "ok", "message": "Connected"}
        except StoreError as e:
            checks["database"] = {"status": "error", "message": str(e)}
            status = "error"

        try:
            checks["subscribersTable"] = {
                "status": "ok",
                "count": self.store.count_subscribers(status=SubscriberStatus.ACTIVE),
                "withNotifications": self.store.count_subscribers(
                    status=SubscriberStatus.ACTIVE, notifications_enabled=True),
            }
        except StoreError:
            checks["subscribersTable"] = {"status": "error", "count": 0, "withNotifications": 0}
            if status == "ok":
                status = "degraded"

        api_key = self.config.email.api_key or ""
        if api_key.startswith("re_"):
            checks["emailService"] = {"status": "ok", "configured": True,
                                      "from": self.config.email.from_address}
        else:
            checks["emailService"] = {"status": "warning", "configured": False, "from": ""}
            if status == "ok":
                status = "degraded"

        payload = {"timestamp": utcnow().isoformat(), "status": status, "checks": checks}
        return (500 if status == "error" else 200), payload

    # Admin endpoints

    def admin_list_episodes(self, request: Request) -> Response:
        return 200, {"episodes": [e.to_dict() for e in self.store.list_episodes()]}

    def admin_episode_detail(self, request: Request) -> Response:
        episode = self.store.get_episode(request.params["episode_id"])
        if episode is None:
            raise NotFoundError(f"Episode not found: {request.params['episode_id']}")
        return 200, {
            "episode": episode.to_dict(),
            "transcript": [s.to_dict() for s in self.store.get_transcript(episode.id)],
        }

    def update_segment(self, request: Request) -> Response:
        field_name = request.body.get("field")
        if not field_name:
            raise ValidationError("field is required")
        segment = self.store.update_segment(request.params["segment_id"], field_name,
                                            request.body.get("value"))
        logger.info("segment_updated", segment_id=segment.id, field=field_name, user=_actor(request))
        return 200, {"success": True, "segment": segment.to_dict()}

    def publish_episode(self, request: Request) -> Response:
        episode = self.store.publish_episode(request.params["episode_id"])
        logger.info("episode_published", episode_id=episode.id, user=_actor(request))
        self.message_broker.publish(Message(
            topic=Topics.EPISODE_PUBLISHED,
            data={"episode_id": episode.id, "title": episode.title, "summary": episode.summary},
            correlation_id=episode.id
        ))
        return 200, {"success": True, "episode": episode.to_dict()}

    def admin_list_subscribers(self, request: Request) -> Response:
        status = request.query.get("status")
        notifications = request.query.get("notifications")
        subscribers = self.store.list_subscribers(
            status=SubscriberStatus.parse(status) if status else None,
            notifications_enabled=_parse_bool(notifications, "notifications") if notifications else None,
        )
        stats = {
            "total": self.store.count_subscribers(),
            "active": self.store.count_subscribers(status=SubscriberStatus.ACTIVE),
            "withNotifications": self.store.count_subscribers(
                status=SubscriberStatus.ACTIVE, notifications_enabled=True),
            "banned": self.store.count_subscribers(status=SubscriberStatus.BANNED),
        }
        return 200, {"subscribers": [s.to_dict() for s in subscribers], "stats": stats}

    def admin_set_notifications(self, request: Request) -> Response:
        enabled = _parse_bool(request.body.get("enabled"), "enabled")
        subscriber = self.store.set_subscriber_notifications(request.params["subscriber_id"], enabled)
        return 200, {"success": True, "subscriber": subscriber.to_dict()}

    def admin_set_status(self, request: Request) -> Response:
        status = SubscriberStatus.parse(request.body.get("status"))
        subscriber = self.store.set_subscriber_status(request.params["subscriber_id"], status)
        logger.info("subscriber_status_changed", subscriber_id=subscriber.id,
                    status=status.value, user=_actor(request))
        return 200, {"success": True, "subscriber": subscriber.to_dict()}

    def admin_delete_subscriber(self, request: Request) -> Response:
        self.store.delete_subscriber(request.params["subscriber_id"])
        logger.info("subscriber_deleted", subscriber_id=request.params["subscriber_id"],
                    user=_actor(request))
        return 200, {"success": True}

    def broadcast(self, request: Request) -> Response:
        result = self.notifier.broadcast(request.body.get("subject"), request.body.get("message"))
        if result.total_subscribers == 0:
            return 200, {"success": True, "sentCount": 0, "message": "No subscribers to notify"}
        return (200 if result.success else 500), result.to_dict()

    def notify(self, request: Request) -> Response:
        result = self.notifier.notify_new_episode(
            request.body.get("episodeTitle"),
            request.body.get("episodeSummary"),
            request.body.get("episodeId"),
        )
        if result.total_subscribers == 0:
            return 200, {"success": True, "sentCount": 0, "message": "No subscribers to notify"}
        return (200 if result.success else 500), result.to_dict()

"""Tests for the web server service."""

import http.client
import json
from urllib.parse import urlencode

import pytest
from unittest.mock import MagicMock, patch

from podsite.services.message_broker import Topics
from podsite.services.notifier import EmailError
from podsite.services.rate_limiter import RateLimiter, get_default_limiter
from podsite.services.store import StoreError, StoreUnavailableError
from podsite.services.web_server import Request, WebServer, match_route
from tests.conftest import ADMIN_TOKEN

ADMIN_COOKIES = {"sb-access-token": ADMIN_TOKEN}

def send(server, method, path, query=None, body=None, cookies=None, client_ip="203.0.113.5"):
    """Route a request through the server without a socket."""
    route, params, _ = match_route(method, path)
    assert route is not None, f"no route for {method} {path}"
    url = f"{server.site_url}{path}"
    if query:
        url = f"{url}?{urlencode(query)}"
    request = Request(
        method=method,
        path=path,
        url=url,
        query=query or {},
        params=params,
        body=body or {},
        client_ip=client_ip,
        cookies=cookies or {},
    )
    return server.handle(route, request)

def admin(server, method, path, **kwargs):
    return send(server, method, path, cookies=ADMIN_COOKIES, **kwargs)

# Routing

def test_match_route_literal_before_parameter():
    """Test that /latest is not treated as an episode id."""
    route, params, _ = match_route("GET", "/api/episodes/latest")
    assert route.endpoint == "latest_episode"
    assert params == {}

def test_match_route_parameters():
    """Test extracting path parameters."""
    route, params, _ = match_route("GET", "/api/episodes/ep-1/active")
    assert route.endpoint == "active_segment"
    assert params == {"episode_id": "ep-1"}

def test_match_route_wrong_method():
    """Test that a known path with an unsupported method is flagged."""
    route, _, path_known = match_route("PUT", "/api/subscribe")
    assert route is None
    assert path_known is True

    route, _, path_known = match_route("GET", "/nope")
    assert route is None
    assert path_known is False

# Listener endpoints

def test_init(web_server):
    """Test web server initialization."""
    assert web_server.host == "127.0.0.1"
    assert web_server.port == 0
    assert web_server.running is False

def test_injected_rate_limiter_is_used(config, store, mock_message_broker, notifier):
    """Test that a freshly built, empty limiter is not swapped for the default."""
    limiter = RateLimiter(max_keys=5)
    server = WebServer(config=config, message_broker=mock_message_broker, store=store,
                       notifier=notifier, rate_limiter=limiter)

    assert server.rate_limiter is limiter
    assert server.rate_limiter is not get_default_limiter()

def test_list_episodes(web_server):
    """Test that only published episodes are listed, newest first."""
    status, payload = send(web_server, "GET", "/api/episodes")
    assert status == 200
    assert [e["id"] for e in payload["episodes"]] == ["ep-1", "ep-0"]

def test_latest_episode(web_server):
    """Test the home page payload."""
    status, payload = send(web_server, "GET", "/api/episodes/latest")

    assert status == 200
    assert payload["episode"]["id"] == "ep-1"
    assert [s["id"] for s in payload["transcript"]] == ["seg-1", "seg-2", "seg-3", "seg-4"]
    assert [e["id"] for e in payload["previous_episodes"]] == ["ep-0"]
    assert payload["start_time"] is None
    assert payload["active_index"] is None

def test_latest_episode_with_deep_link(web_server):
    """Test that a t parameter positions playback."""
    status, payload = send(web_server, "GET", "/api/episodes/latest", query={"t": "7"})

    assert status == 200
    assert payload["start_time"] == 7.0
    assert payload["active_index"] == 1

def test_latest_episode_none_published(web_server, store):
    """Test the empty site."""
    store.episodes.clear()
    status, payload = send(web_server, "GET", "/api/episodes/latest")
    assert status == 404
    assert payload["error"] == "No published episodes yet"

def test_episode_detail_clamps_deep_link(web_server):
    """Test that a deep link past the end is clamped to the duration."""
    status, payload = send(web_server, "GET", "/api/episodes/ep-1", query={"t": "999"})

    assert status == 200
    assert payload["start_time"] == 30.0
    assert payload["active_index"] == 2
    assert "previous_episodes" not in payload

def test_episode_detail_invalid_deep_link(web_server):
    """Test that a malformed t parameter is ignored."""
    status, payload = send(web_server, "GET", "/api/episodes/ep-1", query={"t": "later"})
    assert status == 200
    assert payload["start_time"] is None

def test_draft_episode_hidden(web_server):
    """Test that drafts are not visible to listeners."""
    status, _ = send(web_server, "GET", "/api/episodes/ep-2")
    assert status == 404

def test_active_segment(web_server):
    """Test the active segment lookup."""
    status, payload = send(web_server, "GET", "/api/episodes/ep-1/active", query={"t": "7"})
    assert status == 200
    assert payload["index"] == 1
    assert payload["segment"]["id"] == "seg-2"

    _, payload = send(web_server, "GET", "/api/episodes/ep-1/active", query={"t": "11"})
    assert payload["index"] == 2

def test_active_segment_requires_time(web_server):
    """Test that t is required."""
    status, payload = send(web_server, "GET", "/api/episodes/ep-1/active")
    assert status == 400
    assert payload["error"] == "Missing or invalid t parameter"

def test_active_segment_before_start(web_server):
    """Test that a time before the first timestamp has no active segment."""
    _, payload = send(web_server, "GET", "/api/episodes/ep-1/active", query={"t": "-1"})
    assert payload["index"] is None
    assert payload["segment"] is None

def test_share_segment(web_server):
    """Test building a shareable link to a segment."""
    status, payload = send(web_server, "GET", "/api/episodes/ep-1/share", query={"segment": "seg-2"})

    assert status == 200
    assert payload == {"url": "https://pod.example.com/?episode=ep-1&t=5.0", "time": 5.0}

def test_share_segment_with_page_url(web_server):
    """Test that the page URL keeps its parameters and replaces t."""
    status, payload = send(web_server, "GET", "/api/episodes/ep-1/share", query={
        "segment": "seg-3",
        "url": "https://pod.example.com/?episode=ep-1&t=2.0&ref=mail",
    })
    assert status == 200
    assert payload["url"] == "https://pod.example.com/?episode=ep-1&ref=mail&t=10.0"

def test_share_segment_errors(web_server):
    """Test sharing untimed, unknown and missing segments."""
    assert send(web_server, "GET", "/api/episodes/ep-1/share", query={"segment": "seg-4"})[0] == 400
    assert send(web_server, "GET", "/api/episodes/ep-1/share", query={"segment": "nope"})[0] == 404
    assert send(web_server, "GET", "/api/episodes/ep-1/share")[0] == 400

# Subscriber endpoints

def test_subscribe_new(web_server, store, mock_message_broker):
    """Test subscribing a new email."""
    status, payload = send(web_server, "POST", "/api/subscribe",
                           body={"email": "New@Example.com", "notifyMe": True})

    assert status == 200
    assert payload == {"success": True, "message": "Welcome to Test Pod!", "isReturning": False}
    assert store.get_subscriber_by_email("new@example.com").notifications_enabled is True
    message = mock_message_broker.publish.call_args[0][0]
    assert message.topic == Topics.SUBSCRIBER_CREATED
    assert message.data == {"email": "new@example.com", "notifications_enabled": True}

@pytest.mark.parametrize("flag,expected", [("false", False), ("true", True), (False, False)])
def test_subscribe_parses_notify_flag(web_server, store, flag, expected):
    """Test that string flags are parsed rather than treated as truthy."""
    status, _ = send(web_server, "POST", "/api/subscribe", body={"email": "new@example.com", "notifyMe": flag})

    assert status == 200
    assert store.get_subscriber_by_email("new@example.com").notifications_enabled is expected

def test_subscribe_rejects_bad_notify_flag(web_server, store):
    """Test that an unparseable flag is rejected before any write."""
    status, _ = send(web_server, "POST", "/api/subscribe", body={"email": "new@example.com", "notifyMe": "maybe"})

    assert status == 400
    assert store.get_subscriber_by_email("new@example.com") is None

def test_subscribe_returning(web_server, mock_message_broker):
    """Test that an existing subscriber is updated, not duplicated."""
    status, payload = send(web_server, "POST", "/api/subscribe",
                           body={"email": "fan@example.com", "notifyMe": False})

    assert status == 200
    assert payload["isReturning"] is True
    mock_message_broker.publish.assert_not_called()

def test_subscribe_banned(web_server):
    """Test that banned emails are rejected."""
    status, payload = send(web_server, "POST", "/api/subscribe", body={"email": "troll@example.com"})
    assert status == 403
    assert payload["error"] == "This email has been blocked"

def test_subscribe_invalid_email(web_server):
    """Test email validation."""
    status, payload = send(web_server, "POST", "/api/subscribe", body={"email": "nope"})
    assert status == 400
    assert payload["error"] == "Please provide a valid email address"

def test_subscribe_rate_limited(web_server):
    """Test that the sixth subscribe from one address within a minute is rejected."""
    statuses = [
        send(web_server, "POST", "/api/subscribe", body={"email": f"user{i}@example.com"})[0]
        for i in range(6)
    ]
    assert statuses == [200, 200, 200, 200, 200, 429]

    status, _ = send(web_server, "POST", "/api/subscribe", body={"email": "other@example.com"},
                     client_ip="198.51.100.9")
    assert status == 200

def test_subscribe_store_unavailable(web_server, store):
    """Test that an unreachable database is reported as unavailable."""
    with patch.object(store, "upsert_subscriber", side_effect=StoreUnavailableError("down")):
        status, payload = send(web_server, "POST", "/api/subscribe", body={"email": "a@b.c"})
    assert status == 503
    assert "temporarily unavailable" in payload["error"]

def test_verify_subscriber(web_server):
    """Test verifying an existing subscriber."""
    status, payload = send(web_server, "POST", "/api/verify-subscriber", body={"email": "FAN@example.com"})
    assert status == 200
    assert payload["email"] == "fan@example.com"

def test_verify_subscriber_unknown_and_banned(web_server):
    """Test verification failures."""
    assert send(web_server, "POST", "/api/verify-subscriber", body={"email": "who@example.com"})[0] == 404
    assert send(web_server, "POST", "/api/verify-subscriber", body={"email": "troll@example.com"})[0] == 403

def test_verify_subscriber_rate_limited(web_server):
    """Test the verify budget of ten per minute."""
    statuses = [
        send(web_server, "POST", "/api/verify-subscriber", body={"email": "fan@example.com"})[0]
        for _ in range(11)
    ]
    assert statuses[:10] == [200] * 10
    assert statuses[10] == 429

def test_notification_preferences(web_server):
    """Test reading and changing notification preferences."""
    status, payload = send(web_server, "GET", "/api/notifications", query={"email": "fan@example.com"})
    assert status == 200
    assert payload == {"enabled": True}

    status, payload = send(web_server, "POST", "/api/notifications",
                           body={"email": "fan@example.com", "enabled": False})
    assert status == 200
    assert payload["enabled"] is False

    _, payload = send(web_server, "GET", "/api/notifications", query={"email": "fan@example.com"})
    assert payload == {"enabled": False}

def test_notification_preferences_errors(web_server):
    """Test missing and unknown emails and bad flags."""
    assert send(web_server, "GET", "/api/notifications")[0] == 400
    assert send(web_server, "GET", "/api/notifications", query={"email": "who@example.com"})[0] == 404
    assert send(web_server, "POST", "/api/notifications",
                body={"email": "fan@example.com", "enabled": "maybe"})[0] == 400

def test_notification_preferences_rate_limited(web_server, store):
    """Test that preference changes share a per-client budget of ten per minute."""
    statuses = [
        send(web_server, "POST", "/api/notifications",
             body={"email": "fan@example.com", "enabled": i % 2 == 0})[0]
        for i in range(11)
    ]
    assert statuses[:10] == [200] * 10
    assert statuses[10] == 429

    status, _ = send(web_server, "GET", "/unsubscribe", query={"email": "fan@example.com"})
    assert status == 429
    assert send(web_server, "GET", "/unsubscribe", query={"email": "fan@example.com"},
                client_ip="198.51.100.9")[0] == 200

def test_unsubscribe_rate_limited(web_server):
    """Test that the unsubscribe link cannot be hammered from one address."""
    statuses = [
        send(web_server, "GET", "/unsubscribe", query={"email": "fan@example.com"})[0]
        for _ in range(11)
    ]
    assert statuses[:10] == [200] * 10
    assert statuses[10] == 429

def test_inbox_message(web_server, store):
    """Test that listener messages are trimmed and stored."""
    status, payload = send(web_server, "POST", "/api/inbox", body={"message": "  Love the show  "})

    assert status == 200
    assert payload["success"] is True
    assert [m.message for m in store.inbox] == ["Love the show"]

@pytest.mark.parametrize("message", [None, "", "   ", "x" * 1001])
def test_inbox_message_rejected(web_server, store, message):
    """Test that empty and oversized messages are rejected."""
    status, _ = send(web_server, "POST", "/api/inbox", body={"message": message})
    assert status == 400
    assert store.inbox == []

def test_inbox_rate_limited(web_server):
    """Test the inbox budget of three per minute."""
    statuses = [send(web_server, "POST", "/api/inbox", body={"message": f"note {i}"})[0] for i in range(4)]
    assert statuses == [200, 200, 200, 429]

def test_unsubscribe_and_resubscribe(web_server, store):
    """Test the email unsubscribe link."""
    status, payload = send(web_server, "GET", "/unsubscribe", query={"email": "fan@example.com"})
    assert status == 200
    assert payload["enabled"] is False
    assert store.list_recipients() == []

    status, payload = send(web_server, "GET", "/unsubscribe",
                           query={"email": "fan@example.com", "resubscribe": "true"})
    assert status == 200
    assert payload["enabled"] is True
    assert [s.id for s in store.list_recipients()] == ["sub-1"]

def test_unsubscribe_errors(web_server):
    """Test unsubscribe without an email or with an unknown one."""
    status, payload = send(web_server, "GET", "/unsubscribe")
    assert status == 400
    assert payload["error"] == "No email address provided"
    assert send(web_server, "GET", "/unsubscribe", query={"email": "who@example.com"})[0] == 404

def test_health_ok(web_server):
    """Test the health report when everything is configured."""
    status, payload = send(web_server, "GET", "/api/notifications/health")

    assert status == 200
    assert payload["status"] == "ok"
    assert payload["checks"]["database"]["status"] == "ok"
    assert payload["checks"]["subscribersTable"] == {"status": "ok", "count": 1, "withNotifications": 1}
    assert payload["checks"]["emailService"]["configured"] is True

def test_health_degraded_without_email(web_server, config):
    """Test that a missing email key degrades health."""
    config.email.api_key = None
    status, payload = web_server.health()
    assert status == 200
    assert payload["status"] == "degraded"
    assert payload["checks"]["emailService"]["status"] == "warning"

def test_health_database_down(web_server, store):
    """Test that an unreachable database is an error."""
    with patch.object(store, "ping", side_effect=StoreUnavailableError("Database unreachable")), \
         patch.object(store, "count_subscribers", side_effect=StoreUnavailableError("down")):
        status, payload = web_server.health()

    assert status == 500
    assert payload["status"] == "error"
    assert payload["checks"]["database"]["message"] == "Database unreachable"
    assert payload["checks"]["subscribersTable"]["status"] == "error"

# Admin endpoints

@pytest.mark.parametrize("method,path", [
    ("GET", "/api/admin/episodes"),
    ("GET", "/api/admin/episodes/ep-2"),
    ("POST", "/api/admin/episodes/ep-2/publish"),
    ("PATCH", "/api/admin/segments/seg-1"),
    ("GET", "/api/admin/subscribers"),
    ("POST", "/api/admin/subscribers/sub-1/status"),
    ("DELETE", "/api/admin/subscribers/sub-1"),
    ("POST", "/api/email/broadcast"),
    ("POST", "/api/email/notify"),
])
def test_admin_routes_require_login(web_server, mock_email_client, method, path):
    """Test that admin routes reject anonymous requests without side effects."""
    status, payload = send(web_server, method, path, body={"subject": "s", "message": "m"},
                           cookies={"sb-access-token": "wrong"})

    assert status == 401
    assert payload["error"] == "Unauthorized. Please log in as an admin."
    mock_email_client.send_email.assert_not_called()

def test_admin_list_episodes_includes_drafts(web_server):
    """Test the admin episode list."""
    status, payload = admin(web_server, "GET", "/api/admin/episodes")
    assert status == 200
    assert [e["id"] for e in payload["episodes"]] == ["ep-2", "ep-1", "ep-0"]

def test_admin_episode_detail(web_server):
    """Test loading a draft for editing."""
    status, payload = admin(web_server, "GET", "/api/admin/episodes/ep-2")
    assert status == 200
    assert payload["episode"]["is_published"] is False
    assert payload["transcript"] == []
    assert admin(web_server, "GET", "/api/admin/episodes/missing")[0] == 404

def test_update_segment(web_server, store):
    """Test editing a segment field."""
    status, payload = admin(web_server, "PATCH", "/api/admin/segments/seg-1",
                            body={"field": "content", "value": "Fixed typo"})

    assert status == 200
    assert payload["segment"]["content"] == "Fixed typo"
    assert store.get_transcript("ep-1")[0].content == "Fixed typo"

def test_update_segment_errors(web_server):
    """Test rejected segment edits."""
    assert admin(web_server, "PATCH", "/api/admin/segments/seg-1", body={"value": "x"})[0] == 400
    assert admin(web_server, "PATCH", "/api/admin/segments/seg-1",
                 body={"field": "start_time", "value": 3})[0] == 400
    assert admin(web_server, "PATCH", "/api/admin/segments/nope",
                 body={"field": "content", "value": "x"})[0] == 404

def test_publish_episode(web_server, mock_message_broker):
    """Test publishing a draft once."""
    status, payload = admin(web_server, "POST", "/api/admin/episodes/ep-2/publish")

    assert status == 200
    assert payload["episode"]["is_published"] is True
    message = mock_message_broker.publish.call_args[0][0]
    assert message.topic == Topics.EPISODE_PUBLISHED
    assert message.data["episode_id"] == "ep-2"

    status, _ = admin(web_server, "POST", "/api/admin/episodes/ep-2/publish")
    assert status == 409
    assert mock_message_broker.publish.call_count == 1

def test_admin_list_subscribers(web_server):
    """Test the subscriber list and its stats."""
    status, payload = admin(web_server, "GET", "/api/admin/subscribers")

    assert status == 200
    assert len(payload["subscribers"]) == 2
    assert payload["stats"] == {"total": 2, "active": 1, "withNotifications": 1, "banned": 1}

    _, payload = admin(web_server, "GET", "/api/admin/subscribers", query={"status": "banned"})
    assert [s["id"] for s in payload["subscribers"]] == ["sub-2"]

    assert admin(web_server, "GET", "/api/admin/subscribers", query={"status": "gone"})[0] == 400

def test_admin_set_notifications(web_server):
    """Test toggling notifications for a subscriber."""
    status, payload = admin(web_server, "POST", "/api/admin/subscribers/sub-1/notifications",
                            body={"enabled": False})
    assert status == 200
    assert payload["subscriber"]["notifications_enabled"] is False

def test_admin_set_status(web_server):
    """Test status changes through the admin API."""
    status, payload = admin(web_server, "POST", "/api/admin/subscribers/sub-1/status",
                            body={"status": "banned"})
    assert status == 200
    assert payload["subscriber"]["status"] == "banned"

    status, _ = admin(web_server, "POST", "/api/admin/subscribers/sub-1/status",
                      body={"status": "unsubscribed"})
    assert status == 409

    status, _ = admin(web_server, "POST", "/api/admin/subscribers/sub-1/status",
                      body={"status": "archived"})
    assert status == 400

def test_admin_delete_subscriber(web_server, store):
    """Test deleting a subscriber."""
    status, payload = admin(web_server, "DELETE", "/api/admin/subscribers/sub-1")
    assert status == 200
    assert payload == {"success": True}
    assert store.count_subscribers() == 1
    assert admin(web_server, "DELETE", "/api/admin/subscribers/sub-1")[0] == 404

def test_broadcast(web_server, mock_email_client):
    """Test the broadcast endpoint."""
    status, payload = admin(web_server, "POST", "/api/email/broadcast",
                            body={"subject": "Hello", "message": "News"})

    assert status == 200
    assert payload == {"success": True, "sentCount": 1, "errorCount": 0, "totalSubscribers": 1}
    mock_email_client.send_email.assert_called_once()

def test_broadcast_no_subscribers(web_server, store):
    """Test broadcasting with no eligible recipients."""
    store.set_subscriber_notifications("sub-1", False)
    status, payload = admin(web_server, "POST", "/api/email/broadcast",
                            body={"subject": "Hello", "message": "News"})
    assert status == 200
    assert payload == {"success": True, "sentCount": 0, "message": "No subscribers to notify"}

def test_broadcast_all_failed(web_server, mock_email_client):
    """Test that a batch where every send failed is a server error."""
    mock_email_client.send_email.side_effect = EmailError("rejected")
    status, payload = admin(web_server, "POST", "/api/email/broadcast",
                            body={"subject": "Hello", "message": "News"})
    assert status == 500
    assert payload["success"] is False
    assert payload["error"].startswith("All emails failed.")

def test_broadcast_validation(web_server):
    """Test that empty fields are rejected."""
    status, payload = admin(web_server, "POST", "/api/email/broadcast", body={"message": "News"})
    assert status == 400
    assert payload["error"] == "Subject is required"

def test_broadcast_not_configured(web_server):
    """Test broadcasting without an email provider."""
    web_server.notifier.email_client = None
    status, payload = admin(web_server, "POST", "/api/email/broadcast",
                            body={"subject": "Hello", "message": "News"})
    assert status == 503
    assert payload["success"] is False

def test_notify(web_server, mock_email_client):
    """Test the new episode notification endpoint."""
    status, payload = admin(web_server, "POST", "/api/email/notify",
                            body={"episodeTitle": "Pilot", "episodeId": "ep-1"})
    assert status == 200
    assert payload["sentCount"] == 1
    assert mock_email_client.send_email.call_args[0][1] == "New Episode: Pilot"

    assert admin(web_server, "POST", "/api/email/notify", body={})[0] == 400

def test_respond_maps_unexpected_errors(web_server):
    """Test that unexpected failures become generic 500s."""
    request = Request(method="GET", path="/x")
    assert web_server.respond(MagicMock(side_effect=RuntimeError("boom")), request)[0] == 500
    assert web_server.respond(MagicMock(side_effect=StoreError("bad")), request)[0] == 500

# Live server

def _http(server, method, path, body=None, headers=None):
    conn = http.client.HTTPConnection("127.0.0.1", server.port, timeout=5)
    try:
        conn.request(method, path, body=body, headers=headers or {})
        response = conn.getresponse()
        return response.status, json.loads(response.read() or b"{}")
    finally:
        conn.close()

def test_start_stop_serves_requests(web_server):
    """Test the server over a real socket on an ephemeral port."""
    web_server.start()
    try:
        assert web_server.running is True
        assert web_server.port != 0

        status, payload = _http(web_server, "GET", "/api/episodes/ep-1/active?t=7")
        assert status == 200
        assert payload["index"] == 1

        status, payload = _http(web_server, "POST", "/api/subscribe",
                                body=json.dumps({"email": "live@example.com", "notifyMe": True}),
                                headers={"Content-Type": "application/json",
                                         "X-Forwarded-For": "192.0.2.1"})
        assert status == 200
        assert payload["isReturning"] is False
        assert "subscribe:192.0.2.1" in web_server.rate_limiter.entries

        status, payload = _http(web_server, "POST", "/api/subscribe", body="{not json",
                                headers={"Content-Type": "application/json"})
        assert status == 400
        assert payload["error"] == "Invalid JSON body"

        assert _http(web_server, "DELETE", "/api/episodes")[0] == 405
        assert _http(web_server, "GET", "/missing")[0] == 404
        assert _http(web_server, "GET", "/api/admin/subscribers")[0] == 401

        status, payload = _http(web_server, "GET", "/api/admin/subscribers",
                                headers={"Cookie": f"sb-access-token={ADMIN_TOKEN}"})
        assert status == 200
        assert payload["stats"]["total"] == 3
    finally:
        web_server.stop()

    assert web_server.running is False

def test_stop_when_not_running(web_server):
    """Test that stopping an idle server is a no-op."""
    web_server.stop()
    assert web_server.running is False

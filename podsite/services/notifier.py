"""Subscriber email notifications."""

import abc
import html
import time
from datetime import datetime
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

import requests

from ..config import Config, EmailConfig
from ..logging import get_logger
from ..models import BroadcastResult, Subscriber, ValidationError
from .message_broker import Message, MessageBroker, Topics
from .store import Store

logger = get_logger(__name__)

class EmailError(Exception):
    """Raised when the email provider rejects or fails a send."""
    pass

class EmailNotConfiguredError(EmailError):
    """Raised when no email provider API key is configured."""
    pass

class EmailClient(abc.ABC):
    """Abstract transactional email client."""

    @abc.abstractmethod
    def send_email(self, to: str, subject: str, html_body: str) -> str:
        """
        Send one email.

        Args:
            to: Recipient address
            subject: Subject line
            html_body: Rendered HTML body

        Returns:
            str: Provider message ID

        Raises:
            EmailError: If the send fails
        """
        pass

class ResendEmailClient(EmailClient):
    """Email client for the Resend HTTP API."""

    def __init__(self, config: EmailConfig, session: Optional[requests.Session] = None):
        """Initialize the client."""
        if not config.api_key:
            raise EmailNotConfiguredError("Email service not configured. Please set RESEND_API_KEY.")
        self.api_url = config.api_url
        self.from_address = config.from_address
        self.timeout = config.timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
        })

    def send_email(self, to: str, subject: str, html_body: str) -> str:
        try:
            response = self.session.post(self.api_url, json={
                "from": self.from_address,
                "to": [to],
                "subject": subject,
                "html": html_body,
            }, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise EmailError(str(e))

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400:
            raise EmailError(body.get("message") or f"HTTP {response.status_code}")
        return str(body.get("id") or "")

def create_email_client(config: EmailConfig) -> Optional[EmailClient]:
    """Email client for the configured provider, or None when unconfigured."""
    if not config.configured:
        logger.warning("email_not_configured", message="RESEND_API_KEY is not set, emails are disabled")
        return None
    return ResendEmailClient(config)

def text_to_html(message: str) -> str:
    """Escape plain text and preserve its line breaks."""
    return html.escape(message, quote=False).replace("\n", "<br>")

_LAYOUT = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; line-height: 1.6; color: #1c1917; margin: 0; padding: 0; background-color: #fafaf9;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <div style="text-align: center; margin-bottom: 32px;">
      <h1 style="font-size: 28px; font-weight: 800; margin: 0; font-family: Georgia, serif;">{site_name}</h1>
      {tagline}
    </div>
    <div style="background: white; border-radius: 16px; padding: 32px; border: 1px solid #e7e5e4;">
      {content}
      <div style="text-align: center; margin: 32px 0 16px 0;">
        <a href="{cta_url}" style="display: inline-block; background-color: #ea580c; color: white; padding: 14px 32px; border-radius: 12px; text-decoration: none; font-weight: 600;">{cta_label}</a>
      </div>
      {signature}
    </div>
    <div style="text-align: center; margin-top: 32px; color: #a8a29e; font-size: 12px;">
      <p style="margin: 0 0 16px 0;">&copy; {year} {site_name}. All rights reserved.</p>
      {unsubscribe}
    </div>
  </div>
</body>
</html>
"""

class Notifier:
    """Renders and sends subscriber emails with pacing between sends."""

    def __init__(self,
                 store: Store,
                 email_client: Optional[EmailClient],
                 config: Config,
                 sleep: Callable[[float], None] = time.sleep):
        """Initialize the notifier."""
        self.store = store
        self.email_client = email_client
        self.site = config.site
        self.email_config = config.email
        self.send_interval = config.email.send_interval
        self.sleep = sleep

    @property
    def configured(self) -> bool:
        return self.email_client is not None

    def subscribe_to(self, message_broker: MessageBroker) -> None:
        """Send emails in response to subscriber and episode events."""
        message_broker.subscribe(Topics.SUBSCRIBER_CREATED, self._handle_subscriber_created)
        if self.email_config.notify_on_publish:
            message_broker.subscribe(Topics.EPISODE_PUBLISHED, self._handle_episode_published)

    def unsubscribe_url(self, email: str) -> str:
        return f"{self.site.url}/unsubscribe?{urlencode({'email': email}, quote_via=quote)}"

    def _render(self, content: str, cta_url: str, cta_label: str,
                unsubscribe_email: Optional[str] = None) -> str:
        unsubscribe = ""
        if unsubscribe_email:
            unsubscribe = (
                f'<p style="margin: 0;"><a href="{html.escape(self.unsubscribe_url(unsubscribe_email))}" '
                f'style="color: #78716c; text-decoration: underline;">Unsubscribe from notifications</a></p>'
            )
        tagline = ""
        if self.site.tagline:
            tagline = (f'<p style="color: #78716c; font-size: 14px; margin-top: 4px; font-style: italic;">'
                       f'{html.escape(self.site.tagline)}</p>')
        signature = ""
        if self.site.host_name:
            signature = (f'<p style="color: #78716c; font-size: 14px; margin: 0; text-align: center;">'
                         f'&mdash; {html.escape(self.site.host_name)}</p>')
        return _LAYOUT.format(
            site_name=html.escape(self.site.name),
            tagline=tagline,
            content=content,
            cta_url=html.escape(cta_url),
            cta_label=html.escape(cta_label),
            signature=signature,
            year=datetime.now().year,
            unsubscribe=unsubscribe,
        )

    def render_broadcast(self, message: str, email: str) -> str:
        content = f'<div style="color: #44403c; font-size: 16px; line-height: 1.7;">{text_to_html(message)}</div>'
        return self._render(content, self.site.url, f"Visit {self.site.name}", unsubscribe_email=email)

    def render_new_episode(self, title: str, summary: Optional[str],
                           episode_id: Optional[str], email: str) -> str:
        content = f'<h2 style="font-size: 24px; margin: 0 0 16px 0;">{html.escape(title)}</h2>'
        if summary:
            content += (f'<p style="color: #44403c; font-style: italic; border-left: 3px solid #ea580c; '
                        f'padding-left: 16px;">&quot;{html.escape(summary)}&quot;</p>')
        content += '<p style="color: #44403c;">A fresh episode just dropped. Come listen to the latest.</p>'
        listen_url = self.site.url
        if episode_id:
            listen_url = f"{self.site.url}?{urlencode({'episode': episode_id})}"
        return self._render(content, listen_url, "Listen Now", unsubscribe_email=email)

    def render_welcome(self, email: str, notify_me: bool) -> str:
        if notify_me:
            note = "You've opted in to receive notifications when new episodes drop."
        else:
            note = "You can always opt in to notifications when new episodes drop by visiting our site."
        content = (
            f'<h2 style="font-size: 24px; margin: 0 0 16px 0;">Welcome to {html.escape(self.site.name)}!</h2>'
            f'<p style="color: #44403c;">{note}</p>'
        )
        return self._render(content, self.site.url, "Check Out the Latest Episode",
                            unsubscribe_email=email if notify_me else None)

    def _require_client(self) -> EmailClient:
        if self.email_client is None:
            raise EmailNotConfiguredError(
                "Email service not configured. Please set RESEND_API_KEY environment variable."
            )
        return self.email_client

    def _send_batch(self, recipients: List[Subscriber], subject: str,
                    render: Callable[[str], str], label: str) -> BroadcastResult:
        """Send one email per recipient, pacing sends and tallying failures."""
        client = self._require_client()
        result = BroadcastResult(total_subscribers=len(recipients))
        if not recipients:
            logger.info("no_recipients", kind=label)
            return result

        logger.info("batch_started", kind=label, recipients=len(recipients))
        for i, subscriber in enumerate(recipients):
            if i > 0 and self.send_interval > 0:
                self.sleep(self.send_interval)
            try:
                client.send_email(subscriber.email, subject, render(subscriber.email))
                result.sent_count += 1
                logger.debug("email_sent", kind=label, to=subscriber.email)
            except Exception as e:
                # One bad recipient must not abort the rest of the batch
                result.error_count += 1
                result.errors.append(f"{subscriber.email}: {str(e) or 'Unknown error'}")
                logger.error("email_send_failed", kind=label, to=subscriber.email, error=str(e))

        logger.info("batch_completed", kind=label,
                    sent=result.sent_count, failed=result.error_count)
        return result

    def broadcast(self, subject: str, message: str) -> BroadcastResult:
        """
        Send a free-form message to every eligible subscriber.

        Raises:
            ValidationError: If subject or message is empty
            EmailNotConfiguredError: If no email client is configured
        """
        if not isinstance(subject, str) or not subject.strip():
            raise ValidationError("Subject is required")
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Message is required")
        self._require_client()

        recipients = self.store.list_recipients()
        return self._send_batch(recipients, subject,
                                lambda email: self.render_broadcast(message, email), "broadcast")

    def notify_new_episode(self, title: str, summary: Optional[str] = None,
                           episode_id: Optional[str] = None) -> BroadcastResult:
        """Announce a new episode to every eligible subscriber."""
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Episode title is required")
        self._require_client()

        recipients = self.store.list_recipients()
        return self._send_batch(recipients, f"New Episode: {title}",
                                lambda email: self.render_new_episode(title, summary, episode_id, email),
                                "new_episode")

    def send_welcome(self, email: str, notify_me: bool) -> Optional[str]:
        """Send the welcome email; skipped when email is not configured."""
        if self.email_client is None:
            logger.info("welcome_email_skipped", reason="not_configured")
            return None
        message_id = self.email_client.send_email(
            email, f"Welcome to {self.site.name}", self.render_welcome(email, notify_me)
        )
        logger.info("welcome_email_sent", message_id=message_id)
        return message_id

    def _handle_subscriber_created(self, message: Message) -> None:
        email = message.data.get("email")
        if not email:
            logger.warning("missing_email", topic=message.topic)
            return
        try:
            self.send_welcome(email, bool(message.data.get("notifications_enabled")))
        except EmailError as e:
            # Subscription already succeeded; a failed welcome email is only logged
            logger.error("welcome_email_failed", error=str(e))

    def _handle_episode_published(self, message: Message) -> None:
        title = message.data.get("title")
        if not title or not self.configured:
            logger.info("publish_notification_skipped", topic=message.topic)
            return
        self.notify_new_episode(title, message.data.get("summary"), message.data.get("episode_id"))

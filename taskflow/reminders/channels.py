"""
External notification channels (email, chat webhook) and the worker pool
that runs their sends off the caller's path.
"""
import logging
import smtplib
import ssl
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import parseaddr
from functools import partial
from html import escape
from typing import Any, Dict, Mapping, Optional

import requests

from taskflow.core.config import settings
from taskflow.models.notification import Channel
from .config import reminder_settings
from .errors import ChannelSendError
from .metrics import channel_sends_total

logger = logging.getLogger(__name__)


@dataclass
class ChannelMessage:
    """Rendered, JSON-serialisable payload for a single channel send."""
    channel: str
    user_id: str
    event_type: str
    subject: str
    text: str
    link: Optional[str] = None
    to_email: Optional[str] = None
    to_name: Optional[str] = None
    webhook_url: Optional[str] = None
    notification_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChannelMessage":
        return cls(**{key: data.get(key) for key in cls.__dataclass_fields__})


class EmailChannel:
    """SMTP email sender. Without SMTP configuration sends are skipped, not failed."""

    name = Channel.EMAIL

    def __init__(
        self,
        smtp_server: Optional[str] = None,
        smtp_port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_email: Optional[str] = None,
        use_tls: Optional[bool] = None,
        timeout: Optional[float] = None,
    ):
        self.smtp_server = smtp_server if smtp_server is not None else settings.SMTP_SERVER
        self.smtp_port = int(smtp_port or settings.SMTP_PORT)
        self.username = username if username is not None else settings.SMTP_USERNAME
        self.password = password if password is not None else settings.SMTP_PASSWORD
        self.from_email = from_email or settings.FROM_EMAIL
        self.use_tls = settings.SMTP_USE_TLS if use_tls is None else use_tls
        self.timeout = timeout or reminder_settings.SMTP_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.smtp_server)

    def send(self, message: ChannelMessage) -> bool:
        if not message.to_email:
            logger.warning("[Email] No address for user %s, skipping %s", message.user_id, message.event_type)
            return False
        if not self.configured:
            logger.info("📧 [Email] SMTP not configured. Would send to %s: %s", message.to_email, message.subject)
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self.from_email
        msg["To"] = message.to_email
        msg.attach(MIMEText(self._render_text(message), "plain"))
        msg.attach(MIMEText(self._render_html(message), "html"))

        try:
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(parseaddr(self.from_email)[1], [message.to_email], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise ChannelSendError(self.name.value, str(e)) from e
        return True

    def _render_text(self, message: ChannelMessage) -> str:
        greeting = f"Hi {message.to_name}," if message.to_name else "Hi,"
        lines = [greeting, "", message.text]
        if message.link:
            lines += ["", message.link]
        return "\n".join(lines)

    def _render_html(self, message: ChannelMessage) -> str:
        greeting = f"Hi {escape(message.to_name)}," if message.to_name else "Hi,"
        body = "<br>".join(escape(line) for line in message.text.splitlines())
        link = f'<p><a href="{escape(message.link)}">Open TaskFlow</a></p>' if message.link else ""
        return f"<html><body><p>{greeting}</p><p>{body}</p>{link}</body></html>"


class WebhookChannel:
    """Incoming-webhook chat sender (Slack-compatible JSON body)."""

    name = Channel.WEBHOOK

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout or reminder_settings.WEBHOOK_TIMEOUT_SECONDS

    def send(self, message: ChannelMessage) -> bool:
        if not message.webhook_url:
            return False
        text = f"*{message.subject}*\n{message.text}"
        if message.link:
            text += f"\n<{message.link}|Open in TaskFlow>"
        body = {
            "text": f"{message.subject}: {message.text}",
            "blocks": [{"type": "section", "text": {"type": "mrkdwn", "text": text}}],
        }
        try:
            response = requests.post(message.webhook_url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise ChannelSendError(self.name.value, str(e)) from e
        if response.status_code >= 400:
            raise ChannelSendError(self.name.value, f"HTTP {response.status_code}")
        return True


def build_channel_senders() -> Dict[str, Any]:
    return {Channel.EMAIL.value: EmailChannel(), Channel.WEBHOOK.value: WebhookChannel()}


def record_send_outcome(message: ChannelMessage, delivered: bool) -> None:
    outcome = "sent" if delivered else "skipped"
    channel_sends_total.labels(channel=message.channel, outcome=outcome).inc()
    logger.info("[Channels] %s %s for user %s (%s)", message.channel, outcome, message.user_id, message.event_type)


def record_send_failure(message: ChannelMessage, error: BaseException) -> None:
    channel_sends_total.labels(channel=message.channel, outcome="failed").inc()
    logger.error(
        "❌ [Channels] %s send failed for user %s (%s): %s",
        message.channel, message.user_id, message.event_type, error,
    )


class ChannelPool:
    """Bounded thread pool for channel sends.

    ``submit`` returns immediately; outcomes are only logged and counted.
    Each send runs and fails independently of the others.
    """

    def __init__(self, senders: Optional[Mapping[str, Any]] = None, max_workers: Optional[int] = None):
        self._senders = dict(senders) if senders is not None else build_channel_senders()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or reminder_settings.CHANNEL_WORKERS,
            thread_name_prefix="notify-channel",
        )

    def submit(self, message: ChannelMessage) -> Optional[Future]:
        sender = self._senders.get(message.channel)
        if sender is None:
            logger.warning("[Channels] No sender registered for channel %s", message.channel)
            return None
        try:
            future = self._executor.submit(sender.send, message)
        except RuntimeError as e:
            # Executor already shut down
            record_send_failure(message, e)
            return None
        future.add_done_callback(partial(self._on_done, message))
        return future

    def _on_done(self, message: ChannelMessage, future: Future) -> None:
        error = future.exception()
        if error is not None:
            record_send_failure(message, error)
        else:
            record_send_outcome(message, bool(future.result()))

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class CeleryChannelPool:
    """Hands channel sends to the Celery channel queue instead of local threads."""

    def submit(self, message: ChannelMessage):
        from .celery_app import celery_app

        try:
            return celery_app.send_task(
                "reminders.deliver_channel",
                args=[message.to_dict()],
                queue=reminder_settings.CHANNEL_QUEUE,
                routing_key=reminder_settings.CHANNEL_QUEUE,
            )
        except Exception as e:
            record_send_failure(message, e)
            return None

    def shutdown(self, wait: bool = True) -> None:
        return None


def build_channel_pool(backend: Optional[str] = None):
    backend = backend or reminder_settings.CHANNEL_BACKEND
    if backend == "celery":
        return CeleryChannelPool()
    return ChannelPool()

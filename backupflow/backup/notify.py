"""
Delivery of run reports to notification channels.

Channels are read from ``notifications.json``::

    {
      "telegram_bots": [{"alias": "...", "token": "...", "chat_id": "...", "enabled": true}],
      "email_senders": [{"alias": "...", "host": "...", "port": 465, "user": "...",
                         "pass": "...", "from": "...", "use_tls": true,
                         "recipients": ["..."], "enabled": true}]
    }

Token and password values may be ``enc:``-encrypted. Notification failures
are logged and never propagate into the run.
"""

import os
import json
import socket
import logging
import smtplib
from email.mime.text import MIMEText
from email.utils import formatdate
from typing import List, Dict, Any, Optional

import requests

from backupflow.utils.crypto import SecretBox, SecretError
from .report import RunReport, render_text, render_subject, APP_NAME

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = 'https://api.telegram.org/bot{token}/sendMessage'
REQUEST_TIMEOUT = 30


class NotificationError(Exception):
    """Raised when a channel fails to deliver a message."""
    pass


class TelegramChannel:
    """Sends messages through a Telegram bot."""

    def __init__(self, alias: str, token: str, chat_id: str):
        self.alias = alias
        self.token = token
        self.chat_id = chat_id

    def send(self, subject: str, body: str):
        if not self.token or not self.chat_id:
            raise NotificationError(f"Telegram bot [{self.alias}] is missing token or chat_id")

        logger.info(f"Sending Telegram message via bot [{self.alias}]")
        try:
            response = requests.post(
                TELEGRAM_API_URL.format(token=self.token),
                data={'chat_id': self.chat_id, 'text': body},
                timeout=REQUEST_TIMEOUT
            )
            response.raise_for_status()
        except requests.RequestException as e:
            # Never echo the URL: it carries the bot token
            status = getattr(e.response, 'status_code', None)
            raise NotificationError(
                f"Telegram bot [{self.alias}] failed ({status or type(e).__name__})"
            )


class EmailChannel:
    """Sends messages over SMTP (SMTPS on port 465 when TLS is enabled)."""

    def __init__(self, alias: str, host: str, port: int, user: str, password: str,
                 from_address: str, recipients: List[str], use_tls: bool = True):
        """
        Initialize email channel.

        Args:
            alias: Display name of the sender configuration
            host: SMTP server hostname
            port: SMTP server port
            user: SMTP username
            password: SMTP password
            from_address: From email address
            recipients: List of recipient email addresses
            use_tls: Whether to use TLS encryption
        """
        self.alias = alias
        self.host = host
        self.port = int(port or 0)
        self.user = user
        self.password = password
        self.from_address = from_address
        self.recipients = list(recipients or [])
        self.use_tls = use_tls

    def send(self, subject: str, body: str):
        if not (self.host and self.port and self.from_address and self.recipients):
            raise NotificationError(f"Email sender [{self.alias}] is incomplete or has no recipients")

        msg = MIMEText(body, 'plain', 'utf-8')
        msg['From'] = f'"{APP_NAME}" <{self.from_address}>'
        msg['To'] = ', '.join(self.recipients)
        msg['Subject'] = subject
        msg['Date'] = formatdate(localtime=True)

        logger.info(f"Sending email via [{self.alias}] to {len(self.recipients)} recipient(s)")
        try:
            if self.use_tls and self.port == 465:
                server = smtplib.SMTP_SSL(self.host, self.port, timeout=REQUEST_TIMEOUT)
            else:
                server = smtplib.SMTP(self.host, self.port, timeout=REQUEST_TIMEOUT)
            with server:
                if self.use_tls and self.port != 465:
                    server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Email sender [{self.alias}] failed: {e}")


def load_channels(path: str, secrets: Optional[SecretBox] = None) -> List[Any]:
    """
    Build the enabled channels from the notifications file.

    A missing file means no channels. Entries that cannot be decrypted are
    skipped with an error.
    """
    if not os.path.exists(path):
        return []

    try:
        with open(path, 'r', encoding='utf-8') as f:
            document = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Cannot read notification settings {path}: {e}")
        return []

    def reveal(value):
        return secrets.decrypt(value) if secrets is not None and value else value

    channels = []
    for bot in document.get('telegram_bots') or []:
        if not bot.get('enabled'):
            continue
        try:
            channels.append(TelegramChannel(bot.get('alias', 'telegram'), reveal(bot.get('token')),
                                            str(bot.get('chat_id') or '')))
        except SecretError as e:
            logger.error(f"Skipping Telegram bot [{bot.get('alias')}]: {e}")

    for sender in document.get('email_senders') or []:
        if not sender.get('enabled'):
            continue
        try:
            channels.append(EmailChannel(
                alias=sender.get('alias', 'email'),
                host=sender.get('host'),
                port=sender.get('port', 587),
                user=sender.get('user'),
                password=reveal(sender.get('pass')),
                from_address=sender.get('from'),
                recipients=sender.get('recipients', []),
                use_tls=bool(sender.get('use_tls', True)),
            ))
        except SecretError as e:
            logger.error(f"Skipping email sender [{sender.get('alias')}]: {e}")

    return channels


class Notifier:
    """Fire-and-forget dispatcher of run reports."""

    def __init__(self, channels: List[Any] = None, hostname: str = None):
        self.channels = channels or []
        self.hostname = hostname or socket.gethostname()

    @classmethod
    def from_settings(cls, settings) -> 'Notifier':
        return cls(load_channels(settings.NOTIFICATIONS_FILE, SecretBox(settings.SECRET_KEY_FILE)))

    def send(self, report: RunReport) -> Dict[str, int]:
        """
        Send ``report`` to every channel. Never raises.

        Returns:
            Dict with counts: {'sent': int, 'failed': int}
        """
        if not self.channels:
            logger.debug("No notification channels enabled")
            return {'sent': 0, 'failed': 0}

        subject = render_subject(report)
        body = render_text(report, self.hostname)
        return self.send_message(subject, body)

    def send_message(self, subject: str, body: str) -> Dict[str, int]:
        result = {'sent': 0, 'failed': 0}
        for channel in self.channels:
            try:
                channel.send(subject, body)
                result['sent'] += 1
            except NotificationError as e:
                logger.error(str(e))
                result['failed'] += 1
            except Exception:
                logger.exception(f"Unexpected error in notification channel {channel.alias}")
                result['failed'] += 1
        return result

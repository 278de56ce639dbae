"""
Alert channels and the channel dispatcher.

Each channel kind has a notifier with the same capability:
send(subject, body) -> bool.

  email     raw-socket SMTP (smtp_client) or the local sendmail binary
  telegram  Bot API sendMessage, once per chat id
  viber     Public account send_message, once per receiver
  signal    signal-cli-rest-api /v2/send, one call for all recipients

The dispatcher tries every requested channel independently: an exception
in one channel is logged as "ERROR: <detail>" and the remaining channels
are still attempted.
"""

import html
import logging
import subprocess
from typing import Dict, Iterable, Optional

import requests

from route_config import (
    AppConfig, Channel, EmailSettings, Route, SignalSettings,
    TelegramSettings, ViberSettings,
)
from smtp_client import SmtpClient, build_message

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
VIBER_SEND_URL = "https://chatapi.viber.com/pa/send_message"

POST_TIMEOUT = 15
SENDMAIL_TIMEOUT = 30

STATUS_OK = "OK"
STATUS_FAIL = "FAIL"


def http_post(url: str, payload: dict, headers: Optional[dict] = None,
              timeout: int = POST_TIMEOUT) -> Optional[requests.Response]:
    """POST JSON. Returns None (and logs) when the request itself fails."""
    try:
        return requests.post(url, json=payload, headers=headers or {}, timeout=timeout)
    except requests.RequestException as e:
        logger.warning(f"HTTP POST error: {e}")
        return None


class Notifier:
    """Base class: one outbound transport."""

    channel: Channel

    def send(self, subject: str, body: str) -> bool:
        raise NotImplementedError


class EmailNotifier(Notifier):
    channel = Channel.EMAIL

    def __init__(self, settings: EmailSettings):
        self.settings = settings

    def send(self, subject: str, body: str) -> bool:
        cfg = self.settings
        if not cfg.enabled or not cfg.recipients:
            return False

        message = build_message(
            subject, body,
            from_address=cfg.from_address,
            from_name=cfg.from_name,
            recipients=cfg.recipients,
        )
        if cfg.method == "smtp" and cfg.smtp_host:
            return self._send_smtp(message)
        return self._send_sendmail(message)

    def _send_smtp(self, message: bytes) -> bool:
        cfg = self.settings
        client = SmtpClient(
            host=cfg.smtp_host,
            port=cfg.smtp_port,
            encryption=cfg.smtp_encryption,
            username=cfg.smtp_username,
            password=cfg.smtp_password,
        )
        # SmtpConnectError propagates; the dispatcher reports it as ERROR
        reply = client.send(cfg.from_address, cfg.recipients, message)
        if not reply.ok:
            logger.warning(f"SMTP rejected message: {reply}")
        return reply.ok

    def _send_sendmail(self, message: bytes) -> bool:
        """Hand the message to the local mail submission program."""
        result = subprocess.run(
            [self.settings.sendmail_path, "-t", "-i"],
            input=message,
            capture_output=True,
            timeout=SENDMAIL_TIMEOUT,
        )
        if result.returncode != 0:
            logger.warning(
                f"sendmail exited {result.returncode}: "
                f"{result.stderr.decode('utf-8', errors='replace').strip()}"
            )
        return result.returncode == 0


class TelegramNotifier(Notifier):
    channel = Channel.TELEGRAM

    def __init__(self, settings: TelegramSettings, api_base: str = TELEGRAM_API):
        self.settings = settings
        self.api_base = api_base

    def send(self, subject: str, body: str) -> bool:
        cfg = self.settings
        if not cfg.enabled or not cfg.bot_token or not cfg.chat_ids:
            return False

        url = f"{self.api_base}/bot{cfg.bot_token}/sendMessage"
        text = html.escape(body, quote=False)
        ok = True
        # every chat is attempted; one failure fails the channel
        for chat_id in cfg.chat_ids:
            resp = http_post(url, {"chat_id": chat_id, "text": text, "parse_mode": "HTML"})
            if not self._delivered(resp):
                logger.warning(f"Telegram delivery failed for chat {chat_id}")
                ok = False
        return ok

    @staticmethod
    def _delivered(resp: Optional[requests.Response]) -> bool:
        if resp is None or not (200 <= resp.status_code < 300):
            return False
        try:
            data = resp.json()
        except ValueError:
            return False
        return isinstance(data, dict) and data.get("ok") is True


class ViberNotifier(Notifier):
    channel = Channel.VIBER

    def __init__(self, settings: ViberSettings, url: str = VIBER_SEND_URL):
        self.settings = settings
        self.url = url

    def send(self, subject: str, body: str) -> bool:
        cfg = self.settings
        if not cfg.enabled or not cfg.auth_token or not cfg.receiver_ids:
            return False

        headers = {"X-Viber-Auth-Token": cfg.auth_token}
        ok = True
        for receiver in cfg.receiver_ids:
            resp = http_post(self.url, {"receiver": receiver, "type": "text", "text": body}, headers)
            # any non-empty body counts as delivered
            if resp is None or not resp.content:
                ok = False
        return ok


class SignalNotifier(Notifier):
    channel = Channel.SIGNAL

    def __init__(self, settings: SignalSettings):
        self.settings = settings

    def send(self, subject: str, body: str) -> bool:
        cfg = self.settings
        if not cfg.enabled or not cfg.sender_number or not cfg.recipient_numbers:
            return False

        resp = http_post(f"{cfg.api_url}/v2/send", {
            "message": body,
            "number": cfg.sender_number,
            "recipients": list(cfg.recipient_numbers),
        })
        return resp is not None and bool(resp.content)


def build_notifiers(config: AppConfig) -> Dict[Channel, Notifier]:
    return {
        Channel.EMAIL: EmailNotifier(config.email),
        Channel.TELEGRAM: TelegramNotifier(config.telegram),
        Channel.VIBER: ViberNotifier(config.viber),
        Channel.SIGNAL: SignalNotifier(config.signal),
    }


class ChannelDispatcher:
    """Fans one message out to several channels with isolated failures."""

    def __init__(self, notifiers: Dict[Channel, Notifier]):
        self.notifiers = notifiers

    @classmethod
    def from_config(cls, config: AppConfig) -> "ChannelDispatcher":
        return cls(build_notifiers(config))

    def dispatch(self, channels: Iterable[Channel], subject: str, body: str,
                 route: Route) -> Dict[Channel, str]:
        """Send to each channel. Returns channel -> OK / FAIL / ERROR: detail."""
        outcomes = {}
        for channel in channels:
            notifier = self.notifiers.get(channel)
            try:
                ok = notifier.send(subject, body) if notifier is not None else False
                status = STATUS_OK if ok else STATUS_FAIL
            except Exception as e:
                status = f"ERROR: {e}"
            name = channel.value if isinstance(channel, Channel) else str(channel)
            logger.info(f"Alert [{name}] route={route.id} status={status}")
            outcomes[channel] = status
        return outcomes

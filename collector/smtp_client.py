"""
Minimal SMTP client over a raw socket.

Speaks just enough of RFC 5321 to submit one message:

  banner → EHLO → [STARTTLS → EHLO] → AUTH LOGIN → MAIL FROM →
  RCPT TO (per recipient) → DATA → message → "." → QUIT

Encryption modes: "tls" (STARTTLS upgrade), "ssl" (implicit TLS from the
first byte), "none". Replies are read in full, including multiline
("250-...") replies. A connection failure raises SmtpConnectError; a
rejected command ends the session and is reported as the reply, so the
caller can tell "could not connect" from "server said no".
"""

import base64
import logging
import socket
import ssl
from dataclasses import dataclass
from email.header import Header
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

SMTP_TIMEOUT = 30
CRLF = b"\r\n"


class SmtpError(Exception):
    """Protocol-level failure (malformed reply, dropped connection)."""


class SmtpConnectError(SmtpError):
    """The SMTP server could not be reached."""


@dataclass
class SmtpReply:
    code: int
    lines: List[str]

    @property
    def text(self) -> str:
        return " ".join(self.lines)

    @property
    def ok(self) -> bool:
        return str(self.code).startswith("2")

    def __str__(self) -> str:
        return f"{self.code} {self.text}"


def build_message(subject: str, body: str, from_address: str, from_name: str,
                  recipients: Sequence[str]) -> bytes:
    """
    MIME text/plain message with a base64 body. Subject and display name
    are RFC 2047 encoded when they are not plain ASCII.
    """
    msg = MIMEText(body, "plain", "utf-8")  # utf-8 implies base64 transfer encoding
    msg["Date"] = formatdate(localtime=True)
    msg["From"] = formataddr((from_name, from_address), charset="utf-8")
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = subject if subject.isascii() else Header(subject, "utf-8")
    msg["Message-ID"] = make_msgid()
    raw = msg.as_bytes()
    return CRLF.join(raw.splitlines())


def dot_stuff(message: bytes) -> bytes:
    """Escape lines starting with '.' for the DATA phase."""
    lines = message.split(CRLF)
    return CRLF.join(b"." + line if line.startswith(b".") else line for line in lines)


class SmtpClient:
    """One-shot SMTP submission session."""

    def __init__(self, host: str, port: int = 587, encryption: str = "tls",
                 username: str = "", password: str = "",
                 timeout: int = SMTP_TIMEOUT, local_hostname: str = "localhost"):
        self.host = host
        self.port = port
        self.encryption = (encryption or "none").lower()
        self.username = username
        self.password = password
        self.timeout = timeout
        self.local_hostname = local_hostname
        self._sock: Optional[socket.socket] = None
        self._reader = None

    # -- transport ---------------------------------------------------------

    def _connect(self) -> None:
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as e:
            raise SmtpConnectError(f"SMTP connect failed: {self.host}:{self.port}: {e}") from e

        if self.encryption == "ssl":
            try:
                sock = self._tls_context().wrap_socket(sock, server_hostname=self.host)
            except (OSError, ssl.SSLError) as e:
                sock.close()
                raise SmtpConnectError(f"SMTP SSL handshake failed: {e}") from e
        self._attach(sock)

    def _attach(self, sock) -> None:
        self._sock = sock
        self._reader = sock.makefile("rb")

    @staticmethod
    def _tls_context() -> ssl.SSLContext:
        return ssl.create_default_context()

    def _starttls(self) -> None:
        self._reader.close()
        sock = self._tls_context().wrap_socket(self._sock, server_hostname=self.host)
        self._attach(sock)

    def close(self) -> None:
        for closeable in (self._reader, self._sock):
            if closeable is not None:
                try:
                    closeable.close()
                except OSError:
                    pass
        self._reader = None
        self._sock = None

    # -- protocol ----------------------------------------------------------

    def read_reply(self) -> SmtpReply:
        """Read one complete (possibly multiline) reply."""
        lines = []
        while True:
            raw = self._reader.readline(8192)
            if not raw:
                raise SmtpError("SMTP connection closed unexpectedly")
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if len(line) < 3 or not line[:3].isdigit():
                raise SmtpError(f"Malformed SMTP reply: {line!r}")
            lines.append(line[4:])
            if len(line) == 3 or line[3] != "-":
                return SmtpReply(code=int(line[:3]), lines=lines)

    def send_line(self, line: bytes) -> None:
        self._sock.sendall(line + CRLF)

    def command(self, line: str) -> SmtpReply:
        self.send_line(line.encode("utf-8"))
        reply = self.read_reply()
        verb = "<credentials>" if self._is_secret(line) else line.split(" ", 1)[0]
        logger.debug(f"SMTP {verb} -> {reply.code}")
        return reply

    def _is_secret(self, line: str) -> bool:
        return line in (self._b64(self.username), self._b64(self.password))

    @staticmethod
    def _b64(value: str) -> str:
        return base64.b64encode(value.encode("utf-8")).decode("ascii")

    # -- session -----------------------------------------------------------

    def send(self, from_address: str, recipients: Sequence[str], message: bytes) -> SmtpReply:
        """
        Submit `message`. Returns the reply that ended the session: the
        reply to the final "." on success, or the first rejecting reply.
        """
        self._connect()
        try:
            reply = self._session(from_address, recipients, message)
            try:
                self.command("QUIT")
            except (OSError, SmtpError):
                pass
            return reply
        finally:
            self.close()

    def _session(self, from_address, recipients, message) -> SmtpReply:
        banner = self.read_reply()
        if not banner.ok:
            return banner

        reply = self.command(f"EHLO {self.local_hostname}")
        if not reply.ok:
            return reply

        if self.encryption == "tls":
            reply = self.command("STARTTLS")
            if not reply.ok:
                return reply
            self._starttls()
            reply = self.command(f"EHLO {self.local_hostname}")
            if not reply.ok:
                return reply

        if self.username:
            reply = self.command("AUTH LOGIN")
            if reply.code != 334:
                return reply
            reply = self.command(self._b64(self.username))
            if reply.code != 334:
                return reply
            reply = self.command(self._b64(self.password))
            if not reply.ok:
                return reply

        reply = self.command(f"MAIL FROM:<{from_address}>")
        if not reply.ok:
            return reply

        for rcpt in recipients:
            reply = self.command(f"RCPT TO:<{rcpt}>")
            if not reply.ok:
                return reply

        reply = self.command("DATA")
        if reply.code != 354:
            return reply

        self._sock.sendall(dot_stuff(message) + CRLF + b"." + CRLF)
        return self.read_reply()

"""
Unit tests for notifiers.py: per-channel request shapes, success rules and
dispatcher failure isolation. requests.post / subprocess.run are mocked.
"""

import pytest
from unittest.mock import MagicMock, patch

import requests

from notifiers import (
    ChannelDispatcher,
    EmailNotifier,
    SignalNotifier,
    TelegramNotifier,
    ViberNotifier,
    build_notifiers,
)
from route_config import (
    Channel, EmailSettings, SignalSettings, TelegramSettings, ViberSettings,
)
from smtp_client import SmtpConnectError, SmtpReply


def _resp(status_code=200, json_data=None, content=b"{}"):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = content
    if isinstance(json_data, Exception):
        resp.json.side_effect = json_data
    else:
        resp.json.return_value = json_data
    return resp


# ---------------------------------------------------------------------------
# Telegram
# ---------------------------------------------------------------------------

class TestTelegramNotifier:
    def _notifier(self, chat_ids=("1", "2")):
        return TelegramNotifier(TelegramSettings(enabled=True, bot_token="T0K", chat_ids=chat_ids))

    def test_posts_per_chat_with_html(self):
        with patch("notifiers.requests.post", return_value=_resp(json_data={"ok": True})) as post:
            assert self._notifier().send("s", "Route <A> & B")
        assert post.call_count == 2
        url = post.call_args[0][0]
        payload = post.call_args[1]["json"]
        assert url == "https://api.telegram.org/botT0K/sendMessage"
        assert payload == {"chat_id": "2", "text": "Route &lt;A&gt; &amp; B", "parse_mode": "HTML"}
        assert post.call_args[1]["timeout"] == 15

    def test_one_failed_chat_fails_channel(self):
        responses = [_resp(json_data={"ok": True}), _resp(json_data={"ok": False})]
        with patch("notifiers.requests.post", side_effect=responses) as post:
            assert not self._notifier().send("s", "b")
        assert post.call_count == 2

    def test_non_2xx_fails(self):
        with patch("notifiers.requests.post", return_value=_resp(401, json_data={"ok": True})):
            assert not self._notifier(("1",)).send("s", "b")

    def test_non_json_fails(self):
        with patch("notifiers.requests.post", return_value=_resp(json_data=ValueError("html"))):
            assert not self._notifier(("1",)).send("s", "b")

    def test_request_exception_fails(self):
        with patch("notifiers.requests.post", side_effect=requests.Timeout("slow")):
            assert not self._notifier(("1",)).send("s", "b")

    def test_disabled_sends_nothing(self):
        notifier = TelegramNotifier(TelegramSettings(enabled=False, bot_token="t", chat_ids=("1",)))
        with patch("notifiers.requests.post") as post:
            assert not notifier.send("s", "b")
        post.assert_not_called()


# ---------------------------------------------------------------------------
# Viber / Signal
# ---------------------------------------------------------------------------

class TestViberNotifier:
    def test_posts_per_receiver_with_token_header(self):
        notifier = ViberNotifier(ViberSettings(enabled=True, auth_token="VT", receiver_ids=("a", "b")))
        with patch("notifiers.requests.post", return_value=_resp(content=b'{"status":0}')) as post:
            assert notifier.send("s", "hello")
        assert post.call_count == 2
        assert post.call_args[1]["headers"] == {"X-Viber-Auth-Token": "VT"}
        assert post.call_args[1]["json"] == {"receiver": "b", "type": "text", "text": "hello"}

    def test_any_non_empty_body_is_success(self):
        notifier = ViberNotifier(ViberSettings(enabled=True, auth_token="VT", receiver_ids=("a",)))
        with patch("notifiers.requests.post", return_value=_resp(500, content=b"error")):
            assert notifier.send("s", "hello")

    def test_empty_body_fails(self):
        notifier = ViberNotifier(ViberSettings(enabled=True, auth_token="VT", receiver_ids=("a",)))
        with patch("notifiers.requests.post", return_value=_resp(content=b"")):
            assert not notifier.send("s", "hello")


class TestSignalNotifier:
    def test_single_call_for_all_recipients(self):
        settings = SignalSettings(enabled=True, api_url="http://gw:8080", sender_number="+1",
                                  recipient_numbers=("+2", "+3"))
        with patch("notifiers.requests.post", return_value=_resp(201, content=b'{"timestamp":1}')) as post:
            assert SignalNotifier(settings).send("s", "hi")
        post.assert_called_once()
        assert post.call_args[0][0] == "http://gw:8080/v2/send"
        assert post.call_args[1]["json"] == {"message": "hi", "number": "+1", "recipients": ["+2", "+3"]}

    def test_connection_error_fails(self):
        settings = SignalSettings(enabled=True, sender_number="+1", recipient_numbers=("+2",))
        with patch("notifiers.requests.post", side_effect=requests.ConnectionError("refused")):
            assert not SignalNotifier(settings).send("s", "hi")


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------

class TestEmailNotifier:
    def _settings(self, **overrides):
        values = dict(enabled=True, method="smtp", recipients=("me@example.com",),
                      from_address="bot@example.com", smtp_host="mail.example.com",
                      smtp_username="bot", smtp_password="pw")
        values.update(overrides)
        return EmailSettings(**values)

    def test_smtp_success(self):
        with patch("notifiers.SmtpClient") as client_cls:
            client_cls.return_value.send.return_value = SmtpReply(250, ["queued"])
            assert EmailNotifier(self._settings()).send("Subj", "Body")
        from_address, recipients, message = client_cls.return_value.send.call_args[0]
        assert from_address == "bot@example.com"
        assert recipients == ("me@example.com",)
        assert b"Subject: Subj" in message
        client_cls.assert_called_once_with(
            host="mail.example.com", port=587, encryption="tls", username="bot", password="pw",
        )

    def test_smtp_rejection_is_false(self):
        with patch("notifiers.SmtpClient") as client_cls:
            client_cls.return_value.send.return_value = SmtpReply(550, ["mailbox unavailable"])
            assert not EmailNotifier(self._settings()).send("Subj", "Body")

    def test_smtp_connect_failure_raises(self):
        with patch("notifiers.SmtpClient") as client_cls:
            client_cls.return_value.send.side_effect = SmtpConnectError("refused")
            with pytest.raises(SmtpConnectError):
                EmailNotifier(self._settings()).send("Subj", "Body")

    def test_sendmail_fallback(self):
        settings = self._settings(method="sendmail", smtp_host="")
        with patch("notifiers.subprocess.run", return_value=MagicMock(returncode=0, stderr=b"")) as run:
            assert EmailNotifier(settings).send("Subj", "Body")
        args, kwargs = run.call_args
        assert args[0] == ["/usr/sbin/sendmail", "-t", "-i"]
        assert b"To: me@example.com" in kwargs["input"]

    def test_sendmail_failure(self):
        settings = self._settings(method="sendmail")
        with patch("notifiers.subprocess.run", return_value=MagicMock(returncode=1, stderr=b"nope")):
            assert not EmailNotifier(settings).send("Subj", "Body")

    def test_no_recipients(self):
        assert not EmailNotifier(self._settings(recipients=())).send("Subj", "Body")


# ---------------------------------------------------------------------------
# ChannelDispatcher
# ---------------------------------------------------------------------------

class TestChannelDispatcher:
    def _notifier(self, result=True, error=None):
        n = MagicMock()
        if error is not None:
            n.send.side_effect = error
        else:
            n.send.return_value = result
        return n

    def test_exception_isolated(self, make_route, caplog):
        failing = self._notifier(error=RuntimeError("smtp down"))
        ok = self._notifier(True)
        bad = self._notifier(False)
        dispatcher = ChannelDispatcher({
            Channel.EMAIL: failing, Channel.TELEGRAM: ok, Channel.VIBER: bad,
        })
        route = make_route()
        with caplog.at_level("INFO", logger="notifiers"):
            outcomes = dispatcher.dispatch(
                [Channel.EMAIL, Channel.TELEGRAM, Channel.VIBER], "s", "b", route
            )
        assert outcomes == {
            Channel.EMAIL: "ERROR: smtp down",
            Channel.TELEGRAM: "OK",
            Channel.VIBER: "FAIL",
        }
        ok.send.assert_called_once_with("s", "b")
        bad.send.assert_called_once_with("s", "b")
        assert "Alert [email] route=home_work status=ERROR: smtp down" in caplog.text
        assert "Alert [telegram] route=home_work status=OK" in caplog.text

    def test_missing_notifier_is_fail(self, make_route):
        dispatcher = ChannelDispatcher({})
        assert dispatcher.dispatch([Channel.SIGNAL], "s", "b", make_route()) == {Channel.SIGNAL: "FAIL"}

    def test_from_config_builds_every_channel(self, make_config):
        assert set(build_notifiers(make_config())) == set(Channel)
        dispatcher = ChannelDispatcher.from_config(make_config())
        assert isinstance(dispatcher.notifiers[Channel.TELEGRAM], TelegramNotifier)

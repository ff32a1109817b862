"""
Unit tests for notifiers.
"""

from unittest.mock import MagicMock

import requests

from prov_controller.notifier import NullNotifier, TelegramNotifier, notifier_from_settings


class TestTelegramNotifier:
    def test_send(self):
        session = MagicMock()
        notifier = TelegramNotifier("123:abc", "42", session=session)

        assert notifier.send("hello") is True
        args, kwargs = session.post.call_args
        assert args[0] == "https://api.telegram.org/bot123:abc/sendMessage"
        assert kwargs["data"] == {"chat_id": "42", "text": "hello"}

    def test_retries_once_then_gives_up(self):
        session = MagicMock()
        session.post.side_effect = requests.exceptions.ConnectionError("down")
        notifier = TelegramNotifier("t", "42", session=session)

        assert notifier.send("hello") is False
        assert session.post.call_count == 2

    def test_second_attempt_succeeds(self):
        session = MagicMock()
        ok = MagicMock()
        session.post.side_effect = [requests.exceptions.Timeout("slow"), ok]
        notifier = TelegramNotifier("t", "42", session=session)

        assert notifier.send("hello") is True

    def test_http_error_counts_as_failure(self):
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.exceptions.HTTPError("400")
        notifier = TelegramNotifier("t", "42", attempts=3, session=session)

        assert notifier.send("hello") is False
        assert session.post.call_count == 3


def test_null_notifier():
    assert NullNotifier().send("hello") is False


def test_notifier_from_settings():
    assert isinstance(notifier_from_settings("t", "42"), TelegramNotifier)
    assert isinstance(notifier_from_settings("t", None), NullNotifier)
    assert isinstance(notifier_from_settings(None, None), NullNotifier)

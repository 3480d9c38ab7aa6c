import sys
from pathlib import Path

# Ensure project root on sys.path before importing project packages
sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest
import requests

from smcbot.telegram import send_telegram_message, TelegramNotifier


class DummyResponse:
    def __init__(self, ok=True, status_code=200, payload=None):
        self.ok = ok
        self.status_code = status_code
        self._payload = payload or {}
        self.text = str(self._payload)

    def json(self):
        return self._payload


def test_send_posts_to_bot_api(monkeypatch):
    calls = []

    def fake_post(url, data=None, timeout=None):
        calls.append((url, data, timeout))
        return DummyResponse()

    monkeypatch.setattr('smcbot.telegram.requests.post', fake_post)

    assert send_telegram_message("TOKEN", "42", "hello")
    assert calls == [("https://api.telegram.org/botTOKEN/sendMessage", {"chat_id": "42", "text": "hello"}, 10)]


def test_send_reports_api_failure(monkeypatch):
    monkeypatch.setattr('smcbot.telegram.requests.post',
                        lambda *a, **kw: DummyResponse(False, 400, {"description": "chat not found"}))
    assert not send_telegram_message("TOKEN", "42", "hello")


def test_send_survives_network_error(monkeypatch):
    def boom(*args, **kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr('smcbot.telegram.requests.post', boom)
    assert not send_telegram_message("TOKEN", "42", "hello")


@pytest.mark.asyncio
async def test_notifier_is_noop_without_credentials(monkeypatch):
    monkeypatch.setattr('smcbot.telegram.requests.post',
                        lambda *a, **kw: pytest.fail("should not send"))
    notifier = TelegramNotifier(None, "42")

    assert not notifier.enabled
    assert await notifier.notify("ignored") is False


@pytest.mark.asyncio
async def test_notifier_sends_off_loop(monkeypatch):
    sent = []
    monkeypatch.setattr('smcbot.telegram.requests.post',
                        lambda url, data=None, timeout=None: sent.append(data["text"]) or DummyResponse())

    assert await TelegramNotifier("TOKEN", "42").notify("trade opened")
    assert sent == ["trade opened"]

"""Tests for alarm notification and webhook dispatch."""

from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from anchorwatch.alarms.models import AlarmEvent, AlarmType, Severity
from anchorwatch.alerts.notifier import AlarmNotifier, build_payload, dispatch_webhooks

T0 = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


def _event(severity=Severity.alarm) -> AlarmEvent:
    return AlarmEvent("e1", AlarmType.drift_exceeded, severity, T0, 43.0, 5.0, 31.4)


def _mock_client(mock_client_cls, response=None, error=None) -> MagicMock:
    mock_client = MagicMock()
    if error is not None:
        mock_client.post.side_effect = error
    else:
        mock_client.post.return_value = response
    mock_client.__enter__ = MagicMock(return_value=mock_client)
    mock_client.__exit__ = MagicMock(return_value=False)
    mock_client_cls.return_value = mock_client
    return mock_client


def test_build_payload():
    payload = build_payload(_event(), device_id="boat-1")
    assert payload["event"] == "driftExceeded"
    assert payload["severity"] == "alarm"
    assert payload["message"] == "Anchor drift: 31m from anchor"
    assert payload["alarm"]["id"] == "e1"
    assert payload["alarm"]["raised_at"] == T0.isoformat()
    assert payload["device_id"] == "boat-1"


def test_dispatch_webhooks_success():
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.is_success = True

    with patch("anchorwatch.alerts.notifier.httpx.Client") as mock_client_cls:
        mock_client = _mock_client(mock_client_cls, response=mock_response)

        results = dispatch_webhooks([build_payload(_event())], "https://example.com/hook")
        assert len(results) == 1
        assert results[0]["success"] is True
        assert results[0]["status_code"] == 200
        mock_client.post.assert_called_once()
        assert mock_client.post.call_args.args[0] == "https://example.com/hook"


def test_dispatch_webhooks_http_error():
    mock_response = MagicMock()
    mock_response.status_code = 500
    mock_response.is_success = False

    with patch("anchorwatch.alerts.notifier.httpx.Client") as mock_client_cls:
        _mock_client(mock_client_cls, response=mock_response)
        results = dispatch_webhooks([build_payload(_event())], "https://example.com/hook")
        assert results[0]["success"] is False
        assert results[0]["status_code"] == 500


def test_dispatch_webhooks_failure():
    with patch("anchorwatch.alerts.notifier.httpx.Client") as mock_client_cls:
        _mock_client(mock_client_cls, error=Exception("Connection failed"))

        results = dispatch_webhooks([build_payload(_event())], "https://example.com/hook")
        assert len(results) == 1
        assert results[0]["success"] is False
        assert "Connection failed" in results[0]["error"]


class TestAlarmNotifier:
    @pytest.mark.asyncio
    async def test_without_webhook(self):
        notifier = AlarmNotifier()
        with patch("anchorwatch.alerts.notifier.dispatch_webhooks") as mock_dispatch:
            assert await notifier.notify(_event()) == []
            mock_dispatch.assert_not_called()
        assert list(notifier.delivered) == [_event()]

    @pytest.mark.asyncio
    async def test_forwards_to_webhook(self):
        notifier = AlarmNotifier(webhook_url="https://example.com/hook", device_id="boat-1")
        with patch(
            "anchorwatch.alerts.notifier.dispatch_webhooks",
            return_value=[{"success": True}],
        ) as mock_dispatch:
            results = await notifier.notify(_event(Severity.warning))

        assert results == [{"success": True}]
        payloads, url = mock_dispatch.call_args.args
        assert url == "https://example.com/hook"
        assert payloads[0]["severity"] == "warning"
        assert payloads[0]["device_id"] == "boat-1"

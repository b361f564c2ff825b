"""Tests for remote session document encoding and validation."""

from datetime import UTC, datetime, timedelta

import pytest

from anchorwatch.alarms.models import AlarmEvent, AlarmType, Severity
from anchorwatch.anchor.models import REMOTE_ANCHOR_ID, Anchor
from anchorwatch.errors import SessionCorruptedError
from anchorwatch.gps.base import PositionSample
from anchorwatch.pairing.models import DeviceRole
from anchorwatch.remote.documents import (
    decode_alarm,
    decode_session,
    decode_session_view,
    encode_alarm,
    encode_anchor,
    encode_position,
    new_session_document,
    to_ms,
)

T0 = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)
TOKEN = "ABCDEFGHIJKLMNOPQRSTUVWXYZ012345"


def _document() -> dict:
    return new_session_document("uid-1", T0, timedelta(hours=24))


class TestEncoding:
    def test_new_session_document(self):
        doc = _document()
        assert doc["primaryUserId"] == "uid-1"
        assert doc["expiresAt"] - doc["createdAt"] == 24 * 3600 * 1000
        assert doc["isActive"] is True
        assert doc["monitoringActive"] is False
        assert doc["devices"]["uid-1"]["role"] == "primary"

    def test_encode_anchor(self):
        anchor = Anchor("a1", 43.0, 5.0, 40.0, True, T0, T0)
        assert encode_anchor(anchor) == {
            "lat": 43.0,
            "lon": 5.0,
            "radius": 40.0,
            "isActive": True,
            "createdAt": to_ms(T0),
        }

    def test_encode_position_omits_unknowns(self):
        sample = PositionSample(timestamp=T0, latitude=43.0, longitude=5.0, accuracy=4.0)
        assert encode_position(sample) == {
            "lat": 43.0,
            "lon": 5.0,
            "accuracy": 4.0,
            "timestamp": to_ms(T0),
        }

    def test_encode_alarm(self):
        event = AlarmEvent(
            "e1", AlarmType.drift_exceeded, Severity.alarm, T0, 43.0, 5.0, distance_from_anchor=31.5
        )
        doc = encode_alarm(event)
        assert doc["type"] == "driftExceeded"
        assert doc["severity"] == "alarm"
        assert doc["distanceFromAnchor"] == 31.5
        assert doc["acknowledged"] is False


class TestDecoding:
    def test_missing_session(self):
        assert decode_session(TOKEN, None) is None
        assert decode_session_view(TOKEN, None) is None

    def test_decode_session(self):
        session = decode_session(TOKEN, _document())
        assert session.token == TOKEN
        assert session.primary_user_id == "uid-1"
        assert session.expires_at == T0 + timedelta(hours=24)
        assert session.devices["uid-1"].role == DeviceRole.primary
        assert session.secondary_count == 0

    def test_decode_view_with_published_state(self):
        doc = _document()
        doc["anchor"] = {"lat": 43.0, "lon": 5.0, "radius": 40.0, "isActive": True}
        doc["boatPosition"] = {"lat": 43.0001, "lon": 5.0, "timestamp": to_ms(T0)}
        doc["alarm"] = {
            "id": "e1",
            "type": "gpsLost",
            "severity": "warning",
            "timestamp": to_ms(T0),
        }

        view = decode_session_view(TOKEN, doc)
        assert view.anchor.id == REMOTE_ANCHOR_ID
        assert view.anchor.radius == 40.0
        assert view.position.latitude == 43.0001
        assert view.alarm.type == AlarmType.gps_lost

    def test_unknown_fields_ignored(self):
        doc = _document()
        doc["futureFeature"] = {"x": 1}
        assert decode_session(TOKEN, doc) is not None

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda d: d.pop("primaryUserId"),
            lambda d: d.update(createdAt="yesterday"),
            lambda d: d.update(anchor={"lat": 123.0, "lon": 5.0, "radius": 30.0}),
            lambda d: d.update(devices={"x": {"role": "captain"}}),
        ],
    )
    def test_invalid_session_is_corrupted(self, mutate):
        doc = _document()
        mutate(doc)
        with pytest.raises(SessionCorruptedError):
            decode_session_view(TOKEN, doc)

    def test_non_object_is_corrupted(self):
        with pytest.raises(SessionCorruptedError):
            decode_session(TOKEN, "garbage")

    def test_decode_alarm(self):
        assert decode_alarm(TOKEN, None) is None
        with pytest.raises(SessionCorruptedError):
            decode_alarm(TOKEN, {"id": "e1", "type": "unknown"})

"""Error taxonomy shared by the detection, pairing and sync layers.

Each error carries the HTTP status the local API answers with.
"""


class AnchorWatchError(Exception):
    status_code: int = 500


# Location service / permission


class LocationUnavailableError(AnchorWatchError):
    status_code = 503


class LocationServiceDisabledError(LocationUnavailableError):
    def __init__(self) -> None:
        super().__init__("Location services are disabled")


class LocationPermissionDeniedError(LocationUnavailableError):
    status_code = 403

    def __init__(self) -> None:
        super().__init__("Location permission denied")


# Remote store (transient)


class RemoteStoreError(AnchorWatchError):
    status_code = 502


class RemoteUnavailableError(RemoteStoreError):
    status_code = 503


class PermissionDeniedError(RemoteStoreError):
    """The remote store rejected the caller, usually because of stale credentials."""

    status_code = 403


class QuotaExceededError(RemoteStoreError):
    status_code = 429


class AuthenticationError(RemoteStoreError):
    status_code = 401


# Session integrity


class SessionError(AnchorWatchError):
    status_code = 409


class InvalidTokenError(SessionError):
    status_code = 400

    def __init__(self, token: object) -> None:
        super().__init__(
            f"Invalid session token {token!r}: must be 32 uppercase alphanumeric characters"
        )


class SessionNotFoundError(SessionError):
    status_code = 404

    def __init__(self, token: str) -> None:
        super().__init__(f"Session {token} not found")
        self.token = token


class SessionExpiredError(SessionError):
    status_code = 410

    def __init__(self, token: str) -> None:
        super().__init__(f"Session {token} has expired")
        self.token = token


class SessionInactiveError(SessionError):
    status_code = 410

    def __init__(self, token: str) -> None:
        super().__init__(f"Session {token} is not active")
        self.token = token


class SessionCorruptedError(SessionError):
    status_code = 422

    def __init__(self, token: str, detail: str) -> None:
        super().__init__(f"Session {token} is corrupted: {detail}")
        self.token = token


class SessionAccessDeniedError(SessionError):
    status_code = 403

    def __init__(self, token: str) -> None:
        super().__init__(f"Permission denied: cannot access session {token}")
        self.token = token


class SessionCreationThrottledError(SessionError):
    status_code = 429


class NotSessionOwnerError(SessionError):
    status_code = 403


# Invariant violations


class AnchorNotSetError(AnchorWatchError):
    status_code = 409


class NoActiveAnchorError(AnchorWatchError):
    status_code = 409

    def __init__(self) -> None:
        super().__init__("Cannot start monitoring without an active anchor")


class InvalidAnchorError(AnchorWatchError):
    status_code = 422


# Alarms


class AlarmNotFoundError(AnchorWatchError):
    status_code = 404

    def __init__(self, alarm_id: str) -> None:
        super().__init__(f"Alarm {alarm_id} not found")
        self.alarm_id = alarm_id


class AlarmSyncError(AnchorWatchError):
    """Remote dismissal failed, so the alarm stays active locally."""

    status_code = 503

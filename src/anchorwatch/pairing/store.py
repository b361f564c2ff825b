"""Local persistence of the pairing state."""

from datetime import UTC, datetime

from sqlmodel import Session

from anchorwatch.pairing.models import PairingSessionState, PairingStateRecord


def load_pairing_state(session: Session) -> PairingSessionState:
    """Return the saved pairing state, or a fresh primary state."""
    record = session.get(PairingStateRecord, 1)
    if record is None:
        return PairingSessionState()
    return PairingSessionState(
        local_token=record.local_token,
        remote_token=record.remote_token,
        primary_user_id=record.primary_user_id,
    )


def save_pairing_state(session: Session, state: PairingSessionState) -> PairingStateRecord:
    record = session.get(PairingStateRecord, 1)
    if record is None:
        record = PairingStateRecord(id=1)
        session.add(record)
    record.role = state.role
    record.local_token = state.local_token
    record.remote_token = state.remote_token
    record.primary_user_id = state.primary_user_id
    record.updated_at = datetime.now(UTC)
    session.commit()
    session.refresh(record)
    return record

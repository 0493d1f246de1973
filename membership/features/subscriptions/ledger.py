"""
Payment event ledger.

One row per (event_type, payment_reference). The unique constraint is the
idempotency guard: a second insert for the same pair is a replay.
"""
import hashlib
import json
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import select, insert, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from membership.core.database import get_db_session, payment_events, as_utc
from membership.core.errors import ConflictError


class DuplicatePaymentEventError(ConflictError):
    """The (event_type, payment_reference) pair was already applied."""
    code = "duplicate_payment_event"


def payload_hash(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    if not payload:
        return None
    body = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(body).hexdigest()


def record_payment_event(
    session: Session,
    event_type: str,
    payment_reference: str,
    user_id: str,
    received_at: datetime,
    digest: Optional[str] = None,
) -> None:
    """
    Insert the ledger row inside the caller's transaction.

    The caller's transaction also carries the state change, so a failed
    transition leaves no ledger row behind and the event can be redelivered.

    Raises:
        DuplicatePaymentEventError: pair already recorded
    """
    existing = session.execute(
        select(payment_events.c.id).where(
            and_(
                payment_events.c.event_type == event_type,
                payment_events.c.payment_reference == payment_reference,
            )
        )
    ).first()
    if existing:
        raise DuplicatePaymentEventError(
            f"Payment event {event_type}/{payment_reference} already processed"
        )
    try:
        session.execute(
            insert(payment_events).values(
                event_type=event_type,
                payment_reference=payment_reference,
                user_id=user_id,
                payload_hash=digest,
                received_at=received_at,
            )
        )
    except IntegrityError:
        # Concurrent delivery won the insert
        raise DuplicatePaymentEventError(
            f"Payment event {event_type}/{payment_reference} already processed"
        )


def is_recorded(event_type: str, payment_reference: str) -> bool:
    with get_db_session() as session:
        row = session.execute(
            select(payment_events.c.id).where(
                and_(
                    payment_events.c.event_type == event_type,
                    payment_events.c.payment_reference == payment_reference,
                )
            )
        ).first()
    return row is not None


def list_payment_events(user_id: Optional[str] = None, limit: int = 50) -> List[dict]:
    """Recorded payment events, most recent first."""
    limit = min(limit, 500)
    query = select(payment_events)
    if user_id:
        query = query.where(payment_events.c.user_id == user_id)
    query = query.order_by(payment_events.c.received_at.desc(), payment_events.c.id.desc()).limit(limit)

    with get_db_session() as session:
        rows = session.execute(query).fetchall()

    return [
        {
            "event_type": row.event_type,
            "payment_reference": row.payment_reference,
            "user_id": row.user_id,
            "received_at": as_utc(row.received_at).isoformat() if row.received_at else None,
        }
        for row in rows
    ]

"""
equitender/audit.py

Equity log helper utilities (EquityLogger).

Goals:
- Capture WHO did WHAT on WHICH tender, with a human description and
  structured metadata.
- Store a user name snapshot so the trail stays readable if the user changes.
- Strictly increasing sequence per tender.

IMPORTANT:
- append() ADDS an EquityLog entry to the current SQLAlchemy session.
  The calling state machine controls the transaction (commit/rollback), so the
  entry commits or rolls back together with the state change it records.
- There is no update or delete. Readers only ever see creation order.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from .anonymity import can_reveal_identity
from .errors import NotFound
from .extensions import db
from .models import EquityLog, Tender
from .security import Actor, AuthorizationGuard


def _safe_value(value: Any) -> Any:
    """
    Convert a value to something JSON columns accept.

    - Decimal/datetime: str / isoformat.
    - dict/list: converted recursively.
    - Exotic types: repr.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return repr(value)


def next_sequence(tender_id: int) -> int:
    """Next per-tender sequence number (entries pending in the session included)."""
    pending = [
        obj.sequence
        for obj in db.session.new
        if isinstance(obj, EquityLog) and obj.tender_id == tender_id and obj.sequence is not None
    ]
    current = db.session.query(func.max(EquityLog.sequence)).filter(EquityLog.tender_id == tender_id).scalar()
    return max([current or 0, *pending]) + 1


def append(
    tender_id: int,
    actor: Actor,
    action: str,
    description: str,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    user_name: Optional[str] = None,
) -> EquityLog:
    """
    Add one EquityLog entry to the current db session.

    Parameters:
        tender_id: tender the transition belongs to (offers log on their tender)
        actor: acting Actor (system actors log with user_id=None unless acting on behalf of a user)
        action: EquityAction value
        description: human-readable sentence
        metadata: structured details (JSON-safe conversion applied)
        user_name: name snapshot override (a bidder acting on an undisclosed
            anonymous tender is recorded under its anonymous id)
    """
    if tender_id is None:
        raise ValueError("append requires a tender id (after flush).")

    entry = EquityLog(
        tender_id=int(tender_id),
        sequence=next_sequence(int(tender_id)),
        user_id=actor.user_id,
        user_name_snapshot=user_name or actor.name,
        actor_masked=user_name is not None,
        action=str(action),
        description=description,
        details=_safe_value(metadata or {}),
    )
    db.session.add(entry)
    return entry


def list_entries(tender_id: int, actor: Actor) -> List[EquityLog]:
    """
    Entries of a tender in creation order.

    Restricted to OWNER/ADMIN of the procuring organization; anyone else gets
    NotFound (no hint that the tender exists).
    """
    tender = db.session.get(Tender, tender_id)
    if tender is None or not AuthorizationGuard.can(actor, tender.organization_id, "equity_log.view"):
        raise NotFound("Tender not found.")

    return (
        EquityLog.query.filter_by(tender_id=tender_id)
        .order_by(EquityLog.sequence.asc())
        .all()
    )


def serialize_entry(entry: EquityLog, tender: Optional[Tender] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    JSON view of an entry.

    A bidder-side entry written before disclosure keeps its user_id hidden
    while the tender's identity gate is closed (or the tender is gone).
    """
    user_id = entry.user_id
    if entry.actor_masked:
        tender = tender or db.session.get(Tender, entry.tender_id)
        if tender is None or not can_reveal_identity(tender, now):
            user_id = None

    return {
        "id": entry.id,
        "tender_id": entry.tender_id,
        "sequence": entry.sequence,
        "user_id": user_id,
        "user_name": entry.user_name_snapshot,
        "action": entry.action,
        "description": entry.description,
        "metadata": entry.details or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }

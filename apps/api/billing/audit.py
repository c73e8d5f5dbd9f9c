from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from .models import AuditEntry

AUDIT_COLLECTION = "audit_logs"

# Actions
CREATED = "created"
UPDATED = "amount_changed"
STATUS_CHANGE = "status_change"
VIEWED = "viewed"
PAID = "paid"
ACCEPTED = "accepted"
DECLINED = "declined"
RECURRING_GENERATED = "recurring_generated"
REMINDER_SENT = "reminder_sent"
SETTINGS_CHANGED = "settings_changed"


def record_activity(
    txn,
    db_client,
    *,
    owner_uid: str,
    entity_type: str,
    entity_id: str,
    action: str,
    now: float,
    meta: Optional[Dict[str, Any]] = None,
) -> AuditEntry:
    """Append an audit entry as part of the caller's transaction."""
    entry = AuditEntry(
        entry_id=str(uuid.uuid4()),
        owner_uid=owner_uid,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        meta=dict(meta or {}),
        created_at=now,
    )
    ref = db_client.collection(AUDIT_COLLECTION).document(entry.entry_id)
    txn.set(ref, entry.model_dump(mode="json"))
    return entry


def list_activity(db_client, *, owner_uid: str, limit: int = 50, entity_id: Optional[str] = None) -> List[AuditEntry]:
    query = db_client.collection(AUDIT_COLLECTION).where("owner_uid", "==", owner_uid)
    if entity_id:
        query = query.where("entity_id", "==", entity_id)

    out: List[AuditEntry] = []
    for snap in query.stream():
        d = snap.to_dict() or {}
        d.setdefault("entry_id", snap.id)
        out.append(AuditEntry(**d))

    # Newest first; sorted here so no composite index is needed.
    out.sort(key=lambda e: e.created_at, reverse=True)
    return out[: int(limit)]

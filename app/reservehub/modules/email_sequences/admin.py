from __future__ import annotations

from flask import Blueprint, g, request
from sqlalchemy.exc import IntegrityError

from app.reservehub.audit import record_event
from app.reservehub.db import db_session
from app.reservehub.modules.email_sequences.service import (
    PURCHASE_SEQUENCE_ID,
    PurchaseInfo,
    cancel_sequence,
    enqueue_purchase_sequence,
)
from app.reservehub.rbac import permission_required
from app.reservehub.utils import iso_or_none, safe_text

bp = Blueprint("email_sequences", __name__)

_REQUIRED_FIELDS = ("recipientId", "ownerName", "ownerEmail", "restaurantName", "plan", "instanceUrl")


@bp.post("/api/email-sequences")
@permission_required("manage_email_sequences")
def sequence_create():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return {"error": "Invalid request body"}, 400
    missing = [f for f in _REQUIRED_FIELDS if not safe_text(body.get(f))]
    if missing:
        return {"error": f"Missing fields: {', '.join(missing)}"}, 400

    info = PurchaseInfo(
        recipient_id=safe_text(body["recipientId"]),
        owner_name=safe_text(body["ownerName"]),
        owner_email=safe_text(body["ownerEmail"]).lower(),
        restaurant_name=safe_text(body["restaurantName"]),
        plan=safe_text(body["plan"]).upper(),
        instance_url=safe_text(body["instanceUrl"]),
        hosted=bool(body.get("hosted", True)),
    )
    s = db_session()
    try:
        steps = enqueue_purchase_sequence(s, info)
    except ValueError as e:
        s.rollback()
        return {"error": str(e)}, 409
    except IntegrityError:
        # Lost a race with a concurrent enqueue for the same recipient.
        s.rollback()
        return {"error": f"Sequence {PURCHASE_SEQUENCE_ID!r} already exists for recipient {info.recipient_id!r}."}, 409
    principal = g.principal
    record_event(
        s,
        actor_id=principal.id,
        actor_email=principal.email,
        action="email_sequence.enqueue",
        entity_type="EmailSequence",
        entity_id=f"{PURCHASE_SEQUENCE_ID}:{info.recipient_id}",
        metadata={"steps": len(steps)},
    )
    s.commit()
    return {
        "sequenceId": PURCHASE_SEQUENCE_ID,
        "recipientId": info.recipient_id,
        "steps": [
            {"stepIndex": st.step_index, "scheduledAt": iso_or_none(st.scheduled_at), "status": st.status}
            for st in steps
        ],
    }, 201


@bp.post("/api/email-sequences/<sequence_id>/cancel")
@permission_required("manage_email_sequences")
def sequence_cancel(sequence_id: str):
    body = request.get_json(silent=True) or {}
    recipient_id = safe_text(body.get("recipientId")) if isinstance(body, dict) else ""
    s = db_session()
    cancelled = cancel_sequence(s, sequence_id, recipient_id or None)
    principal = g.principal
    record_event(
        s,
        actor_id=principal.id,
        actor_email=principal.email,
        action="email_sequence.cancel",
        entity_type="EmailSequence",
        entity_id=f"{sequence_id}:{recipient_id}" if recipient_id else sequence_id,
        metadata={"cancelled": cancelled},
    )
    s.commit()
    return {"cancelled": cancelled}

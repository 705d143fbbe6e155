"""
Email sequence processor.

Steps are claimed with a conditional UPDATE (pending -> sending) that is committed
before the mail goes out, so concurrent processors (cron overlap, several
replicas) never deliver the same step twice. `sent` is committed only after the
mailer confirms delivery. A step stranded in `sending` by a crash is left for an
operator; it is never resent automatically and it keeps later steps blocked.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, case, exists, func, not_, select, update
from sqlalchemy.orm import Session, aliased

from app.reservehub.errors import DeliveryError
from app.reservehub.modules.email_sequences.mailer import Mailer
from app.reservehub.modules.email_sequences.models import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENDING,
    STATUS_SENT,
    STATUS_SKIPPED,
    EmailSequenceStep,
)
from app.reservehub.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 20
DEFAULT_MAX_ATTEMPTS = 3
PURCHASE_SEQUENCE_ID = "purchase"


@dataclass(frozen=True)
class StepSpec:
    step_index: int
    delay: timedelta
    subject: str
    body: str


@dataclass(frozen=True)
class PurchaseInfo:
    recipient_id: str
    owner_name: str
    owner_email: str
    restaurant_name: str
    plan: str
    instance_url: str
    hosted: bool = True


@dataclass
class ProcessResult:
    total: int = 0
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    deferred: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def purchase_sequence(info: PurchaseInfo) -> list[StepSpec]:
    dashboard = f"{info.instance_url.rstrip('/')}/login" if info.hosted else "your self-hosted dashboard"
    sign_off = "Best,\nThe ReserveHub Team"
    return [
        StepSpec(
            step_index=0,
            delay=timedelta(minutes=1),
            subject=f"Welcome to ReserveHub, {info.owner_name}!",
            body=(
                f"Hi {info.owner_name},\n\n"
                f"Thank you for purchasing ReserveHub {info.plan} for {info.restaurant_name}!\n\n"
                f"Your dashboard: {dashboard}\n\n"
                "Quick start:\n"
                "1. Log in to your dashboard\n"
                "2. Complete the setup wizard (name, hours, tables)\n"
                "3. Set your notification email in Settings\n"
                "4. Make a test reservation\n"
                "5. Share your booking link with guests\n\n"
                f"{sign_off}"
            ),
        ),
        StepSpec(
            step_index=1,
            delay=timedelta(hours=24),
            subject=f"How's your ReserveHub setup going, {info.owner_name}?",
            body=(
                f"Hi {info.owner_name},\n\n"
                f"Have you had a chance to set up {info.restaurant_name}? Worth double-checking:\n"
                "- Tables and capacities\n"
                "- Opening hours for each day\n"
                "- Notification email for new reservations\n\n"
                "Reply to this email if anything is unclear.\n\n"
                f"{sign_off}"
            ),
        ),
        StepSpec(
            step_index=2,
            delay=timedelta(hours=168),
            subject="5 tips to get the most out of ReserveHub",
            body=(
                f"Hi {info.owner_name},\n\n"
                f"{info.restaurant_name} has been on ReserveHub for a week. A few tips:\n"
                "1. Upload your menu\n"
                "2. Brand your booking page\n"
                "3. Customize confirmation and reminder emails\n"
                "4. Arrange the floor plan\n"
                "5. Put your booking link on your website and socials\n\n"
                f"{sign_off}"
            ),
        ),
    ]


def enqueue_sequence(
    s: Session,
    *,
    sequence_id: str,
    recipient_id: str,
    email_to: str,
    steps: list[StepSpec],
    now: datetime | None = None,
) -> list[EmailSequenceStep]:
    if not steps:
        raise ValueError("A sequence needs at least one step.")
    indices = [st.step_index for st in steps]
    if indices[0] < 0 or any(b <= a for a, b in zip(indices, indices[1:])):
        raise ValueError("Step indices must be 0-based and strictly increasing.")
    existing = s.execute(
        select(func.count(EmailSequenceStep.id)).where(
            EmailSequenceStep.sequence_id == sequence_id,
            EmailSequenceStep.recipient_id == recipient_id,
        )
    ).scalar_one()
    if existing:
        raise ValueError(f"Sequence {sequence_id!r} already exists for recipient {recipient_id!r}.")

    now = now or utcnow()
    rows = [
        EmailSequenceStep(
            sequence_id=sequence_id,
            recipient_id=recipient_id,
            step_index=st.step_index,
            email_to=email_to,
            subject=st.subject,
            body=st.body,
            scheduled_at=now + st.delay,
            status=STATUS_PENDING,
            attempts=0,
        )
        for st in steps
    ]
    s.add_all(rows)
    s.flush()
    return rows


def enqueue_purchase_sequence(s: Session, info: PurchaseInfo, *, now: datetime | None = None) -> list[EmailSequenceStep]:
    return enqueue_sequence(
        s,
        sequence_id=PURCHASE_SEQUENCE_ID,
        recipient_id=info.recipient_id,
        email_to=info.owner_email,
        steps=purchase_sequence(info),
        now=now,
    )


def cancel_sequence(s: Session, sequence_id: str, recipient_id: str | None = None) -> int:
    """Mark every still-pending step as skipped. Returns the number of steps cancelled."""
    conditions = [EmailSequenceStep.sequence_id == sequence_id, EmailSequenceStep.status == STATUS_PENDING]
    if recipient_id is not None:
        conditions.append(EmailSequenceStep.recipient_id == recipient_id)
    result = s.execute(
        update(EmailSequenceStep)
        .where(and_(*conditions))
        .values(status=STATUS_SKIPPED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def claim_step(s: Session, step_id: int, *, now: datetime) -> bool:
    """Atomically move one step from pending to sending. True only for the single winner."""
    result = s.execute(
        update(EmailSequenceStep)
        .where(EmailSequenceStep.id == step_id, EmailSequenceStep.status == STATUS_PENDING)
        .values(status=STATUS_SENDING, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    s.commit()
    return result.rowcount == 1


def _has_open_predecessor(s: Session, *, sequence_id: str, recipient_id: str, step_index: int) -> bool:
    open_count = s.execute(
        select(func.count(EmailSequenceStep.id)).where(
            EmailSequenceStep.sequence_id == sequence_id,
            EmailSequenceStep.recipient_id == recipient_id,
            EmailSequenceStep.step_index < step_index,
            EmailSequenceStep.status.not_in((STATUS_SENT, STATUS_SKIPPED)),
        )
    ).scalar_one()
    return open_count > 0


def _mark_sent(s: Session, step_id: int, *, now: datetime) -> None:
    s.execute(
        update(EmailSequenceStep)
        .where(EmailSequenceStep.id == step_id, EmailSequenceStep.status == STATUS_SENDING)
        .values(status=STATUS_SENT, sent_at=now, last_error=None)
        .execution_options(synchronize_session=False)
    )
    s.commit()


def _mark_failed_attempt(s: Session, step_id: int, *, error: str, max_attempts: int) -> None:
    # Back to pending for another try until the attempt budget is spent.
    s.execute(
        update(EmailSequenceStep)
        .where(EmailSequenceStep.id == step_id, EmailSequenceStep.status == STATUS_SENDING)
        .values(
            attempts=EmailSequenceStep.attempts + 1,
            status=case(
                (EmailSequenceStep.attempts + 1 >= max_attempts, STATUS_FAILED),
                else_=STATUS_PENDING,
            ),
            claimed_at=None,
            last_error=error[:1000],
        )
        .execution_options(synchronize_session=False)
    )
    s.commit()


def process_pending_emails(
    s: Session,
    *,
    mailer: Mailer,
    now: datetime | None = None,
    limit: int = DEFAULT_BATCH_LIMIT,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> ProcessResult:
    now = now or utcnow()
    earlier = aliased(EmailSequenceStep)
    # Steps behind a failed, in-flight or not-yet-due predecessor never enter the
    # batch, so they cannot crowd out other recipients' due steps.
    blocked = exists().where(
        earlier.sequence_id == EmailSequenceStep.sequence_id,
        earlier.recipient_id == EmailSequenceStep.recipient_id,
        earlier.step_index < EmailSequenceStep.step_index,
        earlier.status.not_in((STATUS_SENT, STATUS_SKIPPED)),
        not_(and_(earlier.status == STATUS_PENDING, earlier.scheduled_at <= now)),
    )
    candidates = s.execute(
        select(
            EmailSequenceStep.id,
            EmailSequenceStep.sequence_id,
            EmailSequenceStep.recipient_id,
            EmailSequenceStep.step_index,
            EmailSequenceStep.email_to,
            EmailSequenceStep.subject,
            EmailSequenceStep.body,
        )
        .where(EmailSequenceStep.status == STATUS_PENDING, EmailSequenceStep.scheduled_at <= now, ~blocked)
        .order_by(EmailSequenceStep.sequence_id, EmailSequenceStep.recipient_id, EmailSequenceStep.step_index)
        .limit(limit)
    ).all()
    # Release the read snapshot before claiming.
    s.commit()

    result = ProcessResult(total=len(candidates))
    for step in candidates:
        if _has_open_predecessor(
            s, sequence_id=step.sequence_id, recipient_id=step.recipient_id, step_index=step.step_index
        ):
            result.deferred += 1
            continue
        if not claim_step(s, step.id, now=now):
            # Another processor got there first.
            result.deferred += 1
            continue

        result.attempted += 1
        try:
            mailer.send(to=step.email_to, subject=step.subject, body=step.body)
        except DeliveryError as e:
            logger.warning("[EMAIL SEQUENCE] step %s (%s/%s #%s) failed: %s", step.id, step.sequence_id, step.recipient_id, step.step_index, e)
            _mark_failed_attempt(s, step.id, error=str(e), max_attempts=max_attempts)
            result.failed += 1
            continue
        except Exception as e:
            logger.exception("[EMAIL SEQUENCE] step %s crashed the mailer", step.id)
            _mark_failed_attempt(s, step.id, error=f"{type(e).__name__}: {e}", max_attempts=max_attempts)
            result.failed += 1
            continue

        _mark_sent(s, step.id, now=now)
        result.sent += 1

    if result.total:
        logger.info("[EMAIL SEQUENCE] processed batch: %s", result.to_dict())
    return result

from __future__ import annotations

import csv
import io
import json
import logging
import re
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from member_intranet import config
from member_intranet.exceptions import MailQueueError, NotFoundError, PermissionDeniedError, ValidationError
from member_intranet.models.intranet_models import (
    AuditLog,
    Event,
    MailJobStatus,
    MassMailJob,
    MassMailRecipient,
    RecipientStatus,
)
from member_intranet.services import member_directory_service
from member_intranet.services.mail_service import render_email_html, text_to_html
from member_intranet.services.user_access_service import ActorContext

logger = logging.getLogger(__name__)

GERMAN_WEEKDAYS = ["Montag", "Dienstag", "Mittwoch", "Donnerstag", "Freitag", "Samstag", "Sonntag"]
GERMAN_MONTHS = [
    "Januar",
    "Februar",
    "März",
    "April",
    "Mai",
    "Juni",
    "Juli",
    "August",
    "September",
    "Oktober",
    "November",
    "Dezember",
]
_EMAIL_RE = re.compile(r"^[^@\s,;<>]+@[^@\s,;<>]+\.[^@\s,;<>]+$")


def get_event(db: Session, event_id: int | None) -> Event | None:
    if not event_id:
        return None
    return db.get(Event, event_id)


def apply_placeholders(body: str, first_name: str, last_name: str, event_name: str, event: Event | None = None) -> str:
    """Fill the personalization tokens stored templates use."""
    first_name = first_name or ""
    last_name = last_name or ""
    salutation = f"Hallo {first_name}" if first_name else "Hallo"
    replacements = {
        "{Anrede}": salutation,
        "{Vorname}": first_name,
        "{Nachname}": last_name,
        "{Event_Name}": event_name or "",
    }
    if event is not None:
        start = event.StartTime
        replacements.update(
            {
                "{eventDateDay}": GERMAN_WEEKDAYS[start.weekday()] if start else "",
                "{eventDateDayOf}": str(start.day) if start else "",
                "{eventDateMonth}": GERMAN_MONTHS[start.month - 1] if start else "",
                "{EventDateHour}": start.strftime("%H:%M") if start else "",
                "{location}": event.Location or "",
                "{trainingLink}": event.RegistrationLink or "",
            }
        )
    for token, value in replacements.items():
        body = body.replace(token, value)
    return body


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match((value or "").strip()))


def parse_recipients_csv(raw_csv: str | None) -> list[dict[str, str]]:
    """Rows of ``email,first,last``. Rows without a valid address are skipped."""
    if not raw_csv:
        return []
    rows: list[dict[str, str]] = []
    for row in csv.reader(io.StringIO(raw_csv)):
        if not row:
            continue
        email = row[0].strip()
        if not is_valid_email(email):
            continue
        rows.append(
            {
                "email": email,
                "firstName": row[1].strip() if len(row) > 1 else "",
                "lastName": row[2].strip() if len(row) > 2 else "",
            }
        )
    return rows


def collect_recipients(
    user_db: Session | None,
    raw_csv: str | None = None,
    user_ids: Iterable[int] | None = None,
) -> list[dict[str, str]]:
    candidates = parse_recipients_csv(raw_csv)
    if user_ids and user_db is not None:
        candidates.extend(member_directory_service.get_active_recipients(user_db, user_ids))

    seen: set[str] = set()
    recipients: list[dict[str, str]] = []
    for candidate in candidates:
        key = candidate["email"].strip().lower()
        if key in seen:
            continue
        seen.add(key)
        recipients.append(candidate)
    return recipients


def _render_personal_mail(subject: str, body_template: str, recipient: dict[str, str], event_name: str, event: Event | None) -> str:
    personal = apply_placeholders(body_template, recipient.get("firstName") or "", recipient.get("lastName") or "", event_name, event)
    return render_email_html(subject, f"<p>{text_to_html(personal)}</p>")


def _send_personal_mail(gateway, subject: str, body_template: str, recipient: dict[str, str], event_name: str, event: Event | None) -> bool:
    """Deliver one mail. Any gateway error counts as a failed send."""
    html_body = _render_personal_mail(subject, body_template, recipient, event_name, event)
    try:
        sent = bool(gateway.send_email(recipient["email"], subject, html_body))
    except Exception:
        logger.exception("Mass mail delivery failed", extra={"event": "mass_mail_send_failed", "context": {"to": recipient["email"]}})
        return False
    if not sent:
        logger.warning("Mass mail was refused", extra={"event": "mass_mail_send_refused", "context": {"to": recipient["email"]}})
    return sent


def _require_board(actor: ActorContext) -> None:
    if not actor.is_board:
        raise PermissionDeniedError("Only board members may send mass mail.")


def send_mass_mail(
    db: Session,
    actor: ActorContext,
    gateway,
    subject: str,
    body_template: str,
    recipients: list[dict[str, str]],
    event_id: int | None = None,
    batch_size: int | None = None,
    delay_minutes: int | None = None,
) -> dict:
    """Send right away when the list fits one batch, otherwise queue a job.

    A queued job has its first batch sent before returning and is left
    paused until the next run.
    """
    _require_board(actor)
    subject = (subject or "").strip()
    body_template = (body_template or "").strip()
    if not subject or not body_template:
        raise ValidationError("Subject and body must not be empty.")
    if not recipients:
        raise ValidationError("No recipients selected.")

    batch_size = batch_size or config.MAIL_BATCH_SIZE
    delay_minutes = delay_minutes or config.MAIL_BATCH_DELAY_MINUTES
    event = get_event(db, event_id)
    if event_id and event is None:
        raise NotFoundError(f"Event {event_id} not found.")
    event_name = event.Title if event else ""

    if len(recipients) <= batch_size:
        sent = 0
        failed = 0
        for recipient in recipients:
            if _send_personal_mail(gateway, subject, body_template, recipient, event_name, event):
                sent += 1
            else:
                failed += 1
        logger.info(
            "Mass mail sent directly",
            extra={"event": "mass_mail_direct", "context": {"sent": sent, "failed": failed}},
        )
        return {"jobID": None, "queued": False, "total": len(recipients), "sent": sent, "failed": failed, "pending": 0}

    now = datetime.now()
    try:
        job = MassMailJob(
            Subject=subject,
            BodyTemplate=body_template,
            EventID=event.EventID if event else None,
            EventName=event_name or None,
            Status=MailJobStatus.PAUSED.value,
            NextRunAt=now + timedelta(minutes=delay_minutes),
            TotalRecipients=len(recipients),
            SentCount=0,
            FailedCount=0,
            CreatedBy=actor.user_id,
            CreatedDate=now,
        )
        db.add(job)
        db.flush()
        db.add_all(
            [
                MassMailRecipient(
                    JobID=job.JobID,
                    Email=recipient["email"],
                    FirstName=recipient.get("firstName") or None,
                    LastName=recipient.get("lastName") or None,
                    Status=RecipientStatus.PENDING.value,
                )
                for recipient in recipients
            ]
        )
        db.add(
            AuditLog(
                EntityType="MassMailJob",
                EntityID=job.JobID,
                Action="Mail Queue Created",
                Details=json.dumps({"total": len(recipients), "subject": subject}),
                UserID=actor.user_id,
            )
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Mail queue creation failed", extra={"event": "mass_mail_queue_failed", "context": {"total": len(recipients)}})
        raise MailQueueError("Could not create the mail queue. Please try again.") from exc

    summary = process_job_batch(db, gateway, job.JobID, batch_size=batch_size, delay_minutes=delay_minutes)
    summary.update({"queued": True, "total": len(recipients)})
    return summary


def _claim_batch(db: Session, job_id: int, batch_size: int) -> tuple[str, list[MassMailRecipient]]:
    """Mark up to ``batch_size`` pending recipients as ours.

    The conditional update only touches rows that are unclaimed or whose claim
    went stale, so two runners never get the same recipient.
    """
    now = datetime.now()
    stale_before = now - timedelta(minutes=config.MAIL_CLAIM_TTL_MINUTES)
    claimable = or_(MassMailRecipient.ClaimToken.is_(None), MassMailRecipient.ClaimedAt < stale_before)

    candidate_ids = db.execute(
        select(MassMailRecipient.RecipientID)
        .where(MassMailRecipient.JobID == job_id)
        .where(MassMailRecipient.Status == RecipientStatus.PENDING.value)
        .where(claimable)
        .order_by(MassMailRecipient.RecipientID)
        .limit(batch_size)
    ).scalars().all()
    token = uuid.uuid4().hex
    if not candidate_ids:
        db.rollback()
        return token, []

    db.execute(
        update(MassMailRecipient)
        .where(MassMailRecipient.RecipientID.in_(candidate_ids))
        .where(MassMailRecipient.Status == RecipientStatus.PENDING.value)
        .where(claimable)
        .values(ClaimToken=token, ClaimedAt=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    claimed = db.execute(
        select(MassMailRecipient)
        .where(MassMailRecipient.ClaimToken == token)
        .where(MassMailRecipient.Status == RecipientStatus.PENDING.value)
        .order_by(MassMailRecipient.RecipientID)
        .execution_options(populate_existing=True)
    ).scalars().all()
    return token, list(claimed)


def _renew_claim(db: Session, recipient_id: int, token: str) -> bool:
    """Refresh our claim right before sending; False once another runner took it over."""
    result = db.execute(
        update(MassMailRecipient)
        .where(MassMailRecipient.RecipientID == recipient_id)
        .where(MassMailRecipient.ClaimToken == token)
        .where(MassMailRecipient.Status == RecipientStatus.PENDING.value)
        .values(ClaimedAt=datetime.now())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _count_pending(db: Session, job_id: int) -> int:
    return int(
        db.execute(
            select(func.count(MassMailRecipient.RecipientID))
            .where(MassMailRecipient.JobID == job_id)
            .where(MassMailRecipient.Status == RecipientStatus.PENDING.value)
        ).scalar_one()
    )


def process_job_batch(
    db: Session,
    gateway,
    job_id: int,
    batch_size: int | None = None,
    delay_minutes: int | None = None,
) -> dict:
    """Send the next batch of a paused job and reschedule or complete it."""
    batch_size = batch_size or config.MAIL_BATCH_SIZE
    delay_minutes = delay_minutes or config.MAIL_BATCH_DELAY_MINUTES

    job = db.get(MassMailJob, job_id)
    if not job:
        raise NotFoundError(f"Mail job {job_id} not found.")
    if job.Status == MailJobStatus.COMPLETED.value:
        return {"jobID": job.JobID, "status": job.Status, "sent": 0, "failed": 0, "pending": 0}

    event = get_event(db, job.EventID)
    event_name = job.EventName or (event.Title if event else "")
    token, claimed = _claim_batch(db, job.JobID, batch_size)

    sent = 0
    failed = 0
    for recipient in claimed:
        if not _renew_claim(db, recipient.RecipientID, token):
            continue
        payload = {"email": recipient.Email, "firstName": recipient.FirstName or "", "lastName": recipient.LastName or ""}
        ok = _send_personal_mail(gateway, job.Subject, job.BodyTemplate, payload, event_name, event)
        new_status = RecipientStatus.SENT.value if ok else RecipientStatus.FAILED.value
        result = db.execute(
            update(MassMailRecipient)
            .where(MassMailRecipient.RecipientID == recipient.RecipientID)
            .where(MassMailRecipient.ClaimToken == token)
            .where(MassMailRecipient.Status == RecipientStatus.PENDING.value)
            .values(Status=new_status, ProcessedAt=datetime.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            continue
        counter = MassMailJob.SentCount if ok else MassMailJob.FailedCount
        db.execute(
            update(MassMailJob)
            .where(MassMailJob.JobID == job.JobID)
            .values({counter: counter + 1})
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if ok:
            sent += 1
        else:
            failed += 1

    remaining = _count_pending(db, job.JobID)
    now = datetime.now()
    if remaining == 0:
        values = {"Status": MailJobStatus.COMPLETED.value, "NextRunAt": None, "CompletedAt": now}
    else:
        values = {"Status": MailJobStatus.PAUSED.value, "NextRunAt": now + timedelta(minutes=delay_minutes)}
    db.execute(
        update(MassMailJob)
        .where(MassMailJob.JobID == job.JobID)
        .where(MassMailJob.Status == MailJobStatus.PAUSED.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(job)

    logger.info(
        "Mail batch processed",
        extra={"event": "mass_mail_batch", "context": {"jobID": job.JobID, "sent": sent, "failed": failed, "pending": remaining}},
    )
    return {"jobID": job.JobID, "status": job.Status, "sent": sent, "failed": failed, "pending": remaining}


def resume_job(db: Session, actor: ActorContext, gateway, job_id: int) -> dict:
    _require_board(actor)
    return process_job_batch(db, gateway, job_id)


def process_due_jobs(db: Session, gateway, now: datetime | None = None, limit: int = 1) -> list[dict]:
    """Run one batch for each paused job whose pause has elapsed."""
    now = now or datetime.now()
    due_ids = db.execute(
        select(MassMailJob.JobID)
        .where(MassMailJob.Status == MailJobStatus.PAUSED.value)
        .where(MassMailJob.NextRunAt.is_not(None))
        .where(MassMailJob.NextRunAt <= now)
        .order_by(MassMailJob.NextRunAt, MassMailJob.JobID)
        .limit(limit)
    ).scalars().all()
    db.rollback()

    results = []
    for job_id in due_ids:
        try:
            results.append(process_job_batch(db, gateway, job_id))
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Scheduled mail batch failed", extra={"event": "mass_mail_tick_failed", "context": {"jobID": job_id}})
    return results


def serialize_job(db: Session, job: MassMailJob) -> dict:
    pending = _count_pending(db, job.JobID)
    return {
        "jobID": job.JobID,
        "subject": job.Subject,
        "eventID": job.EventID,
        "eventName": job.EventName,
        "status": job.Status,
        "nextRunAt": job.NextRunAt,
        "totalRecipients": int(job.TotalRecipients or 0),
        "sentCount": int(job.SentCount or 0),
        "failedCount": int(job.FailedCount or 0),
        "pendingCount": pending,
        "createdBy": job.CreatedBy,
        "createdDate": job.CreatedDate,
        "completedAt": job.CompletedAt,
    }


def get_job(db: Session, job_id: int) -> dict:
    job = db.get(MassMailJob, job_id)
    if not job:
        raise NotFoundError(f"Mail job {job_id} not found.")
    return serialize_job(db, job)


def list_jobs(db: Session, status: str | None = None, limit: int = 50) -> list[dict]:
    stmt = select(MassMailJob).order_by(MassMailJob.CreatedDate.desc(), MassMailJob.JobID.desc()).limit(limit)
    if status:
        try:
            stmt = stmt.where(MassMailJob.Status == MailJobStatus(status).value)
        except ValueError as exc:
            raise ValidationError("Status must be 'paused' or 'completed'.") from exc
    return [serialize_job(db, job) for job in db.execute(stmt).scalars().all()]

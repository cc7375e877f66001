from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from member_intranet.models.member_models import Member

logger = logging.getLogger(__name__)


def _to_member_entry(member: Member) -> dict[str, str | int | None]:
    first_name = (member.FirstName or "").strip()
    last_name = (member.LastName or "").strip()
    email = (member.Email or "").strip()
    full_name = f"{first_name} {last_name}".strip()
    return {
        "userID": member.UserID,
        "email": email,
        "firstName": first_name,
        "lastName": last_name,
        "displayName": full_name or email or f"Member #{member.UserID}",
        "role": member.Role,
    }


def get_users_by_ids(user_db: Session, user_ids: Iterable[int]) -> dict[int, dict]:
    """Resolve many members with a single query.

    Unknown ids are simply missing from the result. A failing user database
    degrades to an empty map so listings still render without names.
    """
    wanted = sorted({int(user_id) for user_id in user_ids if user_id is not None})
    if not wanted:
        return {}
    try:
        members = user_db.execute(select(Member).where(Member.UserID.in_(wanted))).scalars().all()
    except SQLAlchemyError:
        logger.exception("Member lookup failed", extra={"event": "member_lookup_failed", "context": {"count": len(wanted)}})
        return {}
    return {member.UserID: _to_member_entry(member) for member in members}


def get_user(user_db: Session, user_id: int) -> dict | None:
    return get_users_by_ids(user_db, [user_id]).get(int(user_id))


def get_active_recipients(user_db: Session, user_ids: Iterable[int]) -> list[dict[str, str]]:
    """Mail recipients for the selected member ids, in id order."""
    wanted = sorted({int(user_id) for user_id in user_ids if user_id is not None})
    if not wanted:
        return []
    members = user_db.execute(
        select(Member)
        .where(Member.UserID.in_(wanted))
        .where(Member.IsActive.is_(True))
        .order_by(Member.UserID)
    ).scalars().all()
    rows: list[dict[str, str]] = []
    for member in members:
        entry = _to_member_entry(member)
        if not entry["email"]:
            continue
        rows.append(
            {
                "email": str(entry["email"]),
                "firstName": str(entry["firstName"] or ""),
                "lastName": str(entry["lastName"] or ""),
            }
        )
    return rows

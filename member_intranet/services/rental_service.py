from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Literal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from member_intranet.exceptions import (
    InsufficientStockError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from member_intranet.models.intranet_models import (
    AuditLog,
    LegacyRental,
    LegacyRentalStatus,
    RentalRequest,
    RequestStatus,
    ReturnCondition,
)
from member_intranet.services import catalog_service, member_directory_service
from member_intranet.services.mail_service import send_return_confirmation
from member_intranet.services.user_access_service import ActorContext


REQUEST_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    RequestStatus.PENDING: {RequestStatus.APPROVED, RequestStatus.REJECTED},
    RequestStatus.APPROVED: {RequestStatus.PENDING_RETURN},
    RequestStatus.PENDING_RETURN: {RequestStatus.RETURNED},
    RequestStatus.REJECTED: set(),
    RequestStatus.RETURNED: set(),
}

LEGACY_TRANSITIONS: dict[LegacyRentalStatus, set[LegacyRentalStatus]] = {
    LegacyRentalStatus.ACTIVE: {LegacyRentalStatus.PENDING_RETURN},
    LegacyRentalStatus.PENDING_RETURN: {LegacyRentalStatus.RETURNED},
    LegacyRentalStatus.RETURNED: set(),
}

DECISIONS = {"approve", "reject"}


@dataclass
class RentalView:
    """One row of either rental table, in the shape every listing uses."""

    kind: Literal["request", "legacy"]
    id: int
    itemID: int
    userID: int
    quantity: int
    status: str
    purpose: str | None
    startDate: date | None
    endDate: date | None
    createdAt: datetime | None
    returnedAt: datetime | None = None
    returnCondition: str | None = None
    returnNotes: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def request_view(row: RentalRequest) -> RentalView:
    return RentalView(
        kind="request",
        id=row.RequestID,
        itemID=row.ItemID,
        userID=row.UserID,
        quantity=int(row.Quantity or 0),
        status=row.Status,
        purpose=row.Purpose,
        startDate=row.StartDate,
        endDate=row.EndDate,
        createdAt=row.CreatedDate,
        returnedAt=row.ReturnedAt,
        returnCondition=row.ReturnCondition,
        returnNotes=row.ReturnNotes,
    )


def legacy_view(row: LegacyRental) -> RentalView:
    rented_at = row.RentedAt
    return RentalView(
        kind="legacy",
        id=row.RentalID,
        itemID=row.ItemID,
        userID=row.UserID,
        quantity=int(row.Quantity or 0),
        status=row.Status,
        purpose=row.Purpose,
        startDate=rented_at.date() if rented_at else None,
        endDate=row.ExpectedReturn,
        createdAt=rented_at,
        returnedAt=row.ReturnedAt,
        returnCondition=row.ReturnCondition,
        returnNotes=row.ReturnNotes,
    )


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: dict | None, user_id: int | None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=json.dumps(details, default=str) if details else None,
            UserID=user_id,
        )
    )


def _require_board(actor: ActorContext) -> None:
    if not actor.is_board:
        raise PermissionDeniedError("Only board members may manage rentals.")


def _check_transition(table: dict, current: str, target) -> bool:
    try:
        return target in table[type(target)(current)]
    except (KeyError, ValueError):
        return False


def _normalize_condition(raw: str | None) -> str:
    value = (raw or "").strip().lower()
    try:
        return ReturnCondition(value).value
    except ValueError as exc:
        raise ValidationError("Condition must be 'functional' or 'damaged'.") from exc


def _validate_quantity(quantity: int) -> int:
    try:
        value = int(quantity)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Quantity must be a whole number.") from exc
    if value < 1:
        raise ValidationError("Quantity must be at least 1.")
    return value


def _validate_dates(start_date: date | None, end_date: date | None) -> None:
    if not start_date or not end_date:
        raise ValidationError("Start and end date are required.")
    if start_date > end_date:
        raise ValidationError("End date must not be before start date.")


def check_availability(db: Session, item_id: int, quantity: int, start_date: date, end_date: date) -> dict:
    _validate_dates(start_date, end_date)
    requested = _validate_quantity(quantity)
    item = catalog_service.get_item(db, item_id)
    available = catalog_service.get_item_available_quantity(db, item.ItemID)
    return {
        "itemID": item.ItemID,
        "itemName": item.Name,
        "totalQuantity": int(item.Quantity or 0),
        "availableQuantity": available,
        "requestedQuantity": requested,
        "isAvailable": requested <= available,
    }


def submit_request(
    db: Session,
    actor: ActorContext,
    item_id: int,
    quantity: int,
    start_date: date,
    end_date: date,
    purpose: str,
) -> RentalRequest:
    requested = _validate_quantity(quantity)
    _validate_dates(start_date, end_date)
    cleaned_purpose = (purpose or "").strip()
    if not cleaned_purpose:
        raise ValidationError("Purpose is required.")

    item = catalog_service.get_item(db, item_id)
    available = catalog_service.get_item_available_quantity(db, item.ItemID)
    if requested > available:
        raise InsufficientStockError(available, requested)

    now = datetime.now()
    row = RentalRequest(
        ItemID=item.ItemID,
        UserID=actor.user_id,
        Quantity=requested,
        StartDate=start_date,
        EndDate=end_date,
        Purpose=cleaned_purpose,
        Status=RequestStatus.PENDING.value,
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(row)
    db.flush()
    log_audit(
        db,
        "RentalRequest",
        row.RequestID,
        "Request Submitted",
        {"itemID": item.ItemID, "quantity": requested, "startDate": start_date, "endDate": end_date},
        actor.user_id,
    )
    db.commit()
    db.refresh(row)
    return row


def _get_pending_request(db: Session, request_id: int) -> RentalRequest:
    row = db.get(RentalRequest, request_id)
    if not row or row.Status != RequestStatus.PENDING.value:
        raise NotFoundError("Request not found or already processed.")
    return row


def approve_request(db: Session, actor: ActorContext, request_id: int) -> RentalRequest:
    _require_board(actor)
    row = _get_pending_request(db, request_id)

    with catalog_service.item_stock_lock(db, row.ItemID):
        current_status = db.execute(
            select(RentalRequest.Status).where(RentalRequest.RequestID == request_id)
        ).scalar_one_or_none()
        if current_status != RequestStatus.PENDING.value:
            raise NotFoundError("Request not found or already processed.")
        available = catalog_service.get_item_available_quantity(db, row.ItemID)
        if int(row.Quantity or 0) > available:
            raise InsufficientStockError(available, int(row.Quantity or 0))

        now = datetime.now()
        result = db.execute(
            update(RentalRequest)
            .where(RentalRequest.RequestID == request_id)
            .where(RentalRequest.Status == RequestStatus.PENDING.value)
            .values(
                Status=RequestStatus.APPROVED.value,
                DecidedBy=actor.user_id,
                DecisionDate=now,
                UpdatedDate=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Request not found or already processed.")
        log_audit(db, "RentalRequest", request_id, "Request Approved", {"quantity": row.Quantity}, actor.user_id)
        db.commit()

    db.refresh(row)
    return row


def reject_request(db: Session, actor: ActorContext, request_id: int, reason: str | None = None) -> RentalRequest:
    _require_board(actor)
    row = _get_pending_request(db, request_id)
    cleaned_reason = (reason or "").strip() or None

    now = datetime.now()
    result = db.execute(
        update(RentalRequest)
        .where(RentalRequest.RequestID == request_id)
        .where(RentalRequest.Status == RequestStatus.PENDING.value)
        .values(
            Status=RequestStatus.REJECTED.value,
            DecidedBy=actor.user_id,
            DecisionDate=now,
            DecisionReason=cleaned_reason,
            UpdatedDate=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise NotFoundError("Request not found or already processed.")
    log_audit(db, "RentalRequest", request_id, "Request Rejected", {"reason": cleaned_reason}, actor.user_id)
    db.commit()
    db.refresh(row)
    return row


def decide_request(db: Session, actor: ActorContext, request_id: int, decision: str, reason: str | None = None) -> RentalRequest:
    normalized = (decision or "").strip().lower()
    if normalized not in DECISIONS:
        raise ValidationError("Decision must be 'approve' or 'reject'.")
    if normalized == "approve":
        return approve_request(db, actor, request_id)
    return reject_request(db, actor, request_id, reason)


def report_return(db: Session, actor: ActorContext, request_id: int) -> dict:
    """Borrower announces that an approved request is being handed back."""
    row = db.get(RentalRequest, request_id)
    if not row:
        raise NotFoundError("Rental not found.")
    if row.UserID != actor.user_id:
        raise PermissionDeniedError("You can only return your own rentals.")
    if not _check_transition(REQUEST_TRANSITIONS, row.Status, RequestStatus.PENDING_RETURN):
        raise PermissionDeniedError("Only approved rentals can be returned.")

    now = datetime.now()
    result = db.execute(
        update(RentalRequest)
        .where(RentalRequest.RequestID == request_id)
        .where(RentalRequest.UserID == actor.user_id)
        .where(RentalRequest.Status == RequestStatus.APPROVED.value)
        .values(Status=RequestStatus.PENDING_RETURN.value, ReturnRequestedAt=now, UpdatedDate=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise PermissionDeniedError("Only approved rentals can be returned.")
    early_return = bool(row.EndDate and row.EndDate > date.today())
    log_audit(db, "RentalRequest", request_id, "Return Reported", {"earlyReturn": early_return}, actor.user_id)
    db.commit()
    db.refresh(row)
    return {"rental": request_view(row).to_dict(), "earlyReturn": early_return}


def report_legacy_return(db: Session, actor: ActorContext, rental_id: int) -> dict:
    row = db.get(LegacyRental, rental_id)
    if not row:
        raise NotFoundError("Rental not found.")
    if row.UserID != actor.user_id:
        raise PermissionDeniedError("You can only return your own rentals.")
    if not _check_transition(LEGACY_TRANSITIONS, row.Status, LegacyRentalStatus.PENDING_RETURN):
        raise PermissionDeniedError("Only active rentals can be returned.")

    result = db.execute(
        update(LegacyRental)
        .where(LegacyRental.RentalID == rental_id)
        .where(LegacyRental.UserID == actor.user_id)
        .where(LegacyRental.Status == LegacyRentalStatus.ACTIVE.value)
        .values(Status=LegacyRentalStatus.PENDING_RETURN.value)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise PermissionDeniedError("Only active rentals can be returned.")
    early_return = bool(row.ExpectedReturn and row.ExpectedReturn > date.today())
    log_audit(db, "LegacyRental", rental_id, "Return Reported", {"earlyReturn": early_return}, actor.user_id)
    db.commit()
    db.refresh(row)
    return {"rental": legacy_view(row).to_dict(), "earlyReturn": early_return}


def _notify_return_confirmed(db: Session, user_db: Session | None, gateway, row_user_id: int, item_id: int, quantity: int, condition: str) -> bool:
    if user_db is None or gateway is None:
        return False
    borrower = member_directory_service.get_user(user_db, row_user_id)
    if not borrower:
        return False
    item_name = catalog_service.get_item_names(db, [item_id]).get(item_id, f"Item #{item_id}")
    return send_return_confirmation(gateway, borrower.get("email"), str(borrower["displayName"]), item_name, quantity, condition)


def confirm_return(
    db: Session,
    actor: ActorContext,
    request_id: int,
    condition: str,
    notes: str | None = None,
    user_db: Session | None = None,
    gateway=None,
) -> dict:
    _require_board(actor)
    normalized_condition = _normalize_condition(condition)
    cleaned_notes = (notes or "").strip() or None

    row = db.get(RentalRequest, request_id)
    if not row or row.Status != RequestStatus.PENDING_RETURN.value:
        raise NotFoundError("Rental not found or not awaiting return.")

    now = datetime.now()
    result = db.execute(
        update(RentalRequest)
        .where(RentalRequest.RequestID == request_id)
        .where(RentalRequest.Status == RequestStatus.PENDING_RETURN.value)
        .values(
            Status=RequestStatus.RETURNED.value,
            ReturnedAt=now,
            ReturnCondition=normalized_condition,
            ReturnNotes=cleaned_notes,
            ConfirmedBy=actor.user_id,
            UpdatedDate=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise NotFoundError("Rental not found or not awaiting return.")
    log_audit(
        db,
        "RentalRequest",
        request_id,
        "Return Confirmed",
        {"condition": normalized_condition, "notes": cleaned_notes},
        actor.user_id,
    )
    db.commit()
    db.refresh(row)

    mail_sent = _notify_return_confirmed(db, user_db, gateway, row.UserID, row.ItemID, int(row.Quantity or 0), normalized_condition)
    return {"rental": request_view(row).to_dict(), "mailSent": mail_sent}


def confirm_legacy_return(
    db: Session,
    actor: ActorContext,
    rental_id: int,
    condition: str,
    notes: str | None = None,
    user_db: Session | None = None,
    gateway=None,
) -> dict:
    _require_board(actor)
    normalized_condition = _normalize_condition(condition)
    cleaned_notes = (notes or "").strip() or None

    row = db.get(LegacyRental, rental_id)
    if not row or row.Status != LegacyRentalStatus.PENDING_RETURN.value:
        raise NotFoundError("Rental not found or not awaiting return.")

    result = db.execute(
        update(LegacyRental)
        .where(LegacyRental.RentalID == rental_id)
        .where(LegacyRental.Status == LegacyRentalStatus.PENDING_RETURN.value)
        .values(
            Status=LegacyRentalStatus.RETURNED.value,
            ReturnedAt=datetime.now(),
            ReturnCondition=normalized_condition,
            ReturnNotes=cleaned_notes,
            ConfirmedBy=actor.user_id,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise NotFoundError("Rental not found or not awaiting return.")
    log_audit(
        db,
        "LegacyRental",
        rental_id,
        "Return Confirmed",
        {"condition": normalized_condition, "notes": cleaned_notes},
        actor.user_id,
    )
    db.commit()
    db.refresh(row)

    mail_sent = _notify_return_confirmed(db, user_db, gateway, row.UserID, row.ItemID, int(row.Quantity or 0), normalized_condition)
    return {"rental": legacy_view(row).to_dict(), "mailSent": mail_sent}


def create_legacy_rental(
    db: Session,
    actor: ActorContext,
    item_id: int,
    quantity: int,
    purpose: str | None = None,
    expected_return: date | None = None,
) -> LegacyRental:
    requested = _validate_quantity(quantity)
    if expected_return and expected_return < date.today():
        raise ValidationError("Expected return date must not be in the past.")

    with catalog_service.item_stock_lock(db, item_id) as item:
        available = catalog_service.get_item_available_quantity(db, item.ItemID)
        if requested > available:
            raise InsufficientStockError(available, requested)
        row = LegacyRental(
            ItemID=item.ItemID,
            UserID=actor.user_id,
            Quantity=requested,
            Purpose=(purpose or "").strip() or None,
            Status=LegacyRentalStatus.ACTIVE.value,
            RentedAt=datetime.now(),
            ExpectedReturn=expected_return,
        )
        db.add(row)
        db.flush()
        log_audit(db, "LegacyRental", row.RentalID, "Checked Out", {"itemID": item.ItemID, "quantity": requested}, actor.user_id)
        db.commit()

    db.refresh(row)
    return row


def serialize_views(db: Session, user_db: Session | None, views: list[RentalView]) -> list[dict]:
    """Attach item names and borrower details with one query per source."""
    item_names = catalog_service.get_item_names(db, [view.itemID for view in views])
    users = member_directory_service.get_users_by_ids(user_db, [view.userID for view in views]) if user_db is not None else {}

    rows = []
    for view in views:
        payload = view.to_dict()
        payload["itemName"] = item_names.get(view.itemID, f"Item #{view.itemID}")
        user = users.get(view.userID)
        payload["userName"] = user["displayName"] if user else f"Member #{view.userID}"
        payload["userEmail"] = user["email"] if user else None
        rows.append(payload)
    return rows


def _sort_key(view: RentalView):
    return view.createdAt or datetime.min


def _collect_views(db: Session, request_filters: list | None, legacy_filters: list | None) -> list[RentalView]:
    requests = db.execute(select(RentalRequest).where(*request_filters)).scalars().all() if request_filters is not None else []
    legacy = db.execute(select(LegacyRental).where(*legacy_filters)).scalars().all() if legacy_filters is not None else []
    views = [request_view(row) for row in requests] + [legacy_view(row) for row in legacy]
    views.sort(key=_sort_key, reverse=True)
    return views


def list_rentals_for_item(db: Session, user_db: Session | None, item_id: int, include_closed: bool = False) -> list[dict]:
    catalog_service.get_item(db, item_id)
    request_filters = [RentalRequest.ItemID == item_id]
    legacy_filters = [LegacyRental.ItemID == item_id]
    if not include_closed:
        request_filters.append(RentalRequest.Status.in_(catalog_service.CONSUMING_REQUEST_STATES))
        legacy_filters.append(LegacyRental.Status.in_(catalog_service.CONSUMING_LEGACY_STATES))
    return serialize_views(db, user_db, _collect_views(db, request_filters, legacy_filters))


def list_rentals_for_user(db: Session, user_db: Session | None, user_id: int) -> list[dict]:
    views = _collect_views(db, [RentalRequest.UserID == user_id], [LegacyRental.UserID == user_id])
    return serialize_views(db, user_db, views)


def get_board_overview(db: Session, user_db: Session | None, actor: ActorContext) -> dict:
    if not actor.can_view_rental_overview:
        raise PermissionDeniedError("You are not allowed to view the rental overview.")

    pending = _collect_views(db, [RentalRequest.Status == RequestStatus.PENDING.value], None)
    active = _collect_views(
        db,
        [RentalRequest.Status == RequestStatus.APPROVED.value],
        [LegacyRental.Status == LegacyRentalStatus.ACTIVE.value],
    )
    pending_returns = _collect_views(
        db,
        [RentalRequest.Status == RequestStatus.PENDING_RETURN.value],
        [LegacyRental.Status == LegacyRentalStatus.PENDING_RETURN.value],
    )
    return {
        "pendingRequests": serialize_views(db, user_db, pending),
        "activeRentals": serialize_views(db, user_db, active),
        "pendingReturns": serialize_views(db, user_db, pending_returns),
        "canManage": actor.is_board,
    }

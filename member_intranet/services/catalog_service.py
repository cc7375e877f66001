from __future__ import annotations

import csv
import io
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from member_intranet.exceptions import NotFoundError
from member_intranet.models.intranet_models import (
    InventoryItem,
    LegacyRental,
    LegacyRentalStatus,
    RentalRequest,
    RequestStatus,
)

# Statuses whose quantity is taken out of stock.
CONSUMING_REQUEST_STATES = (RequestStatus.APPROVED.value, RequestStatus.PENDING_RETURN.value)
CONSUMING_LEGACY_STATES = (LegacyRentalStatus.ACTIVE.value, LegacyRentalStatus.PENDING_RETURN.value)

_ITEM_LOCKS_GUARD = threading.Lock()
_ITEM_LOCKS: dict[int, threading.Lock] = {}


def _lock_for(item_id: int) -> threading.Lock:
    with _ITEM_LOCKS_GUARD:
        lock = _ITEM_LOCKS.get(item_id)
        if lock is None:
            lock = threading.Lock()
            _ITEM_LOCKS[item_id] = lock
        return lock


@contextmanager
def item_stock_lock(db: Session, item_id: int) -> Iterator[InventoryItem]:
    """Critical section for "recompute availability, then transition".

    The process lock serializes threads of this worker; the row lock covers
    other workers on databases that support SELECT ... FOR UPDATE. The caller
    must commit before leaving the block. Anything uncommitted is rolled back.
    """
    with _lock_for(int(item_id)):
        item = db.execute(
            select(InventoryItem).where(InventoryItem.ItemID == item_id).with_for_update()
        ).scalars().first()
        if not item:
            db.rollback()
            raise NotFoundError(f"Inventory item {item_id} not found.")
        try:
            yield item
        except Exception:
            db.rollback()
            raise
        if db.in_transaction():
            db.rollback()


def get_item(db: Session, item_id: int) -> InventoryItem:
    item = db.get(InventoryItem, item_id)
    if not item:
        raise NotFoundError(f"Inventory item {item_id} not found.")
    return item


def get_item_name(db: Session, item_id: int) -> str:
    return get_item(db, item_id).Name


def get_item_names(db: Session, item_ids: Iterable[int]) -> dict[int, str]:
    wanted = sorted({int(item_id) for item_id in item_ids if item_id is not None})
    if not wanted:
        return {}
    rows = db.execute(select(InventoryItem.ItemID, InventoryItem.Name).where(InventoryItem.ItemID.in_(wanted))).all()
    return {item_id: name for item_id, name in rows}


def get_consumed_quantities(db: Session, item_ids: Iterable[int] | None = None) -> dict[int, int]:
    """Sum of committed quantity per item over both rental tables."""
    request_stmt = (
        select(RentalRequest.ItemID, func.coalesce(func.sum(RentalRequest.Quantity), 0))
        .where(RentalRequest.Status.in_(CONSUMING_REQUEST_STATES))
        .group_by(RentalRequest.ItemID)
    )
    legacy_stmt = (
        select(LegacyRental.ItemID, func.coalesce(func.sum(LegacyRental.Quantity), 0))
        .where(LegacyRental.Status.in_(CONSUMING_LEGACY_STATES))
        .group_by(LegacyRental.ItemID)
    )
    if item_ids is not None:
        wanted = [int(item_id) for item_id in item_ids]
        request_stmt = request_stmt.where(RentalRequest.ItemID.in_(wanted))
        legacy_stmt = legacy_stmt.where(LegacyRental.ItemID.in_(wanted))

    consumed: dict[int, int] = {}
    for item_id, quantity in db.execute(request_stmt).all():
        consumed[item_id] = consumed.get(item_id, 0) + int(quantity or 0)
    for item_id, quantity in db.execute(legacy_stmt).all():
        consumed[item_id] = consumed.get(item_id, 0) + int(quantity or 0)
    return consumed


def compute_available(total: int | None, consumed: int) -> int:
    return max(0, int(total or 0) - int(consumed or 0))


def get_item_available_quantity(db: Session, item_id: int) -> int:
    item = get_item(db, item_id)
    consumed = get_consumed_quantities(db, [item.ItemID]).get(item.ItemID, 0)
    return compute_available(item.Quantity, consumed)


def serialize_item(item: InventoryItem, consumed: int = 0) -> dict:
    return {
        "itemID": item.ItemID,
        "externalID": item.ExternalID,
        "name": item.Name,
        "description": item.Description,
        "unit": item.Unit,
        "categoryName": item.CategoryName,
        "locationName": item.LocationName,
        "quantity": int(item.Quantity or 0),
        "rentedQuantity": int(consumed),
        "availableQuantity": compute_available(item.Quantity, consumed),
        "lastSyncedAt": item.LastSyncedAt,
    }


def list_items_with_availability(
    db: Session,
    search: str | None = None,
    category: str | None = None,
    location: str | None = None,
) -> list[dict]:
    stmt = select(InventoryItem).order_by(InventoryItem.Name)
    needle = (search or "").strip()
    if needle:
        stmt = stmt.where(InventoryItem.Name.ilike(f"%{needle}%"))
    if (category or "").strip():
        stmt = stmt.where(InventoryItem.CategoryName == category.strip())
    if (location or "").strip():
        stmt = stmt.where(InventoryItem.LocationName == location.strip())
    items = db.execute(stmt).scalars().all()
    consumed = get_consumed_quantities(db, [item.ItemID for item in items]) if items else {}
    return [serialize_item(item, consumed.get(item.ItemID, 0)) for item in items]


def get_inventory_stats(db: Session) -> dict:
    """Totals for the inventory dashboard."""
    rows = list_items_with_availability(db)
    return {
        "itemCount": len(rows),
        "totalQuantity": sum(row["quantity"] for row in rows),
        "inStock": sum(row["availableQuantity"] for row in rows),
        "checkedOut": sum(row["rentedQuantity"] for row in rows),
        "categories": sorted({row["categoryName"] for row in rows if row["categoryName"]}),
        "locations": sorted({row["locationName"] for row in rows if row["locationName"]}),
    }


def export_items_csv(db: Session) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=";")
    writer.writerow(["Item", "Category", "Total", "Rented", "Available", "Unit"])
    for row in list_items_with_availability(db):
        writer.writerow(
            [
                row["name"],
                row["categoryName"] or "",
                row["quantity"],
                row["rentedQuantity"],
                row["availableQuantity"],
                row["unit"] or "",
            ]
        )
    return buffer.getvalue()

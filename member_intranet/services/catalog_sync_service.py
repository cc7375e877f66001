from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from member_intranet import config
from member_intranet.exceptions import CatalogSyncError
from member_intranet.models.intranet_models import AuditLog, InventoryItem

logger = logging.getLogger(__name__)

_PAGE_LIMIT = 100
_MAX_PAGES = 200


def _build_auth_header_value(token: str, scheme: str) -> str:
    if not scheme:
        return token
    return f"{scheme} {token}"


def _to_item_entry(row: dict[str, Any]) -> dict[str, Any] | None:
    external_id = str(row.get("id") or "").strip()
    if not external_id:
        return None
    name = str(row.get("name") or "").strip() or "Unnamed Item"
    try:
        quantity = int(row.get("pieces") if row.get("pieces") is not None else row.get("quantity") or 0)
    except (TypeError, ValueError):
        quantity = 0
    return {
        "externalID": external_id,
        "name": name,
        "description": str(row.get("note") or row.get("description") or "").strip() or None,
        "unit": str(row.get("unit") or "").strip() or "piece",
        "quantity": max(0, quantity),
        "categoryName": str(row.get("categoryName") or row.get("category") or "").strip() or None,
        "locationName": str(row.get("locationName") or row.get("location") or "").strip() or None,
    }


def _fetch_page(url: str) -> dict[str, Any] | list:
    token = config.INVENTORY_API_TOKEN
    if not token:
        raise CatalogSyncError("Missing required environment variable: INVENTORY_API_TOKEN")
    request = urllib.request.Request(
        url=url,
        headers={
            config.INVENTORY_API_AUTH_HEADER: _build_auth_header_value(token, config.INVENTORY_API_AUTH_SCHEME),
            "Accept": "application/json",
        },
        method="GET",
    )
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            if response.status != 200:
                raise CatalogSyncError(f"Inventory API returned status {response.status}")
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        raise CatalogSyncError(f"Inventory API HTTP error: {exc.code}") from exc
    except urllib.error.URLError as exc:
        raise CatalogSyncError(f"Inventory API connection error: {exc.reason}") from exc
    except json.JSONDecodeError as exc:
        raise CatalogSyncError("Inventory API returned invalid JSON") from exc


def fetch_remote_items() -> list[dict[str, Any]]:
    """Collect every inventory object, following the API's ``next`` links."""
    base_url = config.INVENTORY_API_BASE_URL.rstrip("/")
    if not base_url:
        raise CatalogSyncError("Missing required environment variable: INVENTORY_API_BASE_URL")

    rows: list[dict[str, Any]] = []
    url: str | None = f"{base_url}/inventory-object?limit={_PAGE_LIMIT}"
    pages = 0
    while url and pages < _MAX_PAGES:
        payload = _fetch_page(url)
        pages += 1
        if isinstance(payload, list):
            rows.extend(row for row in payload if isinstance(row, dict))
            break
        if not isinstance(payload, dict):
            raise CatalogSyncError("Inventory API payload is not a list or page")
        page_rows = payload.get("results") or payload.get("data") or []
        rows.extend(row for row in page_rows if isinstance(row, dict))
        url = payload.get("next") or None
    return rows


def sync_catalog(db: Session, actor_user_id: int | None = None, remote_rows: list[dict[str, Any]] | None = None) -> dict:
    """Upsert remote inventory objects into InventoryItems by external id.

    Local items that vanished remotely are kept so existing rentals still
    resolve their item; they are reported as ``missingRemote``.
    """
    rows = fetch_remote_items() if remote_rows is None else remote_rows
    entries = [entry for entry in (_to_item_entry(row) for row in rows if isinstance(row, dict)) if entry]

    now = datetime.now()
    created = 0
    updated = 0
    try:
        existing = {
            item.ExternalID: item
            for item in db.execute(select(InventoryItem).where(InventoryItem.ExternalID.is_not(None))).scalars().all()
        }
        seen: set[str] = set()
        for entry in entries:
            if entry["externalID"] in seen:
                continue
            seen.add(entry["externalID"])
            item = existing.get(entry["externalID"])
            if item is None:
                item = InventoryItem(ExternalID=entry["externalID"], CreatedDate=now)
                db.add(item)
                created += 1
            else:
                updated += 1
            item.Name = entry["name"]
            item.Description = entry["description"]
            item.Unit = entry["unit"]
            item.Quantity = entry["quantity"]
            item.CategoryName = entry["categoryName"]
            item.LocationName = entry["locationName"]
            item.LastSyncedAt = now
            item.UpdatedDate = now

        missing = sorted(set(existing) - seen)
        db.add(
            AuditLog(
                EntityType="InventoryCatalog",
                EntityID=0,
                Action="Catalog Synced",
                Details=json.dumps({"created": created, "updated": updated, "missingRemote": len(missing)}),
                UserID=actor_user_id,
            )
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Catalog sync failed", extra={"event": "catalog_sync_failed", "context": {"rows": len(entries)}})
        raise CatalogSyncError("Could not store the synchronized inventory.") from exc

    logger.info(
        "Catalog synchronized",
        extra={"event": "catalog_synced", "context": {"created": created, "updated": updated, "missing": len(missing)}},
    )
    return {"created": created, "updated": updated, "missingRemote": missing}

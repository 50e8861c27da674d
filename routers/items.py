import logging
from io import BytesIO
from typing import List, Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from openpyxl import Workbook
from openpyxl.utils import get_column_letter
from sqlalchemy import func, or_
from sqlmodel import select

from db import SessionDep
from models import Item, RequestItem, utcnow
from schemas import ItemCreate, ItemRead, ItemUpdate
from stock import derive_status
from .auth import StaffUserDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["items"])

TEMPLATE_COLUMNS = [
    ("name", 20),
    ("description", 40),
    ("category", 15),
    ("quantity", 10),
    ("minQuantity", 12),
    ("location", 15),
]
TEMPLATE_ROWS = [
    ["Laptop Dell XPS 13", "High-performance laptop with 16GB RAM and 512GB SSD",
     "electronics", 10, 2, "Main Storage"],
    ["Office Chair", "Ergonomic office chair with adjustable height",
     "furniture", 5, 1, "Office Room"],
    ["Stapler", "Standard desktop stapler with 20-sheet capacity",
     "office-supplies", 15, 3, "Supply Closet"],
]
NULLABLE_FIELDS = ("price", "location")


def _get_active_item(session: SessionDep, item_id: int) -> Item:
    item = session.get(Item, item_id)
    if item is None or not item.is_active:
        raise HTTPException(status_code=404, detail="Item not found")
    return item


@router.get("/template")
def download_import_template():
    """
    Excel template for bulk-importing inventory items.
    """
    wb = Workbook()
    ws = wb.active
    ws.title = "Inventory Template"
    ws.append([name for name, _ in TEMPLATE_COLUMNS])
    for row in TEMPLATE_ROWS:
        ws.append(row)
    for index, (_, width) in enumerate(TEMPLATE_COLUMNS, start=1):
        ws.column_dimensions[get_column_letter(index)].width = width

    buffer = BytesIO()
    wb.save(buffer)
    buffer.seek(0)
    return StreamingResponse(
        buffer,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": 'attachment; filename="inventory_import_template.xlsx"'},
    )


@router.get("/{item_id}", response_model=ItemRead)
def get_item(item_id: int, session: SessionDep):
    """
    Get a single active item by ID.
    """
    return _get_active_item(session, item_id)


@router.post("/", response_model=ItemRead, status_code=201)
def create_item(item_in: ItemCreate, session: SessionDep):
    """
    Add a new item to the inventory. Its status follows from the quantities.
    """
    now = utcnow()
    item = Item(
        **item_in.model_dump(),
        status=derive_status(item_in.quantity, item_in.min_quantity),
        is_active=True,
        last_restocked=now if item_in.quantity > 0 else None,
        created_at=now,
        updated_at=now,
    )

    session.add(item)
    session.commit()
    session.refresh(item)
    logger.info("Created item %s (%s) with quantity %s", item.id, item.name, item.quantity)
    return item


@router.get("/", response_model=List[ItemRead])
def list_items(
    session: SessionDep,
    category: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
):
    """
    List active items, optionally filtered by category, status and a search term.
    """
    query = select(Item).where(Item.is_active == True)  # noqa: E712

    if category is not None:
        query = query.where(Item.category == category)

    if status is not None:
        query = query.where(Item.status == status)

    if search:
        pattern = f"%{search.lower()}%"
        query = query.where(
            or_(
                func.lower(Item.name).like(pattern),
                func.lower(Item.description).like(pattern),
            )
        )

    return session.exec(query.order_by(Item.name)).all()


@router.put("/{item_id}", response_model=ItemRead)
def update_item(
    item_id: int,
    item_in: ItemUpdate,
    session: SessionDep,
    current: StaffUserDep,
):
    item = _get_active_item(session, item_id)

    changes = {
        key: value
        for key, value in item_in.model_dump(exclude_unset=True).items()
        if value is not None or key in NULLABLE_FIELDS
    }
    if not changes:
        raise HTTPException(status_code=400, detail="No valid fields to update")

    restocked = "quantity" in changes and changes["quantity"] > item.quantity
    for key, value in changes.items():
        setattr(item, key, value)

    # Status is never set directly, only recomputed
    item.status = derive_status(item.quantity, item.min_quantity)
    item.updated_at = utcnow()
    if restocked:
        item.last_restocked = item.updated_at

    session.add(item)
    session.commit()
    session.refresh(item)
    logger.info("User %s updated item %s: %s", current.id, item_id, sorted(changes))
    return item


@router.delete("/{item_id}")
def delete_item(
    item_id: int,
    session: SessionDep,
    current: StaffUserDep,
):
    """
    Remove an item. Items that appear on any request are only deactivated so
    the request history stays intact.
    """
    item = _get_active_item(session, item_id)

    references = session.exec(
        select(func.count()).select_from(RequestItem).where(RequestItem.item_id == item_id)
    ).one()

    if references:
        item.is_active = False
        item.updated_at = utcnow()
        session.add(item)
        logger.info("Deactivated item %s, referenced by %s request line(s)", item_id, references)
    else:
        session.delete(item)
        logger.info("Deleted item %s", item_id)

    session.commit()
    return {"success": True, "message": "Item deleted successfully"}

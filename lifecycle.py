"""
Request lifecycle: creation, lookup, status transitions and deletion.

Approving a request is the only operation that takes stock out of the
inventory. The decrement, the derived item status and the request's new
status are written in one transaction, and each item row is updated with a
compare-and-set on the quantity that was read so two approvals racing on the
same item can never lose an update.
"""
import logging
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple, get_args

from sqlalchemy import update
from sqlmodel import Session, select

import config
from errors import ConflictError, InternalError, NotFoundError, ValidationError
from models import Item, Request, RequestItem, User, utcnow
from notifications import Notifier
from schemas import (
    RequestCreate,
    RequestItemDraft,
    RequestLineRead,
    RequestRead,
    RequestStatus,
    StatusUpdateResult,
)
from stock import derive_status

logger = logging.getLogger(__name__)

VALID_STATUSES: Tuple[str, ...] = get_args(RequestStatus)
PENDING = "pending"
APPROVED = "approved"


# Reads

def _load_lines(session: Session, request_ids: Sequence[str]) -> Dict[str, List[RequestLineRead]]:
    lines: Dict[str, List[RequestLineRead]] = defaultdict(list)
    if not request_ids:
        return lines
    rows = session.exec(
        select(RequestItem, Item)
        .join(Item, Item.id == RequestItem.item_id)
        .where(RequestItem.request_id.in_(request_ids))
        .order_by(RequestItem.id)
    ).all()
    for line, item in rows:
        lines[line.request_id].append(
            RequestLineRead(
                id=line.id,
                request_id=line.request_id,
                item_id=line.item_id,
                quantity=line.quantity,
                name=item.name,
                description=item.description,
                category=item.category,
            )
        )
    return lines


def _to_read(request: Request, requester: Optional[User], lines: List[RequestLineRead]) -> RequestRead:
    return RequestRead(
        id=request.id,
        project_name=request.project_name,
        requester_id=request.requester_id,
        requester_name=requester.name if requester else None,
        requester_email=requester.email if requester else None,
        reason=request.reason,
        priority=request.priority,
        due_date=request.due_date,
        status=request.status,
        created_at=request.created_at,
        updated_at=request.updated_at,
        items=lines,
    )


def _requests_with_requesters():
    return select(Request, User).join(
        User, User.id == Request.requester_id, isouter=True
    )


def get_request(session: Session, request_id: str) -> RequestRead:
    row = session.exec(
        _requests_with_requesters().where(Request.id == request_id)
    ).first()
    if row is None:
        raise NotFoundError("Request not found", request_id=request_id)
    request, requester = row
    lines = _load_lines(session, [request.id])
    return _to_read(request, requester, lines[request.id])


def list_requests(
    session: Session,
    requester_id: Optional[int] = None,
    status: Optional[str] = None,
) -> List[RequestRead]:
    query = _requests_with_requesters()
    if requester_id is not None:
        query = query.where(Request.requester_id == requester_id)
    if status is not None:
        query = query.where(Request.status == status)
    rows = session.exec(query.order_by(Request.created_at.desc())).all()
    lines = _load_lines(session, [request.id for request, _ in rows])
    return [_to_read(request, requester, lines[request.id]) for request, requester in rows]


# Creation

def _coerce_item_id(draft: RequestItemDraft) -> int:
    raw = draft.item_id
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise ValidationError(
            "Each item must have a valid item_id",
            invalid_item=draft.model_dump(),
        )
    if isinstance(raw, int):
        return raw
    try:
        return int(raw.strip())
    except ValueError:
        raise ValidationError(
            f'Failed to parse item_id "{raw}" as integer',
            invalid_item=draft.model_dump(),
        )


def _validate_lines(session: Session, drafts: Sequence[RequestItemDraft]) -> List[Tuple[int, int]]:
    lines = []
    for draft in drafts:
        item_id = _coerce_item_id(draft)
        if draft.quantity <= 0:
            raise ValidationError(
                f"Quantity for item {item_id} must be greater than zero",
                invalid_item=draft.model_dump(),
            )
        item = session.get(Item, item_id)
        if item is None or not item.is_active:
            raise ValidationError(
                f"Item with id {item_id} not found in database",
                invalid_item=draft.model_dump(),
            )
        lines.append((item_id, draft.quantity))
    return lines


def _resolve_requester(session: Session, requester_id: Optional[int]) -> int:
    if requester_id is not None and session.get(User, requester_id) is not None:
        return requester_id

    # Legacy clients post without a requester; attribute the request to an
    # admin, or to anyone at all.
    fallback = session.exec(
        select(User.id).where(User.role == "admin").order_by(User.id)
    ).first()
    if fallback is None:
        fallback = session.exec(select(User.id).order_by(User.id)).first()
    if fallback is None:
        raise ValidationError(
            "No valid users found in the database", requester_id=requester_id
        )
    logger.warning(
        "Requester %s not found, attributing request to user %s", requester_id, fallback
    )
    return fallback


def create_request(
    session: Session,
    draft: RequestCreate,
    notifier: Optional[Notifier] = None,
) -> RequestRead:
    project_name = draft.project_name.strip()
    if not project_name or not draft.items:
        raise ValidationError(
            "Missing required fields: project_name and items are required"
        )

    lines = _validate_lines(session, draft.items)
    requester_id = _resolve_requester(session, draft.requester_id)

    request_id = str(uuid.uuid4())
    now = utcnow()
    try:
        session.add(
            Request(
                id=request_id,
                project_name=project_name,
                requester_id=requester_id,
                reason=draft.reason or "",
                priority=draft.priority,
                due_date=draft.due_date,
                status=PENDING,
                created_at=now,
                updated_at=now,
            )
        )
        # parent row must exist before its line items
        session.flush()
        for item_id, quantity in lines:
            session.add(
                RequestItem(request_id=request_id, item_id=item_id, quantity=quantity)
            )
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.exception("Error creating request %s", request_id)
        raise InternalError("Error creating request") from exc

    logger.info(
        "Created request %s (%s) with %d item(s) for user %s",
        request_id, project_name, len(lines), requester_id,
    )
    if notifier is not None:
        notifier.request_submitted(request_id, project_name, requester_id)

    return get_request(session, request_id)


# Transitions

def _read_stock(session: Session, request_id: str) -> List[Tuple[int, str, int, int, int]]:
    """
    Lock and read every item a request draws from.

    Returns (item_id, name, on_hand, min_quantity, requested) with the
    requested quantity summed per item.
    """
    rows = session.exec(
        select(RequestItem.item_id, RequestItem.quantity, Item.name, Item.quantity, Item.min_quantity)
        .join(Item, Item.id == RequestItem.item_id)
        .where(RequestItem.request_id == request_id)
        .order_by(RequestItem.item_id)
        .with_for_update(of=Item)
    ).all()

    stock: Dict[int, List] = {}
    for item_id, requested, name, on_hand, min_quantity in rows:
        if item_id in stock:
            stock[item_id][4] += requested
        else:
            stock[item_id] = [item_id, name, on_hand, min_quantity, requested]
    return [tuple(entry) for entry in stock.values()]


def _apply_approval(session: Session, request_id: str, now: datetime) -> List[str]:
    warnings = []
    connection = session.connection()
    for item_id, name, on_hand, min_quantity, requested in _read_stock(session, request_id):
        new_quantity = max(0, on_hand - requested)
        new_status = derive_status(new_quantity, min_quantity)

        if requested > on_hand:
            warning = f'Item "{name}" (id {item_id}): requested {requested}, only {on_hand} in stock'
            logger.warning("Request %s: %s", request_id, warning)
            warnings.append(warning)

        result = connection.execute(
            update(Item)
            .where(Item.id == item_id, Item.quantity == on_hand)
            .values(quantity=new_quantity, status=new_status, updated_at=now)
        )
        if result.rowcount == 0:
            raise ConflictError(
                f"Item {item_id} was modified concurrently, please retry",
                item_id=item_id,
            )
        logger.info(
            "Item %s (%s) quantity %s -> %s, status %s",
            item_id, name, on_hand, new_quantity, new_status,
        )
    return warnings


def set_request_status(
    session: Session,
    request_id: str,
    new_status: str,
    notifier: Optional[Notifier] = None,
    strict: Optional[bool] = None,
) -> StatusUpdateResult:
    if new_status not in VALID_STATUSES:
        raise ValidationError(
            f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}",
            status=new_status,
        )
    if strict is None:
        strict = config.STRICT_TRANSITIONS

    request = session.get(Request, request_id)
    if request is None:
        raise NotFoundError("Request not found", request_id=request_id)

    previous = request.status
    project_name = request.project_name
    requester_id = request.requester_id
    if strict and previous != PENDING:
        raise ConflictError(
            f"Request is already {previous}; only pending requests can change status",
            status=previous,
        )

    warnings: List[str] = []
    now = utcnow()
    try:
        if new_status == APPROVED:
            warnings = _apply_approval(session, request_id, now)

        result = session.connection().execute(
            update(Request)
            .where(Request.id == request_id, Request.status == previous)
            .values(status=new_status, updated_at=now)
        )
        if result.rowcount == 0:
            raise ConflictError(
                "Request status was changed concurrently, please retry",
                request_id=request_id,
            )
        session.commit()
    except ConflictError:
        session.rollback()
        raise
    except Exception as exc:
        session.rollback()
        logger.exception("Error updating status of request %s", request_id)
        raise InternalError("Error updating request status") from exc

    logger.info("Request %s status %s -> %s", request_id, previous, new_status)

    if notifier is not None:
        notifier.status_changed(request_id, project_name, requester_id, new_status)

    return StatusUpdateResult(
        message="Request status updated successfully",
        request=get_request(session, request_id),
        items_updated=new_status == APPROVED,
        warnings=warnings,
    )


# Deletion

def delete_request(session: Session, request_id: str) -> None:
    try:
        request = session.get(Request, request_id)
        if request is None:
            raise NotFoundError("Request not found", request_id=request_id)

        lines = session.exec(
            select(RequestItem).where(RequestItem.request_id == request_id)
        ).all()
        for line in lines:
            session.delete(line)
        # line items go before the request they reference
        session.flush()
        session.delete(request)
        session.commit()
    except NotFoundError:
        session.rollback()
        raise
    except Exception as exc:
        session.rollback()
        logger.exception("Error deleting request %s", request_id)
        raise InternalError("Error deleting request") from exc

    logger.info("Deleted request %s with %d item(s)", request_id, len(lines))

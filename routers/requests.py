from io import BytesIO
from typing import List, Optional

from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from openpyxl import Workbook
from openpyxl.utils import get_column_letter

import lifecycle
from db import SessionDep
from notifications import NotifierDep
from schemas import RequestCreate, RequestRead, RequestStatusUpdate, StatusUpdateResult
from .auth import StaffUserDep

router = APIRouter(tags=["requests"])

EXPORT_COLUMNS = [
    ("No.", 5),
    ("Request ID", 15),
    ("Item Name", 25),
    ("Quantity", 10),
    ("Priority", 10),
    ("Status", 12),
    ("Requester", 20),
    ("Email", 25),
    ("Project", 20),
    ("Description", 40),
    ("Requested Delivery", 15),
    ("Created Date", 15),
    ("Updated Date", 15),
]


def _export_rows(found: List[RequestRead]):
    """One row per requested item; a request without items still gets a row."""
    number = 0
    for request in found:
        for line in request.items or [None]:
            number += 1
            yield [
                number,
                request.id,
                line.name if line else "",
                line.quantity if line else 0,
                request.priority.capitalize(),
                request.status.capitalize(),
                request.requester_name or f"User {request.requester_id}",
                request.requester_email or "",
                request.project_name,
                request.reason,
                request.due_date.isoformat() if request.due_date else "",
                request.created_at.strftime("%Y-%m-%d"),
                request.updated_at.strftime("%Y-%m-%d"),
            ]


@router.get("/export")
def export_requests(
    session: SessionDep,
    current: StaffUserDep,
    requester_id: Optional[int] = None,
    status: Optional[str] = None,
):
    """
    Download requests as an Excel workbook, newest first.
    """
    found = lifecycle.list_requests(session, requester_id=requester_id, status=status)

    wb = Workbook()
    ws = wb.active
    ws.title = "Requests"
    ws.append([name for name, _ in EXPORT_COLUMNS])
    for row in _export_rows(found):
        ws.append(row)
    for index, (_, width) in enumerate(EXPORT_COLUMNS, start=1):
        ws.column_dimensions[get_column_letter(index)].width = width

    buffer = BytesIO()
    wb.save(buffer)
    buffer.seek(0)
    return StreamingResponse(
        buffer,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": 'attachment; filename="requests_export.xlsx"'},
    )


@router.get("/user/{user_id}", response_model=List[RequestRead])
def list_user_requests(user_id: int, session: SessionDep):
    return lifecycle.list_requests(session, requester_id=user_id)


@router.get("/{request_id}", response_model=RequestRead)
def get_request(request_id: str, session: SessionDep):
    return lifecycle.get_request(session, request_id)


@router.post("/", response_model=RequestRead, status_code=201)
def create_request(request_data: RequestCreate, session: SessionDep, notifier: NotifierDep):
    return lifecycle.create_request(session, request_data, notifier=notifier)


@router.get("/", response_model=List[RequestRead])
def list_requests(
    session: SessionDep,
    requester_id: Optional[int] = None,
    status: Optional[str] = None,
):
    return lifecycle.list_requests(session, requester_id=requester_id, status=status)


@router.patch("/{request_id}/status", response_model=StatusUpdateResult)
def update_request_status(
    request_id: str,
    update: RequestStatusUpdate,
    session: SessionDep,
    notifier: NotifierDep,
    current: StaffUserDep,
):
    return lifecycle.set_request_status(session, request_id, update.status, notifier=notifier)


@router.delete("/{request_id}")
def delete_request(
    request_id: str,
    session: SessionDep,
    current: StaffUserDep,
):
    lifecycle.delete_request(session, request_id)
    return {"success": True, "message": "Request deleted successfully"}

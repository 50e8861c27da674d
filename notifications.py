import logging
import uuid
from collections.abc import Callable, Iterable
from typing import Annotated, Optional

from fastapi import Depends
from sqlmodel import Session, select

from db import new_session
from models import Notification, User

logger = logging.getLogger(__name__)

REQUEST_SUBMITTED = "request_submitted"
REQUEST_APPROVED = "request_approved"
REQUEST_REJECTED = "request_rejected"
REQUEST_FULFILLED = "request_fulfilled"

# status -> (notification type, message template); pending sends nothing
STATUS_MESSAGES = {
    "approved": (REQUEST_APPROVED, 'Your request "{project}" has been approved'),
    "denied": (REQUEST_REJECTED, 'Your request "{project}" has been rejected'),
    "fulfilled": (REQUEST_FULFILLED, 'Your request "{project}" has been fulfilled'),
    "out_of_stock": (
        REQUEST_REJECTED,
        'Your request "{project}" cannot be fulfilled due to insufficient stock',
    ),
}


def build_notification(
    user_id: int,
    type_: str,
    message: str,
    related_request_id: Optional[str] = None,
) -> Notification:
    return Notification(
        id=str(uuid.uuid4()),
        user_id=user_id,
        type=type_,
        message=message,
        related_item_id=related_request_id,
        is_read=False,
    )


class Notifier:
    """
    Best-effort notification writer.

    Every call runs in its own session so a failure here can never touch the
    caller's transaction. Errors are logged and swallowed.
    """

    def __init__(self, session_factory: Callable[[], Session] = new_session):
        self.session_factory = session_factory

    def notify(
        self,
        user_id: int,
        type_: str,
        message: str,
        related_request_id: Optional[str] = None,
    ) -> bool:
        return self.notify_many([user_id], type_, message, related_request_id)

    def notify_many(
        self,
        user_ids: Iterable[int],
        type_: str,
        message: str,
        related_request_id: Optional[str] = None,
    ) -> bool:
        user_ids = list(user_ids)
        try:
            with self.session_factory() as session:
                for user_id in user_ids:
                    session.add(
                        build_notification(user_id, type_, message, related_request_id)
                    )
                session.commit()
        except Exception:
            logger.exception(
                "Could not create %s notification for users %s", type_, user_ids
            )
            return False
        logger.info("Created %s notification for users %s", type_, user_ids)
        return True

    def request_submitted(
        self, request_id: str, project_name: str, requester_id: int
    ) -> None:
        try:
            with self.session_factory() as session:
                staff_ids = session.exec(
                    select(User.id).where(User.role.in_(("admin", "manager")))
                ).all()
        except Exception:
            logger.exception("Could not look up reviewers for request %s", request_id)
            staff_ids = []

        if staff_ids:
            self.notify_many(
                staff_ids,
                REQUEST_SUBMITTED,
                f'New request "{project_name}" requires your review',
                request_id,
            )
        self.notify(
            requester_id,
            REQUEST_SUBMITTED,
            f'Your request "{project_name}" has been submitted and is pending review',
            request_id,
        )

    def status_changed(
        self, request_id: str, project_name: str, requester_id: int, status: str
    ) -> None:
        if status not in STATUS_MESSAGES:
            logger.debug("No notification needed for status %s", status)
            return
        type_, template = STATUS_MESSAGES[status]
        self.notify(
            requester_id, type_, template.format(project=project_name), request_id
        )


def get_notifier() -> Notifier:
    return Notifier()


NotifierDep = Annotated[Notifier, Depends(get_notifier)]

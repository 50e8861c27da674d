import os
import threading

import pytest
from sqlmodel import Session, SQLModel, create_engine, select

import lifecycle
from conftest import make_item, make_user
from errors import ConflictError, InternalError, NotFoundError, ServiceError, ValidationError
from models import Item, Notification, Request, RequestItem
from notifications import Notifier
from schemas import RequestCreate


def _draft(requester_id, *lines, project="Site A"):
    return RequestCreate(
        project_name=project,
        requester_id=requester_id,
        reason="Monthly restock",
        priority="high",
        items=[{"item_id": item_id, "quantity": quantity} for item_id, quantity in lines],
    )


def _reload(session, model, key):
    session.expire_all()
    return session.get(model, key)


def test_create_request_persists_request_and_lines(session, requester):
    cable = make_item(session, "Cable")
    drill = make_item(session, "Drill", quantity=3, min_quantity=1)

    created = lifecycle.create_request(
        session, _draft(requester.id, (cable.id, 2), (str(drill.id), 1))
    )

    assert created.status == "pending"
    assert created.project_name == "Site A"
    assert created.requester_name == "Budi"
    assert [(line.item_id, line.quantity, line.name) for line in created.items] == [
        (cable.id, 2, "Cable"),
        (drill.id, 1, "Drill"),
    ]
    assert created.items[0].category == "electronics"

    stored = session.exec(
        select(RequestItem).where(RequestItem.request_id == created.id)
    ).all()
    assert len(stored) == 2


def test_create_request_does_not_touch_inventory(session, requester):
    cable = make_item(session, "Cable", quantity=10)

    lifecycle.create_request(session, _draft(requester.id, (cable.id, 4)))

    assert _reload(session, Item, cable.id).quantity == 10


def test_create_request_with_invalid_item_leaves_no_trace(session, requester):
    cable = make_item(session, "Cable")

    with pytest.raises(ValidationError) as excinfo:
        lifecycle.create_request(session, _draft(requester.id, (cable.id, 1), (9999, 1)))

    assert "9999" in excinfo.value.message
    assert lifecycle.list_requests(session) == []
    assert session.exec(select(RequestItem)).all() == []


@pytest.mark.parametrize("bad_id", ["abc", None, ""])
def test_create_request_rejects_unparseable_item_id(session, requester, bad_id):
    with pytest.raises(ValidationError):
        lifecycle.create_request(session, _draft(requester.id, (bad_id, 1)))
    assert lifecycle.list_requests(session) == []


def test_create_request_rejects_inactive_item(session, requester):
    retired = make_item(session, "Old Printer", is_active=False)

    with pytest.raises(ValidationError):
        lifecycle.create_request(session, _draft(requester.id, (retired.id, 1)))


def test_create_request_rejects_non_positive_quantity(session, requester):
    cable = make_item(session, "Cable")

    with pytest.raises(ValidationError):
        lifecycle.create_request(session, _draft(requester.id, (cable.id, 0)))


def test_create_request_requires_project_and_items(session, requester):
    cable = make_item(session, "Cable")

    with pytest.raises(ValidationError):
        lifecycle.create_request(session, _draft(requester.id, (cable.id, 1), project="  "))
    with pytest.raises(ValidationError):
        lifecycle.create_request(session, _draft(requester.id))


def test_missing_requester_falls_back_to_admin(session, requester, admin):
    cable = make_item(session, "Cable")

    created = lifecycle.create_request(session, _draft(None, (cable.id, 1)))
    assert created.requester_id == admin.id

    created = lifecycle.create_request(session, _draft(424242, (cable.id, 1)))
    assert created.requester_id == admin.id


def test_missing_requester_falls_back_to_any_user(session, requester):
    cable = make_item(session, "Cable")

    created = lifecycle.create_request(session, _draft(None, (cable.id, 1)))

    assert created.requester_id == requester.id


def test_missing_requester_without_users_fails(session):
    cable = make_item(session, "Cable")

    with pytest.raises(ValidationError):
        lifecycle.create_request(session, _draft(None, (cable.id, 1)))
    assert session.exec(select(Request)).all() == []


def test_create_request_rolls_back_when_insert_fails(session, requester, monkeypatch):
    cable = make_item(session, "Cable")

    def broken_line(**kwargs):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(lifecycle, "RequestItem", broken_line)

    with pytest.raises(InternalError):
        lifecycle.create_request(session, _draft(requester.id, (cable.id, 1)))

    monkeypatch.undo()
    assert session.exec(select(Request)).all() == []
    assert session.exec(select(RequestItem)).all() == []


def test_create_request_notifies_staff_and_requester(session, notifier, requester, admin, manager):
    cable = make_item(session, "Cable")

    created = lifecycle.create_request(
        session, _draft(requester.id, (cable.id, 1)), notifier=notifier
    )

    notes = session.exec(select(Notification)).all()
    assert sorted(n.user_id for n in notes) == sorted([admin.id, manager.id, requester.id])
    assert all(n.type == "request_submitted" for n in notes)
    assert all(n.related_item_id == created.id for n in notes)
    mine = [n for n in notes if n.user_id == requester.id][0]
    assert mine.message == 'Your request "Site A" has been submitted and is pending review'


def test_notification_failure_does_not_undo_request(session, requester):
    cable = make_item(session, "Cable")

    def broken_factory():
        raise RuntimeError("notification store down")

    created = lifecycle.create_request(
        session, _draft(requester.id, (cable.id, 1)), notifier=Notifier(broken_factory)
    )

    assert lifecycle.get_request(session, created.id).status == "pending"


def test_get_request_missing(session):
    with pytest.raises(NotFoundError):
        lifecycle.get_request(session, "does-not-exist")


def test_list_requests_filters_by_requester(session, requester, admin):
    cable = make_item(session, "Cable")
    lifecycle.create_request(session, _draft(requester.id, (cable.id, 1), project="Mine"))
    lifecycle.create_request(session, _draft(admin.id, (cable.id, 1), project="Theirs"))

    mine = lifecycle.list_requests(session, requester_id=requester.id)

    assert [r.project_name for r in mine] == ["Mine"]
    assert mine[0].items[0].name == "Cable"
    assert len(lifecycle.list_requests(session)) == 2


def test_approval_decrements_and_recomputes_status(session, requester):
    item = make_item(session, "A", quantity=10, min_quantity=5)
    created = lifecycle.create_request(session, _draft(requester.id, (item.id, 3)))

    result = lifecycle.set_request_status(session, created.id, "approved")

    assert result.request.status == "approved"
    assert result.items_updated is True
    assert result.warnings == []
    stored = _reload(session, Item, item.id)
    assert stored.quantity == 7
    assert stored.status == "in-stock"


def test_reapproval_in_permissive_mode_decrements_again(session, requester):
    item = make_item(session, "A", quantity=10, min_quantity=5)
    created = lifecycle.create_request(session, _draft(requester.id, (item.id, 3)))

    lifecycle.set_request_status(session, created.id, "approved", strict=False)
    lifecycle.set_request_status(session, created.id, "approved", strict=False)

    stored = _reload(session, Item, item.id)
    assert stored.quantity == 4
    assert stored.status == "low-stock"


def test_reapproval_is_rejected_by_default(session, requester):
    item = make_item(session, "A", quantity=10, min_quantity=5)
    created = lifecycle.create_request(session, _draft(requester.id, (item.id, 3)))
    lifecycle.set_request_status(session, created.id, "approved")

    with pytest.raises(ConflictError):
        lifecycle.set_request_status(session, created.id, "approved", strict=True)

    assert _reload(session, Item, item.id).quantity == 7


def test_over_ask_clamps_to_zero_with_warning(session, requester):
    item = make_item(session, "A", quantity=2, min_quantity=1)
    created = lifecycle.create_request(session, _draft(requester.id, (item.id, 5)))

    result = lifecycle.set_request_status(session, created.id, "approved")

    stored = _reload(session, Item, item.id)
    assert stored.quantity == 0
    assert stored.status == "out-of-stock"
    assert len(result.warnings) == 1
    assert "requested 5, only 2" in result.warnings[0]


def test_repeated_item_lines_are_summed(session, requester):
    item = make_item(session, "A", quantity=10, min_quantity=2)
    created = lifecycle.create_request(
        session, _draft(requester.id, (item.id, 3), (item.id, 4))
    )

    lifecycle.set_request_status(session, created.id, "approved")

    assert _reload(session, Item, item.id).quantity == 3


@pytest.mark.parametrize("status", ["denied", "fulfilled", "out_of_stock"])
def test_other_transitions_leave_inventory_alone(session, requester, status):
    item = make_item(session, "A", quantity=10, min_quantity=5)
    created = lifecycle.create_request(session, _draft(requester.id, (item.id, 3)))

    result = lifecycle.set_request_status(session, created.id, status)

    assert result.request.status == status
    assert result.items_updated is False
    assert _reload(session, Item, item.id).quantity == 10


def test_invalid_status_token_changes_nothing(session, requester):
    item = make_item(session, "A")
    created = lifecycle.create_request(session, _draft(requester.id, (item.id, 3)))

    with pytest.raises(ValidationError):
        lifecycle.set_request_status(session, created.id, "cancelled")

    assert lifecycle.get_request(session, created.id).status == "pending"


def test_status_change_on_missing_request(session):
    with pytest.raises(NotFoundError):
        lifecycle.set_request_status(session, "nope", "approved")


def test_failed_approval_rolls_back_everything(session, requester, monkeypatch):
    first = make_item(session, "A", quantity=10, min_quantity=1)
    second = make_item(session, "B", quantity=10, min_quantity=1)
    created = lifecycle.create_request(
        session, _draft(requester.id, (first.id, 2), (second.id, 2))
    )

    calls = []
    original = lifecycle.derive_status

    def flaky_derive_status(quantity, min_quantity):
        calls.append(quantity)
        if len(calls) == 2:
            raise RuntimeError("boom")
        return original(quantity, min_quantity)

    monkeypatch.setattr(lifecycle, "derive_status", flaky_derive_status)

    with pytest.raises(InternalError):
        lifecycle.set_request_status(session, created.id, "approved")

    assert _reload(session, Item, first.id).quantity == 10
    assert _reload(session, Item, second.id).quantity == 10
    assert lifecycle.get_request(session, created.id).status == "pending"


def test_concurrent_change_is_detected(session, engine, requester, monkeypatch):
    item = make_item(session, "A", quantity=10, min_quantity=1)
    created = lifecycle.create_request(session, _draft(requester.id, (item.id, 3)))
    original = lifecycle._read_stock

    def read_then_race(session_, request_id):
        rows = original(session_, request_id)
        with Session(engine) as other:
            racing = other.get(Item, item.id)
            racing.quantity = 8
            other.add(racing)
            other.commit()
        return rows

    monkeypatch.setattr(lifecycle, "_read_stock", read_then_race)

    with pytest.raises(ConflictError):
        lifecycle.set_request_status(session, created.id, "approved")

    assert _reload(session, Item, item.id).quantity == 8
    assert lifecycle.get_request(session, created.id).status == "pending"


def test_status_change_notifies_requester(session, notifier, requester):
    item = make_item(session, "A")
    created = lifecycle.create_request(session, _draft(requester.id, (item.id, 1)))

    lifecycle.set_request_status(session, created.id, "denied", notifier=notifier)

    notes = session.exec(select(Notification)).all()
    assert len(notes) == 1
    assert notes[0].user_id == requester.id
    assert notes[0].type == "request_rejected"
    assert notes[0].message == 'Your request "Site A" has been rejected'


def test_pending_status_sends_no_notification(session, notifier, requester):
    item = make_item(session, "A")
    created = lifecycle.create_request(session, _draft(requester.id, (item.id, 1)))

    lifecycle.set_request_status(session, created.id, "pending", notifier=notifier)

    assert session.exec(select(Notification)).all() == []


def test_delete_request_removes_lines(session, requester):
    item = make_item(session, "A")
    created = lifecycle.create_request(
        session, _draft(requester.id, (item.id, 1), (item.id, 2))
    )

    lifecycle.delete_request(session, created.id)

    with pytest.raises(NotFoundError):
        lifecycle.get_request(session, created.id)
    assert session.exec(select(RequestItem)).all() == []


def test_delete_missing_request(session):
    with pytest.raises(NotFoundError):
        lifecycle.delete_request(session, "nope")


def _approve_concurrently(engine, approvers=6, max_attempts=50):
    """
    Approve several requests drawing on the same item from parallel threads.
    A ConflictError is retried the way a client would; anything else fails
    the approver outright.
    """
    SQLModel.metadata.create_all(engine)

    with Session(engine) as session:
        requester = make_user(session, "Budi")
        shared = make_item(session, "Shared", quantity=100, min_quantity=10)
        other = make_item(session, "Other", quantity=50, min_quantity=10)
        request_ids = [
            lifecycle.create_request(
                session, _draft(requester.id, (shared.id, 5), (other.id, 1), project=f"P{n}")
            ).id
            for n in range(approvers)
        ]
        shared_id, other_id = shared.id, other.id

    barrier = threading.Barrier(approvers)
    conflicts = []
    failures = []

    def approve(request_id):
        with Session(engine) as session:
            barrier.wait()
            for _ in range(max_attempts):
                try:
                    lifecycle.set_request_status(session, request_id, "approved")
                    return
                except ConflictError as exc:
                    conflicts.append(exc)
                except ServiceError as exc:
                    failures.append(exc)
                    return
            failures.append(f"{request_id} still conflicting after {max_attempts} attempts")

    threads = [threading.Thread(target=approve, args=(rid,)) for rid in request_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    with Session(engine) as session:
        approved = session.exec(
            select(Request).where(Request.status == "approved")
        ).all()
        shared_left = session.get(Item, shared_id).quantity
        other_left = session.get(Item, other_id).quantity

    assert failures == []
    assert len(approved) == approvers
    # every approval's decrement is reflected
    assert shared_left == 100 - 5 * approvers
    assert other_left == 50 - approvers
    return conflicts


def test_parallel_approvals_never_lose_updates(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    try:
        conflicts = _approve_concurrently(engine)
    finally:
        engine.dispose()

    # SQLite has no row locks, so racing approvals lose the compare-and-set
    # and are retried rather than silently overwriting each other
    assert all(isinstance(exc, ConflictError) for exc in conflicts)


@pytest.mark.skipif(
    not os.getenv("TEST_POSTGRES_URL"),
    reason="set TEST_POSTGRES_URL to run against PostgreSQL",
)
def test_parallel_approvals_wait_on_row_locks_in_postgres():
    engine = create_engine(os.environ["TEST_POSTGRES_URL"])
    SQLModel.metadata.drop_all(engine)
    try:
        conflicts = _approve_concurrently(engine)
    finally:
        SQLModel.metadata.drop_all(engine)
        engine.dispose()

    # FOR UPDATE serialises the approvers, so none of them sees stale stock
    assert conflicts == []

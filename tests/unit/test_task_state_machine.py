"""Unit tests for task status transitions."""

from __future__ import annotations

from decimal import Decimal

import pytest

from task_market_service.core.exceptions import ServiceError
from task_market_service.services.task_state_machine import (
    Actor,
    TaskEvent,
    TaskStatus,
    allowed_events,
)

pytestmark = pytest.mark.unit

ADMIN = Actor("u-admin", is_admin=True)


def _transition(engine, task_id, event, actor, **kwargs):
    with engine.database.transaction() as conn:
        task = engine.store.get_task(conn, task_id)
        return engine.state_machine.transition(conn, task, event, actor, **kwargs)


def test_awaiting_payment_persists_as_in_progress():
    assert TaskStatus.AWAITING_PAYMENT == "in_progress"


def test_allowed_events_per_status():
    assert set(allowed_events("open")) == {TaskEvent.ACCEPT_BID, TaskEvent.CANCEL}
    assert set(allowed_events("assigned")) == {TaskEvent.REQUEST_COMPLETION, TaskEvent.CANCEL}
    assert set(allowed_events("in_progress")) == {TaskEvent.SETTLE, TaskEvent.CANCEL}
    assert allowed_events("completed") == []
    assert allowed_events("cancelled") == []


def test_accept_sets_tasker_and_timestamp(engine):
    task_id = engine.create_task()
    updated = _transition(
        engine, task_id, TaskEvent.ACCEPT_BID, Actor("u-client"), tasker_id="u-tasker"
    )

    assert updated["status"] == "assigned"
    assert updated["tasker_id"] == "u-tasker"
    stored = engine.get_task(task_id)
    assert stored["status"] == "assigned"
    assert stored["tasker_id"] == "u-tasker"
    assert stored["assigned_at"] is not None


def test_full_happy_path(engine):
    task_id = engine.create_task()
    _transition(engine, task_id, TaskEvent.ACCEPT_BID, Actor("u-client"), tasker_id="u-tasker")
    _transition(engine, task_id, TaskEvent.REQUEST_COMPLETION, Actor("u-tasker"))
    assert engine.get_task(task_id)["status"] == "in_progress"
    _transition(engine, task_id, TaskEvent.SETTLE, Actor("u-client"))

    stored = engine.get_task(task_id)
    assert stored["status"] == "completed"
    assert stored["tasker_id"] == "u-tasker"
    assert stored["completion_requested_at"] is not None
    assert stored["completed_at"] is not None


def test_client_cancels_open_task(engine):
    task_id = engine.create_task()
    updated = _transition(engine, task_id, TaskEvent.CANCEL, Actor("u-client"))
    assert updated["status"] == "cancelled"
    assert engine.get_task(task_id)["cancelled_at"] is not None


@pytest.mark.parametrize(
    ("event", "actor", "kwargs"),
    [
        (TaskEvent.ACCEPT_BID, Actor("u-stranger"), {"tasker_id": "u-tasker"}),
        (TaskEvent.CANCEL, Actor("u-stranger"), {}),
    ],
)
def test_wrong_actor_is_unauthorized(engine, event, actor, kwargs):
    task_id = engine.create_task()
    with pytest.raises(ServiceError) as exc_info:
        _transition(engine, task_id, event, actor, **kwargs)
    assert exc_info.value.error == "UNAUTHORIZED"
    assert exc_info.value.status_code == 403
    assert engine.get_task(task_id)["status"] == "open"


def test_only_the_tasker_requests_completion(engine):
    task_id = engine.create_task()
    _transition(engine, task_id, TaskEvent.ACCEPT_BID, Actor("u-client"), tasker_id="u-tasker")
    with pytest.raises(ServiceError) as exc_info:
        _transition(engine, task_id, TaskEvent.REQUEST_COMPLETION, Actor("u-client"))
    assert exc_info.value.error == "UNAUTHORIZED"


def test_client_cannot_cancel_after_assignment(engine):
    task_id = engine.create_task()
    _transition(engine, task_id, TaskEvent.ACCEPT_BID, Actor("u-client"), tasker_id="u-tasker")
    with pytest.raises(ServiceError) as exc_info:
        _transition(engine, task_id, TaskEvent.CANCEL, Actor("u-client"))
    assert exc_info.value.error == "UNAUTHORIZED"
    assert engine.get_task(task_id)["status"] == "assigned"


@pytest.mark.parametrize("stop_at", ["assigned", "in_progress"])
def test_admin_override_cancel_clears_tasker(engine, stop_at):
    task_id = engine.create_task()
    _transition(engine, task_id, TaskEvent.ACCEPT_BID, Actor("u-client"), tasker_id="u-tasker")
    if stop_at == "in_progress":
        _transition(engine, task_id, TaskEvent.REQUEST_COMPLETION, Actor("u-tasker"))

    updated = _transition(engine, task_id, TaskEvent.CANCEL, ADMIN)

    assert updated["status"] == "cancelled"
    assert updated["tasker_id"] is None
    assert engine.get_task(task_id)["tasker_id"] is None


def test_invalid_transition_from_open(engine):
    task_id = engine.create_task()
    with pytest.raises(ServiceError) as exc_info:
        _transition(engine, task_id, TaskEvent.SETTLE, Actor("u-client"))
    assert exc_info.value.error == "INVALID_TRANSITION"
    assert exc_info.value.kind == "invalid_state"
    assert exc_info.value.status_code == 409


@pytest.mark.parametrize("event", list(TaskEvent))
def test_terminal_states_permit_nothing(engine, event):
    task_id = engine.create_task()
    _transition(engine, task_id, TaskEvent.CANCEL, Actor("u-client"))
    with pytest.raises(ServiceError) as exc_info:
        _transition(engine, task_id, event, ADMIN, tasker_id="u-tasker")
    assert exc_info.value.error == "INVALID_TRANSITION"


def test_stale_status_is_a_conflict(engine):
    """A caller holding an outdated copy of the task loses the compare-and-swap."""
    task_id = engine.create_task()
    stale = engine.get_task(task_id)
    _transition(engine, task_id, TaskEvent.CANCEL, Actor("u-client"))

    with pytest.raises(ServiceError) as exc_info:
        with engine.database.transaction() as conn:
            engine.state_machine.transition(
                conn, stale, TaskEvent.ACCEPT_BID, Actor("u-client"), tasker_id="u-tasker"
            )
    assert exc_info.value.error == "CONFLICT"
    assert exc_info.value.kind == "conflict"


def test_budget_is_untouched_by_transitions(engine):
    task_id = engine.create_task(budget="80.00")
    _transition(engine, task_id, TaskEvent.ACCEPT_BID, Actor("u-client"), tasker_id="u-tasker")
    assert engine.get_task(task_id)["budget"] == Decimal("80.00")

from __future__ import annotations

import allure

from queueboard.board.events import EventBus, TaskEvent, TaskEventType

pytestmark = [
    allure.epic("Task Board"),
    allure.feature("Board Events"),
]


def test_event_bus_delivers_to_all_subscribers() -> None:
    bus = EventBus()
    first: list[TaskEvent] = []
    second: list[TaskEvent] = []
    bus.subscribe(first.append)
    bus.subscribe(second.append)

    bus.emit(TaskEvent(type=TaskEventType.TASK_MOVED, task_id="t1", data={"to_queue_id": "q2"}))

    assert [event.task_id for event in first] == ["t1"]
    assert second[0].data == {"to_queue_id": "q2"}
    assert second[0].timestamp.tzinfo is not None


def test_unsubscribe_stops_delivery() -> None:
    bus = EventBus()
    received: list[TaskEvent] = []
    unsubscribe = bus.subscribe(received.append)

    unsubscribe()
    unsubscribe()
    bus.emit(TaskEvent(type=TaskEventType.TASK_CREATED, task_id="t1"))

    assert received == []


def test_failing_subscriber_does_not_block_others() -> None:
    bus = EventBus()
    received: list[TaskEvent] = []

    def _broken(event: TaskEvent) -> None:
        raise RuntimeError(f"cannot handle {event.type.value}")

    bus.subscribe(_broken)
    bus.subscribe(received.append)

    bus.emit(TaskEvent(type=TaskEventType.TASK_FAILED, task_id="t1"))

    assert [event.type for event in received] == [TaskEventType.TASK_FAILED]

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

import pytest

from phonics_engine.telemetry import TelemetryEvent, clear_listeners, emit_event, register_listener


@pytest.fixture(autouse=True)
def _reset_listeners():
    clear_listeners()
    yield
    clear_listeners()


def test_emit_event_fans_out_sanitized_payload() -> None:
    received: list[TelemetryEvent] = []
    register_listener(received.append)

    emit_event(
        "quest_completed",
        user_id="kid-1",
        generated_on=date(2024, 3, 4),
        completed_at=datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc),
        quest_types={"earn_xp", "complete_lessons"},
    )

    assert len(received) == 1
    event = received[0]
    assert event.name == "quest_completed"
    assert event.payload == {
        "user_id": "kid-1",
        "generated_on": "2024-03-04",
        "completed_at": "2024-03-04T12:00:00+00:00",
        "quest_types": ["complete_lessons", "earn_xp"],
    }


def test_failing_listener_does_not_block_others(caplog) -> None:
    received: list[str] = []

    def broken(event: TelemetryEvent) -> None:
        raise RuntimeError("listener exploded")

    register_listener(broken)
    register_listener(lambda event: received.append(event.name))

    with caplog.at_level(logging.INFO, logger="phonics.telemetry"):
        emit_event("leveled_up", user_id="kid-1", previous_level=1, new_level=2)

    assert received == ["leveled_up"]
    assert "Telemetry listener failed for leveled_up" in caplog.text
    assert '"event": "leveled_up"' in caplog.text

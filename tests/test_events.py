import asyncio
import json
from typing import List

import pytest

from visa_slot_bot.events import EventBus, stdout_sink
from visa_slot_bot.models import WatchEvent


def test_status_and_log_wire_format() -> None:
    bus = EventBus(session_id="s-1")
    bus.status("DATE_SELECTED", "Clicked in-range green date 2026-01-15")
    bus.log("warn", "Pending Appointment tile not found; retrying")

    status, log = [event.to_wire() for event in bus.drain()]
    assert status == {
        "type": "status",
        "sessionId": "s-1",
        "state": "DATE_SELECTED",
        "message": "Clicked in-range green date 2026-01-15",
    }
    assert log == {
        "type": "log",
        "sessionId": "s-1",
        "level": "warn",
        "message": "Pending Appointment tile not found; retrying",
    }
    assert bus.last_status == "DATE_SELECTED"


def test_extra_payload_is_flattened() -> None:
    bus = EventBus()
    bus.status("WAITING_CAPTCHA", "Credentials filled", screenshot="/tmp/captcha.png")
    (event,) = bus.drain()
    assert event.to_wire()["screenshot"] == "/tmp/captcha.png"


def test_full_queue_drops_oldest() -> None:
    bus = EventBus(maxsize=2)
    for state in ("A", "B", "C"):
        bus.status(state)
    assert [event.state for event in bus.drain()] == ["B", "C"]
    assert bus.drain() == []


def test_flush_delivers_and_survives_failing_sink() -> None:
    received: List[WatchEvent] = []

    async def broken(event: WatchEvent) -> None:
        raise RuntimeError("sink down")

    async def collect(event: WatchEvent) -> None:
        received.append(event)

    bus = EventBus()
    bus.subscribe(broken)
    bus.subscribe(collect)
    bus.status("ATTEMPT", "Attempt 1/1800")
    asyncio.run(bus.flush())

    assert [event.state for event in received] == ["ATTEMPT"]


def test_pump_forwards_until_cancelled() -> None:
    received: List[str] = []

    async def collect(event: WatchEvent) -> None:
        received.append(event.state or "")

    async def scenario() -> None:
        bus = EventBus()
        bus.subscribe(collect)
        pump = asyncio.create_task(bus.pump())
        bus.status("NAV")
        bus.status("ATTEMPT")
        for _ in range(10):
            await asyncio.sleep(0)
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)

    asyncio.run(scenario())
    assert received == ["NAV", "ATTEMPT"]


def test_stdout_sink_writes_json_lines(capsys: pytest.CaptureFixture[str]) -> None:
    event = WatchEvent(kind="status", session_id="s-9", state="COMPLETED", message="done")
    asyncio.run(stdout_sink(event))
    line = capsys.readouterr().out.strip()
    assert json.loads(line) == {"type": "status", "sessionId": "s-9", "state": "COMPLETED", "message": "done"}

import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

import scheduler
from config import settings

BOGOTA = ZoneInfo("America/Bogota")


def test_next_run_is_strictly_after_now():
    now = datetime(2025, 1, 15, 6, 0, 0, tzinfo=BOGOTA)
    assert scheduler.next_run_at(now, [6, 14], BOGOTA) == datetime(2025, 1, 15, 14, 0, tzinfo=BOGOTA)


def test_next_run_rolls_over_to_tomorrow():
    now = datetime(2025, 1, 15, 20, 0, 0, tzinfo=BOGOTA)
    assert scheduler.next_run_at(now, [14, 6], BOGOTA) == datetime(2025, 1, 16, 6, 0, tzinfo=BOGOTA)


def test_next_run_converts_other_timezones():
    now = datetime(2025, 1, 15, 10, 30, 0, tzinfo=ZoneInfo("UTC"))  # 05:30 en Bogotá
    assert scheduler.next_run_at(now, [6, 14], BOGOTA) == datetime(2025, 1, 15, 6, 0, tzinfo=BOGOTA)


class StopLoop(Exception):
    pass


def run_loop(monkeypatch, clock, max_sleeps):
    triggers = []
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) >= max_sleeps:
            raise StopLoop()

    monkeypatch.setattr(settings, "SYNC_SCHEDULE_HOURS", [6, 14])
    monkeypatch.setattr(settings, "SYNC_TIMEZONE", "America/Bogota")
    monkeypatch.setattr(scheduler, "run_scheduled_once", triggers.append)

    with pytest.raises(StopLoop):
        asyncio.run(scheduler.scheduler_loop(startup_delay=0, sleep=fake_sleep, clock=clock))
    return triggers, sleeps


def test_early_wakeup_does_not_repeat_slot(monkeypatch):
    # El reloj queda unos milisegundos antes de las 06:00 después de despertar
    frozen = datetime(2025, 1, 15, 5, 59, 59, 990000, tzinfo=BOGOTA)

    triggers, sleeps = run_loop(monkeypatch, lambda: frozen, max_sleeps=3)

    assert triggers == ["startup", "cron"]
    assert sleeps[0] == 0
    assert sleeps[1] == pytest.approx(0.01)
    assert sleeps[2] > 7 * 3600


def test_loop_waits_for_each_slot_in_order(monkeypatch):
    times = iter([
        datetime(2025, 1, 15, 5, 0, tzinfo=BOGOTA),
        datetime(2025, 1, 15, 6, 0, 1, tzinfo=BOGOTA),
        datetime(2025, 1, 15, 14, 0, 1, tzinfo=BOGOTA),
    ])

    triggers, sleeps = run_loop(monkeypatch, lambda: next(times), max_sleeps=4)

    assert triggers == ["startup", "cron", "cron"]
    assert sleeps[1:] == [3600, 8 * 3600 - 1, 16 * 3600 - 1]


def test_failed_run_keeps_the_loop_alive(monkeypatch):
    frozen = datetime(2025, 1, 15, 5, 0, tzinfo=BOGOTA)
    calls = []

    def failing_run(trigger):
        calls.append(trigger)
        raise RuntimeError("base de datos caída")

    async def fake_sleep(seconds):
        if len(calls) >= 2:
            raise StopLoop()

    monkeypatch.setattr(scheduler, "run_scheduled_once", failing_run)

    with pytest.raises(StopLoop):
        asyncio.run(scheduler.scheduler_loop(startup_delay=0, sleep=fake_sleep, clock=lambda: frozen))
    assert calls == ["startup", "cron"]

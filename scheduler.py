"""
Programador de la sincronización
================================

Loop asyncio que corre dentro del proceso de la API: una verificación al
arrancar (tras una breve espera) y luego una en cada horario configurado,
en la zona horaria de Bogotá. La sincronización es bloqueante, así que se
ejecuta en un hilo aparte.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional
from zoneinfo import ZoneInfo

from config import settings
from db import SessionLocal
from logger import logger
import tasks


def next_run_at(now: datetime, hours: List[int], tz: ZoneInfo) -> datetime:
    """Próximo horario programado estrictamente posterior a `now`."""
    local_now = now.astimezone(tz) if now.tzinfo else now.replace(tzinfo=tz)
    candidates = []
    for offset in (0, 1):
        day = local_now.date() + timedelta(days=offset)
        for hour in sorted(set(hours)):
            slot = datetime(day.year, day.month, day.day, hour, 0, 0, tzinfo=tz)
            if slot > local_now:
                candidates.append(slot)
    return min(candidates)


def run_scheduled_once(trigger: str) -> None:
    db = SessionLocal()
    try:
        tasks.run_scheduled_sync(db, trigger)
    finally:
        db.close()


async def scheduler_loop(
    startup_delay: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Optional[Callable[[], datetime]] = None
):
    """
    `sleep` y `clock` se inyectan en pruebas. Cada horario se calcula a
    partir del anterior, así que un `sleep` que despierte antes de tiempo
    no repite el mismo horario.
    """
    tz = ZoneInfo(settings.SYNC_TIMEZONE)
    delay = settings.STARTUP_DELAY_SECONDS if startup_delay is None else startup_delay
    clock = clock or (lambda: datetime.now(tz))

    logger.info(f"Programador iniciado: horarios={settings.SYNC_SCHEDULE_HOURS} ({settings.SYNC_TIMEZONE})")
    await sleep(delay)

    try:
        await asyncio.to_thread(run_scheduled_once, "startup")
    except Exception as e:
        logger.error(f"Error en la verificación de arranque: {e}")

    target = None
    while True:
        now = clock()
        target = next_run_at(now if target is None else max(now, target), settings.SYNC_SCHEDULE_HOURS, tz)
        wait_seconds = max((target - now).total_seconds(), 0)
        logger.info(f"Próxima sincronización programada: {target.isoformat()}")
        await sleep(wait_seconds)

        try:
            await asyncio.to_thread(run_scheduled_once, "cron")
        except Exception as e:
            logger.error(f"Error en el loop del programador: {e}")


def start_scheduler() -> asyncio.Task:
    """Inicia el programador como tarea en segundo plano."""
    return asyncio.create_task(scheduler_loop())

"""
Sincronización con Monolegal
============================

Orquesta las ejecuciones de sincronización y deja un registro SyncRun por
cada una: pending -> success | partial | error.

- Manual (sync_today): los errores se propagan a quien llama.
- Programada (run_scheduled_sync): decide si vale la pena ejecutar según
  las corridas del día, y nunca propaga errores.
- Histórica (sync_history_range): recorre días consecutivos y procesa cada
  día en lotes concurrentes.
"""

from sqlalchemy.orm import Session
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo
import threading
import time
import traceback

import models
import schemas
from config import settings
from db import SessionLocal
from logger import logger, log_error, log_sync_finished
from monolegal_client import MonolegalClient, format_provider_date
from reconciliation import ReconciliationEngine
from utils import collapse_spaces

SCHEDULED_TRIGGERS = ("cron", "startup")
DAILY_TRIGGERS = ("cron", "startup", "manual")
COMPLETED_STATUSES = ("success", "partial")


def local_today() -> date:
    return datetime.now(ZoneInfo(settings.SYNC_TIMEZONE)).date()


def create_sync_run(
    db: Session,
    trigger: str,
    user_id: Optional[str] = None,
    sync_date: Optional[date] = None,
    meta: dict = None
) -> models.SyncRun:
    """
    Crea el registro inicial de la ejecución en estado pending.
    """
    run = models.SyncRun(
        trigger=trigger,
        user_id=user_id,
        sync_date=sync_date,
        status="pending",
        meta=meta
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def finish_sync_run(
    db: Session,
    run: models.SyncRun,
    status: str,
    summary: Optional[schemas.SyncSummary] = None,
    error_details: List[dict] = None,
    error_message: str = None,
    error_traceback: str = None,
    meta: dict = None
):
    """
    Cierra el registro con el resultado de la ejecución.
    """
    summary = summary or schemas.SyncSummary()
    run.finished_at = datetime.now()
    run.duration_seconds = (run.finished_at - run.started_at).total_seconds()
    run.status = status
    run.total = summary.total
    run.created = summary.created
    run.updated = summary.updated
    run.skipped = summary.skipped
    run.errors = summary.errors
    run.error_details = error_details or None
    run.error_message = error_message
    run.error_traceback = error_traceback

    if meta:
        run.meta = {**(run.meta or {}), **meta}

    db.commit()
    db.refresh(run)


def error_sample_cap(trigger: str) -> int:
    if trigger in SCHEDULED_TRIGGERS:
        return settings.SCHEDULED_ERROR_SAMPLE
    return settings.MANUAL_ERROR_SAMPLE


def _status_for(summary: schemas.SyncSummary) -> str:
    return "partial" if summary.errors > 0 else "success"


def run_sync(
    db: Session,
    trigger: str = "manual",
    user_id: Optional[str] = None,
    day: Optional[date] = None,
    client: Optional[MonolegalClient] = None
) -> schemas.SyncResult:
    """
    Ejecuta una sincronización de un día: resumen, descarga de cambios y
    reconciliación secuencial.

    Si algo falla antes de terminar, el SyncRun queda en error y la
    excepción se propaga.
    """
    day = day or local_today()

    logger.info("=" * 80)
    logger.info(f"SINCRONIZACIÓN INICIADA: trigger={trigger}, fecha={format_provider_date(day)}")
    logger.info("=" * 80)

    run = create_sync_run(db, trigger, user_id, sync_date=day)

    try:
        client = client or MonolegalClient(settings)
        change_summary = client.fetch_change_summary(day)

        if not change_summary.has_changes:
            logger.info("Monolegal no reporta cambios para la fecha")
            finish_sync_run(db, run, "success", meta={"has_changes": False})
            log_sync_finished(run.id, trigger, run.status, run.summary)
            return schemas.SyncResult(
                success=True,
                message="No hay cambios para la fecha",
                sync_run_id=run.id
            )

        logger.info(
            f"Cambios reportados: {change_summary.stats.record_count} expedientes, "
            f"{change_summary.stats.change_count} cambios"
        )

        changes = client.fetch_all_changes(day)
        engine = ReconciliationEngine(db, settings=settings)
        result = engine.reconcile_many(changes, user_id)

        status = _status_for(result.summary)
        finish_sync_run(
            db, run, status,
            summary=result.summary,
            error_details=result.error_sample(error_sample_cap(trigger)),
            meta={
                "has_changes": True,
                "reported_records": change_summary.stats.record_count,
                "reported_changes": change_summary.stats.change_count
            }
        )
        log_sync_finished(run.id, trigger, status, run.summary)

        result.sync_run_id = run.id
        result.message = (
            f"Sincronización completada: {result.summary.created} creados, "
            f"{result.summary.updated} actualizados, {result.summary.errors} errores"
        )
        return result

    except Exception as e:
        db.rollback()
        finish_sync_run(
            db, run, "error",
            error_message=str(e),
            error_traceback=traceback.format_exc()
        )
        log_error(e, {"sync_run_id": run.id, "trigger": trigger, "day": day.isoformat()})
        raise


def sync_today(
    db: Session,
    user_id: Optional[str] = None,
    day: Optional[date] = None,
    client: Optional[MonolegalClient] = None
) -> schemas.SyncResult:
    """Sincronización manual. Los errores llegan a quien la invoca."""
    return run_sync(db, "manual", user_id=user_id, day=day, client=client)


def should_run_scheduled(db: Session, today: Optional[date] = None) -> bool:
    """
    Decide si una ejecución programada debe correr hoy.

    No corre si la última ejecución del día terminó (success o partial) y
    procesó algo. Una corrida con cero registros se reintenta, pero nunca
    más veces que los horarios del día (incluido el arranque).
    """
    today = today or local_today()

    latest = db.query(models.SyncRun).filter(
        models.SyncRun.sync_date == today,
        models.SyncRun.trigger.in_(DAILY_TRIGGERS)
    ).order_by(
        models.SyncRun.started_at.desc(),
        models.SyncRun.id.desc()
    ).first()

    if latest and latest.status in COMPLETED_STATUSES and (latest.total or 0) > 0:
        logger.info(f"Sincronización de hoy ya realizada (SyncRun {latest.id}, {latest.total} registros)")
        return False

    scheduled_runs = db.query(models.SyncRun).filter(
        models.SyncRun.sync_date == today,
        models.SyncRun.trigger.in_(SCHEDULED_TRIGGERS)
    ).count()
    max_runs = len(settings.SYNC_SCHEDULE_HOURS) + 1

    if scheduled_runs >= max_runs:
        logger.warning(f"Límite de {max_runs} ejecuciones programadas alcanzado para hoy")
        return False

    return True


def run_scheduled_sync(
    db: Session,
    trigger: str = "cron",
    client: Optional[MonolegalClient] = None
) -> Optional[schemas.SyncResult]:
    """
    Ejecución programada (cron o arranque). Registra y descarta cualquier
    error para no tumbar el proceso anfitrión.
    """
    today = local_today()

    try:
        if not should_run_scheduled(db, today):
            return None
        return run_sync(
            db, trigger,
            user_id=settings.SYNC_USER_ID or None,
            day=today,
            client=client
        )
    except Exception as e:
        logger.error(f"❌ Sincronización programada falló: {e}")
        return None


class DocketLocks:
    """Un lock por radicado: el mismo expediente nunca se procesa en paralelo."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def get(self, docket: str) -> threading.Lock:
        with self._guard:
            if docket not in self._locks:
                self._locks[docket] = threading.Lock()
            return self._locks[docket]


def _reconcile_isolated(
    change: schemas.ChangeRecord,
    user_id: Optional[str],
    session_factory: Callable[[], Session],
    locks: DocketLocks
) -> schemas.RecordResult:
    docket = collapse_spaces(change.numero)
    with locks.get(docket):
        db = session_factory()
        try:
            return ReconciliationEngine(db, settings=settings).reconcile(change, user_id)
        finally:
            db.close()


def reconcile_in_batches(
    changes: List[schemas.ChangeRecord],
    user_id: Optional[str] = None,
    session_factory: Callable[[], Session] = SessionLocal,
    locks: Optional[DocketLocks] = None,
    batch_size: Optional[int] = None
) -> schemas.SyncResult:
    """
    Procesa los cambios en lotes; dentro de cada lote todos corren en
    paralelo y se esperan todos los resultados antes del siguiente.
    """
    batch_size = batch_size or settings.SYNC_BATCH_SIZE
    locks = locks or DocketLocks()
    result = schemas.SyncResult()

    with ThreadPoolExecutor(max_workers=batch_size) as pool:
        for start in range(0, len(changes), batch_size):
            batch = changes[start:start + batch_size]
            futures = [
                pool.submit(_reconcile_isolated, change, user_id, session_factory, locks)
                for change in batch
            ]
            for change, future in zip(batch, futures):
                try:
                    record = future.result()
                except Exception as e:
                    record = schemas.RecordResult(
                        docket=collapse_spaces(change.numero) or "Sin radicado",
                        status="error",
                        message=str(e)
                    )
                result.details.append(record)
                result.summary.add(record)

            logger.info(f"Lote {start // batch_size + 1}: {len(batch)} expedientes procesados")

    result.summary.total = len(result.details)
    result.success = result.summary.errors == 0
    return result


def sync_history_range(
    db: Session,
    start_date: date,
    end_date: Optional[date] = None,
    user_id: Optional[str] = None,
    client: Optional[MonolegalClient] = None,
    session_factory: Callable[[], Session] = SessionLocal,
    sleep: Callable[[float], None] = time.sleep
) -> schemas.SyncResult:
    """
    Sincroniza un rango de fechas, un día tras otro, con una pausa entre
    días. No guarda punto de control: repetir el rango es seguro porque los
    expedientes se emparejan por radicado.
    """
    end_date = end_date or local_today()
    if start_date > end_date:
        raise ValueError("La fecha inicial no puede ser posterior a la final")

    logger.info("=" * 80)
    logger.info(f"SINCRONIZACIÓN HISTÓRICA: {start_date.isoformat()} -> {end_date.isoformat()}")
    logger.info("=" * 80)

    run = create_sync_run(
        db, "history", user_id,
        sync_date=start_date,
        meta={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()}
    )
    result = schemas.SyncResult()
    locks = DocketLocks()
    days_processed = 0

    try:
        client = client or MonolegalClient(settings)
        day = start_date

        while day <= end_date:
            if days_processed:
                sleep(settings.HISTORY_DAY_DELAY_SECONDS)

            change_summary = client.fetch_change_summary(day)
            if change_summary.has_changes:
                changes = client.fetch_all_changes(day)
                day_result = reconcile_in_batches(changes, user_id, session_factory, locks)
                result.details.extend(day_result.details)
                logger.info(f"Día {day.isoformat()}: {day_result.summary.total} expedientes")
            else:
                logger.info(f"Día {day.isoformat()}: sin cambios")

            days_processed += 1
            day += timedelta(days=1)

        for record in result.details:
            result.summary.add(record)
        result.summary.total = len(result.details)

        status = _status_for(result.summary)
        finish_sync_run(
            db, run, status,
            summary=result.summary,
            error_details=result.error_sample(settings.MANUAL_ERROR_SAMPLE),
            meta={"days_processed": days_processed}
        )
        log_sync_finished(run.id, "history", status, run.summary)

    except Exception as e:
        db.rollback()
        for record in result.details:
            result.summary.add(record)
        result.summary.total = len(result.details)
        finish_sync_run(
            db, run, "error",
            summary=result.summary,
            error_message=str(e),
            error_traceback=traceback.format_exc(),
            meta={"days_processed": days_processed}
        )
        log_error(e, {"sync_run_id": run.id, "trigger": "history"})
        raise

    result.success = result.summary.errors == 0
    result.sync_run_id = run.id
    result.message = f"Sincronización histórica completada: {days_processed} días"
    return result


def get_last_sync_status(db: Session) -> dict:
    """
    Retorna el estado de la última sincronización completada.
    """
    last_run = db.query(models.SyncRun).filter(
        models.SyncRun.status.in_(COMPLETED_STATUSES)
    ).order_by(
        models.SyncRun.started_at.desc(),
        models.SyncRun.id.desc()
    ).first()

    if not last_run:
        return {
            "last_sync": None,
            "summary": None,
            "status": "never_executed",
            "message": "No hay sincronizaciones registradas"
        }

    return {
        "last_sync": (last_run.finished_at or last_run.started_at).isoformat(),
        "summary": last_run.summary,
        "status": last_run.status,
        "trigger": last_run.trigger,
        "sync_run_id": last_run.id,
        "error_details": last_run.error_details or []
    }


def get_sync_history(db: Session, limit: int = 10) -> list:
    """
    Retorna el histórico de ejecuciones, de la más reciente a la más antigua.
    """
    runs = db.query(models.SyncRun).order_by(
        models.SyncRun.started_at.desc(),
        models.SyncRun.id.desc()
    ).limit(limit).all()

    return [
        {
            "sync_run_id": run.id,
            "started_at": run.started_at.isoformat(),
            "finished_at": run.finished_at.isoformat() if run.finished_at else None,
            "duration_seconds": run.duration_seconds,
            "sync_date": run.sync_date.isoformat() if run.sync_date else None,
            "trigger": run.trigger,
            "status": run.status,
            "summary": run.summary,
            "error_message": run.error_message
        }
        for run in runs
    ]


def get_sync_stats(db: Session) -> dict:
    """
    Retorna estadísticas generales de sincronización.
    """
    total_runs = db.query(models.SyncRun).count()
    completed_runs = db.query(models.SyncRun).filter(
        models.SyncRun.status.in_(COMPLETED_STATUSES)
    ).count()
    failed_runs = db.query(models.SyncRun).filter(
        models.SyncRun.status == "error"
    ).count()

    created_counts = db.query(models.SyncRun.created).filter(
        models.SyncRun.status.in_(COMPLETED_STATUSES)
    ).all()
    total_created = sum(row.created or 0 for row in created_counts)

    # Última ejecución completada
    last_success = db.query(models.SyncRun).filter(
        models.SyncRun.status.in_(COMPLETED_STATUSES)
    ).order_by(
        models.SyncRun.started_at.desc()
    ).first()

    return {
        "total_runs": total_runs,
        "completed_runs": completed_runs,
        "failed_runs": failed_runs,
        "success_rate": round((completed_runs / total_runs * 100), 2) if total_runs > 0 else 0,
        "total_cases_created": total_created,
        "last_successful_run": last_success.started_at.isoformat() if last_success else None
    }

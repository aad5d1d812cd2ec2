import threading
import time
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import models
import schemas
import tasks
from config import settings
from db import Base
from exceptions import ProviderAuthError, ProviderRequestError
from fakes import FakeProviderClient, make_change
from reconciliation import ReconciliationEngine

TODAY = date(2025, 1, 15)


def add_run(db, trigger="cron", status="success", total=0, sync_date=TODAY, minutes_ago=0):
    run = models.SyncRun(
        trigger=trigger,
        status=status,
        total=total,
        sync_date=sync_date,
        started_at=datetime.now() - timedelta(minutes=minutes_ago),
    )
    db.add(run)
    db.commit()
    return run


@pytest.fixture
def fixed_today(monkeypatch):
    monkeypatch.setattr(tasks, "local_today", lambda: TODAY)
    return TODAY


# ---------- Decisión de la ejecución programada ----------

def test_zero_processed_run_triggers_another(sqlite_session):
    add_run(sqlite_session, status="success", total=0)
    assert tasks.should_run_scheduled(sqlite_session, TODAY) is True


def test_completed_run_with_records_is_not_repeated(sqlite_session):
    add_run(sqlite_session, status="success", total=5)
    assert tasks.should_run_scheduled(sqlite_session, TODAY) is False


def test_partial_run_with_records_is_not_repeated(sqlite_session):
    add_run(sqlite_session, status="partial", total=3)
    assert tasks.should_run_scheduled(sqlite_session, TODAY) is False


def test_failed_run_is_retried(sqlite_session):
    add_run(sqlite_session, status="error", total=5)
    assert tasks.should_run_scheduled(sqlite_session, TODAY) is True


def test_only_latest_run_of_today_counts(sqlite_session):
    add_run(sqlite_session, status="success", total=5, minutes_ago=30)
    add_run(sqlite_session, status="error", total=0, minutes_ago=1)
    assert tasks.should_run_scheduled(sqlite_session, TODAY) is True

    add_run(sqlite_session, status="success", total=5, sync_date=TODAY - timedelta(days=1))
    assert tasks.should_run_scheduled(sqlite_session, TODAY) is True


def test_zero_result_retries_are_capped_by_slots(sqlite_session):
    for minutes in range(len(settings.SYNC_SCHEDULE_HOURS) + 1):
        add_run(sqlite_session, trigger="cron", status="success", total=0, minutes_ago=minutes)
    assert tasks.should_run_scheduled(sqlite_session, TODAY) is False


# ---------- run_sync y SyncRun ----------

def test_run_sync_success(sqlite_session):
    client = FakeProviderClient({TODAY: [make_change("A-1"), make_change("A-2", demandantes="Ana")]})

    result = tasks.sync_today(sqlite_session, user_id="user-1", day=TODAY, client=client)

    run = sqlite_session.get(models.SyncRun, result.sync_run_id)
    assert result.success is True
    assert run.status == "success"
    assert run.trigger == "manual"
    assert run.user_id == "user-1"
    assert run.sync_date == TODAY
    assert run.summary == {"total": 2, "created": 2, "updated": 0, "skipped": 0, "errors": 0}
    assert run.finished_at is not None
    assert run.duration_seconds >= 0
    assert run.meta["reported_records"] == 2


def test_run_sync_without_changes(sqlite_session):
    result = tasks.run_sync(sqlite_session, "cron", day=TODAY, client=FakeProviderClient())

    run = sqlite_session.get(models.SyncRun, result.sync_run_id)
    assert run.status == "success"
    assert run.total == 0
    assert run.meta == {"has_changes": False}


def test_run_sync_partial_with_capped_error_sample(sqlite_session, monkeypatch):
    monkeypatch.setattr(settings, "SCHEDULED_ERROR_SAMPLE", 2)

    def failing_derive(self, change):
        if change.numero.startswith("BAD"):
            raise RuntimeError(f"registro inválido {change.numero}")
        return original_derive(self, change)

    import reconciliation
    original_derive = reconciliation.ReconciliationEngine.derive
    monkeypatch.setattr(reconciliation.ReconciliationEngine, "derive", failing_derive)

    changes = [make_change(f"BAD-{i}") for i in range(3)] + [make_change("OK-1"), make_change("")]
    result = tasks.run_sync(sqlite_session, "cron", day=TODAY, client=FakeProviderClient({TODAY: changes}))

    run = sqlite_session.get(models.SyncRun, result.sync_run_id)
    assert run.status == "partial"
    assert run.summary == {"total": 5, "created": 1, "updated": 0, "skipped": 1, "errors": 3}
    assert run.error_details == [
        {"docket": "BAD-0", "message": "registro inválido BAD-0"},
        {"docket": "BAD-1", "message": "registro inválido BAD-1"},
    ]


def test_manual_sync_propagates_provider_failure(sqlite_session):
    client = FakeProviderClient(error=ProviderRequestError("Monolegal no responde"))

    with pytest.raises(ProviderRequestError):
        tasks.sync_today(sqlite_session, day=TODAY, client=client)

    run = sqlite_session.query(models.SyncRun).one()
    assert run.status == "error"
    assert run.error_message == "Monolegal no responde"
    assert "ProviderRequestError" in run.error_traceback


def test_scheduled_sync_swallows_failures(sqlite_session, fixed_today):
    client = FakeProviderClient(error=ProviderAuthError("Login rechazado"))

    assert tasks.run_scheduled_sync(sqlite_session, "startup", client=client) is None

    run = sqlite_session.query(models.SyncRun).one()
    assert run.status == "error"
    assert run.trigger == "startup"
    assert run.sync_date == TODAY


def test_scheduled_sync_skips_when_already_done(sqlite_session, fixed_today):
    add_run(sqlite_session, status="success", total=5)
    client = FakeProviderClient({TODAY: [make_change("A-1")]})

    assert tasks.run_scheduled_sync(sqlite_session, "cron", client=client) is None
    assert client.summary_calls == []


def test_scheduled_sync_runs_after_empty_run(sqlite_session, fixed_today):
    add_run(sqlite_session, status="success", total=0)
    client = FakeProviderClient({TODAY: [make_change("A-1")]})

    result = tasks.run_scheduled_sync(sqlite_session, "cron", client=client)

    assert result.summary.created == 1
    assert tasks.should_run_scheduled(sqlite_session, TODAY) is False


# ---------- Modo histórico por lotes ----------

class TrackingEngine:
    """Sustituye al motor real para observar la concurrencia por lote."""

    lock = threading.Lock()
    active = 0
    max_active = 0
    finished = 0
    active_by_docket = {}
    docket_overlap = False
    starts = []

    def __init__(self, db, settings=None):
        self.db = db

    def reconcile(self, change, user_id=None):
        cls = TrackingEngine
        with cls.lock:
            cls.active += 1
            cls.max_active = max(cls.max_active, cls.active)
            cls.starts.append((change.id, cls.finished))
            cls.active_by_docket[change.numero] = cls.active_by_docket.get(change.numero, 0) + 1
            if cls.active_by_docket[change.numero] > 1:
                cls.docket_overlap = True
        try:
            time.sleep(0.01)
            if change.numero == "D-3":
                raise RuntimeError("fallo aislado")
            return schemas.RecordResult(docket=change.numero, status="created")
        finally:
            with cls.lock:
                cls.active -= 1
                cls.active_by_docket[change.numero] -= 1
                cls.finished += 1


class FakeSessionHandle:
    def close(self):
        pass


@pytest.fixture
def tracking_engine(monkeypatch):
    TrackingEngine.active = 0
    TrackingEngine.max_active = 0
    TrackingEngine.finished = 0
    TrackingEngine.active_by_docket = {}
    TrackingEngine.docket_overlap = False
    TrackingEngine.starts = []
    monkeypatch.setattr(tasks, "ReconciliationEngine", TrackingEngine)
    return TrackingEngine


def test_batches_run_concurrently_and_wait_for_each_other(tracking_engine):
    changes = [make_change(f"D-{i}", id=i) for i in range(25)]

    result = tasks.reconcile_in_batches(changes, session_factory=FakeSessionHandle, batch_size=10)

    assert result.summary.total == 25
    assert result.summary.created == 24
    assert result.summary.errors == 1
    assert [d.docket for d in result.details] == [f"D-{i}" for i in range(25)]
    assert result.details[3].message == "fallo aislado"
    assert 1 < tracking_engine.max_active <= 10
    for change_id, finished_before_start in tracking_engine.starts:
        assert finished_before_start >= (int(change_id) // 10) * 10


def test_same_docket_never_runs_concurrently(tracking_engine):
    changes = [make_change("D-SAME", id=i) for i in range(6)] + [make_change("D-OTHER", id=6)]

    result = tasks.reconcile_in_batches(changes, session_factory=FakeSessionHandle, batch_size=7)

    assert result.summary.total == 7
    assert tracking_engine.docket_overlap is False


# ---------- Códigos internos con escrituras concurrentes ----------

@pytest.fixture
def file_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'casesync.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    finally:
        engine.dispose()


def internal_codes(factory):
    db = factory()
    try:
        return sorted(code for (code,) in db.query(models.Case.internal_code).all())
    finally:
        db.close()


def test_concurrent_batch_assigns_unique_internal_codes(file_session_factory):
    changes = [make_change(f"7600131050012025{n:05d}00") for n in range(10)]

    result = tasks.reconcile_in_batches(changes, session_factory=file_session_factory, batch_size=10)

    assert result.summary.created == 10
    assert result.summary.errors == 0
    year = datetime.now().year
    assert internal_codes(file_session_factory) == [f"ML-{year}-{n:04d}" for n in range(1, 11)]


def test_concurrent_batch_continues_existing_sequence(file_session_factory):
    db = file_session_factory()
    try:
        ReconciliationEngine(db).reconcile(make_change("05001310500720240098700"))
    finally:
        db.close()
    changes = [make_change(f"0500131050072025{n:05d}00") for n in range(9)]

    result = tasks.reconcile_in_batches(changes, session_factory=file_session_factory, batch_size=10)

    assert result.summary.created == 9
    year = datetime.now().year
    assert internal_codes(file_session_factory) == [f"ML-{year}-{n:04d}" for n in range(1, 11)]


def test_history_range_walks_days_with_delay(sqlite_session, session_factory, monkeypatch):
    monkeypatch.setattr(settings, "SYNC_BATCH_SIZE", 1)
    day1, day3 = date(2025, 1, 10), date(2025, 1, 12)
    client = FakeProviderClient({
        day1: [make_change("H-1", despacho="JUZGADO 01 LABORAL DEL CIRCUITO DE CALI")],
        day3: [make_change("H-1", demandados="Rappi SAS"), make_change("H-2")],
    })
    sleeps = []

    result = tasks.sync_history_range(
        sqlite_session, day1, day3,
        user_id="user-1", client=client,
        session_factory=session_factory, sleep=sleeps.append,
    )

    assert client.summary_calls == [day1, date(2025, 1, 11), day3]
    assert sleeps == [settings.HISTORY_DAY_DELAY_SECONDS] * 2
    assert [d.status for d in result.details] == ["created", "updated", "created"]

    runs = sqlite_session.query(models.SyncRun).all()
    assert len(runs) == 1
    assert runs[0].trigger == "history"
    assert runs[0].status == "success"
    assert runs[0].summary == {"total": 3, "created": 2, "updated": 1, "skipped": 0, "errors": 0}
    assert runs[0].meta["days_processed"] == 3
    assert sqlite_session.query(models.Case).count() == 2


def test_history_range_rejects_inverted_dates(sqlite_session):
    with pytest.raises(ValueError):
        tasks.sync_history_range(sqlite_session, date(2025, 1, 10), date(2025, 1, 1),
                                 client=FakeProviderClient())


def test_history_range_marks_run_as_error_when_provider_fails(sqlite_session):
    client = FakeProviderClient(error=ProviderRequestError("caído"))

    with pytest.raises(ProviderRequestError):
        tasks.sync_history_range(sqlite_session, date(2025, 1, 1), date(2025, 1, 2),
                                 client=client, sleep=lambda s: None)

    run = sqlite_session.query(models.SyncRun).one()
    assert run.status == "error"
    assert run.error_message == "caído"


# ---------- Consultas de auditoría ----------

def test_last_sync_status_never_executed(sqlite_session):
    assert tasks.get_last_sync_status(sqlite_session)["status"] == "never_executed"


def test_last_sync_status_uses_latest_completed_run(sqlite_session):
    add_run(sqlite_session, status="success", total=4, minutes_ago=10)
    add_run(sqlite_session, status="error", total=0, minutes_ago=1)

    status = tasks.get_last_sync_status(sqlite_session)

    assert status["status"] == "success"
    assert status["summary"]["total"] == 4
    assert status["last_sync"] is not None


def test_sync_history_and_stats(sqlite_session):
    add_run(sqlite_session, status="success", total=4, minutes_ago=10)
    add_run(sqlite_session, status="partial", total=2, minutes_ago=5)
    add_run(sqlite_session, status="error", total=0, minutes_ago=1)

    history = tasks.get_sync_history(sqlite_session, limit=2)
    stats = tasks.get_sync_stats(sqlite_session)

    assert [h["status"] for h in history] == ["error", "partial"]
    assert stats["total_runs"] == 3
    assert stats["completed_runs"] == 2
    assert stats["failed_runs"] == 1
    assert stats["success_rate"] == 66.67

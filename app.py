from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, Query, Request, UploadFile, File
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from db import Base, engine
import schemas
import lifecycle
from crud import CaseStore, soft_delete_case
from exceptions import InvalidTransitionError, ProviderError, SpreadsheetFormatError
from monolegal_client import MonolegalClient
from scheduler import start_scheduler
from spreadsheet_import import import_client_spreadsheet, import_from_spreadsheet
from tasks import (
    sync_today,
    sync_history_range,
    get_last_sync_status,
    get_sync_history,
    get_sync_stats
)
from config import settings
from auth import get_current_user_id, get_db, get_session_factory
from logger import logger

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Crear tablas
    Base.metadata.create_all(bind=engine)

    scheduler_task = None
    if settings.SCHEDULER_ENABLED:
        scheduler_task = start_scheduler()

    yield

    if scheduler_task:
        scheduler_task.cancel()
        logger.info("Programador de sincronización detenido")

# Inicializar app
app = FastAPI(
    title=settings.API_TITLE,
    version=settings.API_VERSION,
    lifespan=lifespan,
    description="""
    ## CaseSync - Sincronización de expedientes judiciales con Monolegal

    ### Flujo principal:
    1. **Sincronización**: diaria automática (arranque + horarios programados) o manual
    2. **Histórico**: recarga de un rango de fechas
    3. **Excel**: importación del reporte exportado desde Monolegal o del Excel propio del cliente
    4. **Expedientes**: consulta y avance del estado procesal

    ### Autenticación:
    **Header:** `Authorization: Bearer {token}` (el claim `sub` identifica al usuario)
    """
)

# Rate Limiting
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

def get_provider_client() -> MonolegalClient:
    return MonolegalClient(settings)

def _states_out(db: Session, case) -> schemas.CaseStatesOut:
    history = lifecycle.case_history(db, case.id)
    return schemas.CaseStatesOut(
        case_id=case.id,
        current_state=case.state,
        history=[s.value for s in history],
        next_valid_states=[s.value for s in lifecycle.next_valid_states(history)],
        is_final=bool(case.state) and lifecycle.is_final(lifecycle.CaseState(case.state))
    )

# ==================== SISTEMA ====================

@app.get("/health", tags=["Sistema"])
def health():
    """Verifica que la API esté funcionando"""
    return {"status": "ok", "version": settings.API_VERSION}

# ==================== SINCRONIZACIÓN ====================

@app.post("/sync/run", response_model=schemas.SyncResult, tags=["Sincronización"])
@limiter.limit("5/minute")
def run_manual_sync(
    request: Request,
    data: schemas.ManualSyncRequest = None,
    user_id: str = Depends(get_current_user_id),
    client: MonolegalClient = Depends(get_provider_client),
    db: Session = Depends(get_db)
):
    """
    Sincronización manual con Monolegal.

    Sin `day` consulta los cambios de hoy (hora de Bogotá).
    """
    day = data.day if data else None
    try:
        return sync_today(db, user_id=user_id, day=day, client=client)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=f"Error en sincronización con Monolegal: {e.message}")

@app.post("/sync/history", response_model=schemas.SyncResult, tags=["Sincronización"])
@limiter.limit("2/minute")
def run_history_sync(
    request: Request,
    data: schemas.HistorySyncRequest,
    user_id: str = Depends(get_current_user_id),
    client: MonolegalClient = Depends(get_provider_client),
    session_factory=Depends(get_session_factory),
    db: Session = Depends(get_db)
):
    """
    Sincroniza un rango de fechas (hasta hoy si no se indica `end_date`).

    Cada día se procesa en lotes concurrentes, con una pausa entre días.
    """
    try:
        return sync_history_range(
            db,
            data.start_date,
            data.end_date,
            user_id=user_id,
            client=client,
            session_factory=session_factory
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=f"Error en sincronización histórica: {e.message}")

@app.get("/sync/status", tags=["Sincronización"])
def get_sync_status(db: Session = Depends(get_db)):
    """Estado de la última sincronización completada"""
    return get_last_sync_status(db)

@app.get("/sync/history", tags=["Sincronización"])
def get_sync_history_endpoint(
    limit: int = Query(10, ge=1, le=100, description="Número máximo de registros"),
    db: Session = Depends(get_db)
):
    """Histórico de ejecuciones, de la más reciente a la más antigua"""
    history = get_sync_history(db, limit=limit)
    return {
        "history": history,
        "total_returned": len(history)
    }

@app.get("/sync/stats", tags=["Sincronización"])
def get_sync_stats_endpoint(db: Session = Depends(get_db)):
    """Estadísticas generales de sincronización"""
    return get_sync_stats(db)

# ==================== IMPORTACIÓN ====================

@app.post("/import/spreadsheet", response_model=schemas.SyncResult, tags=["Importación"])
@limiter.limit("5/minute")
def import_spreadsheet(
    request: Request,
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Importa el Excel exportado desde Monolegal (.xlsx, .xls)"""
    try:
        return import_from_spreadsheet(db, file.file, file.filename, user_id=user_id)
    except SpreadsheetFormatError as e:
        raise HTTPException(status_code=400, detail=f"Error al procesar el archivo: {e}")

@app.post("/import/client-spreadsheet", response_model=schemas.SyncResult, tags=["Importación"])
@limiter.limit("5/minute")
def import_client_spreadsheet_endpoint(
    request: Request,
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Importa el Excel propio del cliente (columnas COD, #, Consecutivo, Demandante...).

    Busca cada expediente por etiqueta y luego por radicado; solo completa
    campos vacíos y los datos "Por verificar" del demandante.
    """
    try:
        return import_client_spreadsheet(db, file.file, file.filename, user_id=user_id)
    except SpreadsheetFormatError as e:
        raise HTTPException(status_code=400, detail=f"Error al procesar el archivo: {e}")

# ==================== EXPEDIENTES ====================

@app.get("/lifecycle/states", tags=["Expedientes"])
def get_state_flow():
    """Estados procesales con sus transiciones permitidas y si son finales"""
    return lifecycle.state_flow()

@app.get("/cases/{case_id}", response_model=schemas.CaseOut, tags=["Expedientes"])
def get_case(case_id: int, db: Session = Depends(get_db)):
    """Detalle de un expediente con sus partes y actuaciones"""
    case = CaseStore(db).get(case_id)
    if not case:
        raise HTTPException(status_code=404, detail="Expediente no encontrado")
    return case

@app.delete("/cases/{case_id}", tags=["Expedientes"])
def delete_case(
    case_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Eliminación lógica del expediente junto con sus partes y actuaciones"""
    if not CaseStore(db).get(case_id):
        raise HTTPException(status_code=404, detail="Expediente no encontrado")

    soft_delete_case(db, case_id)
    logger.info(f"Expediente {case_id} eliminado por {user_id}")
    return {"message": "Expediente eliminado", "case_id": case_id}

@app.get("/cases/{case_id}/states", response_model=schemas.CaseStatesOut, tags=["Expedientes"])
def get_case_states(case_id: int, db: Session = Depends(get_db)):
    """Historial de estados y estados alcanzables"""
    case = CaseStore(db).get(case_id)
    if not case:
        raise HTTPException(status_code=404, detail="Expediente no encontrado")

    return _states_out(db, case)

@app.post("/cases/{case_id}/transitions", response_model=schemas.CaseStatesOut, tags=["Expedientes"])
def transition_case(
    case_id: int,
    data: schemas.TransitionRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Avanza el estado procesal del expediente.

    Si la transición no es válida responde 400 con los estados permitidos.
    """
    case = CaseStore(db).get(case_id)
    if not case:
        raise HTTPException(status_code=404, detail="Expediente no encontrado")

    try:
        target = lifecycle.CaseState(data.target)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Estado desconocido: {data.target}")

    try:
        lifecycle.apply_transition(db, case, target, data.responsible, data.note)
    except InvalidTransitionError as e:
        raise HTTPException(
            status_code=400,
            detail={
                "message": str(e),
                "current": e.current,
                "requested": e.requested,
                "valid": e.valid
            }
        )

    return _states_out(db, case)

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Literal
from datetime import date, datetime

# Schemas del contrato de Monolegal
class LoginResponse(BaseModel):
    token: Optional[str] = None
    success: bool = False
    message: Optional[str] = None

class ChangeStats(BaseModel):
    record_count: int = Field(0, alias="numeroExpedientes")
    change_count: int = Field(0, alias="numeroCambios")

    class Config:
        populate_by_name = True

class ChangeSummary(BaseModel):
    has_changes: bool = Field(False, alias="tieneCambios")
    date_id: Optional[str] = Field(None, alias="idFecha")
    stats: ChangeStats = Field(default_factory=ChangeStats, alias="estadisticas")

    class Config:
        populate_by_name = True

    @field_validator('stats', mode='before')
    def default_stats(cls, v):
        return v or {}

class ChangeRecord(BaseModel):
    """Un cambio de expediente reportado por Monolegal para un día."""
    id: Optional[str] = None
    numero: str = ""
    demandantes: str = ""
    demandados: str = ""
    despacho: str = ""
    ciudad: str = ""
    ultima_actuacion: str = Field("", alias="ultimaActuacion")
    ultima_anotacion: str = Field("", alias="ultimaAnotacion")
    fecha_ultima_actuacion: str = Field("", alias="fechaUltimaActuacion")
    ultimo_registro: str = Field("", alias="ultimoRegistro")
    etiqueta: str = ""
    etapa_procesal: str = Field("", alias="etapaProcesal")
    fuentes_con_cambios: str = Field("", alias="fuentesConCambios")

    class Config:
        populate_by_name = True
        extra = "ignore"

    @field_validator(
        'numero', 'demandantes', 'demandados', 'despacho', 'ciudad',
        'ultima_actuacion', 'ultima_anotacion', 'fecha_ultima_actuacion',
        'ultimo_registro', 'etiqueta', 'etapa_procesal', 'fuentes_con_cambios',
        mode='before'
    )
    def none_to_empty(cls, v):
        if v is None:
            return ""
        return str(v)

    @field_validator('id', mode='before')
    def id_to_str(cls, v):
        return None if v is None else str(v)

class ClientRow(BaseModel):
    """Una fila del Excel propio del cliente (columnas COD, #, Consecutivo, Demandante...)."""
    code: str = ""
    number: str = ""
    docket: str = ""
    plaintiff: str = ""
    document_type: str = ""
    document: str = ""
    contact: str = ""
    email: str = ""
    jurisdiction: str = ""
    process_type: str = ""
    department: str = ""
    city: str = ""
    court_office: str = ""
    filing_date: str = ""
    archived: str = ""
    active: str = ""

    @field_validator('*', mode='before')
    def none_to_empty(cls, v):
        if v is None:
            return ""
        return str(v).strip()

    @property
    def label(self) -> str:
        """Etiqueta del expediente: COD seguido de #, o la que venga."""
        if self.code and self.number:
            return f"{self.code}{self.number}"
        return self.number or self.code

# Resultados de sincronización
RecordStatus = Literal["created", "updated", "skipped", "error"]

class RecordResult(BaseModel):
    docket: str
    status: RecordStatus
    label: Optional[str] = None
    message: str = ""
    updated_fields: List[str] = Field(default_factory=list)

class SyncSummary(BaseModel):
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0

    def add(self, result: RecordResult):
        if result.status == "created":
            self.created += 1
        elif result.status == "updated":
            self.updated += 1
        elif result.status == "skipped":
            self.skipped += 1
        else:
            self.errors += 1

class SyncResult(BaseModel):
    success: bool = True
    message: str = ""
    sync_run_id: Optional[int] = None
    summary: SyncSummary = Field(default_factory=SyncSummary)
    details: List[RecordResult] = Field(default_factory=list)

    def error_sample(self, cap: int) -> List[dict]:
        return [
            {"docket": d.docket, "message": d.message}
            for d in self.details if d.status == "error"
        ][:cap]

# Schemas de Case
class PartyOut(BaseModel):
    id: int
    role: str
    name: str
    document_type: Optional[str]
    document: Optional[str]
    email: Optional[str]
    contact: Optional[str]

    class Config:
        from_attributes = True

class EventOut(BaseModel):
    id: int
    event_type: str
    responsible: Optional[str]
    note: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True

class CaseOut(BaseModel):
    id: int
    internal_code: str
    docket_number: Optional[str]
    label: Optional[str]
    jurisdiction: Optional[str]
    court_office: Optional[str]
    city: Optional[str]
    department: Optional[str]
    process_type: Optional[str]
    client_type: Optional[str]
    state: Optional[str]
    last_action: Optional[str]
    filing_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    is_archived: Optional[bool] = None
    synced: bool
    last_synced_at: Optional[datetime]
    created_at: datetime
    parties: List[PartyOut] = []
    events: List[EventOut] = []

    class Config:
        from_attributes = True

class CaseStatesOut(BaseModel):
    case_id: int
    current_state: Optional[str]
    history: List[str]
    next_valid_states: List[str]
    is_final: bool = False

class TransitionRequest(BaseModel):
    target: str
    responsible: str = Field(min_length=1)
    note: Optional[str] = Field(None, max_length=2000)

# Schemas de sincronización (entrada)
class ManualSyncRequest(BaseModel):
    day: Optional[date] = None

class HistorySyncRequest(BaseModel):
    start_date: date
    end_date: Optional[date] = None

    @field_validator('start_date')
    def validate_start_date(cls, v):
        if v > date.today():
            raise ValueError('La fecha inicial no puede estar en el futuro')
        return v

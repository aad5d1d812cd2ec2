from sqlalchemy import Column, Integer, String, Float, Date, DateTime, ForeignKey, JSON, UniqueConstraint, Boolean, Index, Text
from sqlalchemy.orm import relationship
from datetime import datetime
from db import Base

PENDING_VERIFICATION = "Por verificar"
PENDING_EMAIL = "por-verificar@temp.com"

class Case(Base):
    __tablename__ = "cases"
    id = Column(Integer, primary_key=True, index=True)
    internal_code = Column(String, unique=True, index=True, nullable=False)
    docket_number = Column(String, unique=True, index=True, nullable=True)
    label = Column(String, nullable=True)
    jurisdiction = Column(String, index=True, nullable=True)
    court_office = Column(String, index=True, nullable=True)
    city = Column(String, index=True, nullable=True)
    department = Column(String, nullable=True)
    process_type = Column(String, nullable=True)
    client_type = Column(String, index=True, nullable=True)
    country = Column(String, default="Colombia")
    state = Column(String, index=True, nullable=True)
    last_action = Column(Text, nullable=True)
    last_action_date = Column(DateTime, nullable=True)
    filing_date = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=True)
    is_archived = Column(Boolean, default=False)

    # Sincronización con Monolegal
    synced = Column(Boolean, default=False, index=True)
    last_synced_at = Column(DateTime, nullable=True)
    provider_record_id = Column(String, nullable=True)
    provider_sources = Column(String, nullable=True)

    owner_user_id = Column(String, nullable=True)
    is_deleted = Column(Boolean, default=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    parties = relationship("ProceduralParty", back_populates="case", cascade="all, delete-orphan")
    events = relationship("CaseEvent", back_populates="case", cascade="all, delete-orphan",
                          order_by="CaseEvent.id")

    __table_args__ = (
        Index('ix_case_synced_last_sync', 'synced', 'last_synced_at'),
        Index('ix_case_city_office', 'city', 'court_office'),
    )

class ProceduralParty(Base):
    __tablename__ = "procedural_parties"
    id = Column(Integer, primary_key=True, index=True)
    case_id = Column(Integer, ForeignKey("cases.id"), index=True, nullable=False)
    role = Column(String, index=True, nullable=False)  # "plaintiff" o "defendant"
    name = Column(String, nullable=False)
    document_type = Column(String, default=PENDING_VERIFICATION)
    document = Column(String, default=PENDING_VERIFICATION)
    email = Column(String, default=PENDING_EMAIL)
    contact = Column(String, default=PENDING_VERIFICATION)
    is_deleted = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    case = relationship("Case", back_populates="parties")

    __table_args__ = (
        UniqueConstraint("case_id", "role", "name", name="uq_party_case_role_name"),
        Index('ix_party_case_role', 'case_id', 'role'),
    )

class CaseEvent(Base):
    __tablename__ = "case_events"
    id = Column(Integer, primary_key=True, index=True)
    case_id = Column(Integer, ForeignKey("cases.id"), index=True, nullable=False)
    event_type = Column(String, nullable=False)
    responsible = Column(String, nullable=True)
    note = Column(Text, nullable=True)
    is_deleted = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    case = relationship("Case", back_populates="events")

    __table_args__ = (
        UniqueConstraint("case_id", "event_type", name="uq_event_case_type"),
    )

class HearingDraft(Base):
    """Borrador de audiencia creado a partir de una actuación sincronizada"""
    __tablename__ = "hearing_drafts"
    id = Column(Integer, primary_key=True, index=True)
    case_id = Column(Integer, ForeignKey("cases.id"), index=True, nullable=False)
    annotation = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

class InternalCodeCounter(Base):
    """Consecutivo anual de códigos internos (<PREFIJO>-<año>-<secuencia>)"""
    __tablename__ = "internal_code_counters"
    id = Column(Integer, primary_key=True, index=True)
    prefix = Column(String, nullable=False)
    year = Column(Integer, nullable=False)
    last_value = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("prefix", "year", name="uq_counter_prefix_year"),
    )

class SyncRun(Base):
    """Registro de cada ejecución de la sincronización con Monolegal"""
    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)

    # Timestamp
    started_at = Column(DateTime, default=datetime.now, nullable=False, index=True)
    finished_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    sync_date = Column(Date, nullable=True, index=True)  # Día consultado en Monolegal

    # Origen
    trigger = Column(String, nullable=False, default="manual", index=True)  # "cron", "startup", "manual", "history", "spreadsheet", "client_spreadsheet"
    user_id = Column(String, nullable=True)

    # Resultado
    status = Column(String, nullable=False, default="pending", index=True)  # "pending", "success", "partial", "error"
    total = Column(Integer, nullable=False, default=0)
    created = Column(Integer, nullable=False, default=0)
    updated = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    errors = Column(Integer, nullable=False, default=0)

    # Error (si lo hay)
    error_details = Column(JSON, nullable=True)  # Muestra acotada [{docket, message}]
    error_message = Column(Text, nullable=True)
    error_traceback = Column(Text, nullable=True)

    # Metadatos
    meta = Column(JSON, nullable=True)

    __table_args__ = (
        Index('ix_sync_run_started_status', 'started_at', 'status'),
        Index('ix_sync_run_trigger', 'trigger', 'started_at'),
    )

    @property
    def summary(self) -> dict:
        return {
            "total": self.total or 0,
            "created": self.created or 0,
            "updated": self.updated or 0,
            "skipped": self.skipped or 0,
            "errors": self.errors or 0,
        }

    def __repr__(self):
        return f"<SyncRun(id={self.id}, trigger={self.trigger}, status={self.status}, total={self.total})>"

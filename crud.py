from sqlalchemy.orm import Session
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from typing import List, Optional, Dict
from datetime import datetime
import models
from exceptions import PersistenceConflict
from logger import logger

def _insert_ignoring_conflict(db: Session, values: Dict):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql_insert(models.InternalCodeCounter).values(**values)
    else:
        stmt = sqlite_insert(models.InternalCodeCounter).values(**values)
    return stmt.on_conflict_do_nothing(index_elements=["prefix", "year"])

def next_internal_code(db: Session, prefix: str, year: Optional[int] = None) -> str:
    """
    Siguiente código interno del año: <PREFIJO>-<año>-<secuencia de 4 dígitos>.

    El incremento es un UPDATE atómico sobre la fila del contador, así que
    dos sesiones concurrentes nunca obtienen el mismo número.
    """
    year = year or datetime.now().year
    db.execute(_insert_ignoring_conflict(db, {"prefix": prefix, "year": year, "last_value": 0}))

    counter = models.InternalCodeCounter
    db.execute(
        update(counter)
        .where(counter.prefix == prefix, counter.year == year)
        .values(last_value=counter.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    last_value = db.execute(
        select(counter.last_value).where(counter.prefix == prefix, counter.year == year)
    ).scalar_one()
    return f"{prefix}-{year}-{last_value:04d}"

class CaseStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, case_id: int) -> Optional[models.Case]:
        case = self.db.get(models.Case, case_id)
        if case is None or case.is_deleted:
            return None
        return case

    def find_by_docket(self, docket: str, include_deleted: bool = False) -> Optional[models.Case]:
        stmt = select(models.Case).where(models.Case.docket_number == docket)
        if not include_deleted:
            stmt = stmt.where(models.Case.is_deleted == False)
        return self.db.execute(stmt).scalar_one_or_none()

    def find_by_label(self, label: str) -> Optional[models.Case]:
        return self.db.query(models.Case).filter(
            models.Case.label == label,
            models.Case.is_deleted == False
        ).order_by(models.Case.id).first()

    def create(self, data: Dict) -> models.Case:
        obj = models.Case(**data)
        self.db.add(obj)
        try:
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            raise PersistenceConflict(data.get("docket_number") or "", str(e.orig))
        return obj

    def update(self, case: models.Case, data: Dict) -> models.Case:
        for field, value in data.items():
            setattr(case, field, value)
        try:
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            raise PersistenceConflict(case.docket_number or "", str(e.orig))
        return case

class PartyStore:
    def __init__(self, db: Session):
        self.db = db

    def find_by_case_and_role(self, case_id: int, role: str) -> List[models.ProceduralParty]:
        return self.db.query(models.ProceduralParty).filter(
            models.ProceduralParty.case_id == case_id,
            models.ProceduralParty.role == role,
            models.ProceduralParty.is_deleted == False
        ).order_by(models.ProceduralParty.id).all()

    def create(self, data: Dict) -> models.ProceduralParty:
        obj = models.ProceduralParty(**data)
        self.db.add(obj)
        self.db.flush()
        return obj

    def update(self, party: models.ProceduralParty, data: Dict) -> models.ProceduralParty:
        for field, value in data.items():
            setattr(party, field, value)
        self.db.flush()
        return party

class EventStore:
    def __init__(self, db: Session):
        self.db = db

    def find_by_case_and_type(self, case_id: int, event_type: str) -> Optional[models.CaseEvent]:
        return self.db.query(models.CaseEvent).filter(
            models.CaseEvent.case_id == case_id,
            models.CaseEvent.event_type == event_type,
            models.CaseEvent.is_deleted == False
        ).first()

    def create(self, data: Dict) -> models.CaseEvent:
        obj = models.CaseEvent(**data)
        self.db.add(obj)
        self.db.flush()
        return obj

    def list_types(self, case_id: int) -> List[str]:
        rows = self.db.query(models.CaseEvent.event_type).filter(
            models.CaseEvent.case_id == case_id,
            models.CaseEvent.is_deleted == False
        ).order_by(models.CaseEvent.id).all()
        return [row.event_type for row in rows]

class HearingService:
    """Registra un borrador de audiencia a partir de una actuación."""

    def __init__(self, db: Session):
        self.db = db

    def create_from_event(self, case_id: int, annotation_text: str) -> models.HearingDraft:
        draft = models.HearingDraft(case_id=case_id, annotation=annotation_text)
        self.db.add(draft)
        self.db.flush()
        logger.info(f"Borrador de audiencia creado para el expediente {case_id}")
        return draft

def soft_delete_case(db: Session, case_id: int) -> Optional[models.Case]:
    case = db.get(models.Case, case_id)
    if not case:
        return None

    case.is_deleted = True
    for party in case.parties:
        party.is_deleted = True
    for event in case.events:
        event.is_deleted = True

    db.commit()
    db.refresh(case)
    return case

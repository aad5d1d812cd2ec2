"""
Motor de Reconciliación
=======================

Aplica cada cambio reportado por Monolegal sobre el catálogo local:

1. Busca el expediente por radicado o lo crea con un código interno nuevo.
2. Deriva despacho normalizado, ciudad, departamento y clasificación.
3. Completa solo los campos vacíos (los de sincronización siempre se pisan).
4. Crea las partes procesales nuevas y completa las que siguen "Por verificar".
5. Registra la última actuación como evento si aún no existe.
6. Si la actuación menciona una audiencia, avisa al servicio de audiencias.

Un error en un registro se revierte y se reporta; nunca detiene el lote.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, FrozenSet, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import court_normalizer
import models
import schemas
from config import Settings, settings as default_settings
from crud import CaseStore, EventStore, HearingService, PartyStore, next_internal_code
from exceptions import PersistenceConflict, ValidationSkip
from logger import logger, log_record_error
from utils import collapse_spaces, is_placeholder, normalize_string, parse_provider_date, split_names

PLAINTIFF = "plaintiff"
DEFENDANT = "defendant"
EVENT_RESPONSIBLE = "Monolegal"
DEFAULT_CLIENT_TYPE = "Otro"
DEFAULT_PROCESS_TYPE = "Ordinario laboral"
DEFAULT_JURISDICTION = "Laboral"

_SENTINELS = {None, "", models.PENDING_VERIFICATION, models.PENDING_EMAIL}

# (resultado, id del expediente, texto para el borrador de audiencia)
ApplyOutcome = Tuple[schemas.RecordResult, Optional[int], Optional[str]]

_JURISDICTION_KEYWORDS = [
    ("LABORAL", "Laboral"),
    ("FAMILIA", "Familia"),
    ("ADMINISTRATIV", "Administrativo"),
    ("CIVIL", "Civil"),
    ("PENAL", "Penal"),
]


@dataclass
class Derived:
    """Valores calculados a partir del registro antes de fusionar."""
    office: str = ""
    city: str = ""
    department: str = ""
    client: Optional[str] = None
    jurisdiction: str = ""


@dataclass(frozen=True)
class FieldRule:
    name: str
    extractor: Callable[[schemas.ChangeRecord, Derived], Any]
    # Valores locales que cuentan como "sin asignar"
    empty_values: FrozenSet[Any] = field(default_factory=lambda: frozenset({None, ""}))


def _text(value: Optional[str]) -> Optional[str]:
    value = collapse_spaces(value or "")
    return None if is_placeholder(value) else value


# Solo se asignan si el campo local está vacío
MERGE_RULES: List[FieldRule] = [
    FieldRule("court_office", lambda c, d: d.office or None),
    FieldRule("city", lambda c, d: d.city or None),
    FieldRule("department", lambda c, d: d.department or None),
    FieldRule("jurisdiction", lambda c, d: d.jurisdiction or None),
    FieldRule("process_type", lambda c, d: DEFAULT_PROCESS_TYPE if d.client else None),
    FieldRule("client_type", lambda c, d: d.client or DEFAULT_CLIENT_TYPE,
              frozenset({None, "", DEFAULT_CLIENT_TYPE})),
]

# Datos de sincronización: se sobrescriben siempre que vengan informados
BOOKKEEPING_RULES: List[FieldRule] = [
    FieldRule("label", lambda c, d: _text(c.etiqueta)),
    FieldRule("last_action", lambda c, d: _text(c.ultima_actuacion)),
    FieldRule("last_action_date", lambda c, d: parse_provider_date(c.fecha_ultima_actuacion)
              or parse_provider_date(c.ultimo_registro)),
    FieldRule("provider_record_id", lambda c, d: _text(c.id)),
    FieldRule("provider_sources", lambda c, d: _text(c.fuentes_con_cambios)),
]


class ReconciliationEngine:
    def __init__(
        self,
        db: Session,
        hearing_service=None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or default_settings
        self.cases = CaseStore(db)
        self.parties = PartyStore(db)
        self.events = EventStore(db)
        self.hearing_service = hearing_service or HearingService(db)
        self._hearing_keywords = [normalize_string(k) for k in self.settings.HEARING_KEYWORDS]

    # --- Derivación ---

    def derive(self, change: schemas.ChangeRecord) -> Derived:
        hint = _text(change.ciudad)
        raw_office = collapse_spaces(change.despacho)
        derived = Derived()

        if not is_placeholder(raw_office):
            result = court_normalizer.normalize_with_confidence(raw_office, hint)
            derived.office = result.value
            if result.confidence != court_normalizer.PASSTHROUGH:
                logger.debug(f"Despacho '{raw_office}' -> '{result.value}' ({result.confidence})")
                derived.city = result.value.rsplit(" de ", 1)[-1]
            else:
                logger.debug(f"Despacho sin normalizar: '{raw_office}'")

        if not derived.city:
            derived.city = court_normalizer.resolve_city(raw_office, hint)
        derived.department = court_normalizer.department_for(derived.city)

        for name in split_names(change.demandados):
            client = court_normalizer.known_client(name)
            if client:
                derived.client = client
                break

        if derived.client:
            derived.jurisdiction = DEFAULT_JURISDICTION
        else:
            upper_office = normalize_string(derived.office or "").upper()
            for keyword, jurisdiction in _JURISDICTION_KEYWORDS:
                if keyword in upper_office:
                    derived.jurisdiction = jurisdiction
                    break

        return derived

    # --- Fusión ---

    def merge_changes(self, case: models.Case, change: schemas.ChangeRecord, derived: Derived) -> dict:
        """Campos del expediente que cambian con este registro."""
        changes = {}

        for rule in MERGE_RULES:
            incoming = rule.extractor(change, derived)
            if incoming in (None, ""):
                continue
            current = getattr(case, rule.name)
            if current in rule.empty_values and current != incoming:
                changes[rule.name] = incoming

        for rule in BOOKKEEPING_RULES:
            incoming = rule.extractor(change, derived)
            if incoming in (None, ""):
                continue
            if getattr(case, rule.name) != incoming:
                changes[rule.name] = incoming

        return changes

    def fill_pending_fields(self, party: models.ProceduralParty, data: dict) -> List[str]:
        """Completa solo los campos de la parte que siguen vacíos o "Por verificar"."""
        fill = {
            attr: value for attr, value in data.items()
            if value and not is_placeholder(value) and getattr(party, attr) in _SENTINELS
        }
        if fill:
            self.parties.update(party, fill)
        return list(fill)

    def _upsert_parties(self, case: models.Case, role: str, raw_names: str) -> List[str]:
        changed = []
        existing = {p.name: p for p in self.parties.find_by_case_and_role(case.id, role)}

        for name in split_names(raw_names):
            client = court_normalizer.known_client(name) if role == DEFENDANT else None
            identity = {}
            if client:
                name = client
                identity = court_normalizer.CLIENT_IDENTITIES.get(client, {})

            party = existing.get(name)
            if party is None:
                party = self.parties.create({"case_id": case.id, "role": role, "name": name, **identity})
                existing[name] = party
                changed.append(f"{role}:{name}")
                continue

            if self.fill_pending_fields(party, identity):
                changed.append(f"{role}:{name}")
        return changed

    def _append_event(self, case: models.Case, change: schemas.ChangeRecord) -> Optional[str]:
        action = _text(change.ultima_actuacion)
        if not action:
            return None
        if self.events.find_by_case_and_type(case.id, action) is not None:
            return None

        note = _text(change.ultima_anotacion) or (
            f"Sincronizado desde Monolegal - {_text(change.etapa_procesal) or 'Sin etapa'}"
        )
        self.events.create({
            "case_id": case.id,
            "event_type": action,
            "responsible": EVENT_RESPONSIBLE,
            "note": note,
        })
        return action

    def mentions_hearing(self, text: str) -> bool:
        folded = normalize_string(text) or ""
        return any(keyword and keyword in folded for keyword in self._hearing_keywords)

    def _notify_hearing(self, case_id: int, text: str):
        try:
            self.hearing_service.create_from_event(case_id, text)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.warning(f"No se pudo crear el borrador de audiencia del expediente {case_id}: {e}")

    # --- Registro ---

    def _apply(self, docket: str, change: schemas.ChangeRecord, user_id: Optional[str]) -> ApplyOutcome:
        derived = self.derive(change)

        case = self.cases.find_by_docket(docket, include_deleted=True)
        if case is not None and case.is_deleted:
            raise ValidationSkip("Expediente eliminado en CaseSync")
        is_new = case is None
        if is_new:
            case = self.cases.create({
                "internal_code": next_internal_code(self.db, self.settings.INTERNAL_CODE_PREFIX),
                "docket_number": docket,
                "owner_user_id": user_id,
                "country": "Colombia",
            })

        updates = self.merge_changes(case, change, derived)
        updated_fields = list(updates)
        updates["synced"] = True
        updates["last_synced_at"] = datetime.now()
        self.cases.update(case, updates)

        updated_fields += self._upsert_parties(case, PLAINTIFF, change.demandantes)
        updated_fields += self._upsert_parties(case, DEFENDANT, change.demandados)

        new_event = self._append_event(case, change)
        if new_event:
            updated_fields.append(f"event:{new_event}")

        hearing_text = None
        if new_event:
            text = " ".join(t for t in (new_event, _text(change.ultima_anotacion)) if t)
            if self.mentions_hearing(text):
                hearing_text = text

        if is_new:
            result = schemas.RecordResult(docket=docket, status="created",
                                          message="Registro creado exitosamente")
        else:
            result = schemas.RecordResult(docket=docket, status="updated",
                                          message="Registro actualizado exitosamente",
                                          updated_fields=updated_fields)
        return result, case.id, hearing_text

    def run_guarded(self, docket: str, apply: Callable[[], ApplyOutcome]) -> schemas.RecordResult:
        """
        Ejecuta `apply` como una unidad: commit si termina, rollback y
        resultado de error si falla. Nunca propaga la excepción.
        """
        try:
            result, case_id, hearing_text = apply()
            self.db.commit()
        except ValidationSkip as e:
            self.db.rollback()
            return schemas.RecordResult(docket=docket or "Sin radicado", status="skipped", message=str(e))
        except Exception as e:
            self.db.rollback()
            if isinstance(e, IntegrityError):
                e = PersistenceConflict(docket, str(e.orig))
            log_record_error(docket or "Sin radicado", str(e))
            return schemas.RecordResult(docket=docket or "Sin radicado", status="error", message=str(e))

        if hearing_text:
            self._notify_hearing(case_id, hearing_text)

        return result

    def reconcile(self, change: schemas.ChangeRecord, user_id: Optional[str] = None) -> schemas.RecordResult:
        docket = collapse_spaces(change.numero)

        def apply() -> ApplyOutcome:
            if is_placeholder(docket):
                raise ValidationSkip("No tiene número de proceso")
            return self._apply(docket, change, user_id)

        return self.run_guarded(docket, apply)

    def reconcile_many(self, changes: Iterable[schemas.ChangeRecord], user_id: Optional[str] = None) -> schemas.SyncResult:
        """Procesa los registros en orden, uno a la vez."""
        result = schemas.SyncResult()
        for change in changes:
            record = self.reconcile(change, user_id)
            result.details.append(record)
            result.summary.add(record)
        result.summary.total = len(result.details)
        result.success = result.summary.errors == 0
        return result

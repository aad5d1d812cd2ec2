"""
Importación de Excel
====================

Dos formatos:

1. El reporte exportado desde Monolegal. Se procesa con el mismo motor de
   reconciliación que la sincronización por API.
2. El Excel propio del cliente (columnas COD, #, Consecutivo, Demandante...).
   Identifica el expediente por etiqueta o radicado, completa los campos
   vacíos y los datos "Por verificar" del demandante.

En ambos casos el encabezado puede estar en cualquiera de las primeras filas.
"""

import io
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd
from sqlalchemy.orm import Session

import court_normalizer
import models
import schemas
import tasks
from crud import next_internal_code
from exceptions import SpreadsheetFormatError, ValidationSkip
from logger import logger, log_sync_finished
from reconciliation import PLAINTIFF, ApplyOutcome, ReconciliationEngine
from utils import collapse_spaces, is_placeholder, normalize_string, parse_provider_date

EXCEL_EXTENSIONS = (".xlsx", ".xls")
HEADER_SEARCH_ROWS = 6
DOCKET_HEADER = "numero proceso"
REPORT_SHEET_HINT = "informe"

# Columna del Excel (sin tildes, minúsculas) -> campo de ChangeRecord
COLUMN_MAP: Dict[str, str] = {
    "numero proceso": "numero",
    "demandantes": "demandantes",
    "demandados": "demandados",
    "despacho": "despacho",
    "etiqueta": "etiqueta",
    "etapa procesal": "etapa_procesal",
    "ultima actuacion": "ultima_actuacion",
    "fecha de ultimo registro": "fecha_ultima_actuacion",
}

# Columna del Excel del cliente -> campo de ClientRow
CLIENT_COLUMN_MAP: Dict[str, str] = {
    "cod": "code",
    "#": "number",
    "consecutivo": "docket",
    "radicado": "docket",
    "demandante": "plaintiff",
    "tipo de documento": "document_type",
    "documento": "document",
    "contacto": "contact",
    "direccion electronica": "email",
    "email": "email",
    "jurisdiccion": "jurisdiction",
    "tipo de proceso": "process_type",
    "departamento": "department",
    "ciudad": "city",
    "juzgado": "court_office",
    "fecha radicado": "filing_date",
    "archivado/conciliado": "archived",
    "archivado": "archived",
    "activo": "active",
}

HeaderMatcher = Callable[[List[str]], bool]


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if pd.isna(value):
            return ""
        if value.is_integer():
            return str(int(value))
    if isinstance(value, (datetime, date)):
        if pd.isna(value):
            return ""
        return value.isoformat()
    return str(value).strip()


def _read_workbook(content: bytes) -> Dict[str, pd.DataFrame]:
    """Todas las hojas del libro, en orden, sin interpretar encabezados."""
    try:
        return pd.read_excel(io.BytesIO(content), sheet_name=None, header=None, dtype=object)
    except Exception as e:
        raise SpreadsheetFormatError(f"Error al leer el archivo Excel: {e}")


def _report_sheet_order(names: List[str]) -> List[str]:
    """Primero las hojas "Informe...", luego el resto desde la última."""
    preferred = [n for n in names if REPORT_SHEET_HINT in (normalize_string(str(n)) or "")]
    return preferred + [n for n in reversed(names) if n not in preferred]


def _locate_header(
    sheets: Dict[str, pd.DataFrame],
    order: Iterable[str],
    matches: HeaderMatcher
) -> Optional[Tuple[str, pd.DataFrame, int]]:
    for name in order:
        raw = sheets[name]
        for index in range(min(HEADER_SEARCH_ROWS, len(raw))):
            headers = [normalize_string(_cell(v)) or "" for v in raw.iloc[index].tolist()]
            if matches(headers):
                return name, raw, index
    return None


def _rows(raw: pd.DataFrame, header_row: int, column_map: Dict[str, str]) -> List[Dict[str, str]]:
    columns = {}
    for position, header in enumerate(raw.iloc[header_row].tolist()):
        field = column_map.get(normalize_string(_cell(header)))
        if field and field not in columns:
            columns[field] = position

    rows = []
    for _, row in raw.iloc[header_row + 1:].iterrows():
        values = {field: _cell(row.iloc[position]) for field, position in columns.items()}
        if any(values.values()):
            rows.append(values)
    return rows


def _is_report_header(headers: List[str]) -> bool:
    return DOCKET_HEADER in headers


def _is_client_header(headers: List[str]) -> bool:
    has_label = "cod" in headers or "#" in headers
    return has_label and any("demandante" in h for h in headers)


def read_change_records(content: bytes) -> List[schemas.ChangeRecord]:
    """Convierte el reporte de Monolegal en registros de cambio."""
    sheets = _read_workbook(content)
    found = _locate_header(sheets, _report_sheet_order(list(sheets)), _is_report_header)
    if found is None:
        raise SpreadsheetFormatError("No se encontró la columna 'Número Proceso' en las primeras filas")

    sheet, raw, header_row = found
    logger.debug(f"Reporte de Monolegal en la hoja '{sheet}', encabezado en la fila {header_row + 1}")
    return [schemas.ChangeRecord(**values) for values in _rows(raw, header_row, COLUMN_MAP)]


def read_client_rows(content: bytes) -> List[schemas.ClientRow]:
    """Filas del Excel del cliente. Busca el encabezado en todas las hojas."""
    sheets = _read_workbook(content)
    found = _locate_header(sheets, list(sheets), _is_client_header)
    if found is None:
        raise SpreadsheetFormatError(
            "No se encontraron los encabezados del Excel. "
            "El archivo debe tener las columnas #, Consecutivo, Demandante, etc."
        )

    sheet, raw, header_row = found
    logger.debug(f"Excel del cliente en la hoja '{sheet}', encabezado en la fila {header_row + 1}")
    return [schemas.ClientRow(**values) for values in _rows(raw, header_row, CLIENT_COLUMN_MAP)]


# --- Excel del cliente ---

def _title_words(value: str) -> str:
    words = collapse_spaces(value.replace("_", " ")).split(" ")
    return " ".join(w[:1].upper() + w[1:].lower() for w in words if w)


def _flag(value: str, truthy: Tuple[str, ...]) -> Optional[bool]:
    if is_placeholder(value):
        return None
    return normalize_string(value) in truthy


class ClientSpreadsheetImporter(ReconciliationEngine):
    """Aplica las filas del Excel del cliente sobre el catálogo."""

    # Solo se asignan si el expediente no tiene valor
    FILL_FIELDS = ("court_office", "city", "department", "jurisdiction", "process_type", "filing_date")

    def row_values(self, row: schemas.ClientRow) -> dict:
        city = "" if is_placeholder(row.city) else court_normalizer.normalize_city_name(row.city.replace("_", " "))
        office = ""
        if not is_placeholder(row.court_office):
            office = court_normalizer.normalize(row.court_office, city or None)

        department = ""
        if not is_placeholder(row.department):
            department = court_normalizer.normalize_city_name(row.department.replace("_", " "))
        department = department or court_normalizer.department_for(city)

        process_type = "" if is_placeholder(row.process_type) else collapse_spaces(row.process_type).capitalize()
        return {
            "court_office": office,
            "city": city,
            "department": department,
            "jurisdiction": "" if is_placeholder(row.jurisdiction) else _title_words(row.jurisdiction),
            "process_type": process_type,
            "filing_date": parse_provider_date(row.filing_date),
            "is_active": _flag(row.active, ("activo",)),
            "is_archived": _flag(row.archived, ("si",)),
        }

    def sync_plaintiff(self, case: models.Case, row: schemas.ClientRow) -> List[str]:
        """
        Ubica al demandante por nombre (o uno sin nombre asignado) y completa
        sus datos pendientes. Si no hay ninguno, lo crea.
        """
        name = collapse_spaces(row.plaintiff)
        if is_placeholder(name):
            return []

        identity = {
            "document_type": row.document_type,
            "document": row.document,
            "contact": row.contact,
            "email": row.email,
        }
        plaintiffs = self.parties.find_by_case_and_role(case.id, PLAINTIFF)
        folded = normalize_string(name)
        party = next((p for p in plaintiffs if normalize_string(p.name) == folded), None)
        if party is None:
            party = next((p for p in plaintiffs if p.name in ("", models.PENDING_VERIFICATION)), None)
            identity["name"] = name

        if party is None:
            data = {k: v for k, v in identity.items() if v and not is_placeholder(v)}
            self.parties.create({"case_id": case.id, "role": PLAINTIFF, **data})
            return ["created"]
        return self.fill_pending_fields(party, identity)

    def _apply_row(self, row: schemas.ClientRow, label: str, docket: str, user_id: Optional[str]) -> ApplyOutcome:
        values = self.row_values(row)

        case = self.cases.find_by_label(label)
        found_by = "etiqueta"
        if case is None and docket:
            case = self.cases.find_by_docket(docket, include_deleted=True)
            found_by = "radicado"
            if case is not None and case.is_deleted:
                raise ValidationSkip("Expediente eliminado en CaseSync")

        if case is None:
            data = {k: v for k, v in values.items() if v not in (None, "")}
            case = self.cases.create({
                **data,
                "internal_code": next_internal_code(self.db, self.settings.CLIENT_IMPORT_CODE_PREFIX),
                "docket_number": docket or None,
                "label": label,
                "owner_user_id": user_id,
                "country": "Colombia",
            })
            self.sync_plaintiff(case, row)
            result = schemas.RecordResult(docket=docket or "Sin radicado", status="created",
                                          message="Registro creado exitosamente")
            return result, case.id, None

        updates = {}
        if case.label != label:
            updates["label"] = label
        if not case.docket_number and docket:
            updates["docket_number"] = docket
        for name in self.FILL_FIELDS:
            if values[name] not in (None, "") and getattr(case, name) in (None, ""):
                updates[name] = values[name]
        for name in ("is_active", "is_archived"):
            if values[name] is not None and getattr(case, name) != values[name]:
                updates[name] = values[name]
        if updates:
            self.cases.update(case, updates)

        updated_fields = list(updates)
        updated_fields += [f"plaintiff.{attr}" for attr in self.sync_plaintiff(case, row)]
        if updated_fields:
            message = f"Actualizado (encontrado por {found_by})"
        else:
            message = f"Sin cambios (encontrado por {found_by})"
        result = schemas.RecordResult(docket=case.docket_number or "Sin radicado", status="updated",
                                      message=message, updated_fields=updated_fields)
        return result, case.id, None

    def import_row(self, row: schemas.ClientRow, user_id: Optional[str] = None) -> schemas.RecordResult:
        label = collapse_spaces(row.label)
        docket = collapse_spaces(row.docket)
        if is_placeholder(docket):
            docket = ""

        def apply() -> ApplyOutcome:
            if not label:
                raise ValidationSkip("No tiene etiqueta (columna #)")
            return self._apply_row(row, label, docket, user_id)

        result = self.run_guarded(docket, apply)
        result.label = label or None
        return result

    def import_rows(self, rows: Iterable[schemas.ClientRow], user_id: Optional[str] = None) -> schemas.SyncResult:
        result = schemas.SyncResult()
        for row in rows:
            record = self.import_row(row, user_id)
            result.details.append(record)
            result.summary.add(record)
        result.summary.total = len(result.details)
        result.success = result.summary.errors == 0
        return result


# --- Puntos de entrada ---

def _read_upload(file_obj: Union[bytes, Any], filename: str) -> bytes:
    if not filename or not filename.lower().endswith(EXCEL_EXTENSIONS):
        raise SpreadsheetFormatError("Solo se permiten archivos Excel (.xlsx, .xls)")
    return file_obj if isinstance(file_obj, bytes) else file_obj.read()


def _record_import(
    db: Session,
    trigger: str,
    filename: str,
    user_id: Optional[str],
    process: Callable[[], schemas.SyncResult]
) -> schemas.SyncResult:
    run = tasks.create_sync_run(db, trigger, user_id, meta={"filename": filename})
    result = process()

    status = "partial" if result.summary.errors else "success"
    tasks.finish_sync_run(
        db, run, status,
        summary=result.summary,
        error_details=result.error_sample(tasks.error_sample_cap(trigger))
    )
    log_sync_finished(run.id, trigger, status, run.summary)

    result.sync_run_id = run.id
    result.message = f"Procesados {result.summary.total} registros de {filename}"
    return result


def import_from_spreadsheet(
    db: Session,
    file_obj: Union[bytes, Any],
    filename: str,
    user_id: Optional[str] = None
) -> schemas.SyncResult:
    """
    Importa un Excel de Monolegal. Registra un SyncRun con trigger
    "spreadsheet".
    """
    records = read_change_records(_read_upload(file_obj, filename))
    logger.info(f"Excel '{filename}': {len(records)} filas para procesar")

    engine = ReconciliationEngine(db)
    return _record_import(db, "spreadsheet", filename, user_id,
                          lambda: engine.reconcile_many(records, user_id))


def import_client_spreadsheet(
    db: Session,
    file_obj: Union[bytes, Any],
    filename: str,
    user_id: Optional[str] = None
) -> schemas.SyncResult:
    """Importa el Excel propio del cliente (trigger "client_spreadsheet")."""
    rows = read_client_rows(_read_upload(file_obj, filename))
    logger.info(f"Excel del cliente '{filename}': {len(rows)} filas para procesar")

    importer = ClientSpreadsheetImporter(db)
    return _record_import(db, "client_spreadsheet", filename, user_id,
                          lambda: importer.import_rows(rows, user_id))

import io
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

import pandas as pd
from jose import jwt

import schemas
from config import settings


def make_token(**claims) -> str:
    """JWT firmado como lo emite el servicio de autenticación compartido."""
    claims.setdefault("exp", datetime.utcnow() + timedelta(hours=1))
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def make_change(numero: str, **fields) -> schemas.ChangeRecord:
    return schemas.ChangeRecord(numero=numero, **fields)


class FakeProviderClient:
    """Cliente de Monolegal en memoria: cambios por día y error opcional."""

    def __init__(
        self,
        changes_by_day: Optional[Dict[date, List[schemas.ChangeRecord]]] = None,
        error: Optional[Exception] = None,
    ):
        self.changes_by_day = changes_by_day or {}
        self.error = error
        self.summary_calls: List[date] = []

    def fetch_change_summary(self, day: date) -> schemas.ChangeSummary:
        self.summary_calls.append(day)
        if self.error:
            raise self.error
        changes = self.changes_by_day.get(day, [])
        return schemas.ChangeSummary(
            has_changes=bool(changes),
            date_id=day.strftime("%Y%m%d"),
            stats=schemas.ChangeStats(record_count=len(changes), change_count=len(changes)),
        )

    def fetch_all_changes(self, day: date) -> List[schemas.ChangeRecord]:
        return list(self.changes_by_day.get(day, []))


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    """Sustituto de requests.Session que responde en orden y registra las llamadas."""

    def __init__(self, post_responses=None, get_responses=None):
        self.headers = {}
        self.post_responses = list(post_responses or [])
        self.get_responses = list(get_responses or [])
        self.posts = []
        self.gets = []

    def _next(self, queue):
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, json=None, timeout=None, **kwargs):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        return self._next(self.post_responses)

    def get(self, url, params=None, headers=None, timeout=None, **kwargs):
        self.gets.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        return self._next(self.get_responses)


SPREADSHEET_HEADER = [
    "Número Proceso", "Demandantes", "Demandados", "Despacho",
    "Etiqueta", "Etapa Procesal", "Última Actuación", "Fecha de último registro",
]


def build_workbook(rows, title: Optional[str] = "Reporte de expedientes Monolegal") -> bytes:
    """Excel en memoria con el encabezado de Monolegal (y una fila de título opcional)."""
    return build_sheets({"Sheet1": report_rows(rows, title)})


def build_sheets(sheets: Dict[str, list]) -> bytes:
    """Excel en memoria con varias hojas: {nombre: filas}."""
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        for name, rows in sheets.items():
            pd.DataFrame(rows).to_excel(writer, sheet_name=name, header=False, index=False)
    return buffer.getvalue()


def report_rows(rows, title: Optional[str] = "Reporte de expedientes Monolegal") -> list:
    return ([[title]] if title else []) + [SPREADSHEET_HEADER] + [list(row) for row in rows]


CLIENT_HEADER = [
    "Cod", "#", "Consecutivo", "Demandante", "Tipo de documento", "Documento",
    "Contacto", "Dirección electrónica", "Jurisdicción", "Tipo de proceso",
    "Departamento", "Ciudad", "Juzgado", "Fecha radicado", "Archivado/conciliado", "Activo",
]


def client_row(values: Dict[str, object]) -> list:
    """Fila del Excel del cliente a partir de los encabezados ("Cod", "#", ...)."""
    return [values.get(header, "") for header in CLIENT_HEADER]


def build_client_workbook(rows, title: Optional[str] = "Base de procesos", sheet_name: str = "Procesos") -> bytes:
    data = ([[title]] if title else []) + [CLIENT_HEADER] + [list(row) for row in rows]
    return build_sheets({sheet_name: data})

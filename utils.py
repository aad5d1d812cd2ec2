import re
import unicodedata
from datetime import date, datetime, timedelta
from typing import Any, List, Optional

PLACEHOLDERS = {"", "---", "na", "n/a", "-"}

def normalize_string(text: Optional[str]) -> Optional[str]:
    """
    Normaliza string eliminando tildes y convirtiendo a minúsculas.
    Útil para búsquedas insensibles a mayúsculas y tildes.
    """
    if not text:
        return text

    # Normalizar unicode (NFD = descomposición canónica)
    nfd = unicodedata.normalize('NFD', text)

    # Eliminar tildes (categoría Mn = Nonspacing Mark)
    without_accents = ''.join(char for char in nfd if unicodedata.category(char) != 'Mn')

    # Minúsculas y espacios colapsados
    return collapse_spaces(without_accents.lower())

def collapse_spaces(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()

def is_placeholder(value: Optional[str]) -> bool:
    """True para vacíos y marcadores del proveedor como '---' o 'NA'."""
    if value is None:
        return True
    return value.strip().lower() in PLACEHOLDERS

def split_names(raw: Optional[str]) -> List[str]:
    """Divide una lista de nombres separada por comas, sin vacíos ni duplicados."""
    names = []
    for part in (raw or "").split(","):
        name = collapse_spaces(part)
        if name and not is_placeholder(name) and name not in names:
            names.append(name)
    return names

_FULL_TEXT_DATE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})\s+A\s+LAS\s+(\d{1,2}):(\d{1,2}):(\d{1,2})", re.IGNORECASE)
_SHORT_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_EXCEL_EPOCH = datetime(1899, 12, 30)
_EXCEL_SERIAL = re.compile(r"^\d{1,6}(?:\.\d+)?$")

def parse_provider_date(value: Any) -> Optional[datetime]:
    """
    Fechas tal como llegan de Monolegal o de su Excel:
    "15/01/2025 A LAS 10:30:00", "15/01/2025", ISO 8601 o número serial de Excel.
    Devuelve None si no se reconoce.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, 12, 0, 0)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value != value:  # NaN
            return None
        return _EXCEL_EPOCH + timedelta(days=float(value))

    text = str(value).strip()
    if is_placeholder(text):
        return None
    if _EXCEL_SERIAL.match(text):
        # Celda de fecha que llegó como texto ("45678")
        return _EXCEL_EPOCH + timedelta(days=float(text))

    try:
        match = _FULL_TEXT_DATE.search(text)
        if match:
            d, m, y, hh, mm, ss = (int(g) for g in match.groups())
            return datetime(y, m, d, hh, mm, ss)

        match = _SHORT_DATE.match(text)
        if match:
            d, m, y = (int(g) for g in match.groups())
            return datetime(y, m, d, 12, 0, 0)

        return datetime.fromisoformat(text.replace("Z", ""))
    except ValueError:
        return None

"""
Errores de la Sincronización
============================

Taxonomía de errores usada por el cliente de Monolegal, el motor de
reconciliación y el orquestador.
"""

from typing import Iterable, List, Optional


class SyncError(Exception):
    """Base de todos los errores de sincronización."""


class ValidationSkip(SyncError):
    """Registro sin número de proceso: se clasifica como omitido, no como error."""


class ProviderError(SyncError):
    """Fallo al hablar con Monolegal. Conserva el mensaje del upstream."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Login rechazado o token rechazado dos veces seguidas."""


class ProviderRequestError(ProviderError):
    """Timeout, 5xx, error de red o respuesta ilegible."""


class PersistenceConflict(SyncError):
    """Carrera sobre una restricción única (radicado, código interno)."""

    def __init__(self, docket: str, detail: str = ""):
        message = f"Conflicto de persistencia para el radicado {docket or 'sin radicado'}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.docket = docket
        self.detail = detail


class InvalidTransitionError(SyncError):
    """Transición de estado rechazada por la tabla de transiciones."""

    def __init__(self, current: Iterable[str], requested: str, valid: Iterable[str]):
        self.current: List[str] = [str(s) for s in current]
        self.requested = str(requested)
        self.valid: List[str] = [str(s) for s in valid]
        current_str = ", ".join(self.current) if self.current else "ninguno"
        valid_str = ", ".join(self.valid) if self.valid else "ninguno"
        super().__init__(
            f"Transición de estado inválida. Estado actual: [{current_str}]. "
            f"Estado solicitado: {self.requested}. "
            f"Estados válidos: [{valid_str}]"
        )


class SpreadsheetFormatError(SyncError):
    """El archivo no es un Excel de Monolegal utilizable."""

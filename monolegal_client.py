"""
Cliente de la API de Monolegal
==============================

Autenticación por token (válido ~23h), resumen diario de cambios y listado
paginado de expedientes con cambios.
"""

from datetime import date, datetime, timedelta
from typing import List, Optional

import requests

import schemas
from config import Settings, settings as default_settings
from exceptions import ProviderAuthError, ProviderRequestError
from logger import logger


def format_provider_date(day: date) -> str:
    """Fecha en el formato que espera Monolegal: yyyymmdd."""
    return day.strftime("%Y%m%d")


class MonolegalClient:
    """Cliente REST de Monolegal con caché de token."""

    def __init__(self, settings: Optional[Settings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or default_settings
        self.base_url = self.settings.PROVIDER_BASE_URL.rstrip("/")
        self.timeout = self.settings.PROVIDER_TIMEOUT_SECONDS
        self.session = session or requests.Session()
        self.session.headers["Content-Type"] = "application/json"
        self.session.headers["Accept"] = "application/json"
        self.token: Optional[str] = None
        self.token_expires_at: Optional[datetime] = None

    # --- Autenticación ---

    def login(self) -> str:
        if not self.settings.PROVIDER_EMAIL or not self.settings.PROVIDER_PASSWORD:
            raise ProviderAuthError("Credenciales de Monolegal no configuradas")

        logger.info("Autenticando con Monolegal...")
        try:
            resp = self.session.post(
                f"{self.base_url}/Login",
                json={"email": self.settings.PROVIDER_EMAIL, "pwd": self.settings.PROVIDER_PASSWORD},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderAuthError(f"Error de conexión en login: {e}")

        if resp.status_code >= 400:
            raise ProviderAuthError(
                f"Login rechazado por Monolegal (HTTP {resp.status_code})",
                status_code=resp.status_code,
            )

        try:
            data = schemas.LoginResponse(**resp.json())
        except ValueError as e:
            raise ProviderAuthError(f"Respuesta de login ilegible: {e}")

        if not data.success or not data.token:
            raise ProviderAuthError(data.message or "Error en autenticación con Monolegal")

        self.token = data.token
        self.token_expires_at = datetime.now() + timedelta(hours=self.settings.PROVIDER_TOKEN_HOURS)
        logger.info("Autenticación exitosa con Monolegal")
        return self.token

    def token_is_valid(self) -> bool:
        return bool(self.token and self.token_expires_at and datetime.now() < self.token_expires_at)

    def _ensure_token(self) -> str:
        if not self.token_is_valid():
            self.login()
        return self.token

    def _invalidate_token(self):
        self.token = None
        self.token_expires_at = None

    # --- Peticiones ---

    def _get(self, path: str, params: dict = None):
        """GET autenticado. Un 401 provoca un único re-login y reintento."""
        url = f"{self.base_url}/{path.lstrip('/')}"

        for attempt in (1, 2):
            token = self._ensure_token()
            try:
                resp = self.session.get(
                    url,
                    params=params,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=self.timeout,
                )
            except requests.Timeout:
                raise ProviderRequestError(f"Timeout consultando {path}")
            except requests.RequestException as e:
                raise ProviderRequestError(f"Error de conexión consultando {path}: {e}")

            if resp.status_code == 401:
                self._invalidate_token()
                if attempt == 1:
                    logger.warning(f"Token rechazado en {path}, reautenticando")
                    continue
                raise ProviderAuthError("Token rechazado por Monolegal tras reautenticar", status_code=401)

            if resp.status_code >= 400:
                raise ProviderRequestError(
                    f"Error HTTP {resp.status_code} en {path}: {resp.text[:200]}",
                    status_code=resp.status_code,
                )

            try:
                return resp.json()
            except ValueError:
                raise ProviderRequestError(f"Respuesta JSON inválida en {path}")

    def fetch_change_summary(self, day: date) -> schemas.ChangeSummary:
        data = self._get(f"ResumenActualizacion/{format_provider_date(day)}")
        if not isinstance(data, dict):
            raise ProviderRequestError("Resumen de actualización con formato inesperado")
        return schemas.ChangeSummary(**data)

    def fetch_change_page(self, day: date, page: int) -> List[schemas.ChangeRecord]:
        data = self._get(
            "InformeExpedientes/Cambios",
            params={"idFecha": format_provider_date(day), "pagina": page},
        )
        if data is None:
            return []
        if not isinstance(data, list):
            raise ProviderRequestError(f"Página {page} con formato inesperado")
        return [schemas.ChangeRecord(**item) for item in data]

    def fetch_all_changes(self, day: date) -> List[schemas.ChangeRecord]:
        """
        Descarga todas las páginas de cambios del día, desde la 0 hasta la
        primera página vacía o el límite de páginas.
        """
        changes: List[schemas.ChangeRecord] = []
        max_pages = self.settings.PROVIDER_MAX_PAGES

        for page in range(max_pages):
            records = self.fetch_change_page(day, page)
            if not records:
                break
            changes.extend(records)
            logger.info(f"Página {page}: {len(records)} expedientes")
        else:
            logger.warning(
                f"Límite de {max_pages} páginas alcanzado para {format_provider_date(day)}; "
                f"se procesan {len(changes)} expedientes"
            )

        return changes

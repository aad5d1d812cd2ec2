import logging
import json
from datetime import datetime
from typing import Any, Dict, Optional

from config import settings

class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        # Adicionar campos extras
        if hasattr(record, 'extra_data'):
            log_data.update(record.extra_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)

def setup_logging():
    logger = logging.getLogger("casesync")
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler()
        if settings.LOG_FORMAT == "json":
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)

    return logger

logger = setup_logging()

def _emit(level: int, msg: str, extra_data: Dict[str, Any]):
    record = logging.LogRecord(
        name="casesync", level=level, pathname="", lineno=0,
        msg=msg, args=(), exc_info=None
    )
    record.extra_data = extra_data
    logger.handle(record)

def log_sync_finished(run_id: int, trigger: str, status: str, summary: Dict[str, int]):
    _emit(logging.INFO, "Sincronización finalizada", {
        "event": "sync_finished",
        "sync_run_id": run_id,
        "trigger": trigger,
        "status": status,
        **summary
    })

def log_record_error(docket: str, message: str):
    _emit(logging.WARNING, "Error procesando expediente", {
        "event": "record_error",
        "docket": docket,
        "error": message
    })

def log_error(error: Exception, context: Optional[Dict[str, Any]] = None):
    logger.error(
        f"Error: {str(error)}",
        extra={
            "extra_data": {
                "event": "error",
                "error_type": type(error).__name__,
                "context": context or {}
            }
        },
        exc_info=True
    )

#!/usr/bin/env python3
"""
Cron Job - Sincronización Diaria con Monolegal
==============================================

Alternativa al programador interno de la API para despliegues sin proceso
residente. Ejecuta la verificación programada una sola vez.

Configuración del cron (hora de Bogotá):
0 6,14 * * * cd /path/to/casesync && python3 cron_daily_sync.py >> logs/cron.log 2>&1
"""

import sys
from datetime import datetime

import models
from db import SessionLocal
from tasks import run_scheduled_sync
from logger import logger

def main():
    """Función principal del cron job."""
    logger.info("=" * 80)
    logger.info(f"CRON JOB INICIADO - {datetime.now()}")
    logger.info("=" * 80)

    db = SessionLocal()

    try:
        result = run_scheduled_sync(db, trigger="cron")

        if result is None:
            # Omitida o fallida: el motivo ya quedó en el log
            latest_error = db.query(models.SyncRun).order_by(models.SyncRun.id.desc()).first()
            if latest_error and latest_error.status == "error":
                print(f"ERROR: {latest_error.error_message}")
                return 1
            print("SKIPPED")
            return 0

        print(f"SUCCESS: {result.summary.created} creados, {result.summary.updated} actualizados")
        return 0

    except Exception as e:
        logger.error(f"❌ ERROR CRÍTICO: {e}")
        print(f"CRITICAL ERROR: {e}")
        return 1

    finally:
        db.close()
        logger.info("=" * 80)
        logger.info(f"CRON JOB FINALIZADO - {datetime.now()}")
        logger.info("=" * 80)


if __name__ == "__main__":
    sys.exit(main())

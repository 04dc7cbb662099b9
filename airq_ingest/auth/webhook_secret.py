"""Autenticación del webhook por secreto compartido (Bearer).

SECURITY: En producción, MQTT_WEBHOOK_SECRET debe estar configurado.
"""

from __future__ import annotations

import hmac
import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "bearer "


def _is_production() -> bool:
    return os.getenv("ENVIRONMENT", "").strip().lower() == "production"


def verify_bearer(authorization: Optional[str], expected_secret: Optional[str]) -> bool:
    """Compara ``Authorization: Bearer <secreto>`` con el secreto esperado.

    Sin secreto configurado: se rechaza en producción y se permite en
    desarrollo con warning.
    """
    if not expected_secret:
        if _is_production():
            logger.error("CRITICAL: MQTT_WEBHOOK_SECRET not configured in production!")
            return False
        logger.warning("[SECURITY WARNING] MQTT_WEBHOOK_SECRET not set - accepting webhook calls (DEV ONLY)")
        return True

    if not authorization or not authorization.lower().startswith(_BEARER_PREFIX):
        return False

    token = authorization[len(_BEARER_PREFIX):].strip()
    return hmac.compare_digest(token.encode("utf-8"), expected_secret.encode("utf-8"))

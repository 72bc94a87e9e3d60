# confirmations/config.py
from dotenv import load_dotenv
import os
from typing import Optional

# load local .env if present
load_dotenv()

_TRUE = {"1", "true", "yes", "y", "on"}


def _bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in _TRUE


def _ssm_enabled() -> bool:
    return _bool(os.getenv("USE_SSM"), False)


def _get_param_from_ssm(name: str, decrypt: bool = False) -> Optional[str]:
    """
    Try to fetch from SSM when USE_SSM is set. boto3 is imported lazily so a
    missing package or an instance role without SSM access only means falling
    back to the environment.
    """
    if not _ssm_enabled():
        return None
    try:
        from .utils.ssm import get_param
        return get_param(name, decrypt=decrypt)
    except Exception:
        return None


def _get_param_with_fallback(name: str, decrypt: bool = False, default: Optional[str] = None) -> Optional[str]:
    val = _get_param_from_ssm(name, decrypt=decrypt)
    if val:
        return val
    return os.getenv(name, default)


def _int(name: str, default: int) -> int:
    try:
        return int(_get_param_with_fallback(name, default=str(default)))
    except (TypeError, ValueError):
        return default


def _float(name: str, default: float) -> float:
    try:
        return float(_get_param_with_fallback(name, default=str(default)))
    except (TypeError, ValueError):
        return default


class Config:
    DATA_DIR = _get_param_with_fallback("DATA_DIR", default="/tmp/confirmation-data")
    # "file" or "memory"
    STORAGE_BACKEND = _get_param_with_fallback("STORAGE_BACKEND", default="file")
    # Base for generated links when the request does not supply one
    PUBLIC_BASE_URL = _get_param_with_fallback("PUBLIC_BASE_URL", default="")

    WEBHOOK_TIMEOUT = _float("WEBHOOK_TIMEOUT", 10.0)
    WEBHOOK_LOG_LIMIT = _int("WEBHOOK_LOG_LIMIT", 100)

    # Feature flags: server-side webhook notifications and uniqueId link tracking
    WEBHOOKS_ENABLED = _bool(_get_param_with_fallback("WEBHOOKS_ENABLED"), True)
    LINK_TRACKING_ENABLED = _bool(_get_param_with_fallback("LINK_TRACKING_ENABLED"), True)

    LOG_LEVEL = _get_param_with_fallback("LOG_LEVEL", default="INFO")
    HOST = _get_param_with_fallback("HOST", default="0.0.0.0")
    PORT = _int("PORT", 5000)

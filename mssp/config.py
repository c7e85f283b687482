import os
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return int(raw)
    except Exception:
        return default


def _str_env(name: str, default: str) -> str:
    return str(os.getenv(name, default)).strip()


_DEFAULT_DB_PATH = Path(__file__).resolve().parent / "data" / "mssp.db"

DATABASE_URL = _str_env("MSSP_DB_URL", f"sqlite:///{_DEFAULT_DB_PATH.as_posix()}")
API_PORT = _int_env("MSSP_API_PORT", 8010)
BIND_HOST = _str_env("MSSP_BIND_HOST", "0.0.0.0")

SECRET_KEY = _str_env("MSSP_SECRET_KEY", "mssp-dev-secret-change-me")
TOKEN_TTL_SECONDS = _int_env("MSSP_TOKEN_TTL_SECONDS", 8 * 3600)
DEFAULT_ADMIN_PASSWORD = _str_env("MSSP_DEFAULT_ADMIN_PASSWORD", "admin123")

QUERY_CACHE_TTL_SECONDS = _int_env("MSSP_QUERY_CACHE_TTL_SECONDS", 300)
CONNECTION_CACHE_TTL_SECONDS = _int_env("MSSP_CONNECTION_CACHE_TTL_SECONDS", 600)
PLUGIN_TIMEOUT_SECONDS = _int_env("MSSP_PLUGIN_TIMEOUT_SECONDS", 30)
PLUGIN_CONFIG_PATH = _str_env("MSSP_PLUGIN_CONFIG", "")

SCHEDULER_INTERVAL_SECONDS = _int_env("MSSP_SCHEDULER_INTERVAL_SECONDS", 300)
CONTRACT_EXPIRY_WARNING_DAYS = _int_env("MSSP_CONTRACT_EXPIRY_WARNING_DAYS", 30)

LOG_LEVEL = _str_env("MSSP_LOG_LEVEL", "INFO").upper()
LOG_FILE = _str_env("MSSP_LOG_FILE", "")

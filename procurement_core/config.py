import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "procurement_core.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-procurement-core")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")
    LIFECYCLE_MAX_COMMIT_ATTEMPTS = _int_env("LIFECYCLE_MAX_COMMIT_ATTEMPTS", 3)
    BID_ACCEPTANCE_POLICY = os.environ.get("BID_ACCEPTANCE_POLICY", "exclusive")
    PAYMENT_DEBIT_POLICY = os.environ.get("PAYMENT_DEBIT_POLICY", "uncommitted_only")

    OVERDUE_SWEEP_ENABLED = _bool_env("OVERDUE_SWEEP_ENABLED", True)
    OVERDUE_SWEEP_INTERVAL_SECONDS = _int_env("OVERDUE_SWEEP_INTERVAL_SECONDS", 3600)
    OVERDUE_SWEEP_LIMIT = _int_env("OVERDUE_SWEEP_LIMIT", 500)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required in production.")
        if env == "production" and self.SECRET_KEY == "dev-secret-procurement-core":
            raise RuntimeError("SECRET_KEY is not safe for production.")

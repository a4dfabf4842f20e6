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


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_READ_URL = os.environ.get("DATABASE_READ_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "quote_compare.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-quote-compare")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    PRICE_EPSILON = _float_env("PRICE_EPSILON", 0.01)
    EXCHANGE_RATE = _float_env("EXCHANGE_RATE", 3.95)
    DUPLICATE_LINE_POLICY = os.environ.get("DUPLICATE_LINE_POLICY", "lowest_price")
    PROMOTION_TIE_POLICY = os.environ.get("PROMOTION_TIE_POLICY", "compete")
    CLEAN_ITEM_IDS = _bool_env("CLEAN_ITEM_IDS", True)
    COMPARISON_SESSION_TTL_SECONDS = _int_env("COMPARISON_SESSION_TTL_SECONDS", 3600)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set for production.")
        if env == "production" and self.SECRET_KEY == "dev-secret-quote-compare":
            raise RuntimeError("SECRET_KEY is not safe for production.")

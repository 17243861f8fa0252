import logging
import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "exam_system")
DB_MAX_RETRIES = int(os.getenv("DB_MAX_RETRIES", "5"))
DB_RETRY_DELAY_SECONDS = float(os.getenv("DB_RETRY_DELAY_SECONDS", "5"))

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if APP_ENV != "production" else "WARNING")

PASSWORD_SCHEMES = [s.strip() for s in os.getenv("PASSWORD_SCHEMES", "bcrypt").split(",") if s.strip()]
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "10"))
MAX_LOGIN_ATTEMPTS = int(os.getenv("MAX_LOGIN_ATTEMPTS", "5"))
LOCKOUT_DURATION_SECONDS = int(os.getenv("LOCKOUT_DURATION_SECONDS", "300"))

SYNC_INTERVAL_SECONDS = float(os.getenv("SYNC_INTERVAL_SECONDS", "60"))
SYNC_STATE_PATH = os.getenv("SYNC_STATE_PATH", os.path.expanduser("~/.exam_sync/state.json"))
SYNC_STORE_PATH = os.getenv("SYNC_STORE_PATH", os.path.expanduser("~/.exam_sync/store.json"))
MAX_IMPORT_BYTES = int(os.getenv("MAX_IMPORT_BYTES", str(10 * 1024 * 1024)))


def is_development() -> bool:
    return APP_ENV == "development"


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# DB SQLite su file nella root del progetto (accanto a streamlit_app.py)
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "ambulatorio.sqlite"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


@dataclass(frozen=True)
class Settings:
    """
    Configurazione applicativa.
    Tutte le costanti di dominio (capienza coda, orario di lavoro, finestra di modifica)
    sono iniettabili per poter testare con limiti stretti.
    """
    database_url: str = f"sqlite:///{DEFAULT_DB_PATH}"

    queue_capacity: int = 5
    work_start_hour: int = 8
    work_end_hour: int = 18
    default_slot_minutes: int = 30
    modification_cutoff_hours: int = 12

    notifications_mode: str = "outbox"   # outbox | mock
    notifications_auto: bool = True

    # In produzione: mettila in variabile d'ambiente
    jwt_secret: str = "CHANGE_ME_DEV_SECRET"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            queue_capacity=int(os.getenv("QUEUE_CAPACITY", cls.queue_capacity)),
            work_start_hour=int(os.getenv("WORK_START_HOUR", cls.work_start_hour)),
            work_end_hour=int(os.getenv("WORK_END_HOUR", cls.work_end_hour)),
            default_slot_minutes=int(os.getenv("DEFAULT_SLOT_MINUTES", cls.default_slot_minutes)),
            modification_cutoff_hours=int(os.getenv("MODIFICATION_CUTOFF_HOURS", cls.modification_cutoff_hours)),
            notifications_mode=os.getenv("NOTIFICATIONS_MODE", cls.notifications_mode).strip().lower(),
            notifications_auto=_env_bool("NOTIFICATIONS_AUTO", cls.notifications_auto),
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            jwt_expire_minutes=int(os.getenv("JWT_EXPIRE_MINUTES", cls.jwt_expire_minutes)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

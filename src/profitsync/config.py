from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else default


def _float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    return float(raw) if raw else default


def _str_env(name: str) -> str | None:
    return (os.getenv(name) or "").strip() or None


@dataclass(frozen=True)
class Settings:
    db_path: Path
    web_host: str
    web_port: int
    encryption_key: str | None = None
    batch_size: int = 50
    batch_timeout_sec: float = 15.0
    max_fetch_retries: int = 3
    initial_lookback_days: int = 30
    ads_restatement_days: int = 7
    run_retention_sec: float = 600.0
    slash_date_order: str = "DMY"
    default_fee_percent: float = 0.029
    default_fee_fixed: float = 3.0
    worker_interval_sec: float = 900.0
    log_level: str = "INFO"
    meta_app_id: str | None = None
    meta_app_secret: str | None = None
    google_client_id: str | None = None
    google_client_secret: str | None = None

    @staticmethod
    def load() -> "Settings":
        load_dotenv()

        slash_order = (os.getenv("PROFITSYNC_SLASH_DATE_ORDER") or "DMY").strip().upper()
        if slash_order not in {"DMY", "MDY"}:
            raise ValueError(f"PROFITSYNC_SLASH_DATE_ORDER must be DMY or MDY, got {slash_order!r}")

        return Settings(
            db_path=Path(os.getenv("PROFITSYNC_DB_PATH", "./data/ledger.sqlite3")),
            web_host=os.getenv("PROFITSYNC_WEB_HOST", "127.0.0.1"),
            web_port=_int_env("PROFITSYNC_WEB_PORT", 8020),
            encryption_key=_str_env("PROFITSYNC_ENCRYPTION_KEY"),
            batch_size=max(1, _int_env("PROFITSYNC_BATCH_SIZE", 50)),
            batch_timeout_sec=_float_env("PROFITSYNC_BATCH_TIMEOUT_SEC", 15.0),
            max_fetch_retries=max(0, _int_env("PROFITSYNC_MAX_FETCH_RETRIES", 3)),
            initial_lookback_days=_int_env("PROFITSYNC_INITIAL_LOOKBACK_DAYS", 30),
            ads_restatement_days=_int_env("PROFITSYNC_ADS_RESTATEMENT_DAYS", 7),
            run_retention_sec=_float_env("PROFITSYNC_RUN_RETENTION_SEC", 600.0),
            slash_date_order=slash_order,
            default_fee_percent=_float_env("PROFITSYNC_DEFAULT_FEE_PERCENT", 0.029),
            default_fee_fixed=_float_env("PROFITSYNC_DEFAULT_FEE_FIXED", 3.0),
            worker_interval_sec=_float_env("PROFITSYNC_WORKER_INTERVAL_SEC", 900.0),
            log_level=(os.getenv("PROFITSYNC_LOG_LEVEL") or "INFO").strip().upper(),
            meta_app_id=_str_env("META_APP_ID"),
            meta_app_secret=_str_env("META_APP_SECRET"),
            google_client_id=_str_env("GOOGLE_CLIENT_ID"),
            google_client_secret=_str_env("GOOGLE_CLIENT_SECRET"),
        )

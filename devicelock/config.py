import os
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

DEFAULT_PAYMENT_LINK = "https://shop.bkash.com/ahk-phone-repair01630138471/paymentlink"

PREFS_NAMESPACE = "ahk_prefs"
LOCATION_DB_NAME = "location_tracking.db"


class Settings:
    def _float(self, name: str, default: float) -> float:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return float(raw)
        except ValueError:
            return default

    def _int(self, name: str, default: int) -> int:
        return int(self._float(name, default))

    def __init__(self) -> None:
        self.api_base_url = (os.getenv("DEVICELOCK_API_BASE_URL") or "http://localhost:8000").strip().rstrip("/")
        self.data_dir = Path(os.getenv("DEVICELOCK_DATA_DIR") or Path.home() / ".devicelock")
        # Empty means "generate once and persist under data_dir".
        self.device_id = (os.getenv("DEVICELOCK_DEVICE_ID") or "").strip()
        self.secret_key = (os.getenv("DEVICELOCK_SECRET_KEY") or "").strip()
        self.timezone = (os.getenv("DEVICELOCK_TZ") or "").strip()

        # Worker cadences, in seconds.
        self.heartbeat_interval = self._float("DEVICELOCK_HEARTBEAT_SECONDS", 5 * 60)
        self.location_interval = self._float("DEVICELOCK_LOCATION_SECONDS", 60 * 60)
        self.location_sync_interval = self._float("DEVICELOCK_LOCATION_SYNC_SECONDS", 15 * 60)
        self.due_date_interval = self._float("DEVICELOCK_DUE_DATE_SECONDS", 15 * 60)
        self.payment_sync_interval = self._float("DEVICELOCK_PAYMENT_SYNC_SECONDS", 15 * 60)

        self.retention_days = self._int("DEVICELOCK_RETENTION_DAYS", 30)
        self.payment_link_max_age = self._float("DEVICELOCK_PAYMENT_LINK_MAX_AGE_SECONDS", 24 * 60 * 60)
        self.default_payment_link = (
            os.getenv("DEVICELOCK_DEFAULT_PAYMENT_LINK") or DEFAULT_PAYMENT_LINK
        ).strip()

        self.backoff_base = self._float("DEVICELOCK_BACKOFF_BASE", 1.0)
        self.backoff_cap = self._float("DEVICELOCK_BACKOFF_CAP", 60.0)
        self.watch_timeout = self._float("DEVICELOCK_WATCH_TIMEOUT", 25.0)
        self.request_timeout = self._float("DEVICELOCK_REQUEST_TIMEOUT", 10.0)

    @property
    def tz(self) -> Optional[ZoneInfo]:
        # None means the host's local zone.
        return ZoneInfo(self.timezone) if self.timezone else None

    @property
    def location_db_path(self) -> Path:
        return self.data_dir.expanduser() / LOCATION_DB_NAME


settings = Settings()

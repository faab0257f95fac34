"""
Data models for the lock-state control plane.
"""

from __future__ import annotations

import hashlib
import time
from datetime import date, datetime, tzinfo
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ── Enums ──────────────────────────────────────────────────────────────

class LockState(str, Enum):
    UNREGISTERED = "Unregistered"
    UNLOCKED = "Unlocked"
    LOCKED = "Locked"


class LockSource(str, Enum):
    REMOTE = "remote"
    DUE_DATE = "due-date"
    OFFLINE_PIN = "offline-pin"
    BOOT = "boot"
    PUSH = "push"
    USER_PRESENT = "user-present"


class LockTarget(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class PrivilegeTier(str, Enum):
    DEVICE_OWNER = "device-owner"
    DEVICE_ADMIN = "device-admin"
    ACCESSIBILITY = "accessibility"


class CommandType(str, Enum):
    LOCK = "lock"
    UNLOCK = "unlock"


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"


# Strongest first.
TIER_ORDER: list[PrivilegeTier] = [
    PrivilegeTier.DEVICE_OWNER,
    PrivilegeTier.DEVICE_ADMIN,
    PrivilegeTier.ACCESSIBILITY,
]

PIN_LENGTH = 4


# ── Helpers ────────────────────────────────────────────────────────────

def now_ms() -> int:
    return int(time.time() * 1000)


def hash_pin(pin: str) -> str:
    """Lowercase hex SHA-256 of the PIN's UTF-8 bytes."""
    return hashlib.sha256(pin.encode("utf-8")).hexdigest()


def validate_pin(pin: str) -> str:
    if not isinstance(pin, str) or len(pin) != PIN_LENGTH:
        raise ValueError(f"PIN must be exactly {PIN_LENGTH} digits")
    # str.isdigit() accepts non-ASCII digits, which we do not want
    if not all(c in "0123456789" for c in pin):
        raise ValueError("PIN must contain only the digits 0-9")
    return pin


def parse_due_date(value: str) -> date:
    return datetime.strptime(value, "%Y-%m-%d").date()


def format_point_time(timestamp_ms: int, tz: tzinfo | None = None) -> tuple[str, str]:
    """
    Return the (date, time) labels for a position point.

    date is 'DD-MM-YYYY', time is 'h:mm AM/PM' (no leading zero on the hour),
    both in the given zone (host local zone when tz is None).
    """
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=tz)
    if tz is None:
        moment = moment.astimezone()
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return moment.strftime("%d-%m-%Y"), f"{hour}:{moment.minute:02d} {suffix}"


def slot_key(time_label: str) -> str:
    return time_label.replace(":", "_").replace(" ", "_")


# ── Device Record ──────────────────────────────────────────────────────

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeviceRecord(_CamelModel):
    """The per-device document in the control plane (`devices/{deviceId}`)."""

    device_id: str = Field(..., min_length=1, max_length=128)
    locked: Optional[bool] = None
    due_date: Optional[str] = None
    due_amount: Optional[str] = None
    due_details: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    device_model: Optional[str] = None
    imei: Optional[str] = None
    pin_hash: Optional[str] = None
    payment_link: Optional[str] = None
    payment_link_updated_at: Optional[str] = None
    last_seen_timestamp: Optional[int] = None
    offline_unlock_count: Optional[int] = Field(default=None, ge=0)
    last_offline_unlock: Optional[int] = None

    @property
    def is_locked(self) -> bool:
        # A record without the field reads as unlocked.
        return bool(self.locked)

    @property
    def unlock_count(self) -> int:
        return self.offline_unlock_count or 0

    @classmethod
    def from_document(cls, device_id: str, document: dict[str, Any] | None) -> "DeviceRecord":
        data = dict(document or {})
        data.setdefault("deviceId", device_id)
        return cls.model_validate(data)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class DevicePatch(_CamelModel):
    """Field subset accepted by patch/set; unknown fields are rejected."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    device_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    locked: Optional[bool] = None
    due_date: Optional[str] = None
    due_amount: Optional[str] = None
    due_details: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    device_model: Optional[str] = None
    imei: Optional[str] = None
    pin_hash: Optional[str] = Field(default=None, pattern=r"^[0-9a-f]{64}$")
    payment_link: Optional[str] = None
    last_seen_timestamp: Optional[int] = None
    offline_unlock_count: Optional[int] = Field(default=None, ge=0)
    last_offline_unlock: Optional[int] = None

    @field_validator("due_date")
    @classmethod
    def _due_date_format(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            parse_due_date(v)
        return v

    def changes(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


# ── Position Point ─────────────────────────────────────────────────────

class PositionPoint(BaseModel):
    id: int = 0
    device_id: str
    latitude: float
    longitude: float
    accuracy: float
    timestamp: int
    date: str
    time: str
    synced: bool = False

    @classmethod
    def at(
        cls,
        device_id: str,
        latitude: float,
        longitude: float,
        accuracy: float,
        timestamp: int,
        tz: tzinfo | None = None,
    ) -> "PositionPoint":
        day, clock = format_point_time(timestamp, tz)
        return cls(
            device_id=device_id,
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
            timestamp=timestamp,
            date=day,
            time=clock,
        )

    def slot(self) -> dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "timestamp": self.timestamp,
            "time": self.time,
        }


class LocationFix(BaseModel):
    """A provider reading; accuracy is the reported radius in meters."""

    provider: str
    latitude: float
    longitude: float
    accuracy: float


# ── Lock Event ─────────────────────────────────────────────────────────

class LockEvent(BaseModel):
    source: LockSource
    target: LockTarget
    at: int = Field(default_factory=now_ms)


# ── Request / Response schemas ─────────────────────────────────────────

class RegistrationInput(BaseModel):
    pin: str
    device_model: str

    @field_validator("pin")
    @classmethod
    def _pin(cls, v: str) -> str:
        return validate_pin(v)

    @field_validator("device_model")
    @classmethod
    def _model(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("device model is required")
        return v.strip()


class WatchResponse(BaseModel):
    device_id: str
    version: int
    exists: bool
    document: Optional[dict[str, Any]] = None


class OperatorCommand(BaseModel):
    command: CommandType
    actor: str = "operator"


class BatchPatchRequest(BaseModel):
    fields: DevicePatch
    actor: str = "operator"


class PaymentLinkUpdate(BaseModel):
    payment_link: str = Field(..., min_length=1)
    device_id: Optional[str] = None
    actor: str = "operator"


class AuditRecord(BaseModel):
    device_id: str
    from_locked: Optional[bool]
    to_locked: bool
    actor: str
    timestamp: datetime
    offline_unlock_count: Optional[int] = None

"""
Control-plane backend and operator console.

Device registry:
    GET    /devices/{device_id}                        — Read the device document
    PATCH  /devices/{device_id}                        — Patch fields (404 when missing)
    PUT    /devices/{device_id}?merge=                 — Set (create) the document
    GET    /devices/{device_id}/watch?since=&timeout=  — Long-poll for document changes
    GET    /devices                                    — List all devices
    DELETE /devices/{device_id}                        — Remove a device and its history

Location history:
    PUT    /device_locations/{device_id}/location_history/{date}
    GET    /device_locations/{device_id}/location_history
    GET    /device_locations/{device_id}/location_history/{date}

Operator console:
    POST   /admin/devices/{device_id}/command          — Lock / unlock one device
    POST   /admin/batch-patch                          — Apply fields to every device
    POST   /admin/payment-link                         — Set the payment link (one or all)
    POST   /admin/emergency-unlock                     — Unlock every locked device
    GET    /audit/{device_id}                          — Lock-state audit trail
    GET    /topics/{topic}/messages?after=             — Published push messages
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Header, HTTPException, Request

from .models import (
    AuditRecord,
    BatchPatchRequest,
    CommandType,
    DevicePatch,
    OperatorCommand,
    PaymentLinkUpdate,
    WatchResponse,
    now_ms,
)
from .safety import circuit_breaker

# ── Structured logging ─────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-5s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("devicelock-backend")

app = FastAPI(title="Device Lock Control Plane", version="0.3.0")

ALL_DEVICES_TOPIC = "all_devices"
MAX_WATCH_TIMEOUT = 60.0

# ── In-memory stores (swap for DB in production) ──────────────────────

devices: dict[str, dict[str, Any]] = {}                  # device_id -> document
versions: dict[str, int] = {}                            # device_id -> document version
location_history: dict[str, dict[str, dict]] = {}        # device_id -> date -> day document
audit_log: list[AuditRecord] = []
topic_messages: dict[str, list[dict]] = {}
_watchers: dict[str, set[asyncio.Event]] = {}
_version_counter = itertools.count(1)


def _server_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _notify(device_id: str) -> None:
    """Bump the document version and wake every long-poll on it."""
    versions[device_id] = next(_version_counter)
    for event in _watchers.get(device_id, set()):
        event.set()


def _audit(device_id: str, before: Optional[bool], after: bool, actor: str, doc: dict) -> None:
    audit_log.append(AuditRecord(
        device_id=device_id,
        from_locked=before,
        to_locked=after,
        actor=actor,
        timestamp=datetime.now(timezone.utc),
        offline_unlock_count=doc.get("offlineUnlockCount"),
    ))
    logger.info(f"TRANSITION | device={device_id} locked {before} -> {after} actor={actor}")


def _merge(device_id: str, doc: dict[str, Any], changes: dict[str, Any], actor: str) -> dict[str, Any]:
    """
    Apply field changes to a document, enforcing the record invariants:
    pinHash is write-once, offlineUnlockCount and lastOfflineUnlock merge by MAX,
    paymentLinkUpdatedAt is stamped by the server.
    """
    new_hash = changes.get("pinHash")
    if new_hash is not None and doc.get("pinHash") not in (None, new_hash):
        logger.warning(f"PATCH | REJECTED device={device_id} pinHash already set")
        raise HTTPException(status_code=409, detail="pinHash is already set for this device")

    merged = dict(doc)
    for key, value in changes.items():
        if key in ("offlineUnlockCount", "lastOfflineUnlock") and value is not None:
            merged[key] = max(int(doc.get(key) or 0), int(value))
        elif value is None:
            merged.pop(key, None)
        else:
            merged[key] = value

    if "paymentLink" in changes and changes["paymentLink"] != doc.get("paymentLink"):
        merged["paymentLinkUpdatedAt"] = _server_timestamp()

    merged["deviceId"] = device_id
    if "locked" in changes and changes["locked"] is not None and bool(changes["locked"]) != bool(doc.get("locked")):
        _audit(device_id, doc.get("locked"), bool(changes["locked"]), actor, merged)
    return merged


def _publish(topic: str, message: dict) -> None:
    topic_messages.setdefault(topic, []).append({**message, "publishedAt": now_ms()})
    logger.info(f"PUSH | topic={topic} message={message}")


# ── Device registry ────────────────────────────────────────────────────

@app.get("/devices/{device_id}")
async def get_device(device_id: str):
    doc = devices.get(device_id)
    if doc is None:
        logger.info(f"GET | device={device_id} NOT_FOUND")
        raise HTTPException(status_code=404, detail=f"Device {device_id} not found")
    return doc


@app.patch("/devices/{device_id}")
async def patch_device(device_id: str, payload: DevicePatch, x_actor: str = Header(default="device")):
    """Unconditional patch. 404 when the document does not exist."""
    doc = devices.get(device_id)
    if doc is None:
        logger.info(f"PATCH | device={device_id} NOT_FOUND")
        raise HTTPException(status_code=404, detail=f"Device {device_id} not found")
    changes = payload.changes()
    devices[device_id] = _merge(device_id, doc, changes, x_actor)
    _notify(device_id)
    logger.info(f"PATCH | device={device_id} fields={sorted(changes)} actor={x_actor}")
    return devices[device_id]


@app.put("/devices/{device_id}")
async def set_device(
    device_id: str,
    payload: DevicePatch,
    merge: bool = True,
    x_actor: str = Header(default="device"),
):
    """Set the document, creating it when missing. merge=false replaces unprotected fields."""
    doc = devices.get(device_id)
    changes = payload.changes()
    if doc is None:
        base: dict[str, Any] = {}
    elif merge:
        base = doc
    else:
        # Replacement still keeps the write-once / monotone fields.
        base = {k: doc[k] for k in ("pinHash", "offlineUnlockCount", "lastOfflineUnlock") if k in doc}
        if doc.get("locked") is not None:
            base["locked"] = doc["locked"]
    devices[device_id] = _merge(device_id, base, changes, x_actor)
    _notify(device_id)
    logger.info(
        f"SET | device={device_id} created={doc is None} merge={merge} "
        f"fields={sorted(changes)} actor={x_actor}"
    )
    return devices[device_id]


@app.get("/devices/{device_id}/watch", response_model=WatchResponse)
async def watch_device(device_id: str, since: int = -1, timeout: float = 25.0):
    """
    Long-poll for changes. Returns at once when the document version is newer
    than `since`; otherwise waits up to `timeout` seconds and returns the
    (possibly unchanged) current version.
    """
    timeout = max(0.0, min(timeout, MAX_WATCH_TIMEOUT))
    if versions.get(device_id, 0) <= since:
        event = asyncio.Event()
        _watchers.setdefault(device_id, set()).add(event)
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            waiting = _watchers.get(device_id)
            if waiting is not None:
                waiting.discard(event)
                if not waiting:
                    _watchers.pop(device_id, None)
    doc = devices.get(device_id)
    return WatchResponse(
        device_id=device_id,
        version=versions.get(device_id, 0),
        exists=doc is not None,
        document=dict(doc) if doc is not None else None,
    )


@app.get("/devices")
async def list_devices():
    """List all registered devices (operator dashboard)."""
    device_list = [{**doc, "deviceId": device_id} for device_id, doc in devices.items()]
    logger.info(f"DEVICES | total={len(device_list)}")
    return {"devices": device_list, "total": len(device_list)}


@app.delete("/devices/{device_id}")
async def delete_device(device_id: str):
    """
    Remove a device and all its associated data (document, audit, location history).
    Operator-only; the agent never deletes its record.
    """
    if device_id not in devices:
        logger.warning(f"DELETE | device={device_id} NOT_FOUND")
        raise HTTPException(status_code=404, detail=f"Device {device_id} not found")

    del devices[device_id]

    removed_audit = len([r for r in audit_log if r.device_id == device_id])
    audit_log[:] = [r for r in audit_log if r.device_id != device_id]
    removed_days = len(location_history.pop(device_id, {}))
    _notify(device_id)

    logger.info(f"DELETE | device={device_id} removed audit_records={removed_audit} location_days={removed_days}")
    return {
        "status": "ok",
        "device_id": device_id,
        "removed_audit_records": removed_audit,
        "removed_location_days": removed_days,
    }


# ── Location history ───────────────────────────────────────────────────

@app.put("/device_locations/{device_id}/location_history/{date}")
async def put_location_day(device_id: str, date: str, request: Request):
    """Unconditional set of one day's document (last writer wins)."""
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=422, detail="location day document must be an object")
    if body.get("date") not in (None, date):
        raise HTTPException(status_code=422, detail="document date does not match path")
    location_history.setdefault(device_id, {})[date] = body
    logger.info(f"LOCATIONS | device={device_id} date={date} entries={body.get('totalEntries')}")
    return {"status": "ok", "device_id": device_id, "date": date}


@app.get("/device_locations/{device_id}/location_history")
async def list_location_days(device_id: str):
    days = location_history.get(device_id, {})
    return {"device_id": device_id, "dates": sorted(days), "total": len(days)}


@app.get("/device_locations/{device_id}/location_history/{date}")
async def get_location_day(device_id: str, date: str):
    day = location_history.get(device_id, {}).get(date)
    if day is None:
        raise HTTPException(status_code=404, detail=f"No location history for {device_id} on {date}")
    return day


# ── Operator console ───────────────────────────────────────────────────

@app.post("/admin/devices/{device_id}/command")
async def operator_command(device_id: str, payload: OperatorCommand):
    """
    Lock or unlock a single device. The document write is the command; the
    push message on `all_devices` is a redundant wake path.
    """
    doc = devices.get(device_id)
    if doc is None:
        raise HTTPException(status_code=404, detail=f"Device {device_id} not found")

    target = payload.command == CommandType.LOCK
    if target and not doc.get("locked"):
        if not circuit_breaker.allow_lock([device_id]):
            logger.critical(f"COMMAND | CIRCUIT_BREAKER_BLOCKED device={device_id} actor={payload.actor}")
            raise HTTPException(
                status_code=503,
                detail="Circuit breaker OPEN — lock operations halted. Contact on-call.",
            )
        circuit_breaker.record_lock([device_id])

    devices[device_id] = _merge(device_id, doc, {"locked": target}, payload.actor)
    _notify(device_id)
    _publish(ALL_DEVICES_TOPIC, {"command": payload.command.value, "deviceId": device_id})
    logger.info(f"COMMAND | device={device_id} command={payload.command.value} actor={payload.actor}")
    return {"status": "ok", "device_id": device_id, "locked": target}


def _apply_to_all(changes: dict[str, Any], actor: str) -> list[str]:
    # Build every new document before committing any, so the batch is all-or-nothing.
    staged = {device_id: _merge(device_id, doc, changes, actor) for device_id, doc in devices.items()}
    for device_id, doc in staged.items():
        devices[device_id] = doc
        _notify(device_id)
    return list(staged)


@app.post("/admin/batch-patch")
async def batch_patch_all(payload: BatchPatchRequest):
    """Apply the same fields to every device document."""
    changes = payload.fields.changes()
    if not changes:
        raise HTTPException(status_code=422, detail="no fields to apply")
    if "pinHash" in changes or "deviceId" in changes:
        raise HTTPException(status_code=422, detail="pinHash and deviceId cannot be batch-patched")

    if changes.get("locked") is True:
        to_lock = [device_id for device_id, d in devices.items() if not d.get("locked")]
        if to_lock and not circuit_breaker.allow_lock(to_lock):
            logger.critical(f"BATCH | CIRCUIT_BREAKER_BLOCKED devices={len(to_lock)} actor={payload.actor}")
            raise HTTPException(
                status_code=503,
                detail="Circuit breaker OPEN — lock operations halted. Contact on-call.",
            )
        if to_lock:
            circuit_breaker.record_lock(to_lock)

    updated = _apply_to_all(changes, payload.actor)
    logger.info(f"BATCH | fields={sorted(changes)} updated={len(updated)} actor={payload.actor}")
    return {"status": "ok", "updated_count": len(updated), "device_ids": updated}


@app.post("/admin/payment-link")
async def update_payment_link(payload: PaymentLinkUpdate):
    """Set the payment link for one device, or for every device when no id is given."""
    changes = {"paymentLink": payload.payment_link}
    if payload.device_id:
        doc = devices.get(payload.device_id)
        if doc is None:
            raise HTTPException(status_code=404, detail=f"Device {payload.device_id} not found")
        devices[payload.device_id] = _merge(payload.device_id, doc, changes, payload.actor)
        _notify(payload.device_id)
        updated = [payload.device_id]
    else:
        updated = _apply_to_all(changes, payload.actor)
    logger.info(f"PAYMENT_LINK | updated={len(updated)} link={payload.payment_link} actor={payload.actor}")
    return {"status": "ok", "updated_count": len(updated), "device_ids": updated}


@app.post("/admin/emergency-unlock")
async def emergency_unlock(reason: str = "emergency"):
    """
    Emergency mass unlock.
    Sets locked=false on ALL locked devices and resets the circuit breaker.
    """
    unlocked = []
    for device_id, doc in list(devices.items()):
        if doc.get("locked"):
            devices[device_id] = _merge(device_id, doc, {"locked": False}, f"emergency:{reason}")
            _notify(device_id)
            unlocked.append(device_id)
            logger.info(f"EMERGENCY_UNLOCK | device={device_id} reason={reason}")

    circuit_breaker.reset()

    logger.warning(f"EMERGENCY_UNLOCK | total={len(unlocked)} reason={reason}")

    return {
        "status": "ok",
        "unlocked_count": len(unlocked),
        "unlocked_devices": unlocked,
        "reason": reason,
    }


@app.get("/audit/{device_id}")
async def get_audit(device_id: str):
    """Return the lock-state audit trail for a device."""
    records = [r.model_dump() for r in audit_log if r.device_id == device_id]
    logger.info(f"AUDIT | device={device_id} records={len(records)}")
    return {"device_id": device_id, "records": records}


@app.get("/topics/{topic}/messages")
async def get_topic_messages(topic: str, after: int = 0):
    messages = topic_messages.get(topic, [])
    return {"topic": topic, "messages": messages[max(0, after):], "next": len(messages)}

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

import checkins
import config
import confirmation
import contacts
import db
import lifecycle
import reconciler
import triggers
import twilio_client
import verify
from config import CONFIRM_TIMEOUT_SECONDS
from db import init_db
from errors import CheckInError
from models import CheckIn, CheckInCreate, CheckInEdit, CodeIn, ContactIn, DeviceIn
from scheduler_jobs import install_scheduler, rebuild_triggers, shutdown_scheduler

# ---------------- Logging ----------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("checkonme")
logger.setLevel(logging.INFO)


# ---------------- Lifespan ----------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    install_scheduler(app)
    try:
        yield
    finally:
        shutdown_scheduler(app)


app = FastAPI(title="CheckOnMe Backend", lifespan=lifespan)
app.include_router(twilio_client.router)


@app.middleware("http")
async def timing_and_errors(request, call_next):
    start = time.time()
    try:
        resp = await call_next(request)
        return resp
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        raise
    finally:
        dur_ms = int((time.time() - start) * 1000)
        logger.info("%s %s -> %dms", request.method, request.url.path, dur_ms)


# ---------------- Errors ----------------
STATUS_BY_CODE = {
    "validation_error": 400,
    "invalid_format": 400,
    "code_mismatch": 403,
    "attempts_exhausted": 403,
    "permission_denied": 403,
    "not_found": 404,
    "already_resolved": 409,
    "invalid_transition": 409,
    "deadline_passed": 410,
    "store_unavailable": 503,
}


@app.exception_handler(CheckInError)
async def checkin_error_handler(request: Request, exc: CheckInError):
    status = STATUS_BY_CODE.get(exc.code, 500)
    if status >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict())


# ---------------- Identity ----------------
def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Owner id as asserted by the upstream identity provider."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(401, "X-User-Id header required")
    return user_id


def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """Operator routes need X-Admin-Token matching ADMIN_TOKEN."""
    expected = config.ADMIN_TOKEN
    if not expected or not secrets.compare_digest(x_admin_token or "", expected):
        raise HTTPException(403, "operator token required")


def checkin_view(checkin: CheckIn) -> Dict[str, Any]:
    out = checkin.model_dump(mode="json")
    out["escalation_level"] = lifecycle.escalation_level(checkin)
    ts = triggers.current()
    out["armed"] = ts.is_armed(checkin.user_id, checkin.id) if ts else False
    return out


# ---------------- API Routes ----------------
@app.get("/health")
def health():
    return {"ok": True}


@app.post("/api/contacts")
async def api_contacts_create(body: ContactIn, user_id: str = Depends(current_user)):
    contact = await run_in_threadpool(contacts.put_contact, user_id, body)
    return {"ok": True, "contact": contact.model_dump(mode="json")}


@app.get("/api/contacts")
async def api_contacts_list(user_id: str = Depends(current_user)):
    items = await run_in_threadpool(contacts.list_contacts, user_id)
    return {"ok": True, "contacts": [c.model_dump(mode="json") for c in items]}


@app.post("/api/devices")
async def api_devices_register(body: DeviceIn, user_id: str = Depends(current_user)):
    token = body.device_token.strip()
    if not token:
        raise HTTPException(400, "device_token required")
    await run_in_threadpool(db.register_device, user_id, token)
    return {"ok": True}


@app.post("/api/checkins", status_code=201)
async def api_checkins_create(body: CheckInCreate, user_id: str = Depends(current_user)):
    checkin = await run_in_threadpool(checkins.create_checkin, user_id, body)
    return {"ok": True, "checkin": checkin_view(checkin)}


@app.get("/api/checkins")
async def api_checkins_list(user_id: str = Depends(current_user)):
    items = await run_in_threadpool(checkins.list_checkins, user_id)
    return {"ok": True, "checkins": [checkin_view(c) for c in items]}


@app.get("/api/checkins/{checkin_id}")
async def api_checkins_get(checkin_id: str, user_id: str = Depends(current_user)):
    checkin = await run_in_threadpool(checkins.get_checkin, user_id, checkin_id)
    deliveries = await run_in_threadpool(db.list_deliveries, db.checkin_key(user_id, checkin_id))
    return {"ok": True, "checkin": checkin_view(checkin), "deliveries": deliveries}


@app.patch("/api/checkins/{checkin_id}")
async def api_checkins_edit(checkin_id: str, body: CheckInEdit, user_id: str = Depends(current_user)):
    checkin = await run_in_threadpool(checkins.edit_checkin, user_id, checkin_id, body)
    return {"ok": True, "checkin": checkin_view(checkin)}


@app.post("/api/checkins/{checkin_id}/cancel")
async def api_checkins_cancel(checkin_id: str, user_id: str = Depends(current_user)):
    checkin = await run_in_threadpool(checkins.cancel_checkin, user_id, checkin_id)
    confirmation.registry.close(user_id, checkin_id)
    return {"ok": True, "checkin": checkin_view(checkin)}


@app.delete("/api/checkins/{checkin_id}")
async def api_checkins_delete(checkin_id: str, user_id: str = Depends(current_user)):
    await run_in_threadpool(checkins.delete_checkin, user_id, checkin_id)
    confirmation.registry.close(user_id, checkin_id)
    return {"ok": True, "deleted": checkin_id}


@app.post("/api/checkins/{checkin_id}/challenge")
async def api_challenge_open(checkin_id: str, user_id: str = Depends(current_user)):
    session = await run_in_threadpool(confirmation.registry.open, user_id, checkin_id)
    checkin = await run_in_threadpool(checkins.get_checkin, user_id, checkin_id)
    return {
        "ok": True,
        "attempts_remaining": session.attempts_remaining,
        "budget": session.budget,
        "status": checkin.status,
        "response_deadline": checkin.response_deadline.isoformat(),
    }


async def _submit_with_timeout(user_id: str, checkin_id: str, code: str):
    """
    Submissions are bounded by CONFIRM_TIMEOUT_SECONDS. A timed-out request may
    still commit; the client re-fetches the check-in before retrying.
    """
    try:
        checkin = await asyncio.wait_for(
            run_in_threadpool(confirmation.registry.submit, user_id, checkin_id, code),
            timeout=CONFIRM_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.warning("code submission for %s timed out", checkin_id)
        return JSONResponse(
            status_code=504,
            content={
                "ok": False,
                "error": "timeout",
                "message": "Confirmation is taking too long. Refresh and try again.",
                "retryable": True,
            },
        )
    return {"ok": True, "checkin": checkin_view(checkin)}


@app.post("/api/checkins/{checkin_id}/challenge/submit")
async def api_challenge_submit(checkin_id: str, body: CodeIn, user_id: str = Depends(current_user)):
    return await _submit_with_timeout(user_id, checkin_id, body.code)


@app.post("/api/escalations/sweep", dependencies=[Depends(require_admin)])
async def api_escalations_sweep():
    report = await run_in_threadpool(reconciler.sweep)
    return {"ok": True, **report.as_dict()}


@app.get("/api/triggers")
async def api_triggers_list(user_id: str = Depends(current_user)):
    ts = triggers.current()
    pending = [dict(p) for p in ts.pending() if p.get("user_id") == user_id] if ts else []
    for p in pending:
        fire_at = p.get("fire_at")
        if fire_at is not None and hasattr(fire_at, "isoformat"):
            p["fire_at"] = fire_at.isoformat()
    return {"ok": True, "count": len(pending), "triggers": pending}


@app.post("/api/triggers/reconcile", dependencies=[Depends(require_admin)])
async def api_triggers_reconcile():
    armed = await run_in_threadpool(rebuild_triggers)
    return {"ok": True, "armed": armed}


# ---------------- Web verification ----------------
@app.get("/verify/{token}")
async def verify_info(token: str):
    user_id, checkin_id = verify.read_verification_token(token)
    checkin = await run_in_threadpool(checkins.get_checkin, user_id, checkin_id)
    return {
        "ok": True,
        "title": checkin.title,
        "status": checkin.status,
        "response_deadline": checkin.response_deadline.isoformat(),
    }


@app.post("/verify/{token}")
async def verify_submit(token: str, body: CodeIn):
    user_id, checkin_id = verify.read_verification_token(token)
    return await _submit_with_timeout(user_id, checkin_id, body.code)

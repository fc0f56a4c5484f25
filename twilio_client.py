"""
CheckOnMe Twilio SMS + Voice integration

- send_sms() / place_alert_call() deliver escalation alerts via the Twilio REST API
- FastAPI router with endpoints for Twilio voice webhooks:
    • /twilio/voice/alert  – TwiML reading the alert + <Gather> DTMF input
    • /twilio/voice/gather – contact pressed 1: mark that call delivery as confirmed
- SIMULATE_SMS / SIMULATE_CALL skip the network and return a fake sid
- webhooks must carry a valid X-Twilio-Signature once TWILIO_AUTH is set
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional
from urllib.parse import quote
from xml.sax.saxutils import escape

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool
from twilio.request_validator import RequestValidator
from twilio.rest import Client as TwilioClient

import config
import db

log = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])

_twilio: Optional[TwilioClient] = None


def _client() -> TwilioClient:
    global _twilio
    if _twilio is None:
        if not (config.TWILIO_SID and config.TWILIO_AUTH and config.TWILIO_FROM):
            raise RuntimeError("TWILIO_SID / TWILIO_AUTH / TWILIO_FROM are not set in .env")
        _twilio = TwilioClient(config.TWILIO_SID, config.TWILIO_AUTH)
    return _twilio


def send_sms(to_number: str, body: str) -> str:
    if config.SIMULATE_SMS:
        log.info("[sim] SMS to %s: %s", to_number, body[:80])
        return f"sim-sms-{uuid.uuid4().hex[:10]}"
    msg = _client().messages.create(to=to_number, from_=config.TWILIO_FROM, body=body)
    return msg.sid


def place_alert_call(to_number: str, checkin_key: str, target: str, say_text: str) -> str:
    if config.SIMULATE_CALL:
        log.info("[sim] call to %s for %s", to_number, checkin_key)
        return f"sim-call-{uuid.uuid4().hex[:10]}"
    # Twilio will fetch TwiML from our endpoint
    url = (
        f"{config.PUBLIC_BASE_URL}/twilio/voice/alert"
        f"?ck={quote(checkin_key)}&target={quote(target)}&say={quote(say_text)}"
    )
    call = _client().calls.create(to=to_number, from_=config.TWILIO_FROM, url=url)
    return call.sid


def _signed_url(request: Request) -> str:
    # Twilio signs the public URL it called, not the one behind the proxy
    url = f"{config.PUBLIC_BASE_URL}{request.url.path}"
    if request.url.query:
        url += f"?{request.url.query}"
    return url


def _verify_twilio(request: Request, form) -> None:
    if not config.TWILIO_AUTH:
        if config.SIMULATE_CALL:
            return
        log.warning("rejecting Twilio webhook %s: TWILIO_AUTH is not set", request.url.path)
        raise HTTPException(403, "webhook signing is not configured")
    signature = request.headers.get("X-Twilio-Signature", "")
    validator = RequestValidator(config.TWILIO_AUTH)
    if not validator.validate(_signed_url(request), dict(form), signature):
        log.warning("rejecting Twilio webhook %s: bad signature", request.url.path)
        raise HTTPException(403, "invalid Twilio signature")


@router.post("/voice/alert")
async def voice_alert(request: Request):
    _verify_twilio(request, await request.form())
    ck = request.query_params.get("ck", "")
    target = request.query_params.get("target", "")
    say = escape(request.query_params.get("say", "This is a CheckOnMe safety alert."))
    action = escape(f"/twilio/voice/gather?ck={quote(ck)}&target={quote(target)}")
    twiml = f"""
<Response>
  <Say voice="Polly.Joanna">{say}</Say>
  <Pause length="1"/>
  <Say>Press 1 to confirm you received this alert.</Say>
  <Gather input="dtmf" timeout="10" numDigits="1" action="{action}" method="POST"/>
  <Say>No input received. Goodbye.</Say>
</Response>
""".strip()
    return PlainTextResponse(content=twiml, media_type="application/xml")


@router.post("/voice/gather")
async def voice_gather(request: Request):
    form = await request.form()
    _verify_twilio(request, form)
    digits = form.get("Digits", "")
    ck = request.query_params.get("ck", "")
    target = request.query_params.get("target", "")
    if digits == "1" and ck and target:
        await run_in_threadpool(db.confirm_delivery, ck, target, "call")
        msg = "Thank you. Your confirmation has been recorded."
    else:
        msg = "No valid input received."
    twiml = f"<Response><Say>{msg}</Say></Response>"
    return PlainTextResponse(content=twiml, media_type="application/xml")

"""
CheckOnMe web verification links

A reminder can carry a link that opens a code-entry page without an app session.
The link embeds a short-lived HS256 token naming the owner and the check-in;
the code itself is never in the token.
"""

from __future__ import annotations

import datetime as dt
from typing import Optional, Tuple

import jwt

import config
from errors import NotFound
from models import CheckIn
from utils import now_utc

VERIFY_AUD = "checkin-verify"
VERIFY_ISS = "checkonme"


def make_verification_token(checkin: CheckIn, now: Optional[dt.datetime] = None) -> str:
    now = now or now_utc()
    # valid until the later of the escalation cutoff and the configured TTL
    exp = max(
        checkin.response_deadline + dt.timedelta(minutes=checkin.grace_minutes),
        now + dt.timedelta(minutes=config.VERIFY_TOKEN_TTL_MINUTES),
    )
    payload = {
        "aud": VERIFY_AUD,
        "iss": VERIFY_ISS,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
        "sub": checkin.user_id,
        "cid": checkin.id,
    }
    return jwt.encode(payload, config.VERIFY_SECRET, algorithm="HS256")


def read_verification_token(token: str) -> Tuple[str, str]:
    """Return (user_id, checkin_id). Any bad/expired token reads as 'not found'."""
    try:
        payload = jwt.decode(
            token,
            config.VERIFY_SECRET,
            algorithms=["HS256"],
            audience=VERIFY_AUD,
            issuer=VERIFY_ISS,
            options={"require": ["exp", "sub", "cid"]},
        )
    except jwt.PyJWTError:
        raise NotFound("Verification link is invalid or has expired") from None
    return str(payload["sub"]), str(payload["cid"])


def verification_link(checkin: CheckIn, now: Optional[dt.datetime] = None) -> str:
    return f"{config.PUBLIC_BASE_URL}/verify/{make_verification_token(checkin, now)}"

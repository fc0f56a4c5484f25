"""
CheckOnMe APNs push sender (owner check-in reminders)

- Creates and caches the ES256 provider JWT used for APNs auth
- Sends the "time to check in" alert over HTTP/2 with category CHECKIN_CHALLENGE,
  carrying the check-in id so the app can open the challenge screen directly
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict

import httpx
import jwt

import config

log = logging.getLogger(__name__)

_cached_token: Dict[str, Any] = {"jwt": None, "exp": 0}


def _get_jwt() -> str:
    now = int(time.time())
    if _cached_token["jwt"] and now < _cached_token["exp"] - 60:
        return _cached_token["jwt"]
    key = Path(config.APNS_KEY_PEM).read_text()
    token = jwt.encode(
        {"iss": config.APNS_TEAM_ID, "iat": now},
        key,
        algorithm="ES256",
        headers={"alg": "ES256", "kid": config.APNS_KEY_ID},
    )
    _cached_token["jwt"] = token
    _cached_token["exp"] = now + 50 * 60  # APNs rejects provider tokens older than an hour
    return token


def send_push(device_token: str, title: str, body: str, payload: Dict[str, Any],
              category: str = "CHECKIN_CHALLENGE") -> bool:
    if config.SIMULATE_PUSH:
        log.info("[sim] push to %s…: %s", device_token[:8], title)
        return True
    url = f"{config.APNS_HOST}/3/device/{device_token}"
    headers = {
        "authorization": f"bearer {_get_jwt()}",
        "apns-topic": config.APNS_BUNDLE_ID,
        "apns-push-type": "alert",
        "apns-priority": "10",
        "content-type": "application/json",
    }
    data: Dict[str, Any] = {
        "aps": {
            "alert": {"title": title, "body": body},
            "sound": "default",
            "category": category,
            "interruption-level": "time-sensitive",
        }
    }
    data.update(payload)
    with httpx.Client(http2=True, timeout=10) as client:
        r = client.post(url, headers=headers, json=data)
        r.raise_for_status()
    return True

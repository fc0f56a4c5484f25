"""
CheckOnMe email sender (SMTP)

send_email(to, subject, body) -> message id
SIMULATE_EMAIL logs instead of connecting.
"""

from __future__ import annotations

import logging
import smtplib
import uuid
from email.message import EmailMessage
from email.utils import make_msgid

import config

log = logging.getLogger(__name__)


def send_email(to_addr: str, subject: str, body: str) -> str:
    if config.SIMULATE_EMAIL:
        log.info("[sim] email to %s: %s", to_addr, subject)
        return f"sim-email-{uuid.uuid4().hex[:10]}"
    if not config.SMTP_HOST:
        raise RuntimeError("SMTP_HOST is not set in .env")

    msg = EmailMessage()
    msg["From"] = config.SMTP_FROM
    msg["To"] = to_addr
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid(domain=config.SMTP_FROM.split("@")[-1])
    msg.set_content(body)

    with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=15) as smtp:
        smtp.starttls()
        if config.SMTP_USER:
            smtp.login(config.SMTP_USER, config.SMTP_PASSWORD or "")
        smtp.send_message(msg)
    return msg["Message-ID"]

"""
CheckOnMe config loader

Reads settings from .env (python-dotenv) and exposes them as module constants.
Safe defaults let the service boot even if channel creds are missing (simulation mode).
"""

from dotenv import load_dotenv
load_dotenv()

import os

# --- Storage ---
DB_PATH        = os.getenv("DB_PATH", os.path.join(os.path.dirname(__file__), "data", "checkonme.db"))

# --- Twilio (optional while simulating) ---
TWILIO_SID     = os.getenv("TWILIO_SID")         # None is OK in simulation
TWILIO_AUTH    = os.getenv("TWILIO_AUTH")
TWILIO_FROM    = os.getenv("TWILIO_FROM")
PUBLIC_BASE_URL= os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

# --- APNs (owner reminders) ---
APNS_TEAM_ID   = os.getenv("APNS_TEAM_ID")
APNS_KEY_ID    = os.getenv("APNS_KEY_ID")
APNS_KEY_PEM   = os.getenv("APNS_KEY_PEM")       # path to the .p8 key
APNS_BUNDLE_ID = os.getenv("APNS_BUNDLE_ID")
APNS_ENV       = os.getenv("APNS_ENV", "sandbox")  # "sandbox" or "production"
APNS_HOST      = "https://api.sandbox.push.apple.com" if APNS_ENV == "sandbox" else "https://api.push.apple.com"

# --- SMTP (email channel) ---
SMTP_HOST      = os.getenv("SMTP_HOST")
SMTP_PORT      = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER      = os.getenv("SMTP_USER")
SMTP_PASSWORD  = os.getenv("SMTP_PASSWORD")
SMTP_FROM      = os.getenv("SMTP_FROM", "alerts@checkonme.app")

# --- Web verification links ---
VERIFY_SECRET            = os.getenv("VERIFY_SECRET", "change-this-in-production")
VERIFY_TOKEN_TTL_MINUTES = int(os.getenv("VERIFY_TOKEN_TTL_MINUTES", "240"))

# --- Operator routes (sweep / trigger reconcile); unset disables them ---
ADMIN_TOKEN              = os.getenv("ADMIN_TOKEN")

# --- Check-in settings ---
TIMEZONE                = os.getenv("TIMEZONE", "America/Chicago")
ATTEMPT_BUDGET          = int(os.getenv("ATTEMPT_BUDGET", "5"))
DEFAULT_GRACE_MINUTES   = int(os.getenv("DEFAULT_GRACE_MINUTES", "10"))
MIN_GRACE_MINUTES       = int(os.getenv("MIN_GRACE_MINUTES", "2"))
SWEEP_INTERVAL_SECONDS  = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
CONFIRM_TIMEOUT_SECONDS = float(os.getenv("CONFIRM_TIMEOUT_SECONDS", "12"))
DELIVERY_MAX_ATTEMPTS   = int(os.getenv("DELIVERY_MAX_ATTEMPTS", "3"))

# --- Feature toggles ---
ESCALATION_ENABLED   = os.getenv("ESCALATION_ENABLED", "1") == "1"
LOCAL_ALERTS_ENABLED = os.getenv("LOCAL_ALERTS_ENABLED", "1") == "1"

# --- Simulation toggles ---
SIMULATE_SMS   = os.getenv("SIMULATE_SMS", "1") == "1"
SIMULATE_CALL  = os.getenv("SIMULATE_CALL", "1") == "1"
SIMULATE_EMAIL = os.getenv("SIMULATE_EMAIL", "1") == "1"
SIMULATE_PUSH  = os.getenv("SIMULATE_PUSH", "1") == "1"

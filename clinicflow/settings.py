"""
Centralized configuration for ClinicFlow.
Every tunable of the scheduling / billing engine is an env-based constant.
"""

import os
from dotenv import load_dotenv

load_dotenv()

def _optional_int(name):
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None

# --- Rates (currency units) ---
STANDARD_SESSION_RATE = float(os.getenv("STANDARD_SESSION_RATE", "1200"))
SUBSIDIZED_FLAT_FEE = float(os.getenv("SUBSIDIZED_FLAT_FEE", "500"))
DEFAULT_CONCESSION_PERCENT = float(os.getenv("DEFAULT_CONCESSION_PERCENT", "20"))

# --- Subsidized-care allowance ---
SUBSIDIZED_FREE_QUOTA = int(os.getenv("SUBSIDIZED_FREE_QUOTA", "4"))

# --- Scheduling ---
SLOT_INTERVAL_MINUTES = int(os.getenv("SLOT_INTERVAL_MINUTES", "30"))
DEFAULT_DURATION_MINUTES = int(os.getenv("DEFAULT_DURATION_MINUTES", "30"))
DEFAULT_DAY_START = os.getenv("DEFAULT_DAY_START", "09:00")
DEFAULT_DAY_END = os.getenv("DEFAULT_DAY_END", "18:00")
# Python weekday numbering: Monday=0 ... Sunday=6
CLOSED_WEEKDAY = int(os.getenv("CLOSED_WEEKDAY", "6"))
# Unset means slots are shared without limit (group sessions)
MAX_OCCUPANTS_PER_SLOT = _optional_int("MAX_OCCUPANTS_PER_SLOT")

# --- Persistence ---
USE_GCS = os.getenv("USE_GCS", "false").lower() in ("1", "true", "yes")
GCS_BUCKET_NAME = os.getenv("GCS_BUCKET_NAME", "clinicflow_dev")
STATE_BLOB_PATH = os.getenv("STATE_BLOB_PATH", "clinic_state/state.json")

# --- Notifications ---
EVENT_LOG_LIMIT = int(os.getenv("EVENT_LOG_LIMIT", "200"))

# --- Server ---
PORT = int(os.getenv("PORT", "8080"))

"""
Configuration settings for the Identity Reconciliation API
Environment variables are loaded from .env when present
"""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

DB_NAME = os.getenv("DB_NAME", "contacts.db")

# Seconds sqlite waits on a locked database before reporting a conflict
DB_TIMEOUT = float(os.getenv("DB_TIMEOUT", "5.0"))

# ============================================================================
# IDENTIFY CONFIGURATION
# ============================================================================

# Attempts for one identify call when the store reports a conflict
IDENTIFY_MAX_ATTEMPTS = int(os.getenv("IDENTIFY_MAX_ATTEMPTS", "3"))

# ============================================================================
# VALIDATION
# ============================================================================

def validate_config():
    """Validate environment-derived settings."""
    if DB_TIMEOUT <= 0:
        raise RuntimeError(f"DB_TIMEOUT must be positive, got {DB_TIMEOUT}")
    if IDENTIFY_MAX_ATTEMPTS < 1:
        raise RuntimeError(f"IDENTIFY_MAX_ATTEMPTS must be at least 1, got {IDENTIFY_MAX_ATTEMPTS}")
    if not isinstance(logging.getLevelName(LOG_LEVEL), int):
        raise RuntimeError(f"Unknown LOG_LEVEL: {LOG_LEVEL}")


validate_config()

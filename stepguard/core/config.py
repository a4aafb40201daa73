"""
Runtime configuration - environment driven, read once at import.
"""

import os
from pathlib import Path

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/stepguard.db")

# Debug flag is also exposed as a function so tests can flip it at runtime
DEBUG = os.getenv("DEBUG", "true").lower() == "true"

# Secondary credential (weekly step-up PIN)
CREDENTIAL_LENGTH = int(os.getenv("CREDENTIAL_LENGTH", "6"))
USAGE_STATS_DEFAULT_DAYS = int(os.getenv("USAGE_STATS_DEFAULT_DAYS", "30"))

# Failed validations allowed per user or IP inside the window before refusal
CREDENTIAL_MAX_FAILED_ATTEMPTS = int(os.getenv("CREDENTIAL_MAX_FAILED_ATTEMPTS", "5"))
CREDENTIAL_ATTEMPT_WINDOW_MINUTES = int(os.getenv("CREDENTIAL_ATTEMPT_WINDOW_MINUTES", "15"))

# Document store
STORE_TIMEOUT_SEC = float(os.getenv("STORE_TIMEOUT_SEC", "10"))

# Audit trail
AUDIT_ENABLED = os.getenv("AUDIT_ENABLED", "true").lower() == "true"
AUDIT_PAGE_LIMIT_MAX = int(os.getenv("AUDIT_PAGE_LIMIT_MAX", "200"))

# Version string
VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "true").lower() == "true"


def audit_enabled():
    """Check if audit trail writes are enabled."""
    return os.getenv("AUDIT_ENABLED", "true").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if not 4 <= CREDENTIAL_LENGTH <= 12:
        issues.append(f"CREDENTIAL_LENGTH must be between 4 and 12, got {CREDENTIAL_LENGTH}")

    if USAGE_STATS_DEFAULT_DAYS < 1:
        issues.append("USAGE_STATS_DEFAULT_DAYS must be >= 1")

    if CREDENTIAL_MAX_FAILED_ATTEMPTS < 1:
        issues.append("CREDENTIAL_MAX_FAILED_ATTEMPTS must be >= 1")

    if CREDENTIAL_ATTEMPT_WINDOW_MINUTES < 1:
        issues.append("CREDENTIAL_ATTEMPT_WINDOW_MINUTES must be >= 1")

    if STORE_TIMEOUT_SEC <= 0:
        issues.append("STORE_TIMEOUT_SEC must be > 0")

    if AUDIT_PAGE_LIMIT_MAX < 1:
        issues.append("AUDIT_PAGE_LIMIT_MAX must be >= 1")

    return issues

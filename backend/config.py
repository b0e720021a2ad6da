"""Runtime configuration for the Mautic sync backend.

All values are read from the environment (optionally populated from backend/.env).
"""
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _env_bool(name: str, default: bool = False) -> bool:
    value = (os.environ.get(name) or '').strip().lower()
    if not value:
        return default
    return value in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    value = (os.environ.get(name) or '').strip()
    return int(value) if value else default


ENVIRONMENT = (os.environ.get('ENVIRONMENT') or 'development').strip().lower()
IS_PRODUCTION = ENVIRONMENT == 'production'
IS_TEST = ENVIRONMENT == 'test'

DATABASE_URL = (os.environ.get('DATABASE_URL') or 'sqlite+aiosqlite:///./mautic_dashboard.db').strip()

# Passphrase for the credential codec (scrypt-derived AES key)
ENCRYPTION_KEY = (os.environ.get('ENCRYPTION_KEY') or '').strip()

# Scheduler
DISABLE_SCHEDULER = _env_bool('DISABLE_SCHEDULER') or IS_TEST
SYNC_DAILY_HOUR = _env_int('SYNC_DAILY_HOUR', 2)
SYNC_DAILY_MINUTE = _env_int('SYNC_DAILY_MINUTE', 0)
SYNC_HOURLY_ENABLED = _env_bool('SYNC_HOURLY_ENABLED')

# Number of tenants synced at once by a batch run (1 = strictly sequential)
SYNC_TENANT_CONCURRENCY = max(1, _env_int('SYNC_TENANT_CONCURRENCY', 1))

MAUTIC_TIMEOUT = float(os.environ.get('MAUTIC_TIMEOUT') or 30.0)

CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')

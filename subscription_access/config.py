"""
Entitlement configuration.

Values come from environment variables with production defaults. Tests pass
explicit values to constructors instead of patching the environment.
"""

import os
from datetime import timedelta

# Trial policy
TRIAL_LENGTH_DAYS = int(os.getenv("TRIAL_LENGTH_DAYS", "7"))
TRIAL_LENGTH = timedelta(days=TRIAL_LENGTH_DAYS)

# Local retry of transient store failures (not business retries)
STORE_RETRY_MAX_ATTEMPTS = int(os.getenv("STORE_RETRY_MAX_ATTEMPTS", "5"))
STORE_RETRY_BASE_DELAY_SECONDS = float(os.getenv("STORE_RETRY_BASE_DELAY_SECONDS", "0.05"))
STORE_RETRY_MAX_DELAY_SECONDS = float(os.getenv("STORE_RETRY_MAX_DELAY_SECONDS", "2.0"))
STORE_RETRY_JITTER_FACTOR = float(os.getenv("STORE_RETRY_JITTER_FACTOR", "0.25"))

# Store backend: memory | redis | sql
ENTITLEMENT_STORE_BACKEND = os.getenv("ENTITLEMENT_STORE_BACKEND", "memory").lower()
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///entitlements.db")

# Webhook HMAC verification is skipped when unset
WEBHOOK_SIGNING_SECRET = os.getenv("WEBHOOK_SIGNING_SECRET") or None

# Background sweep
TRIAL_SWEEP_INTERVAL_SECONDS = int(os.getenv("TRIAL_SWEEP_INTERVAL_SECONDS", "300"))

# Identity tokens (HS256 JWTs from the identity provider); sign-in is disabled when unset
IDENTITY_JWT_SECRET = os.getenv("IDENTITY_JWT_SECRET") or None
IDENTITY_JWT_ALGORITHM = os.getenv("IDENTITY_JWT_ALGORITHM", "HS256")
IDENTITY_JWT_AUDIENCE = os.getenv("IDENTITY_JWT_AUDIENCE") or None
IDENTITY_JWT_ISSUER = os.getenv("IDENTITY_JWT_ISSUER") or None

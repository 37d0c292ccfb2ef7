"""
Runtime configuration for the No-Due Certificate service.

Every value comes from the environment so the same build runs locally,
in CI and in production.
"""

import os
from typing import FrozenSet


def _parse_list(value: str) -> list:
    return [item.strip() for item in value.split(",") if item.strip()]


# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "nodue")

# Server
PORT = int(os.getenv("PORT", 8000))
CORS_ORIGINS = _parse_list(os.getenv("CORS_ORIGINS", "*"))

# Auth
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 12))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))
ADMIN_REGISTRATION_CODE = os.getenv("ADMIN_REGISTRATION_CODE")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "text").lower()

# Workflow policy: stages where a rejection may be recorded without a reason.
COMMENT_OPTIONAL_STAGES: FrozenSet[str] = frozenset(
    _parse_list(os.getenv("COMMENT_OPTIONAL_STAGES", ""))
)

# Optimistic concurrency: how many times the faculty aggregate re-evaluates
# after losing a compare-and-swap on the parent application.
AGGREGATE_MAX_ATTEMPTS = int(os.getenv("AGGREGATE_MAX_ATTEMPTS", 5))


def rejection_comment_required(stage: str) -> bool:
    return stage not in COMMENT_OPTIONAL_STAGES

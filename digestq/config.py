"""Centralized configuration for DigestQ.

Re-exports everything from digestq.infrastructure.settings so callers have a
single import point, then adds typed constants for the database, windowing,
pipeline ceilings, summary bounds and delivery retry. Environment variable
overrides use safe defaults so the service starts without extra configuration.
"""

from __future__ import annotations

import os

from digestq.infrastructure.settings import *  # noqa: F401, F403

# --- App ---
APP_VERSION: str = "0.1.0"

# --- Database ---
DB_POOL_SIZE: int = int(os.getenv("DIGESTQ_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(os.getenv("DIGESTQ_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(os.getenv("DIGESTQ_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(os.getenv("DIGESTQ_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(os.getenv("DIGESTQ_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("DIGESTQ_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("DIGESTQ_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("DIGESTQ_DB_RETRY_JITTER", "0.1"))

# --- Windowing ---
WINDOW_SIZE_SECONDS: int = int(os.getenv("DIGESTQ_WINDOW_SIZE_SECONDS", "300"))
CLAIM_MAX_RELEASES: int = int(os.getenv("DIGESTQ_CLAIM_MAX_RELEASES", "3"))
CLAIM_LEASE_SECONDS: int = int(os.getenv("DIGESTQ_CLAIM_LEASE_SECONDS", "900"))

# --- Pipeline ---
PIPELINE_MAX_ITEMS: int = int(os.getenv("DIGESTQ_PIPELINE_MAX_ITEMS", "8"))
PIPELINE_MAX_FACTS_PER_ITEM: int = int(os.getenv("DIGESTQ_PIPELINE_MAX_FACTS", "5"))
PIPELINE_MAX_TOTAL_CHARS: int = int(os.getenv("DIGESTQ_PIPELINE_MAX_CHARS", "2400"))
PIPELINE_FACT_MAX_CHARS: int = 200

# --- Summaries ---
SUMMARY_HEADLINE_MAX_CHARS: int = 120
SUMMARY_BULLET_MAX_CHARS: int = 240
SUMMARY_MIN_BULLETS: int = 2
SUMMARY_MAX_BULLETS: int = 6
SUMMARY_MAX_RESPONSE_CHARS: int = int(os.getenv("DIGESTQ_SUMMARY_MAX_RESPONSE_CHARS", "8000"))

# --- LLM ---
LLM_TIMEOUT_SECONDS: int = int(os.getenv("DIGESTQ_LLM_TIMEOUT", "30"))
LLM_MAX_RETRIES: int = int(os.getenv("DIGESTQ_LLM_MAX_RETRIES", "3"))

# --- Delivery ---
DELIVERY_MAX_ATTEMPTS: int = int(os.getenv("DIGESTQ_DELIVERY_MAX_ATTEMPTS", "3"))
DELIVERY_BASE_DELAY: float = float(os.getenv("DIGESTQ_DELIVERY_BASE_DELAY", "0.5"))
DELIVERY_MAX_DELAY: float = float(os.getenv("DIGESTQ_DELIVERY_MAX_DELAY", "8.0"))
DELIVERY_JITTER: float = float(os.getenv("DIGESTQ_DELIVERY_JITTER", "0.1"))
DELIVERY_TIMEOUT_SECONDS: float = float(os.getenv("DIGESTQ_DELIVERY_TIMEOUT", "10.0"))

# --- Retention ---
RETENTION_DAYS: int = int(os.getenv("DIGESTQ_RETENTION_DAYS", "14"))

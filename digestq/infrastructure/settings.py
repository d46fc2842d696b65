"""
Application-wide settings and environment configuration
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# .env values must be in the environment before any constant below is read
load_dotenv()

# Project paths
DIGESTQ_ROOT = Path(__file__).parent.parent

# Environment
ENV = os.getenv("DIGESTQ_ENV", "development")

# API Configuration
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
LOG_LEVEL = os.getenv("DIGESTQ_LOG_LEVEL", "INFO")

# Google Cloud / Gemini
GOOGLE_CLOUD_PROJECT = os.getenv("GOOGLE_CLOUD_PROJECT", "")
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash-001")
GEMINI_LOCATION = os.getenv("GEMINI_LOCATION", "us-central1")
GEMINI_MAX_TOKENS = int(os.getenv("GEMINI_MAX_TOKENS", "1024"))
GEMINI_TEMPERATURE = float(os.getenv("GEMINI_TEMPERATURE", "0.4"))

# Email channel (SMTP)
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL", SMTP_USER or "")
SMTP_FROM_NAME = os.getenv("SMTP_FROM_NAME", "DigestQ")

# Realtime channel (push webhook)
REALTIME_PUSH_URL = os.getenv("DIGESTQ_REALTIME_PUSH_URL", "")
REALTIME_PUSH_TOKEN = os.getenv("DIGESTQ_REALTIME_PUSH_TOKEN")


def is_production() -> bool:
    """Check if running in production"""
    return ENV == "production"


# Operations API
ADMIN_API_KEY_ENV = "DIGESTQ_ADMIN_API_KEY"

"""Configuration loaded from environment / .env"""

import os
from dotenv import load_dotenv

load_dotenv()

# PostgreSQL pool
DB_POOL_MIN = int(os.getenv("DB_POOL_MIN", "1"))
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "20"))
POOL_RETRY_AFTER_SEC = int(os.getenv("POOL_RETRY_AFTER_SEC", "2"))

# Day bucketing (single IANA zone for the whole deployment)
DAY_BUCKET_TZ = os.getenv("DAY_BUCKET_TZ", "UTC")

# Pipeline windows
SUMMARY_LOOKBACK_DAYS = int(os.getenv("SUMMARY_LOOKBACK_DAYS", "365"))
RISK_WINDOW_HOURS = int(os.getenv("RISK_WINDOW_HOURS", "24"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(50 * 1024 * 1024)))

# LLM collaborator
LLM_API_URL = os.getenv("LLM_API_URL", "")
LLM_API_KEY = os.getenv("LLM_API_KEY", "")
LLM_MODEL = os.getenv("LLM_MODEL", "")
LLM_TIMEOUT_SEC = float(os.getenv("LLM_TIMEOUT_SEC", "30"))
LLM_TEMPERATURE = 0.7

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# HTTP
FRONTEND_ORIGINS = [
    o.strip() for o in os.getenv("FRONTEND_ORIGINS", "").split(",") if o.strip()
] or [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

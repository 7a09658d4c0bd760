"""
Configuration settings for the Tandem core and its score service.
"""
import os

# Remote service
API_URL = os.getenv("TANDEM_API_URL", "http://localhost:8000")
NETWORK_TIMEOUT = float(os.getenv("NETWORK_TIMEOUT", "10"))

# Server database and token signing
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tandem.db")
SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-secret-change-me")

# Local persistence
STORAGE_PATH = os.getenv("TANDEM_STORAGE_PATH", "./tandem-local.json")
STORAGE_DB_URL = os.getenv("TANDEM_STORAGE_DB_URL", "sqlite:///./tandem-local.db")

# Remote stats sync backoff
RETRY_INITIAL_SECONDS = 1.0
RETRY_MAX_SECONDS = 30.0
RETRY_MAX_ATTEMPTS = 6

# Leaderboards
LEADERBOARD_CACHE_TTL = int(os.getenv("LEADERBOARD_CACHE_TTL", "30"))
LEADERBOARD_DEFAULT_LIMIT = 10
LEADERBOARD_MAX_LIMIT = 100

# Stats
HISTORY_LIMIT = 50
STATS_SCHEMA_VERSION = 2

# Calendar: puzzle #1 was published on this local date
LAUNCH_DATE = "2025-08-15"
MIDNIGHT_POLL_SECONDS = float(os.getenv("MIDNIGHT_POLL_SECONDS", "60"))

# Browser origins allowed to call the score service
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",") if o.strip()]

"""Configuration loaded from environment variables."""

import os

from dotenv import load_dotenv

load_dotenv()


# Mailbox
DATA_DIR = os.getenv("COURIER_DATA_DIR", "./data")
PENDING_DIR = os.path.join(DATA_DIR, ".pending")
RESPONSES_DIR = os.path.join(DATA_DIR, ".responses")
PROFILES_DIR = os.path.join(DATA_DIR, "profiles")

# Relay hub
WS_URL = os.getenv("WS_URL", "ws://localhost:8765")
DELIVERY_TIMEOUT_SECONDS = float(os.getenv("DELIVERY_TIMEOUT_SECONDS", "5"))
DELIVERY_RETRIES = int(os.getenv("DELIVERY_RETRIES", "3"))
DELIVERY_BACKOFF_SECONDS = float(os.getenv("DELIVERY_BACKOFF_SECONDS", "0.5"))
DELIVERY_REQUIRE_ACK = os.getenv("DELIVERY_REQUIRE_ACK", "false").lower() == "true"
RESPONSE_SOURCE = os.getenv("RESPONSE_SOURCE", "worker")

# Watch loop
WATCH_MODE = os.getenv("WATCH_MODE", "poll")
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "2"))
MAX_IN_FLIGHT = int(os.getenv("MAX_IN_FLIGHT", "1"))
CLAIM_TTL_SECONDS = float(os.getenv("CLAIM_TTL_SECONDS", "900"))  # 0 disables
SHUTDOWN_GRACE_SECONDS = float(os.getenv("SHUTDOWN_GRACE_SECONDS", "10"))

# Context
DEFAULT_PROFILE_ID = os.getenv("DEFAULT_PROFILE_ID", "")

# LLM
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "qwen2.5:14b")

# Ledger
DATABASE_PATH = os.getenv("DATABASE_PATH", os.path.join(DATA_DIR, "db", "courier.db"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

import os

from dotenv import load_dotenv

load_dotenv()

# Telegram bot token. When empty, notifications are only written to the log.
TELEGRAM_TOKEN = os.getenv("TELEGRAM_TOKEN", "")

# Per-entity status endpoint; "{name}" is replaced with the normalized name.
STATUS_API_URL = os.getenv(
    "STATUS_API_URL", "https://chaturbate.com/api/chatvideocontext/{name}/"
)

# Public page linked from notifications.
ENTITY_LINK_URL = os.getenv("ENTITY_LINK_URL", "https://chaturbate.com/{name}/")

# Poll cadence and the lease that guards a single cycle (seconds).
# The lease must expire before the next scheduled cycle.
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "60"))
LEASE_TTL_SECONDS = int(os.getenv("LEASE_TTL_SECONDS", "55"))

# Conversation-state sweep cadence (seconds).
CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", str(6 * 60 * 60)))

BATCH_SIZE = int(os.getenv("BATCH_SIZE", "10"))

# Logging format: "pretty" for colorized console, "json" for structured JSON.
LOG_FORMAT = os.getenv("LOG_FORMAT", "pretty")
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG").upper()

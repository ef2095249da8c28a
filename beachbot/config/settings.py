import os
from pathlib import Path


_ROOT = Path(__file__).resolve().parents[2]
_TOKEN_PATH = _ROOT / "TOKEN"


def _read_token() -> str:
    env_token = os.getenv("DISCORD_TOKEN", "").strip()
    if env_token:
        return env_token
    if _TOKEN_PATH.exists():
        return _TOKEN_PATH.read_text(encoding="utf-8").strip()
    return ""


TOKEN = _read_token()
DB_PATH = Path(os.getenv("BEACHBOT_DB_PATH", "") or (_ROOT / "data" / "beachbot.db"))

# APP CONFIGS
TRADER_ROLE_NAMES = ("TrustedDealer",)      # Roles allowed to post offers and open trade chats
REQUIRE_KNOWN_ITEM = 0                      # 1 = offers must name an item already in the price list
OFFER_TTL_DAYS = 7                          # Offers expire after this many days
COMPLETED_TEARDOWN_SECONDS = 30             # Trade chat lifetime after both sides confirmed
CANCELLED_TEARDOWN_SECONDS = 10             # Trade chat lifetime after a side cancelled
DISPLAY_TIMEZONE = "Europe/Berlin"          # Timezone for display and the backup schedule
BACKUP_HOUR = 4                             # Local hour (0-23) of the daily database backup
BACKUP_RETENTION = 1                        # How many backups to keep; older ones are deleted
LOG_CHANNEL_NAME = "bot-logs"               # Channel name that receives backup notices
TRADE_CATEGORY_ID = 0                       # Category for trade chats; 0 = no category

OFFER_EMOJI = "💰"
CONFIRM_EMOJI = "✅"
CANCEL_EMOJI = "❌"

CURRENCY_SYMBOL = "€"
FOOTER_TEXT = "GTA V Grand RP • Beach Market Bot"

OFFER_COLOR = 0xFF6600
PRICE_COLOR = 0x0099FF
SUCCESS_COLOR = 0x00FF00
WARNING_COLOR = 0xFF9900
ERROR_COLOR = 0xFF0000
STATS_COLOR = 0x9900FF

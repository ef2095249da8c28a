from beachbot.config.settings import (
    BACKUP_HOUR,
    BACKUP_RETENTION,
    CANCEL_EMOJI,
    CONFIRM_EMOJI,
    DB_PATH,
    DISPLAY_TIMEZONE,
    OFFER_EMOJI,
    TOKEN,
    TRADER_ROLE_NAMES,
)

__all__ = [
    "BACKUP_HOUR",
    "BACKUP_RETENTION",
    "CANCEL_EMOJI",
    "CONFIRM_EMOJI",
    "DB_PATH",
    "DISPLAY_TIMEZONE",
    "OFFER_EMOJI",
    "TOKEN",
    "TRADER_ROLE_NAMES",
]

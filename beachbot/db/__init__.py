from beachbot.db.database import get_connection, init_db
from beachbot.db.repositories import (
    create_database_backup,
    get_state_value,
    prune_backups,
    set_state_value,
)

__all__ = [
    "create_database_backup",
    "get_connection",
    "get_state_value",
    "init_db",
    "prune_backups",
    "set_state_value",
]

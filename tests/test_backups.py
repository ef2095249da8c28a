import sqlite3
import tempfile
import unittest
from pathlib import Path

from beachbot.db.database import get_connection, init_db
from beachbot.db.repositories import backup_dir_for, create_database_backup, prune_backups
from beachbot.services.prices import record_price


class BackupTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.db_path = Path(tmp.name) / "beachbot.db"
        self.factory = lambda: get_connection(self.db_path)
        init_db(self.factory)

    def test_backup_copies_data(self) -> None:
        record_price("Fish", 100, "alice", connection_factory=self.factory)
        backup_path = Path(create_database_backup(db_path=self.db_path))
        self.assertEqual(backup_path.parent, backup_dir_for(self.db_path))
        conn = sqlite3.connect(backup_path)
        try:
            count = conn.execute("SELECT COUNT(*) FROM current_prices").fetchone()[0]
        finally:
            conn.close()
        self.assertEqual(count, 1)

    def test_prune_keeps_newest(self) -> None:
        paths = [create_database_backup(db_path=self.db_path) for _ in range(3)]
        removed = prune_backups(1, db_path=self.db_path)
        self.assertEqual(removed, paths[:2])
        remaining = sorted(str(p) for p in backup_dir_for(self.db_path).glob("beachbot_*.db"))
        self.assertEqual(remaining, paths[2:])

    def test_prune_without_backups(self) -> None:
        self.assertEqual(prune_backups(1, db_path=self.db_path), [])


if __name__ == "__main__":
    unittest.main()

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest

from source_state import (
    BackupList,
    CurrentSourceState,
    SourceStateCell,
    SourceTier,
    StreamSource
)


class TestBackupList:
    """Test BackupList ordering and access"""

    def test_backup_list_preserves_order(self):
        backups = BackupList(["http://a/live.mp3", "http://b/live.mp3"])
        assert len(backups) == 2
        assert backups[0].url == "http://a/live.mp3"
        assert backups[1].url == "http://b/live.mp3"
        assert [s.url for s in backups] == ["http://a/live.mp3", "http://b/live.mp3"]

    def test_backup_entries_are_backup_tier(self):
        backups = BackupList(["http://a/live.mp3"])
        assert backups[0] == StreamSource(url="http://a/live.mp3", tier=SourceTier.BACKUP)


class TestSourceStateCell:
    """Test the shared current-source record"""

    def test_initialized_to_first_backup(self):
        cell = SourceStateCell.from_backups(BackupList(["http://a/live.mp3", "http://b/live.mp3"]))
        assert cell.snapshot == CurrentSourceState(
            active_url="http://a/live.mp3", backup_cursor=0, last_known_good_url=None)

    def test_empty_backup_list_rejected(self):
        with pytest.raises(ValueError):
            SourceStateCell.from_backups(BackupList([]))

    def test_update_replaces_whole_record(self):
        cell = SourceStateCell(CurrentSourceState(active_url="http://a/live.mp3"))
        before = cell.snapshot

        after = cell.update(active_url="http://b/live.mp3", backup_cursor=1)

        assert cell.snapshot is after
        assert after.active_url == "http://b/live.mp3"
        assert after.backup_cursor == 1
        # Old snapshots held by readers are never mutated
        assert before.active_url == "http://a/live.mp3"
        assert before.backup_cursor == 0

    def test_adopt_primary_records_last_known_good(self):
        cell = SourceStateCell(CurrentSourceState(active_url="http://a/live.mp3", backup_cursor=2))

        cell.adopt_primary("https://cdn.example.com/live.mp3")

        assert cell.active_url == "https://cdn.example.com/live.mp3"
        assert cell.snapshot.last_known_good_url == "http://a/live.mp3"
        assert cell.snapshot.backup_cursor == 2

    def test_adopt_primary_same_url_is_noop(self):
        cell = SourceStateCell(CurrentSourceState(
            active_url="https://cdn.example.com/live.mp3",
            last_known_good_url="http://a/live.mp3"))

        cell.adopt_primary("https://cdn.example.com/live.mp3")

        assert cell.snapshot.last_known_good_url == "http://a/live.mp3"

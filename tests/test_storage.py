"""
SQLiteStorage クラスのユニットテスト

call_id 単位の upsert と、重複保存で行が増えないことを確認します。
"""

import os
import sqlite3
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from call_pipeline.models import (
    CallStatusResult,
    PipelineFailure,
    Recording,
    StoredMedia,
    TranscriptionResult,
    TranscriptionSegment,
)
from call_pipeline.storage import SQLiteStorage, StorageError


def _count(db_path: str, table: str) -> int:
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    finally:
        conn.close()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "test.db")


@pytest.fixture
def storage(db_path):
    return SQLiteStorage(db_path)


@pytest.fixture
def recording():
    return Recording(
        recording_id="rec-1",
        call_id="call-1",
        user_id="user-1",
        direction="outbound",
        duration=95,
        download_url="https://zoom.us/download/rec-1",
        date_time="2024-05-01T10:00:00Z",
        caller_number="+81300000000",
        callee_number="+81311111111",
    )


class TestSQLiteStorageInit:
    """SQLiteStorage 初期化のテスト"""

    def test_creates_database_file(self):
        """正常系: データベースファイルが作成される"""
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = os.path.join(tmpdir, "test.db")
            SQLiteStorage(db_path)

            assert os.path.exists(db_path)

    @pytest.mark.parametrize("table", ["calls", "stored_media", "call_statuses", "pipeline_failures"])
    def test_creates_tables_on_init(self, storage, db_path, table):
        """正常系: 初期化時にテーブルが作成される"""
        conn = sqlite3.connect(db_path)
        cursor = conn.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,))
        assert cursor.fetchone() is not None
        conn.close()

    def test_reopening_existing_database(self, storage, db_path, recording):
        storage.save_call(recording)

        reopened = SQLiteStorage(db_path)

        assert reopened.get_call("call-1") is not None

    def test_unwritable_path_raises_storage_error(self, tmp_path):
        """異常系: 開けないパスは StorageError"""
        with pytest.raises(StorageError):
            SQLiteStorage(str(tmp_path / "missing" / "dir" / "test.db"))


class TestSaveCall:
    """save_call() のテスト"""

    def test_save_and_get(self, storage, recording):
        storage.save_call(recording)

        call = storage.get_call("call-1")
        assert call.recording_id == "rec-1"
        assert call.duration == 95
        assert call.call_time == "2024-05-01T10:00:00Z"

    def test_duplicate_save_keeps_one_row(self, storage, db_path, recording):
        """同じ call_id を 2 回保存しても 1 行"""
        storage.save_call(recording)
        storage.save_call(recording)

        assert _count(db_path, "calls") == 1

    def test_duplicate_save_updates_fields(self, storage, recording):
        storage.save_call(recording)
        first = storage.get_call("call-1")

        storage.save_call(replace(recording, duration=120))
        second = storage.get_call("call-1")

        assert second.duration == 120
        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at

    def test_get_missing_call_returns_none(self, storage):
        assert storage.get_call("nope") is None


class TestListCalls:
    """list_calls() のテスト"""

    def test_list_all(self, storage, recording):
        storage.save_call(recording)
        storage.save_call(replace(recording, call_id="call-2"))

        assert {c.call_id for c in storage.list_calls()} == {"call-1", "call-2"}

    def test_filter_by_date_range(self, storage, recording):
        storage.save_call(recording)
        now = datetime.now(timezone.utc)

        assert len(storage.list_calls(start_date=now - timedelta(minutes=1))) == 1
        assert storage.list_calls(start_date=now + timedelta(minutes=1)) == []
        assert storage.list_calls(end_date=now - timedelta(minutes=1)) == []


class TestStoredMedia:
    """save_stored_media() のテスト"""

    def test_save_and_get(self, storage):
        media = StoredMedia(path="audio/call-1.m4a", size_bytes=2048, estimated_duration=0)
        storage.save_stored_media("call-1", media)

        assert storage.get_stored_media("call-1") == media

    def test_duplicate_save_replaces(self, storage, db_path):
        storage.save_stored_media("call-1", StoredMedia("audio/call-1.m4a", 100, 0))
        storage.save_stored_media("call-1", StoredMedia("audio/call-1.m4a", 200, 0))

        assert _count(db_path, "stored_media") == 1
        assert storage.get_stored_media("call-1").size_bytes == 200

    def test_get_missing_returns_none(self, storage):
        assert storage.get_stored_media("nope") is None


class TestCallStatus:
    """save_call_status() のテスト"""

    def test_save_and_get(self, storage, db_path):
        result = CallStatusResult(status="connected", confidence=0.85, reason="本人と会話")
        transcription = TranscriptionResult(
            text="こんにちは", transcript_path="transcripts/call-1.txt", language="ja"
        )

        storage.save_call_status("call-1", result, transcription)

        assert storage.get_call_status("call-1") == result
        conn = sqlite3.connect(db_path)
        row = conn.execute(
            "SELECT transcript_path, transcript_language FROM call_statuses"
        ).fetchone()
        conn.close()
        assert row == ("transcripts/call-1.txt", "ja")

    def test_duplicate_save_replaces(self, storage, db_path):
        storage.save_call_status("call-1", CallStatusResult("reception", 0.9, "受付"))
        storage.save_call_status("call-1", CallStatusResult("connected", 0.8, "本人"))

        assert _count(db_path, "call_statuses") == 1
        assert storage.get_call_status("call-1").status == "connected"

    def test_transcription_segments_round_trip(self, storage):
        """文字起こしのセグメントが保存され、読み出しで復元される"""
        transcription = TranscriptionResult(
            text="お世話になっております。担当の佐藤です。",
            transcript_path="transcripts/call-1.txt",
            duration=12.5,
            language="ja",
            segments=[
                TranscriptionSegment(id=0, start=0.0, end=2.0, text="お世話になっております。"),
                TranscriptionSegment(id=1, start=2.0, end=4.5, text="担当の佐藤です。"),
            ],
        )

        storage.save_call_status("call-1", CallStatusResult("connected", 0.8, "本人"), transcription)

        assert storage.get_transcription("call-1") == transcription

    def test_segments_stored_as_readable_json(self, storage, db_path):
        transcription = TranscriptionResult(
            text="受付です",
            transcript_path="transcripts/call-1.txt",
            segments=[TranscriptionSegment(id=0, start=0.0, end=1.0, text="受付です")],
        )
        storage.save_call_status("call-1", CallStatusResult("reception", 0.9, "受付"), transcription)

        conn = sqlite3.connect(db_path)
        raw = conn.execute("SELECT transcript_segments FROM call_statuses").fetchone()[0]
        conn.close()
        assert "受付です" in raw

    def test_transcription_missing_without_transcript(self, storage):
        storage.save_call_status("call-1", CallStatusResult("no_conversation", 1.0, "短い"))

        assert storage.get_transcription("call-1") is None
        assert storage.get_transcription("nope") is None


class TestPipelineFailures:
    """save_pipeline_failure() のテスト"""

    def test_save_and_list(self, storage):
        occurred_at = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        failure = PipelineFailure(
            message_id="msg-1",
            call_id="call-1",
            stage="download",
            error="Failed to download audio: 404",
            occurred_at=occurred_at,
        )

        storage.save_pipeline_failure(failure)
        storage.save_pipeline_failure(replace(failure, call_id="call-2"))

        assert storage.list_pipeline_failures() == [failure, replace(failure, call_id="call-2")]
        assert storage.list_pipeline_failures("call-1") == [failure]

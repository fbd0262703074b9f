"""
ストレージモジュール (Storage Module)

通話データと処理結果の永続化を抽象化するストレージレイヤーを提供します。
すべての書き込みは call_id をキーにした upsert で、重複配信に対して冪等です。
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, List, Optional

from .models import (
    CallRecord,
    CallStatusResult,
    PipelineFailure,
    Recording,
    StoredMedia,
    TranscriptionResult,
    TranscriptionSegment,
)


class StorageError(Exception):
    """
    ストレージエラー

    データベース操作中に発生したエラーを表す例外クラスです。
    """
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Storage(ABC):
    """
    ストレージの抽象基底クラス

    パイプラインの各段階の成果物を call_id 単位で保存します。
    段階ごとに独立して保存されるため、音声保存済み・判定未保存といった
    途中状態もそのまま残ります。
    """

    @abstractmethod
    def save_call(self, recording: Recording) -> None:
        """録音メタデータを保存（同じ call_id は更新）"""
        pass

    @abstractmethod
    def get_call(self, call_id: str) -> Optional[CallRecord]:
        pass

    @abstractmethod
    def list_calls(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[CallRecord]:
        pass

    @abstractmethod
    def save_stored_media(self, call_id: str, media: StoredMedia) -> None:
        """保存済み音声の情報を保存（同じ call_id は置き換え）"""
        pass

    @abstractmethod
    def get_stored_media(self, call_id: str) -> Optional[StoredMedia]:
        pass

    @abstractmethod
    def save_call_status(
        self,
        call_id: str,
        result: CallStatusResult,
        transcription: Optional[TranscriptionResult] = None
    ) -> None:
        """判定結果を保存（同じ call_id は置き換え）"""
        pass

    @abstractmethod
    def get_call_status(self, call_id: str) -> Optional[CallStatusResult]:
        pass

    @abstractmethod
    def get_transcription(self, call_id: str) -> Optional[TranscriptionResult]:
        """判定時に保存した文字起こし（セグメントを含む）を取得"""
        pass

    @abstractmethod
    def save_pipeline_failure(self, failure: PipelineFailure) -> None:
        """失敗したパイプライン実行を記録（デッドレター）"""
        pass

    @abstractmethod
    def list_pipeline_failures(self, call_id: Optional[str] = None) -> List[PipelineFailure]:
        pass


class SQLiteStorage(Storage):
    """
    SQLite実装

    操作ごとに接続を開くため、ワーカースレッド間で共有できます。
    """

    def __init__(self, db_path: str = "calls.db"):
        """
        SQLiteStorageを初期化

        Args:
            db_path: SQLiteデータベースファイルのパス
        """
        self.db_path = db_path
        self._create_tables()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        データベース接続のコンテキストマネージャー

        Raises:
            StorageError: 接続に失敗した場合
        """
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=30)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Database connection error: {e}") from e
        finally:
            if conn:
                conn.close()

    def _create_tables(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS calls (
                call_id TEXT PRIMARY KEY,
                recording_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                direction TEXT NOT NULL,
                duration INTEGER NOT NULL,
                caller_number TEXT NOT NULL,
                callee_number TEXT NOT NULL,
                call_time TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS stored_media (
                call_id TEXT PRIMARY KEY,
                path TEXT NOT NULL,
                size_bytes INTEGER NOT NULL,
                estimated_duration INTEGER NOT NULL,
                stored_at TIMESTAMP NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS call_statuses (
                call_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                confidence REAL NOT NULL,
                reason TEXT NOT NULL,
                transcript_path TEXT,
                transcript_language TEXT,
                transcript_text TEXT,
                transcript_duration REAL,
                transcript_segments TEXT,
                classified_at TIMESTAMP NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS pipeline_failures (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id TEXT NOT NULL,
                call_id TEXT NOT NULL,
                stage TEXT NOT NULL,
                error TEXT NOT NULL,
                occurred_at TIMESTAMP NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_calls_created_at ON calls(created_at)",
            "CREATE INDEX IF NOT EXISTS idx_pipeline_failures_call_id ON pipeline_failures(call_id)",
        ]

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                for statement in statements:
                    cursor.execute(statement)
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to create tables: {e}") from e

    def _execute(self, sql: str, params: tuple, action: str) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(sql, params)
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to {action}: {e}") from e

    def _fetch(self, sql: str, params: tuple, action: str) -> List[sqlite3.Row]:
        try:
            with self._get_connection() as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to {action}: {e}") from e

    def save_call(self, recording: Recording) -> None:
        now = _now().isoformat()
        sql = """
        INSERT INTO calls (
            call_id, recording_id, user_id, direction, duration,
            caller_number, callee_number, call_time, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(call_id) DO UPDATE SET
            recording_id = excluded.recording_id,
            user_id = excluded.user_id,
            direction = excluded.direction,
            duration = excluded.duration,
            caller_number = excluded.caller_number,
            callee_number = excluded.callee_number,
            call_time = excluded.call_time,
            updated_at = excluded.updated_at
        """
        self._execute(sql, (
            recording.call_id,
            recording.recording_id,
            recording.user_id,
            recording.direction,
            recording.duration,
            recording.caller_number,
            recording.callee_number,
            recording.date_time,
            now,
            now
        ), "save call")

    def get_call(self, call_id: str) -> Optional[CallRecord]:
        rows = self._fetch("SELECT * FROM calls WHERE call_id = ?", (call_id,), "get call")
        return self._row_to_call(rows[0]) if rows else None

    def list_calls(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[CallRecord]:
        """
        通話一覧を取得

        Args:
            start_date: 開始日時（この日時以降に保存された通話）
            end_date: 終了日時（この日時以前に保存された通話）
        """
        sql = "SELECT * FROM calls"
        conditions = []
        params: List[str] = []

        if start_date is not None:
            conditions.append("created_at >= ?")
            params.append(start_date.isoformat())

        if end_date is not None:
            conditions.append("created_at <= ?")
            params.append(end_date.isoformat())

        if conditions:
            sql += " WHERE " + " AND ".join(conditions)

        sql += " ORDER BY created_at DESC"

        rows = self._fetch(sql, tuple(params), "list calls")
        return [self._row_to_call(row) for row in rows]

    def save_stored_media(self, call_id: str, media: StoredMedia) -> None:
        sql = """
        INSERT OR REPLACE INTO stored_media (
            call_id, path, size_bytes, estimated_duration, stored_at
        ) VALUES (?, ?, ?, ?, ?)
        """
        self._execute(sql, (
            call_id,
            media.path,
            media.size_bytes,
            media.estimated_duration,
            _now().isoformat()
        ), "save stored media")

    def get_stored_media(self, call_id: str) -> Optional[StoredMedia]:
        rows = self._fetch(
            "SELECT path, size_bytes, estimated_duration FROM stored_media WHERE call_id = ?",
            (call_id,),
            "get stored media"
        )
        if not rows:
            return None
        row = rows[0]
        return StoredMedia(
            path=row["path"],
            size_bytes=row["size_bytes"],
            estimated_duration=row["estimated_duration"]
        )

    def save_call_status(
        self,
        call_id: str,
        result: CallStatusResult,
        transcription: Optional[TranscriptionResult] = None
    ) -> None:
        sql = """
        INSERT OR REPLACE INTO call_statuses (
            call_id, status, confidence, reason,
            transcript_path, transcript_language, transcript_text,
            transcript_duration, transcript_segments, classified_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        segments = None
        if transcription is not None:
            segments = json.dumps(transcription.segments_as_dicts(), ensure_ascii=False)

        self._execute(sql, (
            call_id,
            result.status,
            result.confidence,
            result.reason,
            transcription.transcript_path if transcription else None,
            transcription.language if transcription else None,
            transcription.text if transcription else None,
            transcription.duration if transcription else None,
            segments,
            _now().isoformat()
        ), "save call status")

    def get_call_status(self, call_id: str) -> Optional[CallStatusResult]:
        rows = self._fetch(
            "SELECT status, confidence, reason FROM call_statuses WHERE call_id = ?",
            (call_id,),
            "get call status"
        )
        if not rows:
            return None
        row = rows[0]
        return CallStatusResult(
            status=row["status"],
            confidence=row["confidence"],
            reason=row["reason"]
        )

    def get_transcription(self, call_id: str) -> Optional[TranscriptionResult]:
        rows = self._fetch(
            """
            SELECT transcript_path, transcript_language, transcript_text,
                   transcript_duration, transcript_segments
            FROM call_statuses WHERE call_id = ?
            """,
            (call_id,),
            "get transcription"
        )
        if not rows or rows[0]["transcript_path"] is None:
            return None
        row = rows[0]

        try:
            raw_segments = json.loads(row["transcript_segments"] or "[]")
        except ValueError as e:
            raise StorageError(f"Failed to decode transcript segments: {e}") from e

        return TranscriptionResult(
            text=row["transcript_text"] or "",
            transcript_path=row["transcript_path"],
            duration=row["transcript_duration"],
            language=row["transcript_language"],
            segments=[
                TranscriptionSegment(
                    id=seg["id"],
                    start=seg["start"],
                    end=seg["end"],
                    text=seg["text"]
                )
                for seg in raw_segments
            ]
        )

    def save_pipeline_failure(self, failure: PipelineFailure) -> None:
        sql = """
        INSERT INTO pipeline_failures (message_id, call_id, stage, error, occurred_at)
        VALUES (?, ?, ?, ?, ?)
        """
        self._execute(sql, (
            failure.message_id,
            failure.call_id,
            failure.stage,
            failure.error,
            failure.occurred_at.isoformat()
        ), "save pipeline failure")

    def list_pipeline_failures(self, call_id: Optional[str] = None) -> List[PipelineFailure]:
        sql = "SELECT message_id, call_id, stage, error, occurred_at FROM pipeline_failures"
        params: tuple = ()
        if call_id is not None:
            sql += " WHERE call_id = ?"
            params = (call_id,)
        sql += " ORDER BY id"

        rows = self._fetch(sql, params, "list pipeline failures")
        return [
            PipelineFailure(
                message_id=row["message_id"],
                call_id=row["call_id"],
                stage=row["stage"],
                error=row["error"],
                occurred_at=datetime.fromisoformat(row["occurred_at"])
            )
            for row in rows
        ]

    def _row_to_call(self, row: sqlite3.Row) -> CallRecord:
        """SQLite行をCallRecordオブジェクトに変換"""
        return CallRecord(
            call_id=row["call_id"],
            recording_id=row["recording_id"],
            user_id=row["user_id"],
            direction=row["direction"],
            duration=row["duration"],
            caller_number=row["caller_number"],
            callee_number=row["callee_number"],
            call_time=row["call_time"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"])
        )

"""
CallProcessor / PipelineDispatcher のテスト

外部サービスはすべてモックに置き換え、ストレージは一時ディレクトリの
SQLite を使用します。
"""

import sqlite3
import threading
from unittest.mock import MagicMock

import pytest

from call_pipeline.media_fetcher import MediaFetchError
from call_pipeline.models import (
    CallStatusResult,
    Recording,
    StoredMedia,
    TranscriptionResult,
    TranscriptionSegment,
    WebhookEnvelope,
)
from call_pipeline.processor import CallProcessor, PipelineDispatcher
from call_pipeline.storage import SQLiteStorage
from call_pipeline.transcription import TranscriptionError
from call_pipeline.zoom_auth import ZoomAuthError

CONNECTED = CallStatusResult(status="connected", confidence=0.9, reason="本人と会話")
SEGMENTS = [
    TranscriptionSegment(id=0, start=0.0, end=3.2, text="お世話になっております。"),
    TranscriptionSegment(id=1, start=3.2, end=6.0, text="私が担当の佐藤です。"),
]


def _count(db_path: str, table: str) -> int:
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    finally:
        conn.close()


def _recording(call_id: str = "call-1", **overrides) -> Recording:
    values = dict(
        recording_id=f"rec-{call_id}",
        call_id=call_id,
        user_id="user-1",
        direction="outbound",
        duration=95,
        download_url=f"https://zoom.us/download/{call_id}",
        date_time="2024-05-01T10:00:00Z",
    )
    values.update(overrides)
    return Recording(**values)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "calls.db")


@pytest.fixture
def storage(db_path):
    return SQLiteStorage(db_path)


@pytest.fixture
def token_cache():
    cache = MagicMock()
    cache.get_access_token.return_value = "zoom-token"
    return cache


@pytest.fixture
def media_fetcher():
    fetcher = MagicMock()
    fetcher.fetch.side_effect = lambda url, call_id, ext, token: StoredMedia(
        path=f"audio/{call_id}.{ext}", size_bytes=4096, estimated_duration=0
    )
    return fetcher


@pytest.fixture
def transcriber():
    transcriber = MagicMock()
    transcriber.transcribe_with_retry.side_effect = lambda path: TranscriptionResult(
        text="お世話になっております。私が担当の佐藤です。",
        transcript_path=path.replace("audio/", "transcripts/").rsplit(".", 1)[0] + ".txt",
        duration=94.0,
        language="ja",
        segments=SEGMENTS,
    )
    return transcriber


@pytest.fixture
def classifier():
    classifier = MagicMock()
    classifier.classify.return_value = CONNECTED
    return classifier


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def processor(storage, token_cache, media_fetcher, transcriber, classifier, notifier):
    return CallProcessor(
        storage=storage,
        token_cache=token_cache,
        media_fetcher=media_fetcher,
        transcriber=transcriber,
        classifier=classifier,
        notifier=notifier,
    )


class TestProcessRecording:
    """CallProcessor.process_recording() のテスト"""

    def test_full_pipeline(self, processor, storage, media_fetcher, transcriber, classifier, notifier):
        """正常系: すべての段階が実行され結果が保存される"""
        recording = _recording()

        assert processor.process_recording(recording, "msg-1") is True

        media_fetcher.fetch.assert_called_once_with(
            "https://zoom.us/download/call-1", "call-1", "m4a", "zoom-token"
        )
        transcriber.transcribe_with_retry.assert_called_once_with("audio/call-1.m4a")
        classifier.classify.assert_called_once_with(
            "お世話になっております。私が担当の佐藤です。", 95
        )
        notifier.notify.assert_called_once_with(recording, CONNECTED)

        assert storage.get_call("call-1").recording_id == "rec-call-1"
        assert storage.get_stored_media("call-1").path == "audio/call-1.m4a"
        assert storage.get_call_status("call-1") == CONNECTED
        transcription = storage.get_transcription("call-1")
        assert transcription.transcript_path == "transcripts/call-1.txt"
        assert transcription.segments == SEGMENTS
        assert storage.list_pipeline_failures() == []

    def test_duplicate_processing_is_idempotent(self, processor, db_path):
        """同じ録音を 2 回処理しても各テーブル 1 行"""
        recording = _recording()

        assert processor.process_recording(recording, "msg-1") is True
        assert processor.process_recording(recording, "msg-1") is True

        assert _count(db_path, "calls") == 1
        assert _count(db_path, "stored_media") == 1
        assert _count(db_path, "call_statuses") == 1

    def test_zero_duration_uses_transcription_duration(self, processor, classifier):
        processor.process_recording(_recording(duration=0), "msg-1")

        assert classifier.classify.call_args.args[1] == 94.0

    def test_download_failure_is_recorded(self, processor, storage, media_fetcher, notifier):
        """異常系: ダウンロード失敗は失敗テーブルに記録され、後続は実行されない"""
        media_fetcher.fetch.side_effect = MediaFetchError("Failed to download audio: 404")

        assert processor.process_recording(_recording(), "msg-1") is False

        failures = storage.list_pipeline_failures()
        assert len(failures) == 1
        assert failures[0].stage == "download"
        assert failures[0].call_id == "call-1"
        assert failures[0].message_id == "msg-1"
        assert "404" in failures[0].error

        # 通話メタデータは保存済み、判定は未保存
        assert storage.get_call("call-1") is not None
        assert storage.get_stored_media("call-1") is None
        assert storage.get_call_status("call-1") is None
        notifier.notify.assert_not_called()

    def test_auth_failure_is_recorded(self, processor, storage, token_cache, media_fetcher):
        token_cache.get_access_token.side_effect = ZoomAuthError("invalid client", 401)

        assert processor.process_recording(_recording(), "msg-1") is False

        assert storage.list_pipeline_failures()[0].stage == "auth"
        media_fetcher.fetch.assert_not_called()

    def test_transcription_failure_leaves_media_stored(self, processor, storage, transcriber, classifier):
        transcriber.transcribe_with_retry.side_effect = TranscriptionError("whisper down")

        assert processor.process_recording(_recording(), "msg-1") is False

        assert storage.get_stored_media("call-1") is not None
        assert storage.get_call_status("call-1") is None
        assert storage.list_pipeline_failures()[0].stage == "transcription"
        classifier.classify.assert_not_called()

    def test_missing_download_url(self, processor, storage, token_cache):
        assert processor.process_recording(_recording(download_url=""), "msg-1") is False

        assert storage.list_pipeline_failures()[0].stage == "download"
        token_cache.get_access_token.assert_not_called()

    def test_missing_call_id(self, processor, storage):
        assert processor.process_recording(_recording(call_id=""), "msg-1") is False

        assert storage.list_pipeline_failures()[0].stage == "persist_call"

    def test_custom_failure_hook(self, storage, token_cache, media_fetcher, transcriber, classifier):
        failures = []
        media_fetcher.fetch.side_effect = MediaFetchError("boom")
        processor = CallProcessor(
            storage, token_cache, media_fetcher, transcriber, classifier,
            failure_hook=failures.append
        )

        processor.process_recording(_recording(), "msg-9")

        assert [f.stage for f in failures] == ["download"]
        assert storage.list_pipeline_failures() == []

    def test_failing_hook_is_contained(self, storage, token_cache, media_fetcher, transcriber, classifier):
        """フック自体の失敗は呼び出し元に伝播しない"""
        media_fetcher.fetch.side_effect = MediaFetchError("boom")
        hook = MagicMock(side_effect=RuntimeError("dead letter unavailable"))
        processor = CallProcessor(
            storage, token_cache, media_fetcher, transcriber, classifier, failure_hook=hook
        )

        assert processor.process_recording(_recording(), "msg-1") is False
        hook.assert_called_once()

    def test_without_notifier(self, storage, token_cache, media_fetcher, transcriber, classifier):
        processor = CallProcessor(storage, token_cache, media_fetcher, transcriber, classifier)

        assert processor.process_recording(_recording(), "msg-1") is True


class TestPipelineDispatcher:
    """PipelineDispatcher のテスト"""

    @pytest.fixture
    def dispatcher(self, processor):
        dispatcher = PipelineDispatcher(processor, max_workers=2)
        yield dispatcher
        dispatcher.shutdown(wait=True)

    def test_dispatch_returns_future_per_recording(self, dispatcher, storage):
        envelope = WebhookEnvelope(
            event="recording.completed",
            recordings=(_recording("call-1"), _recording("call-2")),
        )

        tasks = dispatcher.dispatch(envelope, "msg-1")

        assert len(tasks) == 2
        assert [task.result(timeout=5) for task in tasks] == [True, True]
        assert storage.get_call_status("call-2") == CONNECTED

    def test_dispatch_runs_off_calling_thread(self, dispatcher, classifier):
        threads = []

        def classify(text, duration):
            threads.append(threading.current_thread().name)
            return CONNECTED
        classifier.classify.side_effect = classify

        envelope = WebhookEnvelope(event="recording.completed", recordings=(_recording(),))
        dispatcher.dispatch(envelope, "msg-1")[0].result(timeout=5)

        assert threads[0].startswith("call-pipeline")

    def test_failed_recording_does_not_affect_others(self, dispatcher, storage, media_fetcher):
        """1 件の失敗が同じエンベロープ内の他の録音を止めない"""
        def fetch(url, call_id, ext, token):
            if call_id == "call-bad":
                raise MediaFetchError("404")
            return StoredMedia(f"audio/{call_id}.{ext}", 10, 0)
        media_fetcher.fetch.side_effect = fetch

        envelope = WebhookEnvelope(
            event="recording.completed",
            recordings=(_recording("call-bad"), _recording("call-good")),
        )
        results = [t.result(timeout=5) for t in dispatcher.dispatch(envelope, "msg-1")]

        assert results == [False, True]
        assert storage.get_call_status("call-good") == CONNECTED
        assert [f.call_id for f in storage.list_pipeline_failures()] == ["call-bad"]

    def test_unexpected_exception_is_contained_in_future(self, storage, dispatcher):
        processor = MagicMock()
        processor.process_recording.side_effect = RuntimeError("unexpected")
        dispatcher.processor = processor

        envelope = WebhookEnvelope(event="recording.completed", recordings=(_recording(),))
        task = dispatcher.dispatch(envelope, "msg-1")[0]

        assert isinstance(task.exception(timeout=5), RuntimeError)

    def test_ignores_non_recording_events(self, dispatcher, processor):
        envelope = WebhookEnvelope(event="phone.callee_answered", recordings=(_recording(),))

        assert dispatcher.dispatch(envelope, "msg-1") == []

    def test_empty_recordings(self, dispatcher):
        envelope = WebhookEnvelope(event="recording.completed", recordings=())

        assert dispatcher.dispatch(envelope, "msg-1") == []

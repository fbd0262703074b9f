"""
通話処理パイプラインモジュール (Call Processing Pipeline Module)

Pub/Sub から受け取った Webhook エンベロープを録音ごとに処理します。

処理フロー（録音 1 件ごと）:
1. 通話メタデータを保存
2. Zoom アクセストークンを取得
3. 音声をダウンロードして Cloud Storage に保存
4. Whisper で文字起こし
5. 通話ステータスを判定
6. 判定結果を保存
7. connected の場合は Slack に通知

各段階の失敗はログと失敗フックに記録され、呼び出し元には伝播しません。
"""

from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from .classifier import CallStatusClassifier
from .log import get_logger
from .media_fetcher import MediaFetcher
from .models import PipelineFailure, Recording, WebhookEnvelope
from .notifier import SlackNotifier
from .storage import Storage
from .transcription import Transcriber
from .zoom_auth import ZoomTokenCache

AUDIO_FILE_EXTENSION = "m4a"

STAGE_PERSIST_CALL = "persist_call"
STAGE_AUTH = "auth"
STAGE_DOWNLOAD = "download"
STAGE_PERSIST_MEDIA = "persist_media"
STAGE_TRANSCRIPTION = "transcription"
STAGE_PERSIST_STATUS = "persist_status"

FailureHook = Callable[[PipelineFailure], None]


class PipelineStageError(Exception):
    """
    パイプライン段階エラー

    Attributes:
        stage: 失敗した段階名
        call_id: 通話 ID
        cause: 元の例外
    """

    def __init__(self, stage: str, call_id: str, cause: BaseException):
        super().__init__(f"{stage} failed for call {call_id}: {cause}")
        self.stage = stage
        self.call_id = call_id
        self.cause = cause


class CallProcessor:
    """
    録音 1 件分のパイプラインを実行するクラス

    Attributes:
        storage: 永続化レイヤー
        token_cache: Zoom トークンキャッシュ
        media_fetcher: 音声取得
        transcriber: 文字起こし
        classifier: 通話ステータス判定
        notifier: Slack 通知（オプション）
        failure_hook: 失敗時に呼ばれるフック（既定はストレージのデッドレター）
    """

    def __init__(
        self,
        storage: Storage,
        token_cache: ZoomTokenCache,
        media_fetcher: MediaFetcher,
        transcriber: Transcriber,
        classifier: CallStatusClassifier,
        notifier: Optional[SlackNotifier] = None,
        failure_hook: Optional[FailureHook] = None
    ):
        self.storage = storage
        self.token_cache = token_cache
        self.media_fetcher = media_fetcher
        self.transcriber = transcriber
        self.classifier = classifier
        self.notifier = notifier
        self.failure_hook = failure_hook or storage.save_pipeline_failure
        self.logger = get_logger(__name__)

    def _run_stage(self, stage: str, call_id: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            raise PipelineStageError(stage, call_id, e) from e

    def process_recording(self, recording: Recording, message_id: str = "") -> bool:
        """
        録音 1 件を処理

        同じ録音を何度処理しても、保存結果は call_id ごとに 1 件です。

        Args:
            recording: 処理対象の録音
            message_id: Pub/Sub メッセージ ID（ログの相関用）

        Returns:
            すべての段階が成功した場合True
        """
        call_id = recording.call_id
        log = self.logger.bind(message_id=message_id, call_id=call_id)
        log.info("recording_processing_started", recording_id=recording.recording_id)

        try:
            if not call_id:
                raise PipelineStageError(
                    STAGE_PERSIST_CALL, call_id, ValueError("Recording has no call id")
                )

            self._run_stage(STAGE_PERSIST_CALL, call_id, self.storage.save_call, recording)

            if not recording.download_url:
                raise PipelineStageError(
                    STAGE_DOWNLOAD, call_id, ValueError("No download URL found in recording")
                )

            access_token = self._run_stage(
                STAGE_AUTH, call_id, self.token_cache.get_access_token
            )

            media = self._run_stage(
                STAGE_DOWNLOAD, call_id, self.media_fetcher.fetch,
                recording.download_url, call_id, AUDIO_FILE_EXTENSION, access_token
            )
            self._run_stage(
                STAGE_PERSIST_MEDIA, call_id, self.storage.save_stored_media, call_id, media
            )
            log.info("audio_stored", path=media.path, size_bytes=media.size_bytes)

            transcription = self._run_stage(
                STAGE_TRANSCRIPTION, call_id, self.transcriber.transcribe_with_retry, media.path
            )

            duration = recording.duration or transcription.duration or 0
            result = self.classifier.classify(transcription.text, duration)
            log.info(
                "call_status_classified",
                status=result.status,
                confidence=result.confidence
            )

            self._run_stage(
                STAGE_PERSIST_STATUS, call_id, self.storage.save_call_status,
                call_id, result, transcription
            )
        except PipelineStageError as e:
            self._handle_failure(e, message_id)
            return False

        if self.notifier is not None:
            self.notifier.notify(recording, result)

        log.info("recording_processing_completed", status=result.status)
        return True

    def _handle_failure(self, error: PipelineStageError, message_id: str) -> None:
        self.logger.error(
            "recording_processing_failed",
            message_id=message_id,
            call_id=error.call_id,
            stage=error.stage,
            error_type=type(error.cause).__name__,
            error=str(error.cause),
            exc_info=error
        )

        failure = PipelineFailure(
            message_id=message_id,
            call_id=error.call_id,
            stage=error.stage,
            error=str(error.cause),
            occurred_at=datetime.now(timezone.utc)
        )
        try:
            self.failure_hook(failure)
        except Exception as hook_error:
            self.logger.error(
                "failure_hook_error",
                message_id=message_id,
                call_id=error.call_id,
                error=str(hook_error)
            )


class PipelineDispatcher:
    """
    パイプラインを HTTP 応答から切り離して実行するディスパッチャー

    録音ごとにスレッドプールへタスクを投入し、完了・失敗をログに残します。
    """

    def __init__(self, processor: CallProcessor, max_workers: int = 4):
        self.processor = processor
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="call-pipeline"
        )
        self.logger = get_logger(__name__)

    def dispatch(self, envelope: WebhookEnvelope, message_id: str) -> List[Future]:
        """
        エンベロープの処理をバックグラウンドに投入

        録音完了イベント以外は処理せず空のリストを返します。

        Returns:
            録音ごとの Future のリスト
        """
        if not envelope.is_recording_completed:
            self.logger.info("event_ignored", message_id=message_id, event=envelope.event)
            return []

        if not envelope.recordings:
            self.logger.error("no_recordings_in_payload", message_id=message_id)
            return []

        tasks = []
        for recording in envelope.recordings:
            future = self.executor.submit(self.processor.process_recording, recording, message_id)
            future.add_done_callback(self._completion_logger(message_id, recording.call_id))
            tasks.append(future)

        self.logger.info(
            "pipeline_dispatched",
            message_id=message_id,
            recordings=len(tasks)
        )
        return tasks

    def _completion_logger(self, message_id: str, call_id: str) -> Callable[[Future], None]:
        def log_completion(future: Future) -> None:
            if future.cancelled():
                self.logger.warning("pipeline_task_cancelled", message_id=message_id, call_id=call_id)
                return
            error = future.exception()
            if error is not None:
                self.logger.error(
                    "pipeline_task_failed",
                    message_id=message_id,
                    call_id=call_id,
                    error_type=type(error).__name__,
                    error=str(error)
                )
            else:
                self.logger.info(
                    "pipeline_task_completed",
                    message_id=message_id,
                    call_id=call_id,
                    succeeded=future.result()
                )
        return log_completion

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)

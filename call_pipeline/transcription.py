"""
文字起こしモジュール (Transcription Module)

Cloud Storage 上の通話音声を OpenAI Whisper でテキストに変換し、
結果をバケットの transcripts/ 以下に保存します。
"""

import os
import posixpath
import re
import tempfile
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

import openai
from google.api_core.exceptions import GoogleAPIError
from google.cloud import storage as gcs

from .log import get_logger
from .models import TranscriptionResult, TranscriptionSegment


class TranscriptionError(Exception):
    """文字起こしエラー"""
    pass


# Whisper API のファイルサイズ上限
MAX_AUDIO_MB = 25


def transcript_path_for(audio_path: str) -> str:
    """audio/<id>.<ext> を transcripts/<id>.txt に変換"""
    return re.sub(r"audio/(.+)\.\w+$", r"transcripts/\1.txt", audio_path)


def _field(segment: Any, key: str) -> Any:
    if isinstance(segment, dict):
        return segment.get(key)
    return getattr(segment, key, None)


def _segments_from(transcription: Any) -> List[TranscriptionSegment]:
    return [
        TranscriptionSegment(
            id=int(_field(seg, "id") or 0),
            start=float(_field(seg, "start") or 0.0),
            end=float(_field(seg, "end") or 0.0),
            text=_field(seg, "text") or "",
        )
        for seg in getattr(transcription, "segments", None) or []
    ]


class Transcriber:
    """
    Whisper による文字起こしを行うクラス

    処理フロー:
    1. Cloud Storage から音声を一時ファイルへダウンロード
    2. OpenAI Whisper でテキストに変換
    3. テキストを transcripts/<id>.txt として保存
    """

    MODEL = "whisper-1"
    LANGUAGE = "ja"
    REQUEST_TIMEOUT = 120

    def __init__(
        self,
        bucket_name: str,
        openai_client: Optional[openai.OpenAI] = None,
        openai_api_key: Optional[str] = None,
        storage_client: Optional[gcs.Client] = None,
        project_id: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.bucket_name = bucket_name
        self._openai_client = openai_client
        self.openai_api_key = openai_api_key
        self._storage_client = storage_client
        self.project_id = project_id
        self.sleep = sleep
        self.logger = get_logger(__name__)

    @property
    def openai_client(self) -> openai.OpenAI:
        if self._openai_client is None:
            self._openai_client = openai.OpenAI(
                api_key=self.openai_api_key,
                timeout=self.REQUEST_TIMEOUT
            )
        return self._openai_client

    @property
    def storage_client(self) -> gcs.Client:
        if self._storage_client is None:
            self._storage_client = gcs.Client(project=self.project_id)
        return self._storage_client

    def transcribe(self, audio_path: str) -> TranscriptionResult:
        """
        保存済み音声を文字起こし

        Args:
            audio_path: バケット内の音声パス (audio/<id>.<ext>)

        Returns:
            TranscriptionResult

        Raises:
            TranscriptionError: 変換に失敗した場合
        """
        self.logger.info("transcription_started", audio_path=audio_path)
        bucket = self.storage_client.bucket(self.bucket_name)

        fd, local_path = tempfile.mkstemp(suffix="-" + posixpath.basename(audio_path))
        os.close(fd)
        try:
            bucket.blob(audio_path).download_to_filename(local_path)

            size_mb = os.path.getsize(local_path) / 1024 / 1024
            if size_mb > MAX_AUDIO_MB:
                raise TranscriptionError(
                    f"Audio file too large: {size_mb:.2f}MB (max {MAX_AUDIO_MB}MB)"
                )

            with open(local_path, "rb") as audio_file:
                transcription = self.openai_client.audio.transcriptions.create(
                    model=self.MODEL,
                    file=audio_file,
                    language=self.LANGUAGE,
                    response_format="verbose_json"
                )

            text = transcription.text or ""
            language = getattr(transcription, "language", None) or self.LANGUAGE
            duration = getattr(transcription, "duration", None)

            transcript_path = transcript_path_for(audio_path)
            blob = bucket.blob(transcript_path)
            blob.cache_control = "public, max-age=31536000"
            blob.metadata = {
                "language": language,
                "duration": str(duration) if duration is not None else "unknown",
                "transcribedAt": datetime.now(timezone.utc).isoformat(),
            }
            blob.upload_from_string(text, content_type="text/plain; charset=utf-8")
        except TranscriptionError:
            raise
        except (openai.OpenAIError, GoogleAPIError, OSError) as e:
            self.logger.error(
                "transcription_failed",
                audio_path=audio_path,
                error_type=type(e).__name__,
                error=str(e)
            )
            raise TranscriptionError(f"Failed to transcribe audio: {e}") from e
        finally:
            if os.path.exists(local_path):
                os.remove(local_path)

        self.logger.info(
            "transcription_completed",
            audio_path=audio_path,
            transcript_path=transcript_path,
            characters=len(text)
        )

        return TranscriptionResult(
            text=text,
            transcript_path=transcript_path,
            duration=float(duration) if duration is not None else None,
            language=language,
            segments=_segments_from(transcription),
        )

    def transcribe_with_retry(self, audio_path: str, max_retries: int = 3) -> TranscriptionResult:
        """
        指数バックオフ付きで文字起こしを実行

        Raises:
            TranscriptionError: すべての試行が失敗した場合（最後のエラー）
        """
        last_error: Optional[TranscriptionError] = None

        for attempt in range(1, max_retries + 1):
            try:
                return self.transcribe(audio_path)
            except TranscriptionError as e:
                last_error = e
                self.logger.warning(
                    "transcription_attempt_failed",
                    audio_path=audio_path,
                    attempt=attempt,
                    max_retries=max_retries,
                    error=str(e)
                )
                if attempt < max_retries:
                    self.sleep(2 ** attempt)

        raise last_error or TranscriptionError("Transcription failed after retries")

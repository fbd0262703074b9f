"""
音声取得モジュール (Media Fetcher Module)

Zoom の録音ファイルをダウンロードし、Cloud Storage に保存します。
保存済みファイルには都度発行する署名付き URL でアクセスします。
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import requests
from google.api_core.exceptions import GoogleAPIError
from google.cloud import storage as gcs

from .log import get_logger
from .models import StoredMedia


class MediaFetchError(Exception):
    """音声ファイルのダウンロードまたはアップロードに失敗した場合の例外"""
    pass


def estimate_duration(size_bytes: int) -> int:
    """
    ファイルサイズから再生時間を推定（概算）

    圧縮音声で 1MB ≈ 1 分として計算します。正確な値ではありません。
    """
    return round(size_bytes / 1024 / 1024 * 60)


class MediaFetcher:
    """
    録音ファイルを取得して Cloud Storage に保存するクラス

    Attributes:
        bucket_name: 保存先バケット名
        client: Cloud Storage クライアント
    """

    DOWNLOAD_TIMEOUT = 60
    SIGNED_URL_TTL = timedelta(hours=1)
    CACHE_CONTROL = "public, max-age=31536000"
    USER_AGENT = "Zoom-Phone-Feedback-System/1.0"

    def __init__(
        self,
        bucket_name: str,
        client: Optional[gcs.Client] = None,
        project_id: Optional[str] = None,
        session: Optional[requests.Session] = None
    ):
        self.bucket_name = bucket_name
        self._client = client
        self.project_id = project_id
        self.session = session or requests
        self.logger = get_logger(__name__)

    @property
    def client(self) -> gcs.Client:
        if self._client is None:
            self._client = gcs.Client(project=self.project_id)
        return self._client

    def _bucket(self) -> gcs.Bucket:
        return self.client.bucket(self.bucket_name)

    def fetch(
        self,
        download_url: str,
        call_id: str,
        file_extension: str = "mp3",
        access_token: Optional[str] = None
    ) -> StoredMedia:
        """
        録音ファイルをダウンロードして Cloud Storage に保存

        同じ call_id に対する再実行は同じオブジェクトを上書きします。

        Args:
            download_url: Zoom の録音ダウンロード URL
            call_id: 通話 ID（保存パスに使用）
            file_extension: ファイル拡張子
            access_token: Bearer トークン（オプション）

        Returns:
            StoredMedia: 保存先パスとサイズ

        Raises:
            MediaFetchError: ダウンロードまたはアップロードに失敗した場合
        """
        self.logger.info("audio_download_started", call_id=call_id)

        headers = {"User-Agent": self.USER_AGENT}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        path = f"audio/{call_id}.{file_extension}"

        try:
            response = self.session.get(
                download_url,
                headers=headers,
                timeout=self.DOWNLOAD_TIMEOUT
            )
            response.raise_for_status()
            audio = response.content
            size_bytes = len(audio)

            self.logger.info("audio_downloaded", call_id=call_id, size_bytes=size_bytes)

            blob = self._bucket().blob(path)
            blob.cache_control = self.CACHE_CONTROL
            blob.metadata = {
                "callId": call_id,
                "uploadedAt": datetime.now(timezone.utc).isoformat(),
            }
            blob.upload_from_string(audio, content_type=f"audio/{file_extension}")
        except (requests.RequestException, GoogleAPIError, OSError) as e:
            self.logger.error(
                "audio_download_failed",
                call_id=call_id,
                error_type=type(e).__name__,
                error=str(e)
            )
            raise MediaFetchError(f"Failed to download audio: {e}") from e

        self.logger.info(
            "audio_uploaded",
            call_id=call_id,
            gcs_uri=f"gs://{self.bucket_name}/{path}"
        )

        return StoredMedia(
            path=path,
            size_bytes=size_bytes,
            estimated_duration=estimate_duration(size_bytes)
        )

    def get_signed_url(self, path: str) -> str:
        """
        保存済みファイルの署名付き URL（1 時間有効）を発行

        呼び出しごとに新しい URL を発行し、キャッシュしません。
        """
        blob = self._bucket().blob(path)
        return blob.generate_signed_url(
            version="v4",
            expiration=self.SIGNED_URL_TTL,
            method="GET"
        )

"""
Zoom OAuth クライアントモジュール (Zoom Auth Module)

Server-to-Server OAuth でアクセストークンを取得し、
有効期限を考慮してキャッシュします。
"""

import threading
import time
from typing import Callable, Optional

import requests

from .config import ConfigurationError
from .log import get_logger
from .models import AccessToken


class ZoomAuthError(Exception):
    """
    Zoom 認証エラー

    トークン取得 API の呼び出しに失敗した場合に発生します。

    Attributes:
        message: エラーメッセージ
        status_code: 上流の HTTP ステータスコード（不明な場合は None）
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _upstream_message(error: requests.RequestException) -> str:
    response = getattr(error, "response", None)
    if response is not None:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
    return str(error)


class ZoomTokenCache:
    """
    Zoom アクセストークンのキャッシュ

    プロセス内で共有される唯一の可変状態です。
    更新はロックで直列化し、同時に失効を検知した呼び出し元も
    上流へのリクエストは 1 回にまとめます。
    """

    OAUTH_URL = "https://zoom.us/oauth/token"
    API_BASE = "https://api.zoom.us/v2"
    # 失効 60 秒前からは新しいトークンを取得する
    SAFETY_MARGIN_SECONDS = 60
    REQUEST_TIMEOUT = 30

    def __init__(
        self,
        account_id: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time
    ):
        self.account_id = account_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or requests
        self.clock = clock
        self.logger = get_logger(__name__)
        self._cached: Optional[AccessToken] = None
        self._lock = threading.Lock()

    def _check_credentials(self) -> None:
        if not self.account_id or not self.client_id or not self.client_secret:
            self.logger.error(
                "zoom_credentials_missing",
                has_account_id=bool(self.account_id),
                has_client_id=bool(self.client_id),
                has_client_secret=bool(self.client_secret)
            )
            raise ConfigurationError(
                "Zoom OAuth 認証情報が欠落しています。"
                "ZOOM_ACCOUNT_ID, ZOOM_CLIENT_ID, ZOOM_CLIENT_SECRET を設定してください"
            )

    def _usable_token(self) -> Optional[str]:
        cached = self._cached
        if cached and cached.is_usable(self.clock(), self.SAFETY_MARGIN_SECONDS):
            return cached.token
        return None

    def get_access_token(self) -> str:
        """
        アクセストークンを取得

        キャッシュが有効ならそれを返し、そうでなければ
        account_credentials グラントで新しいトークンを取得します。

        Returns:
            Bearer トークン文字列

        Raises:
            ConfigurationError: 認証情報が設定されていない場合
            ZoomAuthError: トークン取得に失敗した場合
        """
        self._check_credentials()

        token = self._usable_token()
        if token:
            self.logger.debug("zoom_token_cache_hit")
            return token

        with self._lock:
            # 待機中に別スレッドが更新済みの場合はそれを使う
            token = self._usable_token()
            if token:
                self.logger.debug("zoom_token_cache_hit", after_wait=True)
                return token

            self.logger.info("zoom_token_requested", account_id=self.account_id)
            try:
                response = self.session.post(
                    self.OAUTH_URL,
                    params={
                        "grant_type": "account_credentials",
                        "account_id": self.account_id,
                    },
                    auth=(self.client_id, self.client_secret),
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                    timeout=self.REQUEST_TIMEOUT
                )
                response.raise_for_status()
                data = response.json()
                access_token = data["access_token"]
                expires_in = float(data.get("expires_in", 0))
            except requests.RequestException as e:
                message = _upstream_message(e)
                self.logger.error("zoom_token_request_failed", error=message)
                status = e.response.status_code if e.response is not None else None
                raise ZoomAuthError(
                    f"Failed to obtain Zoom access token: {message}",
                    status_code=status
                ) from e
            except (KeyError, TypeError, ValueError) as e:
                self.logger.error("zoom_token_response_invalid", error=str(e))
                raise ZoomAuthError(f"Failed to obtain Zoom access token: invalid response ({e})") from e

            self._cached = AccessToken(
                token=access_token,
                expires_at=self.clock() + expires_in
            )
            self.logger.info("zoom_token_obtained", expires_in=expires_in)
            return access_token

    def get_download_token(self, recording_id: str) -> str:
        """
        録音ごとのダウンロード用アクセストークンを取得

        Raises:
            ConfigurationError: 認証情報が設定されていない場合
            ZoomAuthError: 取得に失敗した場合
        """
        access_token = self.get_access_token()
        self.logger.info("zoom_download_token_requested", recording_id=recording_id)

        try:
            response = self.session.get(
                f"{self.API_BASE}/phone/recording/{recording_id}/download_access_token",
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.REQUEST_TIMEOUT
            )
            response.raise_for_status()
            download_token = response.json()["download_access_token"]
        except requests.RequestException as e:
            message = _upstream_message(e)
            self.logger.error(
                "zoom_download_token_failed",
                recording_id=recording_id,
                error=message
            )
            status = e.response.status_code if e.response is not None else None
            raise ZoomAuthError(
                f"Failed to get download access token: {message}",
                status_code=status
            ) from e
        except (KeyError, TypeError, ValueError) as e:
            raise ZoomAuthError(
                f"Failed to get download access token: invalid response ({e})"
            ) from e

        return download_token

    def clear_cache(self) -> None:
        """キャッシュを破棄して次回呼び出しで再取得させる"""
        with self._lock:
            self._cached = None
        self.logger.info("zoom_token_cache_cleared")

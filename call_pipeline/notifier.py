"""
Slack 通知モジュール (Slack Notification Module)

担当者と会話できた通話 (connected) の処理完了を Slack に通知します。
"""

from typing import Optional

import requests

from .log import get_logger
from .models import (
    STATUS_CONNECTED,
    STATUS_NO_CONVERSATION,
    STATUS_RECEPTION,
    CallStatusResult,
    Recording,
)

STATUS_LABELS = {
    STATUS_CONNECTED: "つながっただけ",
    STATUS_RECEPTION: "受付に当たっただけ",
    STATUS_NO_CONVERSATION: "会話なし",
}


def build_message(recording: Recording, result: CallStatusResult, app_url: str) -> str:
    """通知本文を組み立てる"""
    call_url = f"{app_url.rstrip('/')}/calls/{recording.call_id}"
    text = f"架電者：{recording.caller_name or '不明'}\n"
    text += f"格納ファイル：{call_url}\n"
    text += f"お客様電話番号：{recording.callee_number or 'N/A'}\n"
    text += f"通話ステータス：{STATUS_LABELS.get(result.status, result.status)}\n"
    return text


class SlackNotifier:
    """
    Slack Incoming Webhook に通知を送るクラス

    通知の失敗は録音の処理結果に影響させません。
    """

    REQUEST_TIMEOUT = 10

    def __init__(
        self,
        webhook_url: Optional[str],
        app_url: str,
        session: Optional[requests.Session] = None
    ):
        self.webhook_url = webhook_url
        self.app_url = app_url
        # 未指定の場合はモジュール関数を使い、リクエストごとに接続する
        self.session = session or requests
        self.logger = get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def notify(self, recording: Recording, result: CallStatusResult) -> bool:
        """
        通話結果を通知

        connected 以外の通話、または Webhook URL 未設定の場合は送信しません。

        Returns:
            送信成功した場合True
        """
        if not self.enabled:
            self.logger.debug("slack_notification_skipped", reason="not_configured")
            return False

        if result.status != STATUS_CONNECTED:
            self.logger.debug(
                "slack_notification_skipped",
                call_id=recording.call_id,
                status=result.status
            )
            return False

        try:
            response = self.session.post(
                self.webhook_url,
                json={"text": build_message(recording, result, self.app_url)},
                timeout=self.REQUEST_TIMEOUT
            )
            response.raise_for_status()
        except requests.RequestException as e:
            self.logger.error(
                "slack_notification_failed",
                call_id=recording.call_id,
                error=str(e)
            )
            return False

        self.logger.info("slack_notification_sent", call_id=recording.call_id)
        return True

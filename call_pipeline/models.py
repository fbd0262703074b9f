"""
データモデルモジュール (Data Models Module)

Zoom Phone の Webhook、Pub/Sub プッシュメッセージ、
パイプラインの成果物を表すデータモデルを定義します。
"""

import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple


RECORDING_COMPLETED_EVENTS = ("recording.completed", "phone.recording_completed")
URL_VALIDATION_EVENT = "endpoint.url_validation"

STATUS_CONNECTED = "connected"
STATUS_RECEPTION = "reception"
STATUS_NO_CONVERSATION = "no_conversation"
CALL_STATUSES = (STATUS_CONNECTED, STATUS_RECEPTION, STATUS_NO_CONVERSATION)


class EnvelopeError(ValueError):
    """Webhook またはプッシュメッセージの形式が不正な場合の例外"""
    pass


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


@dataclass(frozen=True)
class Recording:
    """
    通話録音データモデル

    Zoom Phone の recording.completed イベントに含まれる録音 1 件分の情報です。
    パイプラインの処理単位になります。

    Attributes:
        recording_id: Zoom 録音 ID
        call_id: 通話 ID（call_log_id、無ければ call_id）
        user_id: Zoom ユーザー ID
        direction: 通話方向 (inbound / outbound)
        duration: 通話時間（秒、0 以上）
        download_url: 有効期限付きのダウンロード URL
        date_time: 通話日時 (ISO 8601)
        caller_number: 発信者電話番号
        caller_name: 発信者名
        callee_number: 着信者電話番号
        callee_name: 着信者名
    """
    recording_id: str
    call_id: str
    user_id: str = ""
    direction: str = ""
    duration: int = 0
    download_url: str = ""
    date_time: str = ""
    caller_number: str = ""
    caller_name: str = ""
    callee_number: str = ""
    callee_name: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> 'Recording':
        if not isinstance(data, dict):
            raise EnvelopeError("Invalid recording: each recording must be a JSON object")

        return cls(
            recording_id=_as_str(data.get("id")),
            call_id=_as_str(data.get("call_log_id") or data.get("call_id")),
            user_id=_as_str(data.get("user_id")),
            direction=_as_str(data.get("direction")),
            duration=max(0, _as_int(data.get("duration"))),
            download_url=_as_str(data.get("download_url")),
            date_time=_as_str(data.get("date_time")),
            caller_number=_as_str(data.get("caller_number")),
            caller_name=_as_str(data.get("caller_name")),
            callee_number=_as_str(data.get("callee_number")),
            callee_name=_as_str(data.get("callee_name")),
        )


@dataclass(frozen=True)
class WebhookEnvelope:
    """
    Zoom Webhook エンベロープ

    {event, payload: {account_id, object: {recordings: [...]}}} 形式の
    イベント本体です。受信後は変更されません。
    """
    event: str
    account_id: str = ""
    recordings: Tuple[Recording, ...] = ()

    @property
    def is_recording_completed(self) -> bool:
        return self.event in RECORDING_COMPLETED_EVENTS

    @classmethod
    def from_dict(cls, data: Any) -> 'WebhookEnvelope':
        """
        辞書からエンベロープを構築

        Raises:
            EnvelopeError: 構造が不正な場合
        """
        if not isinstance(data, dict):
            raise EnvelopeError("Invalid envelope: body must be a JSON object")

        event = data.get("event")
        if not isinstance(event, str) or not event:
            raise EnvelopeError("Invalid envelope: missing event type")

        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise EnvelopeError("Invalid envelope: payload must be a JSON object")

        obj = payload.get("object") or {}
        if not isinstance(obj, dict):
            raise EnvelopeError("Invalid envelope: payload.object must be a JSON object")

        raw_recordings = obj.get("recordings") or []
        if not isinstance(raw_recordings, list):
            raise EnvelopeError("Invalid envelope: recordings must be a list")

        return cls(
            event=event,
            account_id=_as_str(payload.get("account_id")),
            recordings=tuple(Recording.from_dict(r) for r in raw_recordings),
        )

    @classmethod
    def from_json(cls, raw: bytes) -> 'WebhookEnvelope':
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, ValueError) as e:
            raise EnvelopeError(f"Invalid envelope: body is not valid JSON ({e})") from e
        return cls.from_dict(data)


@dataclass(frozen=True)
class PushMessage:
    """
    Pub/Sub プッシュ配信メッセージ

    {message: {data: base64, messageId: string}} 形式で届きます。
    """
    message_id: str
    data: bytes

    @classmethod
    def from_push_body(cls, body: Any) -> 'PushMessage':
        """
        プッシュ配信のリクエストボディを解析

        Raises:
            EnvelopeError: 形式不正または base64 デコードに失敗した場合
        """
        if not isinstance(body, dict):
            raise EnvelopeError("Invalid message format: body must be a JSON object")

        message = body.get("message")
        if not isinstance(message, dict) or not message.get("data"):
            raise EnvelopeError("Invalid message format")

        encoded = message["data"]
        if not isinstance(encoded, str):
            raise EnvelopeError("Invalid message format: data must be a base64 string")

        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EnvelopeError(f"Invalid message format: data is not valid base64 ({e})") from e

        return cls(
            message_id=_as_str(message.get("messageId") or message.get("message_id")),
            data=data,
        )

    def envelope(self) -> WebhookEnvelope:
        return WebhookEnvelope.from_json(self.data)


@dataclass(frozen=True)
class AccessToken:
    """
    キャッシュされる Zoom アクセストークン

    Attributes:
        token: Bearer トークン
        expires_at: 失効時刻（UNIX 秒）
    """
    token: str
    expires_at: float

    def is_usable(self, now: float, margin: float) -> bool:
        """now + margin が失効時刻より前の場合のみ使用可能"""
        return now + margin < self.expires_at


@dataclass(frozen=True)
class CallStatusResult:
    """
    通話ステータス判定結果

    Attributes:
        status: connected / reception / no_conversation
        confidence: 信頼度 (0.0〜1.0)
        reason: 判定理由
    """
    status: str
    confidence: float
    reason: str


@dataclass(frozen=True)
class StoredMedia:
    """
    Cloud Storage に保存された音声ファイル

    Attributes:
        path: バケット内のオブジェクトパス (audio/<call_id>.<ext>)
        size_bytes: ファイルサイズ（バイト）
        estimated_duration: ファイルサイズから推定した再生時間（秒、概算）
    """
    path: str
    size_bytes: int
    estimated_duration: int


@dataclass(frozen=True)
class TranscriptionSegment:
    id: int
    start: float
    end: float
    text: str


@dataclass(frozen=True)
class TranscriptionResult:
    """Whisper による文字起こし結果"""
    text: str
    transcript_path: str
    duration: Optional[float] = None
    language: Optional[str] = None
    segments: List[TranscriptionSegment] = field(default_factory=list)

    def segments_as_dicts(self) -> List[Dict[str, Any]]:
        return [
            {"id": s.id, "start": s.start, "end": s.end, "text": s.text}
            for s in self.segments
        ]


@dataclass
class CallRecord:
    """
    永続化された通話データモデル

    録音のメタデータを call_id 単位で 1 行として保持します。
    """
    call_id: str
    recording_id: str
    user_id: str
    direction: str
    duration: int
    caller_number: str
    callee_number: str
    call_time: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class PipelineFailure:
    """
    パイプライン失敗レコード

    失敗フック（デッドレター）に渡される単位です。
    """
    message_id: str
    call_id: str
    stage: str
    error: str
    occurred_at: datetime

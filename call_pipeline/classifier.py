"""
通話ステータス判定モジュール (Call Status Classifier Module)

文字起こしと通話時間から、通話を connected / reception / no_conversation の
3 つに分類します。ルールで判定できるものはモデルを呼ばずに返し、
モデル呼び出しに失敗した場合は通話時間による推定にフォールバックします。
"""

import json
from typing import Any, Optional

import openai

from .log import get_logger
from .models import (
    CALL_STATUSES,
    STATUS_CONNECTED,
    STATUS_NO_CONVERSATION,
    STATUS_RECEPTION,
    CallStatusResult,
)

MIN_DURATION_SECONDS = 10
MIN_TRANSCRIPT_LENGTH = 20
RECEPTION_MAX_DURATION_SECONDS = 60
FALLBACK_CONNECTED_DURATION_SECONDS = 60

RECEPTION_KEYWORDS = ("受付", "受け付け", "担当者", "代わります", "繋ぎます", "お繋ぎ")

DEFAULT_CONFIDENCE = 0.5
DEFAULT_REASON = "AI判定"
FALLBACK_CONFIDENCE = 0.6
FALLBACK_REASON = "AI判定失敗。通話時間に基づく推定。"

SYSTEM_PROMPT = """あなたはインサイドセールスの通話を3分類する専門家です。文字起こしのみを根拠に判定し、JSONオブジェクト1個のみを出力します。

# 3分類の定義
- "connected": 担当者本人と要件の会話をした（アポ獲得・断られた両方含む）
- "reception": 受付で終了（担当者不在・取次不可）
- "no_conversation": 会話が成立しなかった

# 重要な前提
- 文字起こしの話者名は不正確な場合がある（話者名だけで判定しない）
- 一人称発言（「私が」「当社では」「検討している」）があれば担当者本人
- 受付担当者は決して一人称で実務判断を語らない

# 判定ステップ
1. 一人称の実務発言があるか？ → YES: connected（断られていてもconnected）
2. 本人確認＋要件の会話があるか？ → YES: connected
3. 不在・外出シグナル（「不在です」「外出中」「折返します」）のみで終了したか？ → YES: reception
4. 留守電・即切れ・無言か？ → YES: no_conversation

# 出力形式（厳守）
{"status": "connected|reception|no_conversation", "confidence": 0.0-1.0, "reason": "判定理由", "evidence": ["根拠1", "根拠2"]}

# Confidence目安
- connected: 一人称発言複数=0.85-0.95、一人称1つ=0.70-0.85、本人確認のみ=0.60-0.75
- reception: 明確な不在=0.90-0.95、曖昧=0.60-0.80
- no_conversation: 留守電・即切れ=0.95-1.0"""


class ClassificationError(Exception):
    """モデル応答が解釈できない場合の例外"""
    pass


def _clamp_confidence(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, confidence))


def parse_model_response(content: Optional[str]) -> CallStatusResult:
    """
    モデルの JSON 応答を CallStatusResult に変換

    欠落したフィールドは既定値で補います。

    Raises:
        ClassificationError: JSON オブジェクトとして解釈できない場合
    """
    try:
        data = json.loads(content or "{}")
    except ValueError as e:
        raise ClassificationError(f"Model response is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ClassificationError("Model response must be a JSON object")

    status = data.get("status")
    if status not in CALL_STATUSES:
        status = STATUS_NO_CONVERSATION

    return CallStatusResult(
        status=status,
        confidence=_clamp_confidence(data.get("confidence")),
        reason=str(data.get("reason") or DEFAULT_REASON),
    )


def fallback_result(duration_seconds: float) -> CallStatusResult:
    """モデル判定に失敗した場合の通話時間による推定"""
    status = (
        STATUS_CONNECTED
        if duration_seconds >= FALLBACK_CONNECTED_DURATION_SECONDS
        else STATUS_NO_CONVERSATION
    )
    return CallStatusResult(
        status=status,
        confidence=FALLBACK_CONFIDENCE,
        reason=FALLBACK_REASON,
    )


class CallStatusClassifier:
    """
    通話ステータス判定クラス

    判定順序:
    1. 通話時間 10 秒未満または文字起こし 20 文字未満 → no_conversation (1.0)
    2. 受付キーワードを含み通話時間 60 秒未満 → reception (0.9)
    3. 言語モデルで判定
    4. モデル失敗時は通話時間で推定 (0.6)
    """

    REQUEST_TIMEOUT = 120

    def __init__(
        self,
        openai_client: Optional[openai.OpenAI] = None,
        openai_api_key: Optional[str] = None,
        model: str = "gpt-5-nano"
    ):
        self._client = openai_client
        self.openai_api_key = openai_api_key
        self.model = model
        self.logger = get_logger(__name__)

    @property
    def client(self) -> openai.OpenAI:
        if self._client is None:
            self._client = openai.OpenAI(
                api_key=self.openai_api_key,
                timeout=self.REQUEST_TIMEOUT
            )
        return self._client

    def classify(self, transcript: str, duration_seconds: float) -> CallStatusResult:
        """
        通話ステータスを判定

        この処理は例外を送出しません。

        Args:
            transcript: 文字起こしテキスト
            duration_seconds: 通話時間（秒）

        Returns:
            CallStatusResult
        """
        transcript = transcript or ""

        if duration_seconds < MIN_DURATION_SECONDS or len(transcript) < MIN_TRANSCRIPT_LENGTH:
            return CallStatusResult(
                status=STATUS_NO_CONVERSATION,
                confidence=1.0,
                reason="通話時間が短すぎる、または文字起こしが短すぎる",
            )

        has_reception_keyword = any(kw in transcript for kw in RECEPTION_KEYWORDS)
        if has_reception_keyword and duration_seconds < RECEPTION_MAX_DURATION_SECONDS:
            return CallStatusResult(
                status=STATUS_RECEPTION,
                confidence=0.9,
                reason="受付キーワードが検出され、短い通話時間",
            )

        try:
            result = self._classify_with_model(transcript, duration_seconds)
        except Exception as e:
            # 判定失敗で録音の処理全体を失敗させない
            self.logger.warning(
                "call_status_model_failed",
                model=self.model,
                error_type=type(e).__name__,
                error=str(e)
            )
            return fallback_result(duration_seconds)

        self.logger.info(
            "call_status_detected",
            status=result.status,
            confidence=result.confidence
        )
        return result

    def _classify_with_model(self, transcript: str, duration_seconds: float) -> CallStatusResult:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        "以下の通話内容を分析してください。\n\n"
                        f"通話時間: {duration_seconds}秒\n"
                        f"文字起こし:\n{transcript}"
                    ),
                },
            ],
        )
        content = response.choices[0].message.content if response.choices else None
        return parse_model_response(content)

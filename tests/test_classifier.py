"""
通話ステータス判定モジュールのテスト
"""

import json
from unittest.mock import MagicMock

import openai
import pytest

from call_pipeline.classifier import (
    FALLBACK_CONFIDENCE,
    FALLBACK_REASON,
    CallStatusClassifier,
    ClassificationError,
    fallback_result,
    parse_model_response,
)

LONG_TRANSCRIPT = "お世話になっております。私が担当の佐藤です。来月の導入について検討しています。"
RECEPTION_TRANSCRIPT = "はい、株式会社サンプルです。ただいま担当者に代わりますので少々お待ちください。"


def _model_client(content: str) -> MagicMock:
    client = MagicMock()
    message = MagicMock()
    message.content = content
    choice = MagicMock()
    choice.message = message
    client.chat.completions.create.return_value.choices = [choice]
    return client


class TestRuleBasedClassification:
    """ルールによる判定のテスト"""

    def test_empty_transcript_short_call(self):
        """空の文字起こしと 5 秒の通話は no_conversation (1.0)"""
        client = MagicMock()
        classifier = CallStatusClassifier(openai_client=client)

        result = classifier.classify("", 5)

        assert result.status == "no_conversation"
        assert result.confidence == 1.0
        client.chat.completions.create.assert_not_called()

    def test_short_transcript_long_call(self):
        """通話が長くても文字起こしが短ければ no_conversation"""
        classifier = CallStatusClassifier(openai_client=MagicMock())

        result = classifier.classify("もしもし", 300)

        assert result.status == "no_conversation"
        assert result.confidence == 1.0

    def test_none_transcript_treated_as_empty(self):
        classifier = CallStatusClassifier(openai_client=MagicMock())

        assert classifier.classify(None, 120).status == "no_conversation"

    def test_reception_keyword_short_call(self):
        """受付キーワードと 30 秒の通話は reception (0.9)"""
        client = MagicMock()
        classifier = CallStatusClassifier(openai_client=client)

        result = classifier.classify(RECEPTION_TRANSCRIPT, 30)

        assert result.status == "reception"
        assert result.confidence == 0.9
        client.chat.completions.create.assert_not_called()

    def test_reception_keyword_long_call_goes_to_model(self):
        """60 秒以上の通話はキーワードがあってもモデルで判定する"""
        client = _model_client(json.dumps({
            "status": "connected", "confidence": 0.8, "reason": "本人と会話"
        }))
        classifier = CallStatusClassifier(openai_client=client)

        result = classifier.classify(RECEPTION_TRANSCRIPT, 60)

        assert result.status == "connected"
        client.chat.completions.create.assert_called_once()


class TestModelClassification:
    """モデルによる判定のテスト"""

    def test_model_result_is_returned(self):
        client = _model_client(json.dumps({
            "status": "connected", "confidence": 0.9, "reason": "一人称発言あり",
            "evidence": ["私が担当"]
        }))
        classifier = CallStatusClassifier(openai_client=client, model="test-model")

        result = classifier.classify(LONG_TRANSCRIPT, 120)

        assert result.status == "connected"
        assert result.confidence == 0.9
        assert result.reason == "一人称発言あり"

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["messages"][0]["role"] == "system"
        assert LONG_TRANSCRIPT in kwargs["messages"][1]["content"]

    def test_model_failure_long_call_falls_back_to_connected(self):
        """異常系: 120 秒の通話でモデルが失敗したら connected (0.6)"""
        client = MagicMock()
        client.chat.completions.create.side_effect = openai.OpenAIError("service unavailable")
        classifier = CallStatusClassifier(openai_client=client)

        result = classifier.classify(LONG_TRANSCRIPT, 120)

        assert result.status == "connected"
        assert result.confidence == FALLBACK_CONFIDENCE
        assert result.reason == FALLBACK_REASON

    def test_model_failure_short_call_falls_back_to_no_conversation(self):
        """異常系: 20 秒の通話でモデルが失敗したら no_conversation (0.6)"""
        client = MagicMock()
        client.chat.completions.create.side_effect = RuntimeError("boom")
        classifier = CallStatusClassifier(openai_client=client)

        result = classifier.classify(LONG_TRANSCRIPT, 20)

        assert result.status == "no_conversation"
        assert result.confidence == FALLBACK_CONFIDENCE

    def test_malformed_model_output_falls_back(self):
        """異常系: JSON でない応答はフォールバック"""
        classifier = CallStatusClassifier(openai_client=_model_client("connected です"))

        result = classifier.classify(LONG_TRANSCRIPT, 90)

        assert result.status == "connected"
        assert result.confidence == FALLBACK_CONFIDENCE


class TestParseModelResponse:
    """parse_model_response() のテスト"""

    def test_missing_fields_use_defaults(self):
        result = parse_model_response(json.dumps({"status": "reception"}))

        assert result.status == "reception"
        assert result.confidence == 0.5
        assert result.reason == "AI判定"

    def test_unknown_status_becomes_no_conversation(self):
        result = parse_model_response(json.dumps({"status": "voicemail", "confidence": 0.9}))

        assert result.status == "no_conversation"

    @pytest.mark.parametrize("raw,expected", [
        (1.7, 1.0),
        (-0.3, 0.0),
        ("0.75", 0.75),
        ("high", 0.5),
        (None, 0.5),
        (True, 0.5),
    ])
    def test_confidence_is_clamped(self, raw, expected):
        result = parse_model_response(json.dumps({"status": "connected", "confidence": raw}))

        assert result.confidence == expected

    def test_empty_content_uses_defaults(self):
        result = parse_model_response(None)

        assert result.status == "no_conversation"
        assert result.confidence == 0.5

    @pytest.mark.parametrize("content", ["not json", "[1, 2]", '"connected"'])
    def test_invalid_content_raises(self, content):
        with pytest.raises(ClassificationError):
            parse_model_response(content)


class TestFallbackResult:
    """fallback_result() のテスト"""

    @pytest.mark.parametrize("duration,status", [
        (0, "no_conversation"),
        (59, "no_conversation"),
        (60, "connected"),
        (600, "connected"),
    ])
    def test_duration_threshold(self, duration, status):
        assert fallback_result(duration).status == status

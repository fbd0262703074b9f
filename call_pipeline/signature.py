"""
Webhook 署名検証モジュール (Signature Verification Module)

Zoom Webhook の HMAC-SHA256 署名 (x-zm-signature) の検証と、
エンドポイント URL 検証チャレンジへの応答を生成します。
"""

import hashlib
import hmac
from typing import Any, Dict, Optional

from .config import ConfigurationError
from .log import get_logger

SIGNATURE_HEADER = "x-zm-signature"
TIMESTAMP_HEADER = "x-zm-request-timestamp"
SIGNATURE_VERSION = "v0"

logger = get_logger(__name__)


def _require_secret(secret: Optional[str]) -> bytes:
    if not secret:
        # 検証失敗とは区別してログ出力する
        logger.error(
            "webhook_secret_missing",
            setting="ZOOM_WEBHOOK_SECRET_TOKEN"
        )
        raise ConfigurationError("ZOOM_WEBHOOK_SECRET_TOKEN が設定されていません")
    return secret.encode("utf-8")


def compute_signature(raw_body: bytes, timestamp: str, secret: str) -> str:
    """
    期待される署名を計算

    "v0:" + timestamp + ":" + body に対する HMAC-SHA256 を
    "v0=<hex>" 形式で返します。
    """
    message = f"{SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + raw_body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_VERSION}={digest}"


def verify_signature(
    raw_body: bytes,
    signature: Any,
    timestamp: Any,
    secret: Optional[str]
) -> bool:
    """
    Webhook 署名を検証

    不正な入力に対しては例外を送出せず False を返します。

    Args:
        raw_body: 受信したリクエストボディ（生バイト列）
        signature: x-zm-signature ヘッダー値
        timestamp: x-zm-request-timestamp ヘッダー値
        secret: Webhook シークレットトークン

    Returns:
        署名が一致する場合 True

    Raises:
        ConfigurationError: シークレットが設定されていない場合
    """
    _require_secret(secret)

    if not isinstance(raw_body, (bytes, bytearray)):
        return False
    if not isinstance(signature, str) or not isinstance(timestamp, str):
        return False
    if not signature or not timestamp:
        return False

    try:
        provided = signature.encode("ascii")
    except UnicodeEncodeError:
        return False

    expected = compute_signature(bytes(raw_body), timestamp, secret).encode("ascii")

    # 定数時間比較
    return hmac.compare_digest(provided, expected)


def build_validation_response(plain_token: str, secret: Optional[str]) -> Dict[str, str]:
    """
    endpoint.url_validation チャレンジへの応答を生成

    Returns:
        {"plainToken": ..., "encryptedToken": hex(HMAC-SHA256(secret, plainToken))}

    Raises:
        ConfigurationError: シークレットが設定されていない場合
    """
    key = _require_secret(secret)
    encrypted_token = hmac.new(key, plain_token.encode("utf-8"), hashlib.sha256).hexdigest()
    return {
        "plainToken": plain_token,
        "encryptedToken": encrypted_token,
    }

"""
Zoom Webhook プロキシ (Ingress Application)

Zoom Phone の Webhook を受信して署名を検証し、
本体をそのまま Pub/Sub トピックへ発行します。
重い処理は行わず、発行の確認後すぐに応答します。
"""

from typing import Optional

from flask import Flask, jsonify, request

from .config import SERVICE_PROXY, Config
from .log import configure_structlog, get_logger
from .models import URL_VALIDATION_EVENT
from .publisher import PubSubPublisher
from .signature import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    build_validation_response,
    verify_signature,
)
from .web import (
    SignatureError,
    WebhookValidationError,
    parse_json_object,
    register_error_handlers,
    register_health_check,
)

SERVICE_NAME = "zoom-phone-proxy"


def create_proxy_app(
    config: Optional[Config] = None,
    publisher: Optional[PubSubPublisher] = None
) -> Flask:
    """
    プロキシ用 Flask アプリケーションを作成

    Args:
        config: アプリケーション設定（None の場合は環境変数から読み込み）
        publisher: Pub/Sub 発行クライアント（テスト時に注入可能）

    Returns:
        設定済みの Flask アプリケーション
    """
    app = Flask(__name__)

    if config is None:
        config = Config.from_env(SERVICE_PROXY)

    app.config["PIPELINE_CONFIG"] = config

    configure_structlog(config.log_level)
    logger = get_logger(__name__)

    if publisher is None:
        publisher = PubSubPublisher(config.gcp_project_id, config.pubsub_topic_name)
    app.config["PUBLISHER"] = publisher

    register_error_handlers(app, logger)
    register_health_check(app, SERVICE_NAME, logger)

    @app.route("/webhook/zoom", methods=["POST"])
    def zoom_webhook():
        """
        Zoom Webhook エンドポイント

        1. endpoint.url_validation の場合はチャレンジに応答して終了（発行しない）
        2. 署名ヘッダーがあれば検証し、不一致なら 401
        3. 署名ヘッダーが無い場合は警告を出して受け付ける
        4. 本体を Pub/Sub へ発行し、確認後に 200 を返す
        """
        raw_body = request.get_data(cache=True)
        data = parse_json_object(raw_body)
        event = data.get("event")

        logger.info("zoom_webhook_received", event=event)

        # URL 検証チャレンジは署名検証より先に判定する
        if event == URL_VALIDATION_EVENT:
            payload = data.get("payload")
            plain_token = payload.get("plainToken") if isinstance(payload, dict) else None

            if not plain_token or not isinstance(plain_token, str):
                raise WebhookValidationError(
                    message="No plainToken provided",
                    error_type="missing_plain_token"
                )

            response_body = build_validation_response(
                plain_token, config.zoom_webhook_secret_token
            )
            logger.info("url_validation_answered")
            return jsonify(response_body), 200

        signature = request.headers.get(SIGNATURE_HEADER)
        timestamp = request.headers.get(TIMESTAMP_HEADER)

        if signature and timestamp:
            if not verify_signature(raw_body, signature, timestamp, config.zoom_webhook_secret_token):
                logger.warning("signature_verification_failed", event=event)
                raise SignatureError("Invalid webhook signature")
            logger.debug("signature_verified", event=event)
        else:
            logger.warning(
                "signature_headers_missing",
                event=event,
                has_signature=bool(signature),
                has_timestamp=bool(timestamp)
            )

        message_id = publisher.publish(raw_body)

        logger.info(
            "zoom_webhook_published",
            event=event,
            topic=config.pubsub_topic_name,
            message_id=message_id
        )
        return jsonify({"status": "success"}), 200

    logger.info("application_ready", service=SERVICE_NAME, endpoints=["/health", "/webhook/zoom"])

    return app

"""
通話処理プロセッサ (Consumer Application)

Pub/Sub のプッシュ配信を受け取り、受信を即座に確認したうえで
パイプラインをバックグラウンドで実行します。
"""

from typing import Optional

from flask import Flask, jsonify, request

from .classifier import CallStatusClassifier
from .config import SERVICE_PROCESSOR, Config
from .log import configure_structlog, get_logger
from .media_fetcher import MediaFetcher
from .models import EnvelopeError, PushMessage
from .notifier import SlackNotifier
from .processor import CallProcessor, PipelineDispatcher
from .storage import SQLiteStorage
from .transcription import Transcriber
from .web import (
    WebhookValidationError,
    parse_json_object,
    register_error_handlers,
    register_health_check,
)
from .zoom_auth import ZoomTokenCache

SERVICE_NAME = "zoom-phone-processor"


def build_processor(config: Config) -> CallProcessor:
    """設定から CallProcessor と依存コンポーネントを組み立てる"""
    storage = SQLiteStorage(config.database_path)
    return CallProcessor(
        storage=storage,
        token_cache=ZoomTokenCache(
            account_id=config.zoom_account_id,
            client_id=config.zoom_client_id,
            client_secret=config.zoom_client_secret
        ),
        media_fetcher=MediaFetcher(
            bucket_name=config.gcs_bucket_name,
            project_id=config.gcp_project_id
        ),
        transcriber=Transcriber(
            bucket_name=config.gcs_bucket_name,
            openai_api_key=config.openai_api_key,
            project_id=config.gcp_project_id
        ),
        classifier=CallStatusClassifier(
            openai_api_key=config.openai_api_key,
            model=config.classifier_model
        ),
        notifier=SlackNotifier(config.slack_webhook_url, config.app_url),
    )


def create_processor_app(
    config: Optional[Config] = None,
    dispatcher: Optional[PipelineDispatcher] = None
) -> Flask:
    """
    プロセッサ用 Flask アプリケーションを作成

    Args:
        config: アプリケーション設定（None の場合は環境変数から読み込み）
        dispatcher: パイプラインディスパッチャー（テスト時に注入可能）

    Returns:
        設定済みの Flask アプリケーション
    """
    app = Flask(__name__)

    if config is None:
        config = Config.from_env(SERVICE_PROCESSOR)

    app.config["PIPELINE_CONFIG"] = config

    configure_structlog(config.log_level)
    logger = get_logger(__name__)

    if dispatcher is None:
        dispatcher = PipelineDispatcher(build_processor(config), max_workers=config.pipeline_workers)
    app.config["DISPATCHER"] = dispatcher

    register_error_handlers(app, logger)
    register_health_check(app, SERVICE_NAME, logger)

    @app.route("/webhook", methods=["POST"])
    def pubsub_push():
        """
        Pub/Sub プッシュエンドポイント

        Request Body (JSON):
            - message.data: base64 エンコードされた Webhook 本体
            - message.messageId: メッセージ ID

        Returns:
            200 {"status": "received"}（処理はバックグラウンドで継続）
        """
        body = parse_json_object(request.get_data(cache=True))

        try:
            message = PushMessage.from_push_body(body)
            envelope = message.envelope()
        except EnvelopeError as e:
            raise WebhookValidationError(message=str(e), error_type="invalid_message")

        logger.info(
            "pubsub_message_received",
            message_id=message.message_id,
            event=envelope.event,
            recordings=len(envelope.recordings)
        )

        dispatcher.dispatch(envelope, message.message_id)

        return jsonify({"status": "received"}), 200

    logger.info("application_ready", service=SERVICE_NAME, endpoints=["/health", "/webhook"])

    return app

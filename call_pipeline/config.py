"""
設定管理モジュール (Configuration Management Module)

環境変数からプロキシ／プロセッサ両サービスの設定を読み込み、検証を行います。
"""

from dataclasses import dataclass
from typing import List, Optional
import os


class ConfigurationError(Exception):
    """設定エラー例外クラス"""
    pass


SERVICE_PROXY = "proxy"
SERVICE_PROCESSOR = "processor"
VALID_SERVICES = (SERVICE_PROXY, SERVICE_PROCESSOR)

DEFAULT_TOPIC_NAME = "zoom-webhook-topic"
DEFAULT_BUCKET_NAME = "zoom-phone-feedback-audio"
DEFAULT_DATABASE_PATH = "calls.db"
DEFAULT_CLASSIFIER_MODEL = "gpt-5-nano"
DEFAULT_PIPELINE_WORKERS = 4
DEFAULT_APP_URL = "http://localhost:7000"
DEFAULT_LOG_LEVEL = "INFO"


@dataclass
class Config:
    """
    アプリケーション設定

    プロキシとプロセッサは同じ設定クラスを共有し、
    サービスごとに必須項目だけを検証します。
    """
    # Zoom Webhook 設定 (proxy)
    zoom_webhook_secret_token: Optional[str] = None

    # Zoom Server-to-Server OAuth 設定 (processor)
    zoom_account_id: Optional[str] = None
    zoom_client_id: Optional[str] = None
    zoom_client_secret: Optional[str] = None

    # Google Cloud 設定
    gcp_project_id: Optional[str] = None
    pubsub_topic_name: str = DEFAULT_TOPIC_NAME
    gcs_bucket_name: str = DEFAULT_BUCKET_NAME

    # AI 設定
    openai_api_key: Optional[str] = None
    classifier_model: str = DEFAULT_CLASSIFIER_MODEL

    # パイプライン設定
    database_path: str = DEFAULT_DATABASE_PATH
    pipeline_workers: int = DEFAULT_PIPELINE_WORKERS

    # 通知設定（オプション）
    slack_webhook_url: Optional[str] = None
    app_url: str = DEFAULT_APP_URL

    # ロギング設定
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls, service: str = SERVICE_PROCESSOR) -> 'Config':
        """
        環境変数から設定を読み込む

        必須の環境変数 (proxy):
            - ZOOM_WEBHOOK_SECRET_TOKEN: Webhook 署名用シークレット
            - GCP_PROJECT_ID: Google Cloud プロジェクト ID

        必須の環境変数 (processor):
            - ZOOM_ACCOUNT_ID / ZOOM_CLIENT_ID / ZOOM_CLIENT_SECRET: Zoom OAuth 認証情報
            - GCP_PROJECT_ID: Google Cloud プロジェクト ID
            - OPENAI_API_KEY: OpenAI API キー

        オプションの環境変数:
            - PUBSUB_TOPIC_NAME (デフォルト: zoom-webhook-topic)
            - GCS_BUCKET_NAME (デフォルト: zoom-phone-feedback-audio)
            - DATABASE_PATH (デフォルト: calls.db)
            - CLASSIFIER_MODEL (デフォルト: gpt-5-nano)
            - PIPELINE_WORKERS (デフォルト: 4)
            - SLACK_WEBHOOK_URL, APP_URL
            - LOG_LEVEL (デフォルト: INFO)

        Args:
            service: 検証対象のサービス名 ("proxy" または "processor")

        Returns:
            Config: 設定オブジェクト

        Raises:
            ConfigurationError: 必須設定が欠落している場合
        """
        workers_raw = os.environ.get("PIPELINE_WORKERS", str(DEFAULT_PIPELINE_WORKERS))
        try:
            pipeline_workers = int(workers_raw)
        except ValueError:
            raise ConfigurationError(
                f"PIPELINE_WORKERS は整数である必要があります: {workers_raw}"
            )

        config = cls(
            zoom_webhook_secret_token=os.environ.get("ZOOM_WEBHOOK_SECRET_TOKEN") or None,
            zoom_account_id=os.environ.get("ZOOM_ACCOUNT_ID") or None,
            zoom_client_id=os.environ.get("ZOOM_CLIENT_ID") or None,
            zoom_client_secret=os.environ.get("ZOOM_CLIENT_SECRET") or None,
            gcp_project_id=os.environ.get("GCP_PROJECT_ID") or None,
            pubsub_topic_name=os.environ.get("PUBSUB_TOPIC_NAME", DEFAULT_TOPIC_NAME),
            gcs_bucket_name=os.environ.get("GCS_BUCKET_NAME", DEFAULT_BUCKET_NAME),
            openai_api_key=os.environ.get("OPENAI_API_KEY") or None,
            classifier_model=os.environ.get("CLASSIFIER_MODEL", DEFAULT_CLASSIFIER_MODEL),
            database_path=os.environ.get("DATABASE_PATH", DEFAULT_DATABASE_PATH),
            pipeline_workers=pipeline_workers,
            slack_webhook_url=os.environ.get("SLACK_WEBHOOK_URL") or None,
            app_url=os.environ.get("APP_URL", DEFAULT_APP_URL),
            log_level=os.environ.get("LOG_LEVEL", DEFAULT_LOG_LEVEL),
        )

        # バリデーション実行
        config.validate(service)

        return config

    def missing_fields(self, service: str) -> List[str]:
        """指定サービスで欠落している必須環境変数名の一覧を返す"""
        missing = []

        if not self.gcp_project_id:
            missing.append("GCP_PROJECT_ID")

        if service == SERVICE_PROXY:
            if not self.zoom_webhook_secret_token:
                missing.append("ZOOM_WEBHOOK_SECRET_TOKEN")
        else:
            if not self.zoom_account_id:
                missing.append("ZOOM_ACCOUNT_ID")
            if not self.zoom_client_id:
                missing.append("ZOOM_CLIENT_ID")
            if not self.zoom_client_secret:
                missing.append("ZOOM_CLIENT_SECRET")
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")

        return missing

    def validate(self, service: str = SERVICE_PROCESSOR) -> None:
        """
        設定の妥当性を検証

        必須設定が欠落している場合、明確なエラーメッセージで
        ConfigurationError を発生させます。

        Raises:
            ConfigurationError: 必須設定が欠落または無効な場合
        """
        if service not in VALID_SERVICES:
            raise ConfigurationError(
                f"サービス名は {list(VALID_SERVICES)} のいずれかである必要があります: {service}"
            )

        missing_fields = self.missing_fields(service)
        if missing_fields:
            error_message = (
                f"必須の設定が欠落しています。以下の環境変数を設定してください: "
                f"{', '.join(missing_fields)}"
            )
            raise ConfigurationError(error_message)

        if self.pipeline_workers <= 0:
            raise ConfigurationError(
                f"PIPELINE_WORKERS は正の整数である必要があります: {self.pipeline_workers}"
            )

        if not self.pubsub_topic_name:
            raise ConfigurationError("PUBSUB_TOPIC_NAME が空です")

        if not self.gcs_bucket_name:
            raise ConfigurationError("GCS_BUCKET_NAME が空です")

        # ログレベルの検証
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigurationError(
                f"LOG_LEVEL は {valid_log_levels} のいずれかである必要があります: {self.log_level}"
            )

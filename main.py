#!/usr/bin/env python3
"""
Zoom Phone Call Pipeline アプリケーションエントリーポイント

設定の読み込み、検証、コンポーネントの初期化を行い、
指定されたサービス（proxy / processor）の Flask サーバーを起動します。

Usage:
    python main.py proxy
    python main.py processor

    引数を省略した場合は環境変数 SERVICE（デフォルト: processor）を使用します。

Environment Variables (Required, proxy):
    - ZOOM_WEBHOOK_SECRET_TOKEN: Zoom Webhook シークレットトークン
    - GCP_PROJECT_ID: Google Cloud プロジェクト ID

Environment Variables (Required, processor):
    - ZOOM_ACCOUNT_ID / ZOOM_CLIENT_ID / ZOOM_CLIENT_SECRET: Zoom OAuth 認証情報
    - GCP_PROJECT_ID: Google Cloud プロジェクト ID
    - OPENAI_API_KEY: OpenAI API キー

Environment Variables (Optional):
    - PUBSUB_TOPIC_NAME: Pub/Sub トピック名 (デフォルト: zoom-webhook-topic)
    - GCS_BUCKET_NAME: 音声保存バケット (デフォルト: zoom-phone-feedback-audio)
    - DATABASE_PATH: SQLite ファイル (デフォルト: calls.db)
    - PIPELINE_WORKERS: パイプラインのワーカー数 (デフォルト: 4)
    - SLACK_WEBHOOK_URL / APP_URL: Slack 通知設定
    - LOG_LEVEL: ログレベル (デフォルト: INFO)
    - HOST: サーバーホスト (デフォルト: 0.0.0.0)
    - PORT: サーバーポート (デフォルト: 8080)
    - DEBUG: デバッグモード (デフォルト: False)
"""

import os
import sys

from dotenv import load_dotenv

from call_pipeline.config import VALID_SERVICES, SERVICE_PROXY, Config, ConfigurationError


def main(argv=None) -> int:
    """
    アプリケーションのメインエントリーポイント

    Returns:
        int: 終了コード (0: 正常終了, 1: エラー終了)
    """
    argv = sys.argv[1:] if argv is None else argv
    load_dotenv()

    service = argv[0] if argv else os.environ.get("SERVICE", "processor")
    if service not in VALID_SERVICES:
        print(f"[エラー] 不明なサービスです: {service}", file=sys.stderr)
        print(f"  使用方法: python main.py [{'|'.join(VALID_SERVICES)}]", file=sys.stderr)
        return 1

    try:
        # 必須設定が欠落している場合はここで起動を中止する
        print(f"設定を読み込んでいます... (service={service})")
        config = Config.from_env(service)

        print("アプリケーションを初期化しています...")
        if service == SERVICE_PROXY:
            from call_pipeline.proxy_app import create_proxy_app
            app = create_proxy_app(config)
        else:
            from call_pipeline.processor_app import create_processor_app
            app = create_processor_app(config)

        host = os.environ.get("HOST", "0.0.0.0")
        port = int(os.environ.get("PORT", "8080"))
        debug = os.environ.get("DEBUG", "").lower() in ("true", "1", "yes")

        print(f"サーバーを起動しています... (host={host}, port={port}, debug={debug})")
        if service == SERVICE_PROXY:
            print(f"Topic: {config.pubsub_topic_name}")
        print("サーバーを停止するには Ctrl+C を押してください。")

        app.run(host=host, port=port, debug=debug, threaded=True)

        return 0

    except ConfigurationError as e:
        print(f"\n[エラー] 設定エラーが発生しました:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        print("\n必要な環境変数を設定してから再度実行してください。", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("\nサーバーを停止しました。")
        return 0


if __name__ == "__main__":
    sys.exit(main())

"""
HTTP 共通モジュール (Web Common Module)

プロキシとプロセッサの Flask アプリケーションが共有する
例外クラス、エラーレスポンス、エラーハンドラーを提供します。
"""

import json
import traceback
from typing import Any, Dict, Optional, Tuple

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from .config import ConfigurationError
from .publisher import PublishError


class WebhookValidationError(Exception):
    """
    Webhook 検証エラー

    不正な Webhook リクエストを検出した場合に発生します (400)。

    Attributes:
        message: エラーメッセージ
        error_type: エラーの種類
    """

    def __init__(self, message: str, error_type: str = "validation_error"):
        super().__init__(message)
        self.message = message
        self.error_type = error_type


class SignatureError(Exception):
    """Webhook 署名の検証に失敗した場合のエラー (401)"""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)
        self.message = message


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None
) -> Tuple[Response, int]:
    """
    エラーレスポンスを作成

    Returns:
        (JSON レスポンス, ステータスコード) のタプル
    """
    response_body = {
        "error": error_type,
        "message": message,
        "status_code": status_code
    }
    if details:
        response_body["details"] = details

    return jsonify(response_body), status_code


def parse_json_object(raw: bytes) -> Dict[str, Any]:
    """
    リクエストボディを JSON オブジェクトとして解析

    Raises:
        WebhookValidationError: JSON でない、またはオブジェクトでない場合
    """
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, ValueError):
        raise WebhookValidationError(
            message="Invalid JSON: request body is malformed",
            error_type="invalid_json"
        )

    if not isinstance(data, dict):
        raise WebhookValidationError(
            message="Invalid JSON: request body must be a JSON object",
            error_type="invalid_json"
        )

    return data


def register_health_check(app: Flask, service_name: str, logger) -> None:
    """GET /health を登録"""

    @app.route("/health", methods=["GET"])
    def health_check():
        logger.debug("health_check_requested")
        return jsonify({"status": "healthy", "service": service_name}), 200


def register_error_handlers(app: Flask, logger) -> None:
    """
    エラーハンドラーを登録

    どのエラーも {"error", "message", "status_code"} 形式の JSON で応答し、
    500 応答には内部情報を含めません。
    """

    @app.errorhandler(400)
    def handle_bad_request(error):
        logger.warning(
            "bad_request_error",
            error_message=str(error),
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type="bad_request",
            message=str(error.description) if hasattr(error, 'description') else "Bad Request",
            status_code=400
        )

    @app.errorhandler(404)
    def handle_not_found(error):
        return create_error_response(
            error_type="not_found",
            message="Not Found",
            status_code=404
        )

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        logger.warning(
            "method_not_allowed_error",
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type="method_not_allowed",
            message="Method Not Allowed",
            status_code=405
        )

    @app.errorhandler(WebhookValidationError)
    def handle_webhook_validation_error(error):
        logger.error(
            "webhook_validation_error",
            error_type=error.error_type,
            error_message=error.message,
            path=request.path,
            method=request.method,
            content_type=request.content_type
        )
        return create_error_response(
            error_type=error.error_type,
            message=error.message,
            status_code=400
        )

    @app.errorhandler(SignatureError)
    def handle_signature_error(error):
        logger.error(
            "unauthorized_error",
            error_message=error.message,
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type="unauthorized",
            message="Unauthorized",
            status_code=401
        )

    @app.errorhandler(ConfigurationError)
    def handle_configuration_error(error):
        logger.error(
            "server_configuration_error",
            error_message=str(error),
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type="configuration_error",
            message="Server configuration error",
            status_code=500
        )

    @app.errorhandler(PublishError)
    def handle_publish_error(error):
        logger.error(
            "publish_error",
            error_message=str(error),
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type="internal_error",
            message="Internal server error",
            status_code=500
        )

    @app.errorhandler(Exception)
    def handle_generic_exception(error):
        if isinstance(error, HTTPException):
            return create_error_response(
                error_type="http_error",
                message=error.description or error.name,
                status_code=error.code or 500
            )

        logger.error(
            "unhandled_exception",
            error_type=type(error).__name__,
            error_message=str(error),
            path=request.path,
            method=request.method,
            stack_trace=traceback.format_exc()
        )
        return create_error_response(
            error_type="internal_error",
            message="Internal server error",
            status_code=500
        )

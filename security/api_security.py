"""
API セキュリティ共通機能

エラーレスポンス統一とセキュリティヘッダー追加を提供する。
"""

from typing import Any, Dict, Optional, Tuple

from flask import Response

from config.timezone import get_app_datetime_string

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "script-src 'self' https://cdn.jsdelivr.net 'unsafe-inline'; "
    "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com; "
    "font-src 'self' https://fonts.gstatic.com; "
    "img-src 'self' data:; "
    "media-src 'self'; "
    "connect-src 'self'"
)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


ERROR_MAPPINGS = {
    "forbidden": {"error": "Access denied", "message": "Forbidden", "status": 403},
    "bad_request": {
        "error": "Bad Request",
        "message": "Invalid request",
        "status": 400,
    },
    "not_found": {"error": "Not Found", "message": "Resource not found", "status": 404},
    "too_many_requests": {
        "error": "Too Many Requests",
        "message": "Rate limit exceeded",
        "status": 429,
    },
}

INTERNAL_ERROR = {
    "error": "Internal Server Error",
    "message": "An error occurred",
    "status": 500,
}


def create_error_response(
    error_type: str, message: Optional[str] = None
) -> Tuple[Dict[str, Any], int]:
    """
    統一されたエラーレスポンスを生成

    Args:
        error_type: エラータイプ ('forbidden', 'too_many_requests', 'bad_request', etc.)
        message: カスタムエラーメッセージ（オプション）

    Returns:
        tuple: (エラーレスポンス辞書, HTTPステータスコード)
    """
    error_info = ERROR_MAPPINGS.get(error_type, INTERNAL_ERROR)

    response = {
        "error": error_info["error"],
        "message": message if message else error_info["message"],
        "timestamp": get_app_datetime_string(),
    }

    return response, error_info["status"]


def create_access_denied_response() -> Tuple[Dict[str, Any], int]:
    """
    保護パスの拒否レスポンス（受付判定・トークン検証の失敗共通）

    失敗理由の違いが外部から区別できないよう、本文は固定の {"error": ...} のみ。
    """
    error_info = ERROR_MAPPINGS["forbidden"]
    return {"error": error_info["error"]}, error_info["status"]


def add_security_headers(response: Response) -> Response:
    """
    レスポンスにセキュリティヘッダーを追加

    Args:
        response: Flaskレスポンスオブジェクト

    Returns:
        Response: セキュリティヘッダーが追加されたレスポンス
    """
    security_headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "X-XSS-Protection": "1; mode=block",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
        "Content-Security-Policy": CONTENT_SECURITY_POLICY,
        "Referrer-Policy": "strict-origin-when-cross-origin",
    }

    for header, value in security_headers.items():
        response.headers.setdefault(header, value)

    return response

from flask import Flask, Response, jsonify, request
import os
import atexit
import logging
from logging.handlers import RotatingFileHandler

from apscheduler.schedulers.background import BackgroundScheduler
from dotenv import load_dotenv

from config.site_settings import get_hidden_files, get_settings
from config.stream_security_settings import (
    ConfigurationError,
    get_stream_security_config,
    validate_allowed_domains,
)
from config.timezone import epoch_ms_to_app_datetime
from security.admission import AdmissionGate
from security.api_security import (
    NO_CACHE_HEADERS,
    add_security_headers,
    create_access_denied_response,
    create_error_response,
)
from security.client_address import get_real_ip
from security.rate_limiter import RateLimiter
from security.stream_token import STREAM_URL_PREFIX, StreamTokenIssuer, StreamTokenVerifier
from security.token_store import StreamTokenStore, TokenSweeper

# ロガー設定
logger = logging.getLogger(__name__)

AUDIO_CONTENT_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".m4a": "audio/mp4",
}

# トークン検証・受付判定の対象パス
PROTECTED_PATH_PREFIXES = ("/api/playlist", STREAM_URL_PREFIX)

STREAM_CHUNK_SIZE = 8192
MAX_FILENAME_LENGTH = 255
WINDOWS_RESERVED_NAMES = {"CON", "PRN", "AUX", "NUL"} | {
    f"{prefix}{n}" for prefix in ("COM", "LPT") for n in range(1, 10)
}


def is_safe_resource_name(filename):
    """
    配信対象として安全なファイル名かチェック（トークン発行前の検証）

    Returns:
        bool: パス区切り・トラバーサル・NULバイト・隠しファイル等を含まない場合True
    """
    if not filename or not isinstance(filename, str):
        return False
    if len(filename) > MAX_FILENAME_LENGTH:
        return False
    if ".." in filename or "\0" in filename:
        return False
    if "/" in filename or "\\" in filename:
        return False
    if any(ch in filename for ch in '<>:"|?*'):
        return False
    if filename.startswith("."):
        return False
    if os.path.splitext(filename)[0].upper() in WINDOWS_RESERVED_NAMES:
        return False
    return True


def get_audio_files(music_dir):
    """音楽ディレクトリ内の配信可能なファイル名一覧（名前順）"""
    files = []
    for name in sorted(os.listdir(music_dir)):
        ext = os.path.splitext(name)[1].lower()
        if ext not in AUDIO_CONTENT_TYPES:
            continue
        if not is_safe_resource_name(name):
            logger.warning(f"Skipping unsafe music file name: {name!r}")
            continue
        if os.path.isfile(os.path.join(music_dir, name)):
            files.append(name)
    return files


def resolve_music_path(music_dir, resource_id):
    """
    リソース名を音楽ディレクトリ内の実パスに解決する

    Returns:
        str: ファイルパス。ディレクトリ外・存在しない場合はNone
    """
    base = os.path.realpath(music_dir)
    file_path = os.path.realpath(os.path.join(base, resource_id))
    if os.path.commonpath([base, file_path]) != base:
        return None
    if not os.path.isfile(file_path):
        return None
    return file_path


def setup_logging(app):
    """ログファイルの設定（ローテーション付き、ルートロガーに設定）"""
    if app.config.get("TESTING"):
        return

    log_dir = app.config["LOG_DIR"]
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.abspath(os.path.join(log_dir, "app.log"))

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if getattr(handler, "baseFilename", None) == log_path:
            return

    file_handler = RotatingFileHandler(log_path, maxBytes=10 * 1024 * 1024, backupCount=5)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]"
        )
    )
    file_handler.setLevel(logging.INFO)
    # ルートロガーに設定して全モジュールのログをapp.logに出力
    root_logger.addHandler(file_handler)
    root_logger.setLevel(logging.INFO)


def create_app(test_config=None):
    """
    アプリケーションを生成する

    Args:
        test_config (dict): 環境変数より優先する設定（テスト用）。
            TOKEN_CLOCK（現在時刻関数）と TOKEN_SCHEDULER（APSchedulerのスケジューラ）を注入できる

    Raises:
        ConfigurationError: STREAM_TOKEN_SECRET が未設定の場合
    """
    load_dotenv()

    app = Flask(__name__)

    stream_config = get_stream_security_config()
    app.config.update(
        STREAM_TOKEN_SECRET=stream_config["token_secret"],
        STREAM_TOKEN_TTL_SECONDS=stream_config["token_ttl_seconds"],
        TOKEN_SWEEP_INTERVAL_SECONDS=stream_config["sweep_interval_seconds"],
        TOKEN_SWEEP_ENABLED=stream_config["sweep_enabled"],
        RATE_LIMIT_ENABLED=stream_config["rate_limit_enabled"],
        RATE_LIMIT_MAX_REQUESTS=stream_config["rate_limit_max_requests"],
        RATE_LIMIT_WINDOW_SECONDS=stream_config["rate_limit_window_seconds"],
        ALLOWED_REFERRER_DOMAINS=stream_config["allowed_referrer_domains"],
        BLOCKED_USER_AGENTS=stream_config["blocked_user_agents"],
        MOBILE_USER_AGENTS=stream_config["mobile_user_agents"],
        TRUST_PROXY_HEADERS=stream_config["trust_proxy_headers"],
        MUSIC_DIR=os.environ.get("MUSIC_DIR", "music"),
        DATA_DIR=os.environ.get("DATA_DIR", "data"),
        LOG_DIR=os.environ.get("LOG_DIR", "logs"),
        TOKEN_CLOCK=None,
        TOKEN_SCHEDULER=None,
    )
    if test_config:
        app.config.update(test_config)

    setup_logging(app)

    # 署名鍵は管理者認証・Flaskセッションとは独立
    secret = app.config["STREAM_TOKEN_SECRET"]
    if not secret:
        raise ConfigurationError("STREAM_TOKEN_SECRET is not set")

    if app.config["STREAM_TOKEN_TTL_SECONDS"] <= 0:
        raise ConfigurationError("STREAM_TOKEN_TTL_SECONDS must be positive")

    domain_check = validate_allowed_domains(app.config["ALLOWED_REFERRER_DOMAINS"])
    for error in domain_check["errors"]:
        logger.error(f"ALLOWED_REFERRER_DOMAINS: {error}")
    for warning in domain_check["warnings"]:
        logger.warning(f"ALLOWED_REFERRER_DOMAINS: {warning}")

    os.makedirs(app.config["MUSIC_DIR"], exist_ok=True)
    os.makedirs(app.config["DATA_DIR"], exist_ok=True)

    clock_kwargs = {}
    if app.config["TOKEN_CLOCK"] is not None:
        clock_kwargs["clock"] = app.config["TOKEN_CLOCK"]
    token_store = StreamTokenStore(**clock_kwargs)
    issuer = StreamTokenIssuer(token_store, secret)
    verifier = StreamTokenVerifier(token_store, secret)
    gate = AdmissionGate(
        allowed_referrer_domains=app.config["ALLOWED_REFERRER_DOMAINS"],
        blocked_user_agents=app.config["BLOCKED_USER_AGENTS"],
        mobile_user_agents=app.config["MOBILE_USER_AGENTS"],
    )

    rate_limiter = None
    if app.config["RATE_LIMIT_ENABLED"]:
        rate_limiter = RateLimiter(
            max_requests=app.config["RATE_LIMIT_MAX_REQUESTS"],
            window_seconds=app.config["RATE_LIMIT_WINDOW_SECONDS"],
            **clock_kwargs,
        )

    sweeper = None
    if app.config["TOKEN_SWEEP_ENABLED"]:
        scheduler = app.config["TOKEN_SCHEDULER"] or BackgroundScheduler(daemon=True)
        sweeper = TokenSweeper(
            token_store, scheduler, app.config["TOKEN_SWEEP_INTERVAL_SECONDS"]
        )
        sweeper.start()
        atexit.register(sweeper.shutdown)

    app.extensions["stream_security"] = {
        "store": token_store,
        "issuer": issuer,
        "verifier": verifier,
        "gate": gate,
        "sweeper": sweeper,
        "rate_limiter": rate_limiter,
    }

    @app.before_request
    def check_rate_limit():
        """保護対象パスへのリクエスト数をIP単位で制限"""
        if rate_limiter is None or not request.path.startswith(PROTECTED_PATH_PREFIXES):
            return None

        result = rate_limiter.hit(get_real_ip(app.config["TRUST_PROXY_HEADERS"]))
        if result.allowed:
            return None

        response_data, status = create_error_response("too_many_requests")
        response = jsonify(response_data)
        response.status_code = status
        response.headers["Retry-After"] = str(result.retry_after)
        return response

    @app.before_request
    def check_admission():
        """保護対象パスへのリクエストをトークン検証の前段で判定"""
        if not request.path.startswith(PROTECTED_PATH_PREFIXES):
            return None

        decision = gate.admit(
            get_real_ip(app.config["TRUST_PROXY_HEADERS"]),
            request.host,
            request.headers.get("Origin"),
            request.headers.get("Referer"),
            request.headers.get("User-Agent"),
            request.path,
        )
        if decision.allowed:
            return None

        response_data, status = create_access_denied_response()
        return jsonify(response_data), status

    @app.after_request
    def apply_security_headers(response):
        return add_security_headers(response)

    @app.route("/api/settings")
    def api_settings():
        """サイト設定取得API（公開）"""
        return jsonify(get_settings(app.config["DATA_DIR"]))

    @app.route("/api/playlist")
    def api_playlist():
        """公開プレイリスト取得API（曲ごとに新しい配信トークンを発行）"""
        music_dir = app.config["MUSIC_DIR"]
        try:
            files = get_audio_files(music_dir)
        except OSError as e:
            logger.error(f"Failed to scan music directory {music_dir}: {e}")
            return jsonify({"error": "Failed to scan directory"}), 500

        hidden_files = get_hidden_files(app.config["DATA_DIR"])
        ttl_seconds = app.config["STREAM_TOKEN_TTL_SECONDS"]

        playlist = []
        for name in files:
            if name in hidden_files:
                continue
            issued = issuer.issue(name, ttl_seconds)
            playlist.append(
                {
                    "name": name,
                    "url": issued["url"],
                    "expires_at": epoch_ms_to_app_datetime(issued["expires_at"]).isoformat(),
                }
            )

        response = jsonify(playlist)
        response.headers.update(NO_CACHE_HEADERS)
        return response

    @app.route(f"{STREAM_URL_PREFIX}<token>")
    def api_stream(token):
        """トークン保護された音声ストリーム配信"""
        client_ip = get_real_ip(app.config["TRUST_PROXY_HEADERS"])
        result = verifier.verify(token)

        if not result["valid"]:
            logger.warning(
                f"Stream token rejected: {result['error']} (IP: {client_ip}, "
                f"Referer: {request.headers.get('Referer', 'NONE')}, "
                f"User-Agent: {request.headers.get('User-Agent', 'NONE')})"
            )
            response_data, status = create_access_denied_response()
            return jsonify(response_data), status

        resource_id = result["resource_id"]
        file_path = resolve_music_path(app.config["MUSIC_DIR"], resource_id)
        if file_path is None:
            logger.warning(f"Stream resource unavailable: {resource_id} (IP: {client_ip})")
            response_data, status = create_access_denied_response()
            return jsonify(response_data), status

        logger.info(f"Stream access granted: {resource_id} (IP: {client_ip})")

        def generate():
            with open(file_path, "rb") as f:
                while True:
                    chunk = f.read(STREAM_CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk

        ext = os.path.splitext(resource_id)[1].lower()
        headers = dict(NO_CACHE_HEADERS)
        headers.update(
            {
                "Content-Length": str(os.path.getsize(file_path)),
                "Content-Disposition": "inline",
                "Referrer-Policy": "no-referrer",
                "X-Robots-Tag": "noindex, nofollow, noarchive",
            }
        )
        return Response(
            generate(),
            content_type=AUDIO_CONTENT_TYPES.get(ext, "application/octet-stream"),
            headers=headers,
        )

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "3000")))

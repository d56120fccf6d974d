"""
ストリーム配信セキュリティ設定の管理

環境変数から読み込み、create_app の明示設定（テスト用）で上書きされる。
"""
import ipaddress
import logging
import os
import re
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 600
DEFAULT_SWEEP_INTERVAL_SECONDS = 300
DEFAULT_RATE_LIMIT_MAX_REQUESTS = 100
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 15 * 60

DEFAULT_BLOCKED_USER_AGENTS = [
    'wget', 'curl', 'python-requests', 'python-urllib', 'urllib', 'httpx',
    'aiohttp', 'Guzzle', 'Java/', 'Apache-HttpClient', 'OkHttp', 'node-fetch',
    'axios', 'Go-http-client', 'libcurl', 'Scrapy', 'HeadlessChrome',
    'PhantomJS', 'yt-dlp', 'youtube-dl', 'bot', 'crawler', 'spider',
]

DEFAULT_MOBILE_USER_AGENTS = [
    'Mobile', 'Android', 'iPhone', 'iPad', 'iPod', 'Windows Phone',
    'IEMobile', 'Opera Mini', 'BlackBerry', 'MicroMessenger', 'Line/',
]

_TRUE_VALUES = {'true', '1', 'yes', 'on'}
_FALSE_VALUES = {'false', '0', 'no', 'off'}


class ConfigurationError(RuntimeError):
    """起動時の設定不備（署名用シークレット未設定など）"""


def get_stream_security_config():
    """ストリーム配信セキュリティ設定を環境変数から取得"""
    return {
        'token_secret': os.environ.get('STREAM_TOKEN_SECRET', ''),
        'token_ttl_seconds': _get_env_int('STREAM_TOKEN_TTL_SECONDS', DEFAULT_TOKEN_TTL_SECONDS),
        'sweep_interval_seconds': _get_env_int(
            'TOKEN_SWEEP_INTERVAL_SECONDS', DEFAULT_SWEEP_INTERVAL_SECONDS
        ),
        'sweep_enabled': _get_env_bool('TOKEN_SWEEP_ENABLED', True),
        'rate_limit_enabled': _get_env_bool('RATE_LIMIT_ENABLED', True),
        'rate_limit_max_requests': _get_env_int(
            'RATE_LIMIT_MAX_REQUESTS', DEFAULT_RATE_LIMIT_MAX_REQUESTS
        ),
        'rate_limit_window_seconds': _get_env_int(
            'RATE_LIMIT_WINDOW_SECONDS', DEFAULT_RATE_LIMIT_WINDOW_SECONDS
        ),
        'allowed_referrer_domains': _get_env_list('ALLOWED_REFERRER_DOMAINS', []),
        'blocked_user_agents': _get_env_list('BLOCKED_USER_AGENTS', DEFAULT_BLOCKED_USER_AGENTS),
        'mobile_user_agents': _get_env_list('MOBILE_USER_AGENTS', DEFAULT_MOBILE_USER_AGENTS),
        'trust_proxy_headers': _get_env_bool('TRUST_PROXY_HEADERS', False),
    }


def _get_env_bool(key, default):
    value = os.environ.get(key, '').strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def _get_env_list(key, default):
    """カンマ区切りの環境変数。未設定ならデフォルトのコピー"""
    items = [item.strip() for item in os.environ.get(key, '').split(',')]
    return [item for item in items if item] or list(default)


def _get_env_int(key, default):
    """正の整数の環境変数。不正値はログに残してデフォルトを使う"""
    value = os.environ.get(key, '').strip()
    if not value:
        return default
    try:
        parsed = int(value)
    except ValueError:
        logger.warning(f"Invalid integer for {key}: {value!r}, using {default}")
        return default
    if parsed <= 0:
        logger.warning(f"Non-positive value for {key}: {parsed}, using {default}")
        return default
    return parsed


def extract_host(url_or_host):
    """
    URL または Host ヘッダー値（host:port, [::1]:3000）から小文字のホスト名を取り出す

    取得できない場合は空文字列。
    """
    if not url_or_host:
        return ''

    candidate = url_or_host if '://' in url_or_host else '//' + url_or_host
    try:
        host = urlparse(candidate).hostname or ''
    except ValueError:
        return ''
    return host.lower()


def is_referrer_allowed(referer_url, allowed_domains):
    """
    Referer / Origin のホストが許可リストのいずれかに一致するか

    許可リストの要素: ドメイン名（サブドメインも許可、先頭の '.' は任意）、
    単一IP、CIDR（10.0.0.0/24）、ハイフン範囲（192.168.1.1-192.168.1.100）
    """
    if not referer_url or not allowed_domains:
        return False

    host = extract_host(referer_url)
    if not host:
        return False

    entries = (entry.strip().lower() for entry in allowed_domains)
    return any(_matches_allowed_entry(host, entry) for entry in entries if entry)


def _matches_allowed_entry(host, entry):
    if host == entry:
        return True

    host_ip = _parse_ip(host)
    if host_ip is None:
        domain = entry.lstrip('.')
        return host == domain or host.endswith('.' + domain)

    if '/' in entry:
        try:
            return host_ip in ipaddress.ip_network(entry, strict=False)
        except ValueError:
            return False

    if '-' in entry:
        ip_range = _parse_ip_range(entry)
        if ip_range is None:
            return False
        start_ip, end_ip = ip_range
        return start_ip.version == host_ip.version and start_ip <= host_ip <= end_ip

    return False


def _parse_ip(value):
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        return None


def _parse_ip_range(value):
    """'start-end' の両端がIPならタプル、そうでなければNone（ハイフン入りドメイン名）"""
    start_str, end_str = value.split('-', 1)
    start_ip = _parse_ip(start_str.strip())
    end_ip = _parse_ip(end_str.strip())
    if start_ip is None or end_ip is None:
        return None
    return start_ip, end_ip


def validate_allowed_domains(domains):
    """
    許可リストの妥当性チェック

    Returns:
        dict: {'valid': bool, 'errors': list, 'warnings': list}
    """
    result = {'valid': True, 'errors': [], 'warnings': []}

    def add_error(message):
        result['errors'].append(message)
        result['valid'] = False

    for domain in domains:
        domain = domain.strip()
        if not domain:
            continue

        if '/' in domain:
            try:
                ipaddress.ip_network(domain, strict=False)
            except ValueError as e:
                add_error(f"Invalid CIDR: {domain} ({e})")
            continue

        if '-' in domain:
            ip_range = _parse_ip_range(domain)
            if ip_range is not None:
                start_ip, end_ip = ip_range
                if start_ip.version != end_ip.version or start_ip > end_ip:
                    add_error(f"Invalid IP range: {domain}")
                continue

        if re.match(r'^[0-9.]+$', domain) or ':' in domain:
            if _parse_ip(domain) is None:
                add_error(f"Invalid IP address: {domain}")
            continue

        if not re.match(r'^\.?[a-zA-Z0-9.-]+$', domain):
            result['warnings'].append(f"Suspicious domain name: {domain}")

    return result

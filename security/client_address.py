"""
クライアントIPアドレスの取得

IPアドレス取得優先順位（TRUST_PROXY_HEADERS有効時のみ1, 2を使用）:
1. CF-Connecting-IP (Cloudflare提供の実IP)
2. X-Forwarded-For (プロキシチェーンの最初のIP)
3. request.remote_addr (直接接続時のIP)

プロキシヘッダーはクライアントが自由に設定できるため、
リバースプロキシ配下でない場合は信頼しない。
"""

import ipaddress
import logging

from flask import request

logger = logging.getLogger(__name__)


def get_real_ip(trust_proxy_headers: bool = False) -> str:
    """
    実IPアドレス取得

    Args:
        trust_proxy_headers: CF-Connecting-IP / X-Forwarded-For を信頼するかどうか

    Returns:
        str: 検証済み実IPアドレス
    """
    if trust_proxy_headers:
        cf_ip = request.headers.get("CF-Connecting-IP")
        if cf_ip:
            cf_ip = cf_ip.strip()
            if is_valid_ip(cf_ip):
                logger.debug(f"Real IP detected from CF-Connecting-IP: {cf_ip}")
                return cf_ip
            logger.warning(f"Invalid CF-Connecting-IP ignored: {cf_ip}")

        x_forwarded = request.headers.get("X-Forwarded-For")
        if x_forwarded:
            first_ip = x_forwarded.split(",")[0].strip()
            if is_valid_ip(first_ip):
                logger.debug(f"Real IP detected from X-Forwarded-For: {first_ip}")
                return first_ip
            logger.warning(f"Invalid X-Forwarded-For ignored: {first_ip}")

    return request.remote_addr or "unknown"


def is_valid_ip(ip_address: str) -> bool:
    """
    IPアドレス形式の検証（IPv4/IPv6対応）

    Args:
        ip_address: 検証対象のIPアドレス文字列

    Returns:
        bool: 有効なIPアドレスの場合True
    """
    if not ip_address:
        return False

    try:
        ipaddress.ip_address(ip_address)
        return True
    except ValueError:
        return False

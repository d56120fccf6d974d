"""
ホットリンク防止のためのリクエスト受付判定

トークン検証の前段で、ネットワーク情報とヘッダー情報から
明らかなスクレイピングを安価に拒否する。
これは多層防御の一段であり、最終的な判定はトークン検証が行う。

判定は (名前, 条件, 結果) のルールを順に評価し、最初に一致したルールで決まる:
1. private_network: クライアントIPまたはHostがプライベート/ループバック/リンクローカル
2. same_origin_or_allowed_referrer: Referer/OriginのホストがHostと一致、または許可リストに一致
3. mobile_stream_client: ストリーム配信パスかつモバイルブラウザのUser-Agent
4. stream_non_automation: ストリーム配信パスかつ自動化ツール/ボットのUser-Agentではない
5. default_reject: 上記以外は拒否（403）
"""

import ipaddress
import logging
from typing import Callable, Iterable, List, NamedTuple, Optional

from config.stream_security_settings import (
    DEFAULT_BLOCKED_USER_AGENTS,
    DEFAULT_MOBILE_USER_AGENTS,
    extract_host,
    is_referrer_allowed,
)
from security.stream_token import STREAM_URL_PREFIX

logger = logging.getLogger(__name__)

PRIVATE_NETWORKS = [
    ipaddress.ip_network(cidr)
    for cidr in (
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
]

LOOPBACK_HOSTNAMES = ("localhost", "localhost.localdomain")


class AdmissionRequest(NamedTuple):
    client_address: str
    host: str
    origin: str
    referer: str
    user_agent: str
    path: str


class AdmissionRule(NamedTuple):
    name: str
    predicate: Callable[[AdmissionRequest], bool]
    allow: bool


class AdmissionDecision(NamedTuple):
    allowed: bool
    rule: str


def is_private_address(value: Optional[str]) -> bool:
    """
    IPアドレスまたはHostヘッダー値がプライベート範囲かチェック

    Args:
        value: IPアドレス、ホスト名、または host:port 形式の文字列

    Returns:
        bool: プライベート/ループバック/リンクローカルの場合True
    """
    if not value:
        return False

    candidate = value.strip()
    try:
        ip = ipaddress.ip_address(candidate)
    except ValueError:
        host = extract_host(candidate)
        if host in LOOPBACK_HOSTNAMES:
            return True
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            return False

    # IPv4-mapped IPv6（::ffff:192.168.1.5）
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    return any(ip in network for network in PRIVATE_NETWORKS if network.version == ip.version)


def matches_signature(user_agent: Optional[str], signatures: Iterable[str]) -> bool:
    """User-Agentがいずれかのシグネチャを含むか（大文字小文字を区別しない）"""
    if not user_agent:
        return False
    lowered = user_agent.lower()
    return any(sig.lower() in lowered for sig in signatures if sig)


class AdmissionGate:
    """順序付きルールによるリクエスト受付判定"""

    def __init__(self, allowed_referrer_domains: Optional[List[str]] = None,
                 blocked_user_agents: Optional[List[str]] = None,
                 mobile_user_agents: Optional[List[str]] = None,
                 stream_path_prefix: str = STREAM_URL_PREFIX,
                 extra_rules: Optional[List[AdmissionRule]] = None):
        """
        Args:
            allowed_referrer_domains: 許可するReferer/Originのドメイン・IP範囲
            blocked_user_agents: 自動化ツール/ボットのUser-Agentシグネチャ
            mobile_user_agents: モバイルブラウザのUser-Agentシグネチャ
            stream_path_prefix: トークン保護されたパスのプレフィックス
            extra_rules: default_reject の直前に評価する追加ルール
        """
        self.allowed_referrer_domains = list(allowed_referrer_domains or [])
        self.blocked_user_agents = list(
            DEFAULT_BLOCKED_USER_AGENTS if blocked_user_agents is None else blocked_user_agents
        )
        self.mobile_user_agents = list(
            DEFAULT_MOBILE_USER_AGENTS if mobile_user_agents is None else mobile_user_agents
        )
        self.stream_path_prefix = stream_path_prefix

        self.rules = [
            AdmissionRule("private_network", self._is_private_request, True),
            AdmissionRule("same_origin_or_allowed_referrer", self._is_trusted_referrer, True),
            AdmissionRule("mobile_stream_client", self._is_mobile_stream_client, True),
            AdmissionRule("stream_non_automation", self._is_stream_non_automation, True),
        ]
        self.rules.extend(extra_rules or [])
        self.rules.append(AdmissionRule("default_reject", lambda req: True, False))

    def admit(self, client_address, host, origin, referer, user_agent, path) -> AdmissionDecision:
        """
        リクエストを受け付けるか判定する

        Returns:
            AdmissionDecision: (allowed, 判定したルール名)
        """
        req = AdmissionRequest(
            client_address or "",
            host or "",
            origin or "",
            referer or "",
            user_agent or "",
            path or "",
        )

        for rule in self.rules:
            if rule.predicate(req):
                decision = AdmissionDecision(rule.allow, rule.name)
                break

        if decision.allowed:
            logger.debug(f"Admission allowed by {decision.rule}: {req.path} from {req.client_address}")
        else:
            logger.warning(
                f"Admission rejected: {req.path} from {req.client_address} "
                f"(referer: {req.referer or 'NONE'}, origin: {req.origin or 'NONE'}, "
                f"user_agent: {req.user_agent or 'NONE'})"
            )
        return decision

    def is_stream_path(self, path: str) -> bool:
        return path.startswith(self.stream_path_prefix)

    def _is_private_request(self, req: AdmissionRequest) -> bool:
        return is_private_address(req.client_address) or is_private_address(req.host)

    def _is_trusted_referrer(self, req: AdmissionRequest) -> bool:
        request_host = extract_host(req.host)
        for header_value in (req.referer, req.origin):
            if not header_value:
                continue
            if request_host and extract_host(header_value) == request_host:
                return True
            if is_referrer_allowed(header_value, self.allowed_referrer_domains):
                return True
        return False

    def _is_mobile_stream_client(self, req: AdmissionRequest) -> bool:
        return self.is_stream_path(req.path) and matches_signature(
            req.user_agent, self.mobile_user_agents
        )

    def _is_stream_non_automation(self, req: AdmissionRequest) -> bool:
        # User-Agentなしは自動化クライアントとみなす
        if not req.user_agent.strip():
            return False
        return self.is_stream_path(req.path) and not matches_signature(
            req.user_agent, self.blocked_user_agents
        )

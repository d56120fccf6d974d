"""
ストリーム配信用ワンタイムトークンの発行・検証

クライアントに渡すトークンには nonce・署名・有効期限のみを含め、
リソース名と発行時刻はサーバー側のレコードにのみ保持する。
署名は resource_id:issued_at:nonce:expires_at に対する HMAC-SHA256。

トークンは固定長バイナリをURLセーフbase64（パディングなし）にしたもの:
    nonce (16 byte) | HMAC (32 byte) | expires_at (8 byte, big endian, epochミリ秒)
"""

import base64
import binascii
import hashlib
import hmac
import logging
import re
import secrets
from typing import Any, Dict, Union

from security.token_store import StreamTokenStore, TokenRecord, now_ms

logger = logging.getLogger(__name__)

NONCE_BYTES = 16  # 128 bit
SIGNATURE_BYTES = hashlib.sha256().digest_size
EXPIRES_AT_BYTES = 8
TOKEN_BYTES = NONCE_BYTES + SIGNATURE_BYTES + EXPIRES_AT_BYTES
TOKEN_LENGTH = len(base64.urlsafe_b64encode(bytes(TOKEN_BYTES)).rstrip(b"="))
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
STREAM_URL_PREFIX = "/api/stream/"


class TokenFailure:
    """検証失敗の種別（外部には公開しない）"""

    MALFORMED = "malformed"
    EXPIRED = "expired"
    UNKNOWN_OR_CONSUMED = "unknown_or_consumed"
    TAMPERED = "tampered"


def _to_key(secret_key: Union[str, bytes]) -> bytes:
    if not secret_key:
        raise ValueError("stream token secret is not configured")
    if isinstance(secret_key, str):
        return secret_key.encode("utf-8")
    return bytes(secret_key)


def new_nonce() -> str:
    """128bitの乱数nonce（16進文字列）"""
    return secrets.token_hex(NONCE_BYTES)


def compute_signature(key: bytes, resource_id: str, issued_at: int, nonce: str,
                      expires_at: int) -> bytes:
    """4つの束縛フィールドに対するHMAC-SHA256署名"""
    sign_string = f"{resource_id}:{issued_at}:{nonce}:{expires_at}"
    return hmac.new(key, sign_string.encode("utf-8"), hashlib.sha256).digest()


def encode_token(nonce: str, signature: bytes, expires_at: int) -> str:
    """{nonce, signature, expires_at} をURLセーフ・パディングなしの文字列にする"""
    try:
        nonce_bytes = bytes.fromhex(nonce)
        expires_bytes = expires_at.to_bytes(EXPIRES_AT_BYTES, "big")
    except OverflowError as e:
        raise ValueError(f"expires_at out of range: {e}")
    if len(nonce_bytes) != NONCE_BYTES or len(signature) != SIGNATURE_BYTES:
        raise ValueError("nonce or signature has wrong length")

    raw = nonce_bytes + bytes(signature) + expires_bytes
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_token(token: str) -> Dict[str, Any]:
    """
    トークン文字列を分解する

    同じバイト列に復号できても、発行時と異なる表記（末尾の未使用ビット違いなど）は拒否する。

    Returns:
        dict: {'nonce': str, 'signature': bytes, 'expires_at': int}

    Raises:
        ValueError: エンコードまたは長さが不正な場合
    """
    if not isinstance(token, str) or not TOKEN_PATTERN.match(token):
        raise ValueError("token contains characters outside the URL-safe alphabet")
    if len(token) != TOKEN_LENGTH:
        raise ValueError(f"token length {len(token)} != {TOKEN_LENGTH}")

    padded_token = token + "=" * (-len(token) % 4)
    try:
        raw = base64.b64decode(padded_token, altchars=b"-_", validate=True)
    except binascii.Error as e:
        raise ValueError(f"token decode failed: {e}")

    if len(raw) != TOKEN_BYTES:
        raise ValueError("decoded token has wrong length")
    if base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=") != token:
        raise ValueError("token is not canonically encoded")

    signature_end = NONCE_BYTES + SIGNATURE_BYTES
    return {
        "nonce": raw[:NONCE_BYTES].hex(),
        "signature": raw[NONCE_BYTES:signature_end],
        "expires_at": int.from_bytes(raw[signature_end:], "big"),
    }


class StreamTokenIssuer:
    """リソースごとのワンタイム配信トークンを発行する"""

    def __init__(self, store: StreamTokenStore, secret_key: Union[str, bytes]):
        self.store = store
        self._key = _to_key(secret_key)

    def issue(self, resource_id: str, ttl_seconds: float) -> Dict[str, Any]:
        """
        トークンを発行しストアに登録する

        Args:
            resource_id (str): 呼び出し側で検証済みのリソース名
            ttl_seconds (float): 有効期間（秒、正の値）

        Returns:
            dict: {
                'token': str,       # クライアントに渡す不透明トークン
                'url': str,         # ストリーム配信URL
                'expires_at': int   # 有効期限（epochミリ秒）
            }
        """
        if not resource_id:
            raise ValueError("resource_id is required")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")

        while True:
            nonce = new_nonce()
            issued_at = now_ms(self.store.clock)
            expires_at = issued_at + int(ttl_seconds * 1000)
            record = TokenRecord(nonce, resource_id, issued_at, expires_at)
            if self.store.put(record):
                break
            logger.warning("Stream token nonce collision, regenerating")

        signature = compute_signature(self._key, resource_id, issued_at, nonce, expires_at)
        token = encode_token(nonce, signature, expires_at)

        return {
            "token": token,
            "url": f"{STREAM_URL_PREFIX}{token}",
            "expires_at": expires_at,
        }

    def mint(self, resource_id: str, ttl_seconds: float) -> str:
        return self.issue(resource_id, ttl_seconds)["token"]


class StreamTokenVerifier:
    """提示されたトークンを検証し、成功時に一度だけリソース名を返す"""

    def __init__(self, store: StreamTokenStore, secret_key: Union[str, bytes]):
        self.store = store
        self._key = _to_key(secret_key)

    def verify(self, token: str) -> Dict[str, Any]:
        """
        トークンを検証する

        署名不一致・有効期限の食い違いではレコードを削除しない。
        削除は検証成功時（またはスイープ）のみ。

        Args:
            token (str): クライアントが提示したトークン

        Returns:
            dict: {
                'valid': bool,
                'resource_id': str,  # 成功時のみ
                'error': str         # 失敗時のみ（TokenFailureの値）
            }
        """
        try:
            fields = decode_token(token)
        except ValueError as e:
            logger.debug(f"Stream token malformed: {e}")
            return _failure(TokenFailure.MALFORMED)

        nonce = fields["nonce"]
        presented_expires_at = fields["expires_at"]

        if now_ms(self.store.clock) > presented_expires_at:
            return _failure(TokenFailure.EXPIRED)

        record = self.store.get(nonce)
        if record is None:
            return _failure(TokenFailure.UNKNOWN_OR_CONSUMED)
        if not _is_well_formed(record, nonce):
            logger.warning(f"Inconsistent stream token record {nonce[:8]}...")
            return _failure(TokenFailure.UNKNOWN_OR_CONSUMED)

        if presented_expires_at != record.expires_at:
            return _failure(TokenFailure.TAMPERED)

        expected_signature = compute_signature(
            self._key,
            record.resource_id,
            record.issued_at,
            record.nonce,
            record.expires_at,
        )

        # タイミング攻撃対策
        if not hmac.compare_digest(expected_signature, fields["signature"]):
            return _failure(TokenFailure.TAMPERED)

        # 同時に検証した場合、実際に削除できた呼び出しのみ成功
        if not self.store.delete(nonce):
            return _failure(TokenFailure.UNKNOWN_OR_CONSUMED)

        return {"valid": True, "resource_id": record.resource_id}


def _failure(kind: str) -> Dict[str, Any]:
    return {"valid": False, "error": kind}


def _is_well_formed(record, nonce: str) -> bool:
    return (
        isinstance(record, TokenRecord)
        and record.nonce == nonce
        and isinstance(record.resource_id, str)
        and bool(record.resource_id)
        and isinstance(record.issued_at, int)
        and isinstance(record.expires_at, int)
    )

"""
ストリーム配信トークンの発行・検証テスト
"""

import base64
import string
import threading

import pytest

from conftest import TEST_SECRET
from security.stream_token import (
    NONCE_BYTES,
    SIGNATURE_BYTES,
    TOKEN_BYTES,
    TOKEN_LENGTH,
    TOKEN_PATTERN,
    StreamTokenIssuer,
    StreamTokenVerifier,
    TokenFailure,
    decode_token,
    encode_token,
)
from security.token_store import TokenRecord

BASE64URL_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits + "-_"


def _raw(token):
    return base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))


def _encode_raw(raw):
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


class TestTokenIssue:
    """トークン発行のテスト"""

    def test_mint_returns_url_safe_token(self, issuer):
        token = issuer.mint("song.mp3", 60)

        assert TOKEN_PATTERN.match(token)
        assert "=" not in token
        assert len(token) == TOKEN_LENGTH

    def test_token_does_not_expose_resource_id(self, issuer):
        token = issuer.mint("secret-track.mp3", 60)
        raw = _raw(token)

        assert "secret-track" not in token
        assert b"secret-track" not in raw
        assert len(raw) == TOKEN_BYTES

    def test_record_is_stored_with_bound_fields(self, issuer, store, clock):
        issued = issuer.issue("song.mp3", 60)
        fields = decode_token(issued["token"])
        record = store.get(fields["nonce"])

        assert record.resource_id == "song.mp3"
        assert record.issued_at == int(clock() * 1000)
        assert record.expires_at == record.issued_at + 60_000
        assert issued["expires_at"] == record.expires_at
        assert issued["url"] == f"/api/stream/{issued['token']}"

    def test_each_mint_creates_fresh_token(self, issuer, store):
        first = issuer.mint("song.mp3", 60)
        second = issuer.mint("song.mp3", 60)

        assert first != second
        assert len(store) == 2

    def test_nonce_has_at_least_128_bits(self, issuer):
        nonce = decode_token(issuer.mint("song.mp3", 60))["nonce"]

        assert len(bytes.fromhex(nonce)) == NONCE_BYTES
        assert NONCE_BYTES * 8 >= 128

    @pytest.mark.parametrize("ttl", [0, -1, -0.5])
    def test_non_positive_ttl_rejected(self, issuer, ttl):
        with pytest.raises(ValueError):
            issuer.mint("song.mp3", ttl)

    def test_empty_resource_id_rejected(self, issuer):
        with pytest.raises(ValueError):
            issuer.mint("", 60)

    def test_missing_secret_rejected(self, store):
        with pytest.raises(ValueError):
            StreamTokenIssuer(store, "")
        with pytest.raises(ValueError):
            StreamTokenVerifier(store, None)


class TestTokenCodec:
    """トークン文字列のエンコード・デコード"""

    def test_decode_returns_fields(self):
        nonce = "ab" * NONCE_BYTES
        signature = bytes(range(SIGNATURE_BYTES))

        fields = decode_token(encode_token(nonce, signature, 1_700_000_060_000))

        assert fields == {
            "nonce": nonce,
            "signature": signature,
            "expires_at": 1_700_000_060_000,
        }

    @pytest.mark.parametrize(
        "nonce, signature, expires_at",
        [
            ("zz" * NONCE_BYTES, bytes(SIGNATURE_BYTES), 1),
            ("ab" * (NONCE_BYTES - 1), bytes(SIGNATURE_BYTES), 1),
            ("ab" * NONCE_BYTES, bytes(SIGNATURE_BYTES - 1), 1),
            ("ab" * NONCE_BYTES, bytes(SIGNATURE_BYTES), -1),
        ],
    )
    def test_encode_rejects_invalid_fields(self, nonce, signature, expires_at):
        with pytest.raises(ValueError):
            encode_token(nonce, signature, expires_at)

    def test_non_canonical_encoding_rejected(self, issuer):
        token = issuer.mint("song.mp3", 60)
        # 末尾文字の下位ビットはデコード結果に影響しない
        index = BASE64URL_ALPHABET.index(token[-1])
        alternate = token[:-1] + BASE64URL_ALPHABET[index ^ 1]

        assert _raw(alternate) == _raw(token)
        with pytest.raises(ValueError):
            decode_token(alternate)


class TestTokenVerify:
    """トークン検証のテスト"""

    def test_round_trip(self, issuer, verifier):
        token = issuer.mint("song.mp3", 60)

        result = verifier.verify(token)

        assert result == {"valid": True, "resource_id": "song.mp3"}

    def test_second_redemption_fails(self, issuer, verifier, store):
        token = issuer.mint("song.mp3", 60)

        assert verifier.verify(token)["valid"] is True
        result = verifier.verify(token)

        assert result == {"valid": False, "error": TokenFailure.UNKNOWN_OR_CONSUMED}
        assert len(store) == 0

    def test_expired_token(self, issuer, verifier, clock):
        token = issuer.mint("song.mp3", 60)
        clock.advance(61)

        result = verifier.verify(token)

        assert result["error"] == TokenFailure.EXPIRED

    def test_token_valid_until_expiry(self, issuer, verifier, clock):
        token = issuer.mint("song.mp3", 60)
        clock.advance(60)

        assert verifier.verify(token)["valid"] is True

    def test_every_signature_bit_flip_is_tampered(self, issuer, verifier, store):
        token = issuer.mint("song.mp3", 60)
        raw = _raw(token)
        signature_start = NONCE_BYTES

        for offset in range(SIGNATURE_BYTES):
            for bit in range(8):
                forged_raw = bytearray(raw)
                forged_raw[signature_start + offset] ^= 1 << bit

                result = verifier.verify(_encode_raw(bytes(forged_raw)))

                assert result == {"valid": False, "error": TokenFailure.TAMPERED}, (offset, bit)

        # 改ざんトークンの提示で正規レコードは消えない
        assert decode_token(token)["nonce"] in store
        assert verifier.verify(token)["valid"] is True

    def test_non_canonical_variant_does_not_redeem(self, issuer, verifier):
        token = issuer.mint("song.mp3", 60)
        index = BASE64URL_ALPHABET.index(token[-1])
        alternate = token[:-1] + BASE64URL_ALPHABET[index ^ 1]

        assert verifier.verify(alternate) == {"valid": False, "error": TokenFailure.MALFORMED}
        assert verifier.verify(token) == {"valid": True, "resource_id": "song.mp3"}

    def test_extended_expiry_is_tampered(self, issuer, verifier, store, clock):
        token = issuer.mint("song.mp3", 60)
        fields = decode_token(token)
        extended = encode_token(
            fields["nonce"], fields["signature"], fields["expires_at"] + 3_600_000
        )

        assert verifier.verify(extended)["error"] == TokenFailure.TAMPERED
        assert fields["nonce"] in store

        clock.advance(120)
        assert verifier.verify(extended)["error"] == TokenFailure.TAMPERED
        assert verifier.verify(token)["error"] == TokenFailure.EXPIRED

    def test_shortened_expiry_is_tampered(self, issuer, verifier):
        token = issuer.mint("song.mp3", 60)
        fields = decode_token(token)
        shortened = encode_token(fields["nonce"], fields["signature"], fields["expires_at"] - 1)

        assert verifier.verify(shortened)["error"] == TokenFailure.TAMPERED
        assert verifier.verify(token)["valid"] is True

    def test_unknown_nonce(self, issuer, verifier):
        token = issuer.mint("song.mp3", 60)
        fields = decode_token(token)
        unknown = encode_token("00" * NONCE_BYTES, fields["signature"], fields["expires_at"])

        assert verifier.verify(unknown)["error"] == TokenFailure.UNKNOWN_OR_CONSUMED

    def test_sweep_keeps_live_tokens(self, issuer, verifier, store, clock):
        issuer.mint("other.mp3", 1)
        token = issuer.mint("song.mp3", 60)
        clock.advance(2)
        store.sweep()

        # 期限内のトークンはスイープで消えない
        assert verifier.verify(token)["valid"] is True

    def test_signature_from_other_secret_is_tampered(self, store, issuer):
        other_issuer = StreamTokenIssuer(store, "another-secret")
        verifier = StreamTokenVerifier(store, TEST_SECRET)

        token = other_issuer.mint("song.mp3", 60)

        assert verifier.verify(token)["error"] == TokenFailure.TAMPERED

    def test_corrupted_record_is_unknown(self, issuer, verifier, store):
        token = issuer.mint("song.mp3", 60)
        nonce = decode_token(token)["nonce"]
        store._records[nonce] = {"resource_id": "song.mp3"}

        assert verifier.verify(token)["error"] == TokenFailure.UNKNOWN_OR_CONSUMED

    @pytest.mark.parametrize(
        "token",
        [
            "",
            "not a token",
            "abc+def/",
            "A",
            "%%%%",
            "A" * (TOKEN_LENGTH + 1),
            "A" * (TOKEN_LENGTH - 1),
            _encode_raw(bytes(TOKEN_BYTES - 1)),
            _encode_raw(bytes(TOKEN_BYTES + 1)),
            _encode_raw(b"n=abc&s=def&e=5"),
            _encode_raw(b"garbage"),
        ],
    )
    def test_malformed_tokens(self, verifier, token):
        assert verifier.verify(token) == {"valid": False, "error": TokenFailure.MALFORMED}

    def test_non_string_token_is_malformed(self, verifier):
        assert verifier.verify(None)["error"] == TokenFailure.MALFORMED

    def test_concurrent_redemption_succeeds_once(self, issuer, verifier):
        token = issuer.mint("song.mp3", 60)
        workers = 16
        barrier = threading.Barrier(workers)
        results = []
        results_lock = threading.Lock()

        def redeem():
            barrier.wait()
            result = verifier.verify(token)
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=redeem) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        successes = [r for r in results if r["valid"]]
        failures = [r for r in results if not r["valid"]]
        assert len(successes) == 1
        assert successes[0]["resource_id"] == "song.mp3"
        assert all(r["error"] == TokenFailure.UNKNOWN_OR_CONSUMED for r in failures)


class TestNonceCollision:
    def test_colliding_nonce_is_regenerated(self, store, monkeypatch):
        issuer = StreamTokenIssuer(store, TEST_SECRET)
        taken = "00" * NONCE_BYTES
        fresh = "11" * NONCE_BYTES
        store.put(TokenRecord(taken, "a.mp3", 0, 10 ** 15))

        nonces = iter([taken, fresh])
        monkeypatch.setattr("security.stream_token.secrets.token_hex", lambda n: next(nonces))

        token = issuer.mint("b.mp3", 60)

        assert decode_token(token)["nonce"] == fresh
        assert store.get(taken).resource_id == "a.mp3"

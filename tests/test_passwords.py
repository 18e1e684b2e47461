"""
tests/test_passwords.py -- Unit tests for auth/passwords.py.

Covers:
  - hash_secret / verify_secret match and mismatch across printable-ASCII secrets up to 72 bytes
  - CorruptDigest on malformed stored digests (never a silent False)
  - hash_token / verify_token tell apart tokens sharing a long prefix
  - normalize_email shape check and lowercasing
  - check_password_strength policy
"""

from __future__ import annotations

import string

import pytest

from auth.errors import CorruptDigest, ValidationError
from auth.passwords import (
    check_password_strength,
    hash_secret,
    hash_token,
    normalize_email,
    verify_secret,
    verify_token,
)


_PRINTABLE = "".join(ch for ch in string.printable if ch not in "\t\n\r\x0b\x0c")

_SECRETS = list(
    dict.fromkeys(
        ["", "a", " ", "Str0ng!Pass"]
        + list(string.punctuation)
        + [_PRINTABLE[:n] for n in (2, 8, 16, 32, 64, 71, 72)]
        + [_PRINTABLE[::-1][:72], string.punctuation + string.digits + string.ascii_letters[:30]]
    )
)


class TestSecretHashing:
    @pytest.mark.parametrize("index", range(len(_SECRETS)), ids=lambda i: f"len{len(_SECRETS[i])}-{i}")
    def test_printable_secrets_match_only_their_own_digest(self, index: int) -> None:
        secret = _SECRETS[index]
        neighbour = _SECRETS[(index + 1) % len(_SECRETS)]
        digest = hash_secret(secret, rounds=4)
        assert verify_secret(secret, digest) is True
        assert verify_secret(neighbour, digest) is False

    def test_hash_then_verify_matches(self) -> None:
        digest = hash_secret("Str0ng!Pass", rounds=4)
        assert verify_secret("Str0ng!Pass", digest) is True

    def test_wrong_secret_does_not_match(self) -> None:
        digest = hash_secret("Str0ng!Pass", rounds=4)
        assert verify_secret("Str0ng!Pas", digest) is False

    def test_digest_is_salted(self) -> None:
        """Two hashes of the same secret differ but both verify."""
        first = hash_secret("Str0ng!Pass", rounds=4)
        second = hash_secret("Str0ng!Pass", rounds=4)
        assert first != second
        assert verify_secret("Str0ng!Pass", first)
        assert verify_secret("Str0ng!Pass", second)

    def test_digest_embeds_cost_factor(self) -> None:
        assert hash_secret("x", rounds=5).startswith("$2b$05$")

    def test_malformed_digest_raises_corrupt_digest(self) -> None:
        with pytest.raises(CorruptDigest):
            verify_secret("Str0ng!Pass", "not-a-bcrypt-digest")

    def test_overlong_secret_never_matches(self) -> None:
        digest = hash_secret("a" * 72, rounds=4)
        assert verify_secret("a" * 80, digest) is False

    def test_overlong_secret_against_malformed_digest_raises(self) -> None:
        with pytest.raises(CorruptDigest):
            verify_secret("a" * 80, "garbage")


class TestTokenHashing:
    def test_token_round_trip(self) -> None:
        digest = hash_token("header.payload.signature", rounds=4)
        assert verify_token("header.payload.signature", digest)

    def test_tokens_with_shared_prefix_are_distinguished(self) -> None:
        """JWTs for one subject share far more than 72 bytes of prefix."""
        prefix = "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9." + "x" * 100
        digest = hash_token(prefix + "first", rounds=4)
        assert verify_token(prefix + "first", digest)
        assert not verify_token(prefix + "second", digest)


class TestNormalizeEmail:
    def test_lowercases_and_strips(self) -> None:
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize("email", ["", "   ", None, "alice", "alice@", "@example.com", "alice@example"])
    def test_rejects_malformed(self, email) -> None:
        with pytest.raises(ValidationError):
            normalize_email(email)


class TestPasswordStrength:
    def test_strong_password_passes(self) -> None:
        check_password_strength("Str0ng!Pass")

    @pytest.mark.parametrize(
        "password",
        [
            "",
            "S0!a",  # too short
            "str0ng!pass",  # no uppercase
            "STR0NG!PASS",  # no lowercase
            "Strong!Pass",  # no digit
            "Str0ngPass1",  # no symbol
            "Aa1!" + "x" * 69,  # 73 bytes
        ],
    )
    def test_weak_password_rejected(self, password: str) -> None:
        with pytest.raises(ValidationError):
            check_password_strength(password)

    def test_missing_classes_reported_in_detail(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            check_password_strength("alllowercase")
        assert exc_info.value.detail["missing"] == ["an uppercase letter", "a digit", "a symbol"]

    def test_multibyte_password_counted_in_bytes(self) -> None:
        """The 72 limit is measured in UTF-8 bytes, not characters."""
        check_password_strength("Aa1!" + "€" * 22 + "ab")  # 4 + 66 + 2 = 72 bytes
        with pytest.raises(ValidationError):
            check_password_strength("Aa1!" + "€" * 23)  # 4 + 69 = 73 bytes

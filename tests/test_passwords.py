"""Unit tests for auth/passwords.py -- bcrypt credential hashing.

Covers:
- hash() produces a salted digest that verify() accepts
- wrong password, malformed digest and truncated digest all verify False
- the cost factor is encoded in the digest
- passwords past bcrypt's 72-byte input limit hash and verify, every byte counted
- dummy_verify() never raises
"""

import pytest

from auth.errors import HashingError
from auth.passwords import CredentialHasher


class TestCredentialHasher:
    def test_round_trip(self, hasher: CredentialHasher) -> None:
        digest = hasher.hash("Str0ng!pass")
        assert digest != "Str0ng!pass"
        assert hasher.verify(digest, "Str0ng!pass") is True

    def test_wrong_password_rejected(self, hasher: CredentialHasher) -> None:
        digest = hasher.hash("Str0ng!pass")
        assert hasher.verify(digest, "Str0ng!pasS") is False
        assert hasher.verify(digest, "") is False

    def test_same_password_gets_distinct_salts(self, hasher: CredentialHasher) -> None:
        """Two hashes of the same input differ but both verify."""
        a = hasher.hash("Str0ng!pass")
        b = hasher.hash("Str0ng!pass")
        assert a != b
        assert hasher.verify(a, "Str0ng!pass")
        assert hasher.verify(b, "Str0ng!pass")

    def test_cost_is_encoded_in_digest(self) -> None:
        digest = CredentialHasher(rounds=5).hash("Str0ng!pass")
        assert digest.startswith("$2b$05$")
        # A hasher with a different cost still verifies old digests.
        assert CredentialHasher(rounds=4).verify(digest, "Str0ng!pass")

    @pytest.mark.parametrize("digest", ["not-a-bcrypt-digest", "", "$2b$04$truncated"])
    def test_malformed_digest_verifies_false(self, hasher: CredentialHasher, digest: str) -> None:
        assert hasher.verify(digest, "whatever") is False

    def test_dummy_verify_does_not_raise(self, hasher: CredentialHasher) -> None:
        assert hasher.dummy_verify("anything") is None

    def test_invalid_cost_raises_hashing_error(self) -> None:
        with pytest.raises(HashingError):
            CredentialHasher(rounds=99)


class TestLongPasswords:
    def test_73_byte_ascii_password_round_trips(self, hasher: CredentialHasher) -> None:
        password = "Aa1!" + "x" * 69
        assert len(password.encode("utf-8")) == 73
        digest = hasher.hash(password)
        assert hasher.verify(digest, password) is True

    def test_multibyte_password_round_trips(self, hasher: CredentialHasher) -> None:
        password = "Aa1!" + "é" * 60  # 64 characters, 124 bytes
        digest = hasher.hash(password)
        assert hasher.verify(digest, password) is True
        assert hasher.verify(digest, "Aa1!" + "é" * 59) is False

    def test_difference_past_72_bytes_is_rejected(self, hasher: CredentialHasher) -> None:
        prefix = "Aa1!" + "x" * 80
        digest = hasher.hash(prefix + "one")
        assert hasher.verify(digest, prefix + "one") is True
        assert hasher.verify(digest, prefix + "two") is False

    def test_very_long_password_accepted(self, hasher: CredentialHasher) -> None:
        password = "Aa1!" + "z" * 4096
        assert hasher.verify(hasher.hash(password), password) is True

"""
auth/passwords.py -- Password hashing (bcrypt).

Security design decisions:
  bcrypt directly, no passlib wrapper. passlib's internal wrap-bug detection
       builds a password longer than 72 bytes, which bcrypt 4.x rejects with
       an explicit error. Direct bcrypt usage has no compatibility shim.

  Pre-digest: bcrypt only reads 72 bytes of input and bcrypt 5 rejects
       anything longer. Every password is first reduced to
       base64(sha256(utf-8 bytes)), 44 ASCII bytes with no NUL, so hashing is
       total over all strings and every byte of a long password counts.
       hash() and verify() apply the same reduction.

  Cost factor is fixed per CredentialHasher instance. Production reads
       BCRYPT_ROUNDS (default 12); tests construct the hasher with rounds=4 so
       the suite stays fast. Existing digests keep verifying after a cost
       change because bcrypt encodes the cost inside the digest.

  Timing equalization: dummy_verify() runs bcrypt against a digest computed
       once per instance, so the login path costs the same whether or not the
       email exists.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import base64
import hashlib
import logging

import bcrypt

from auth.errors import HashingError

logger = logging.getLogger("tripplanner.auth.passwords")


def _prehash(plaintext: str) -> bytes:
    """Reduce a password of any length to 44 bytes of bcrypt input."""
    return base64.b64encode(hashlib.sha256(plaintext.encode("utf-8")).digest())


class CredentialHasher:
    """Salted, adaptive-cost one-way password hashing.

    Usage:
        hasher = CredentialHasher(rounds=12)
        digest = hasher.hash("Str0ng!pw")
        hasher.verify(digest, "Str0ng!pw")   # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._dummy_digest = self.hash("tripplanner_timing_dummy")

    def hash(self, plaintext: str) -> str:
        """Return a bcrypt digest of plaintext. Any length of input is accepted.

        Raises HashingError only if bcrypt itself fails (e.g. an invalid cost).
        """
        try:
            salt = bcrypt.gensalt(rounds=self.rounds)
            return bcrypt.hashpw(_prehash(plaintext), salt).decode("utf-8")
        except (ValueError, TypeError) as exc:
            raise HashingError("Password hashing failed.") from exc

    def verify(self, digest: str, plaintext: str) -> bool:
        """Return True if plaintext matches digest. Never raises on mismatch."""
        try:
            return bcrypt.checkpw(_prehash(plaintext), digest.encode("utf-8"))
        except (ValueError, TypeError):
            # Malformed or truncated digest in the store.
            logger.warning("Stored password digest could not be parsed")
            return False

    def dummy_verify(self, plaintext: str) -> None:
        """Spend one verification's worth of CPU without a real digest."""
        self.verify(self._dummy_digest, plaintext)

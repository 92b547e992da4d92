"""
auth/passwords.py -- Credential vault: password hashing and verification.

Security design decisions:
  Scheme: scrypt (hashlib.scrypt, N=2^14, r=8, p=1, 64-byte key). Memory-hard,
       so GPU brute-force of a leaked table is expensive. Each hash gets a
       fresh 16-byte random salt, so hashing the same password twice yields
       two different stored strings.

  Stored format: "scrypt$<salt-hex>$<digest-hex>". The salt participates in
       the derivation as its hex text, not as raw bytes; keep it that way or
       every existing hash stops verifying. The string is parsed once into a
       StoredHash at the boundary; nothing else splits on "$".

  Comparison: hmac.compare_digest over the fixed 64-byte digest. A stored
       digest of any other length is rejected before comparison [C2].

  Legacy bcrypt: accounts created before the scrypt migration carry "$2b$..."
       hashes. They still verify through the bcrypt library, and needs_rehash()
       tells LoginGuard to upgrade them on the next successful login.

  verify_password() never raises. Malformed or unknown formats return False.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass

import bcrypt

SCHEME_SCRYPT = "scrypt"
SCHEME_BCRYPT = "bcrypt"

_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1
_SCRYPT_DKLEN = 64
_SALT_BYTES = 16
# N * r * 128 bytes = 16 MiB; the default 32 MiB cap leaves headroom.
_SCRYPT_MAXMEM = 64 * 1024 * 1024


@dataclass(frozen=True)
class StoredHash:
    """Parsed form of a persisted password hash."""

    scheme: str
    salt: str
    digest: bytes

    def encode(self) -> str:
        if self.scheme == SCHEME_BCRYPT:
            return self.digest.decode("utf-8")
        return f"{self.scheme}${self.salt}${self.digest.hex()}"


def _derive(password: str, salt: str) -> bytes:
    return hashlib.scrypt(
        password.encode("utf-8"),
        salt=salt.encode("utf-8"),
        n=_SCRYPT_N,
        r=_SCRYPT_R,
        p=_SCRYPT_P,
        dklen=_SCRYPT_DKLEN,
        maxmem=_SCRYPT_MAXMEM,
    )


def parse_stored_hash(stored: str | None) -> StoredHash | None:
    """Parse a persisted hash string. Returns None for anything malformed."""
    if not stored or not isinstance(stored, str):
        return None
    if stored.startswith(("$2a$", "$2b$", "$2y$")):
        return StoredHash(scheme=SCHEME_BCRYPT, salt="", digest=stored.encode("utf-8"))
    parts = stored.split("$")
    if len(parts) != 3 or parts[0] != SCHEME_SCRYPT or not parts[1]:
        return None
    try:
        digest = bytes.fromhex(parts[2])
    except ValueError:
        return None
    return StoredHash(scheme=SCHEME_SCRYPT, salt=parts[1], digest=digest)


def hash_password(password: str) -> str:
    """Return a salted scrypt hash of the plaintext password."""
    salt = secrets.token_hex(_SALT_BYTES)
    return StoredHash(scheme=SCHEME_SCRYPT, salt=salt, digest=_derive(password, salt)).encode()


def verify_password(password: str, stored: str | None) -> bool:
    """Return True if `password` matches `stored`. Never raises."""
    parsed = parse_stored_hash(stored)
    if parsed is None:
        return False
    if parsed.scheme == SCHEME_BCRYPT:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), parsed.digest)
        except ValueError:
            return False
    if len(parsed.digest) != _SCRYPT_DKLEN:  # [C2]
        return False
    try:
        candidate = _derive(password, parsed.salt)
    except (ValueError, MemoryError):
        return False
    return hmac.compare_digest(candidate, parsed.digest)


def needs_rehash(stored: str | None) -> bool:
    """True when `stored` uses a scheme other than the current scrypt one."""
    parsed = parse_stored_hash(stored)
    return parsed is not None and parsed.scheme != SCHEME_SCRYPT


# Timing equalization dummy hash [C1].
# Computed once at module load. LoginGuard verifies against it when the
# handle does not exist, so an unknown handle costs the same scrypt work as a
# wrong password and response time does not reveal which handles exist.
_DUMMY_HASH: str = hash_password("scriptoria_timing_dummy")


def burn_verification(password: str) -> None:
    """Spend one verification's worth of work without a real account."""
    verify_password(password, _DUMMY_HASH)

"""
Password hashing for the users kept in the settings document.
"""

from __future__ import annotations

import bcrypt


def _to_bcrypt_secret(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes.
    return password.encode("utf-8")[:72]


def hash_password(password: str, rounds: int = 10) -> str:
    hashed = bcrypt.hashpw(_to_bcrypt_secret(password), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_to_bcrypt_secret(password), password_hash.encode("utf-8"))
    except ValueError:
        return False

"""Credential hashing for imported passwords and PINs."""

import bcrypt

# bcrypt only reads the first 72 bytes of a secret
BCRYPT_MAX_BYTES = 72


def hash_secret(secret: str, rounds: int = 12) -> str:
    """Hash a password or PIN with bcrypt."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(secret.encode("utf-8")[:BCRYPT_MAX_BYTES], salt).decode("utf-8")


def verify_secret(secret: str, hashed: str) -> bool:
    return bcrypt.checkpw(secret.encode("utf-8")[:BCRYPT_MAX_BYTES], hashed.encode("utf-8"))

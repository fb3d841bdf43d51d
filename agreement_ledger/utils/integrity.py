# -*- coding: utf-8 -*-
"""Content hashing for agreement text (tamper detection)."""

import hashlib
import hmac

HASH_PREFIX = "sha256_"


def hash_agreement_text(text: str) -> str:
    """
    Content-addressed digest of agreement text: "sha256_" + lowercase hex over UTF-8 bytes.
    Any byte change, whitespace included, changes the digest.
    """
    if text is None:
        raise TypeError("agreement text must not be None")
    return HASH_PREFIX + hashlib.sha256(text.encode("utf-8")).hexdigest()


def verify_agreement_text(text: str, digest: str) -> bool:
    if text is None or not digest:
        return False
    return hmac.compare_digest(hash_agreement_text(text).encode("utf-8"), str(digest).encode("utf-8"))


def is_well_formed_digest(digest: str) -> bool:
    if not digest or not digest.startswith(HASH_PREFIX):
        return False
    hex_part = digest[len(HASH_PREFIX):]
    return len(hex_part) == 64 and all(c in "0123456789abcdef" for c in hex_part)

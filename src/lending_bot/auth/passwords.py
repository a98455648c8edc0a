"""bcrypt password verification for credentials issued by the legacy portal.

The lending portal that owns the ``users`` table hashes passwords with PHP's
``password_hash``, which tags bcrypt hashes ``$2y$``.  The ``$2y$`` and
``$2b$`` tags describe the same algorithm; the rename only marks that the
issuer's old wraparound bug is fixed.  ``normalize_hash_tag`` is the single
place that rewrites the tag.  It exists for records imported from that
issuer and says nothing about hashes produced anywhere else.
"""

from __future__ import annotations

import logging
import re

import bcrypt

logger = logging.getLogger(__name__)

_RECOGNIZED_HASH = re.compile(r"^\$2[abxy]?\$\d{2}\$")
_LEGACY_TAG = "$2y$"
_CANONICAL_TAG = "$2b$"


def is_recognized_hash(password_hash: str | None) -> bool:
    """Return True when *password_hash* looks like a bcrypt-family hash."""
    return isinstance(password_hash, str) and bool(_RECOGNIZED_HASH.match(password_hash))


def normalize_hash_tag(password_hash: str) -> str:
    """Rewrite a ``$2y$`` tag to ``$2b$``; other hashes are returned unchanged."""
    if password_hash.startswith(_LEGACY_TAG):
        return _CANONICAL_TAG + password_hash[len(_LEGACY_TAG):]
    return password_hash


def _normalize_password(password: str) -> bytes:
    """
    bcrypt only reads the first 72 bytes; newer bcrypt releases refuse longer
    input instead of truncating it.
    """
    return password.encode("utf-8")[:72]


def verify_password(password: str, password_hash: str) -> bool:
    """Compare *password* with a stored bcrypt *password_hash*.

    A hash bcrypt cannot parse counts as a mismatch.
    """
    candidate = normalize_hash_tag(password_hash).encode("utf-8")
    try:
        return bcrypt.checkpw(_normalize_password(password), candidate)
    except ValueError:
        logger.warning("Stored password hash could not be parsed by bcrypt")
        return False


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(_normalize_password(password), bcrypt.gensalt(rounds=rounds)).decode("utf-8")

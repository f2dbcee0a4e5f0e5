"""Emergency code generation, normalisation and hashing.

Codes are drawn from ``secrets`` (the OS CSPRNG). The default 12 characters
over ``A-Z0-9`` give about 62 bits, printed in groups of four
(``K7QX-2MPA-9RTD``). Only the SHA-256 of the normalised code is stored.
"""

import hashlib
import re
import secrets
from urllib.parse import urlsplit

from ..config import MIN_TOKEN_ENTROPY_BITS, TOKEN_ALPHABET, token_entropy_bits
from ..errors import InvalidTokenError, ValidationError

_SEPARATORS = re.compile(r"[\s\-]+")


class TokenGenerator:
    def __init__(self, length: int = 12, group_size: int = 4, alphabet: str = TOKEN_ALPHABET):
        bits = token_entropy_bits(length, alphabet)
        if bits < MIN_TOKEN_ENTROPY_BITS:
            raise ValidationError(
                f"Token format gives {bits:.1f} bits of entropy; "
                f"at least {MIN_TOKEN_ENTROPY_BITS} are required"
            )
        if group_size <= 0:
            raise ValidationError("group_size must be positive")
        self._length = length
        self._group_size = group_size
        self._alphabet = alphabet

    @property
    def length(self) -> int:
        return self._length

    def generate(self) -> str:
        raw = "".join(secrets.choice(self._alphabet) for _ in range(self._length))
        return self.format(raw)

    def format(self, raw: str) -> str:
        size = self._group_size
        return "-".join(raw[i : i + size] for i in range(0, len(raw), size))

    def normalize(self, presented: str) -> str:
        """Canonicalise a presented code.

        Accepts a full emergency link (``https://.../emergency/<code>``),
        lower case, and missing or extra separators. Anything that cannot be a
        well-formed code raises ``InvalidTokenError`` without touching storage.
        """
        if not isinstance(presented, str):
            raise InvalidTokenError("malformed")

        candidate = presented.strip()
        if "/emergency/" in candidate:
            candidate = urlsplit(candidate).path.rstrip("/").rsplit("/", 1)[-1]

        raw = _SEPARATORS.sub("", candidate).upper()
        if len(raw) != self._length or any(c not in self._alphabet for c in raw):
            raise InvalidTokenError("malformed")
        return self.format(raw)


def hash_token(normalized: str) -> str:
    return hashlib.sha256(normalized.encode()).hexdigest()

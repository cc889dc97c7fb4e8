"""Token normalization for exception messages.

Replaces volatile substrings (ids, addresses, paths, numbers) with fixed
placeholders so that the same defect produces the same text no matter
which runtime values it carried.

Examples:
    'data parcel size 1057544 bytes'      -> 'data parcel size <N> bytes'
    'Failed to connect to 192.168.1.1:80' -> 'Failed to connect to <ip>:<N>'
    'Object at 0x7f3a2b00'                -> 'Object at <hex>'
"""

import re

# Order matters: numbers go last so they don't eat digits that belong to
# a UUID, hash, hex literal, path or IP address.
_SUBSTITUTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(
            r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
        ),
        "<uuid>",
    ),
    (re.compile(r"\b[0-9a-fA-F]{32,}\b"), "<hash>"),
    (re.compile(r"0x[0-9a-fA-F]+"), "<hex>"),
    (re.compile(r"/[\w./\-]+"), "<path>"),
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "<ip>"),
    (re.compile(r"\b\d+(?:\.\d+)?\b"), "<N>"),
)


class TokenNormalizer:
    """Pure, order-sensitive placeholder substitution.

    All methods are static as the class carries no state.
    """

    @staticmethod
    def normalize(line: str) -> str:
        """Replace volatile tokens in a single line. Never raises."""
        for pattern, placeholder in _SUBSTITUTIONS:
            line = pattern.sub(placeholder, line)
        return line


def normalize(line: str) -> str:
    """Module-level shortcut for ``TokenNormalizer.normalize``."""
    return TokenNormalizer.normalize(line)

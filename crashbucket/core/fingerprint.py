"""Fingerprinting logic for grouping crashes.

This module provides the core algorithm for converting a stack trace into
a short stable digest that identifies one defect across many occurrences.
"""

import hashlib

from .normalizer import TokenNormalizer

FRAME_MARKER = "at "
MAX_SIGNIFICANT_LINES = 5
FINGERPRINT_BYTES = 16


class Fingerprinter:
    """Produces stable fingerprints from stack trace text.

    No external dependencies; a pure function over strings.
    All methods are static as the class carries no state.
    """

    @staticmethod
    def fingerprint(trace: str) -> str:
        """Create a stable hash that identifies this class of crash.

        Same bug, different occurrence: same fingerprint. Only stack shape
        and exception identity count; device, user and timing data never
        reach the digest.

        Returns:
            32 lowercase hex characters (first 16 bytes of SHA-256).
        """
        significant = Fingerprinter.significant_lines(trace)
        payload = "\n".join(significant)
        digest = hashlib.sha256(payload.encode("utf-8")).digest()
        return digest[:FINGERPRINT_BYTES].hex()

    @staticmethod
    def significant_lines(trace: str) -> list[str]:
        """First few frame or exception lines, ready for hashing.

        Frame lines keep their text (a frame already pins a code location);
        exception/error lines are normalized since their messages carry
        runtime values.
        """
        selected: list[str] = []
        for line in trace.splitlines():
            if Fingerprinter.is_frame_line(line):
                selected.append(line.strip())
            elif "Exception" in line or "Error" in line:
                selected.append(TokenNormalizer.normalize(line.strip()))
            else:
                continue
            if len(selected) == MAX_SIGNIFICANT_LINES:
                break
        return selected

    @staticmethod
    def is_frame_line(line: str) -> bool:
        return line.lstrip().startswith(FRAME_MARKER)

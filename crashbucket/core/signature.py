"""Exception signature extraction from the first line of a stack trace."""

from .models import ExceptionSignature
from .normalizer import TokenNormalizer


class SignatureExtractor:
    """Parses ``Class: message`` headers into an ExceptionSignature.

    Degrades to nulls instead of raising, so malformed traces still group.
    """

    @staticmethod
    def extract(trace: str, normalize: bool = True) -> ExceptionSignature:
        """Split the first line on its first colon.

        Args:
            trace: Raw or decoded stack trace text.
            normalize: Run the message through the token normalizer. Only
                display code should pass False; stored and fingerprinted
                messages are always normalized.

        Returns:
            (None, None) for an empty trace, (class, None) when the first
            line has no colon or nothing after it.
        """
        lines = trace.splitlines()
        if not lines:
            return ExceptionSignature(None, None)

        first_line = lines[0]
        colon = first_line.find(":")
        if colon < 0:
            exception_class = first_line.strip()
            return ExceptionSignature(exception_class or None, None)

        exception_class = first_line[:colon].strip() or None
        message = first_line[colon + 1 :].strip()
        if not message:
            return ExceptionSignature(exception_class, None)
        if normalize:
            message = TokenNormalizer.normalize(message)
        return ExceptionSignature(exception_class, message)

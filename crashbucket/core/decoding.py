"""Decode coordination: symbol-map retrace ahead of grouping.

Decoding happens before group resolution and never while any store
resource is held. A failed or slow decoder only ever produces a
DecodeOutcome with an error; ingestion carries on with the raw trace.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Literal

from .fingerprint import Fingerprinter
from .models import DecodeOutcome, ProcessedTrace
from .ports import DecoderPort
from .signature import SignatureExtractor

logger = logging.getLogger(__name__)

TraceSource = Literal["raw", "decoded"]

MAX_DECODE_ERROR_LENGTH = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def describe_decode_error(error: BaseException) -> str:
    """Short, storable description of a decoder failure."""
    message = str(error).strip()
    text = f"{type(error).__name__}: {message}" if message else type(error).__name__
    return text[:MAX_DECODE_ERROR_LENGTH]


def grouping_text(raw_trace: str, outcome: DecodeOutcome, source: TraceSource) -> str:
    """Trace text to fingerprint, given the configured source.

    "decoded" falls back to the raw text when no decode succeeded.
    """
    if source == "decoded" and outcome.decoded_text is not None:
        return outcome.decoded_text
    return raw_trace


class DecodeCoordinator:
    """Runs the external decoder and prepares grouping inputs for a crash."""

    def __init__(
        self,
        decoder: DecoderPort,
        timeout_seconds: float = 10.0,
        grouping_source: TraceSource = "raw",
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the coordinator.

        Args:
            decoder: DecoderPort implementation (black box).
            timeout_seconds: Upper bound on one decode call.
            grouping_source: Which text is fingerprinted, "raw" or "decoded".
                Signature extraction always prefers decoded text.
            clock: Source of decoded_at timestamps.
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.decoder = decoder
        self.timeout_seconds = timeout_seconds
        self.grouping_source = grouping_source
        self.clock = clock

    async def decode(self, raw_trace: str, symbol_map: bytes | None) -> DecodeOutcome:
        """Decode a trace, converting every failure into an outcome.

        Returns:
            skipped when symbol_map is None, success or failure otherwise.
        """
        if symbol_map is None:
            return DecodeOutcome.skipped()

        try:
            lines = await asyncio.wait_for(
                asyncio.to_thread(self.decoder.decode, raw_trace.splitlines(), symbol_map),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Decode timed out after {self.timeout_seconds}s")
            return DecodeOutcome.failure(
                f"TimeoutError: decode exceeded {self.timeout_seconds}s"
            )
        except Exception as e:
            logger.warning(f"Decode failed: {e}", exc_info=True)
            return DecodeOutcome.failure(describe_decode_error(e))

        return DecodeOutcome.success("\n".join(lines), self.clock())

    async def process_crash(
        self,
        app_id: str,
        version_code: int | None,
        raw_trace: str,
        symbol_map: bytes | None,
    ) -> ProcessedTrace:
        """Decode (if possible) and derive fingerprint and signature.

        The fingerprint follows grouping_source; the signature uses the
        decoded text whenever a decode succeeded so groups display
        de-obfuscated names.
        """
        outcome = await self.decode(raw_trace, symbol_map)
        if outcome.failed:
            logger.info(
                "Grouping on raw trace after decode failure",
                extra={
                    "app_id": app_id,
                    "version_code": version_code,
                    "decode_error": outcome.error,
                },
            )

        fingerprint = Fingerprinter.fingerprint(
            grouping_text(raw_trace, outcome, self.grouping_source)
        )
        signature_source = (
            outcome.decoded_text if outcome.decoded_text is not None else raw_trace
        )
        signature = SignatureExtractor.extract(signature_source)
        return ProcessedTrace(outcome=outcome, fingerprint=fingerprint, signature=signature)

"""Tests for decode coordination ahead of grouping."""

from datetime import UTC, datetime

import pytest

from crashbucket.core.decoding import (
    MAX_DECODE_ERROR_LENGTH,
    DecodeCoordinator,
    describe_decode_error,
    grouping_text,
)
from crashbucket.core.fingerprint import Fingerprinter
from crashbucket.core.models import DecodeOutcome
from crashbucket.tests.fakes import FailingDecoderPort, FakeDecoderPort, SlowDecoderPort

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

RAW = "a.b: boom\n\tat a.c.d(Unknown Source:12)"
MAPPING = b"a.b=java.lang.IllegalStateException\na.c.d=com.example.Cart.checkout"


def _clock() -> datetime:
    return T0


class TestDecode:
    """DecodeCoordinator.decode outcomes."""

    @pytest.mark.asyncio
    async def test_no_symbol_map_skips_decoder(self) -> None:
        decoder = FakeDecoderPort()
        outcome = await DecodeCoordinator(decoder).decode(RAW, None)

        assert outcome == DecodeOutcome.skipped()
        assert decoder.calls == []

    @pytest.mark.asyncio
    async def test_success_joins_decoded_lines(self) -> None:
        coordinator = DecodeCoordinator(FakeDecoderPort(), clock=_clock)
        outcome = await coordinator.decode(RAW, MAPPING)

        assert outcome.succeeded
        assert outcome.decoded_at == T0
        assert outcome.decoded_text == (
            "java.lang.IllegalStateException: boom\n"
            "\tat com.example.Cart.checkout(Unknown Source:12)"
        )

    @pytest.mark.asyncio
    async def test_decoder_exception_becomes_failure(self) -> None:
        coordinator = DecodeCoordinator(FailingDecoderPort(ValueError("bad header")))
        outcome = await coordinator.decode(RAW, MAPPING)

        assert outcome.failed
        assert outcome.error == "ValueError: bad header"
        assert outcome.decoded_text is None

    @pytest.mark.asyncio
    async def test_slow_decoder_times_out(self) -> None:
        coordinator = DecodeCoordinator(SlowDecoderPort(delay_seconds=0.5), timeout_seconds=0.05)
        outcome = await coordinator.decode(RAW, MAPPING)

        assert outcome.failed
        assert outcome.error.startswith("TimeoutError")

    def test_timeout_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            DecodeCoordinator(FakeDecoderPort(), timeout_seconds=0)


class TestProcessCrash:
    """Fingerprint and signature derivation per grouping source."""

    @pytest.mark.asyncio
    async def test_raw_source_fingerprints_raw_text(self) -> None:
        coordinator = DecodeCoordinator(FakeDecoderPort(), grouping_source="raw")
        processed = await coordinator.process_crash("app", 1, RAW, MAPPING)

        assert processed.fingerprint == Fingerprinter.fingerprint(RAW)
        # Signature still shows de-obfuscated names
        assert processed.signature.exception_class == "java.lang.IllegalStateException"

    @pytest.mark.asyncio
    async def test_decoded_source_fingerprints_decoded_text(self) -> None:
        coordinator = DecodeCoordinator(FakeDecoderPort(), grouping_source="decoded")
        processed = await coordinator.process_crash("app", 1, RAW, MAPPING)

        assert processed.fingerprint == Fingerprinter.fingerprint(processed.outcome.decoded_text)
        assert processed.fingerprint != Fingerprinter.fingerprint(RAW)

    @pytest.mark.asyncio
    async def test_decode_failure_groups_on_raw_text(self) -> None:
        coordinator = DecodeCoordinator(FailingDecoderPort(), grouping_source="decoded")
        processed = await coordinator.process_crash("app", 1, RAW, MAPPING)

        assert processed.outcome.error == "RuntimeError: corrupt mapping"
        assert processed.fingerprint == Fingerprinter.fingerprint(RAW)
        assert processed.signature.exception_class == "a.b"
        assert processed.signature.exception_message == "boom"

    @pytest.mark.asyncio
    async def test_same_crash_same_fingerprint_with_or_without_map(self) -> None:
        coordinator = DecodeCoordinator(FakeDecoderPort())
        with_map = await coordinator.process_crash("app", 1, RAW, MAPPING)
        without_map = await coordinator.process_crash("app", 1, RAW, None)

        assert with_map.fingerprint == without_map.fingerprint


class TestHelpers:
    def test_describe_error_without_message(self) -> None:
        assert describe_decode_error(MemoryError()) == "MemoryError"

    def test_describe_error_is_clipped(self) -> None:
        text = describe_decode_error(RuntimeError("x" * 5000))
        assert len(text) == MAX_DECODE_ERROR_LENGTH

    def test_grouping_text_falls_back_to_raw(self) -> None:
        assert grouping_text(RAW, DecodeOutcome.failure("err"), "decoded") == RAW
        decoded = DecodeOutcome.success("decoded", T0)
        assert grouping_text(RAW, decoded, "decoded") == "decoded"
        assert grouping_text(RAW, decoded, "raw") == RAW

"""Tests for crash fingerprinting."""

import re

from crashbucket.core.fingerprint import Fingerprinter

TRACE = """java.lang.IllegalStateException: Expected 3 items but got 5
\tat com.example.Cart.checkout(Cart.java:42)
\tat com.example.CartActivity.onClick(CartActivity.java:88)
\tat android.view.View.performClick(View.java:7448)
\tat android.os.Handler.handleCallback(Handler.java:938)"""


class TestFingerprint:
    """Stable digest over the significant lines of a trace."""

    def test_format_is_32_lowercase_hex(self) -> None:
        assert re.fullmatch(r"[0-9a-f]{32}", Fingerprinter.fingerprint(TRACE))

    def test_deterministic(self) -> None:
        assert Fingerprinter.fingerprint(TRACE) == Fingerprinter.fingerprint(TRACE)

    def test_empty_trace_hashes_empty_payload(self) -> None:
        # First 16 bytes of SHA-256 of the empty string
        assert Fingerprinter.fingerprint("") == "e3b0c44298fc1c149afbf4c8996fb924"

    def test_message_numbers_do_not_change_fingerprint(self) -> None:
        other = TRACE.replace("Expected 3 items but got 5", "Expected 10 items but got 0")
        assert Fingerprinter.fingerprint(other) == Fingerprinter.fingerprint(TRACE)

    def test_different_frame_changes_fingerprint(self) -> None:
        other = TRACE.replace("Cart.checkout(Cart.java:42)", "Cart.checkout(Cart.java:43)")
        assert Fingerprinter.fingerprint(other) != Fingerprinter.fingerprint(TRACE)

    def test_different_exception_class_changes_fingerprint(self) -> None:
        other = TRACE.replace("IllegalStateException", "IllegalArgumentException")
        assert Fingerprinter.fingerprint(other) != Fingerprinter.fingerprint(TRACE)

    def test_frame_indentation_is_ignored(self) -> None:
        other = TRACE.replace("\tat ", "    at ")
        assert Fingerprinter.fingerprint(other) == Fingerprinter.fingerprint(TRACE)

    def test_only_first_five_significant_lines_count(self) -> None:
        longer = TRACE + "\n\tat com.example.Deep.one(Deep.java:1)"
        other = TRACE + "\n\tat com.example.Deep.two(Deep.java:2)"
        assert Fingerprinter.fingerprint(longer) == Fingerprinter.fingerprint(other)
        assert Fingerprinter.fingerprint(longer) == Fingerprinter.fingerprint(TRACE)

    def test_non_significant_lines_are_ignored(self) -> None:
        other = TRACE.replace("\n\tat android.view", "\n\t... 12 more\n\tat android.view")
        assert Fingerprinter.fingerprint(other) == Fingerprinter.fingerprint(TRACE)


class TestSignificantLines:
    """Selection of the lines that feed the digest."""

    def test_selects_exception_and_frame_lines(self) -> None:
        trace = (
            "java.lang.RuntimeException: failed after 3 retries\n"
            "\tat com.example.Sync.run(Sync.java:10)\n"
            "some unrelated log line\n"
            "Caused by: java.io.IOException: timeout after 30 ms\n"
            "\tat com.example.Net.read(Net.java:55)"
        )
        assert Fingerprinter.significant_lines(trace) == [
            "java.lang.RuntimeException: failed after <N> retries",
            "at com.example.Sync.run(Sync.java:10)",
            "Caused by: java.io.IOException: timeout after <N> ms",
            "at com.example.Net.read(Net.java:55)",
        ]

    def test_frame_lines_are_not_normalized(self) -> None:
        lines = Fingerprinter.significant_lines("\tat com.example.A.b(A.java:123)")
        assert lines == ["at com.example.A.b(A.java:123)"]

    def test_caps_at_five_lines(self) -> None:
        trace = "\n".join(f"\tat com.example.F.m{i}(F.java:{i})" for i in range(8))
        assert len(Fingerprinter.significant_lines(trace)) == 5

    def test_is_frame_line(self) -> None:
        assert Fingerprinter.is_frame_line("\tat com.example.A.b(A.java:1)")
        assert not Fingerprinter.is_frame_line("java.lang.Error: at the end")

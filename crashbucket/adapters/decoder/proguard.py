"""ProGuard/R8 mapping file decoder.

Implements DecoderPort by parsing the textual mapping that ProGuard and R8
emit and rewriting class names on exception lines plus class, method and
line number on ``at`` frames.

Mapping format (indented lines belong to the preceding class)::

    com.example.Original -> a.b:
    # {"id":"sourceFile","fileName":"Original.kt"}
        int counter -> a
        12:15:void run(int):40:43 -> a
        void stop() -> b
"""

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from functools import lru_cache

from crashbucket.core.ports import DecoderPort

logger = logging.getLogger(__name__)

_CLASS_LINE = re.compile(r"^(\S+)\s*->\s*(\S+):$")
_METHOD_LINE = re.compile(
    r"^\s+(?:(\d+):(\d+):)?\S+\s+([^\s(]+)\([^)]*\)(?::(\d+)(?::(\d+))?)?\s*->\s*(\S+)$"
)
_SOURCE_FILE_COMMENT = re.compile(r'^\s*#\s*(\{.*"sourceFile".*\})\s*$')
_FRAME_LINE = re.compile(r"^(\s*at\s+)([\w$.]+)\.([\w$<>-]+)\(([^)]*)\)(.*)$")
_EXCEPTION_PREFIXES = ("Caused by: ", "Suppressed: ")
_QUALIFIED_NAME = re.compile(r"^[A-Za-z_$][\w$]*(?:\.[A-Za-z_$][\w$]*)*$")


@dataclass(frozen=True)
class _MethodRange:
    original_name: str
    obf_start: int | None
    obf_end: int | None
    original_start: int | None
    original_end: int | None

    def covers(self, line: int) -> bool:
        if self.obf_start is None or self.obf_end is None:
            return False
        return self.obf_start <= line <= self.obf_end

    def map_line(self, line: int) -> int:
        if self.original_start is None:
            return line
        if self.obf_start is None or self.original_end is None:
            return self.original_start
        if self.original_end == self.original_start:
            return self.original_start
        return self.original_start + (line - self.obf_start)


@dataclass
class _ClassMapping:
    original_name: str
    source_file: str | None = None
    methods: dict[str, list[_MethodRange]] = field(default_factory=dict)

    def default_source_file(self) -> str:
        if self.source_file:
            return self.source_file
        simple = self.original_name.rsplit(".", 1)[-1].split("$", 1)[0]
        return f"{simple}.java"


@lru_cache(maxsize=8)
def parse_mapping(mapping: bytes) -> dict[str, _ClassMapping]:
    """Parse a mapping file into {obfuscated class name: _ClassMapping}.

    Raises:
        UnicodeDecodeError: If the mapping is not UTF-8.
        ValueError: If the mapping contains no class entries.
    """
    classes: dict[str, _ClassMapping] = {}
    current: _ClassMapping | None = None

    for line in mapping.decode("utf-8").splitlines():
        if not line.strip():
            continue

        comment = _SOURCE_FILE_COMMENT.match(line)
        if comment:
            if current is not None:
                try:
                    current.source_file = json.loads(comment.group(1)).get("fileName")
                except json.JSONDecodeError:
                    logger.debug(f"Ignoring malformed mapping comment: {line!r}")
            continue
        if line.lstrip().startswith("#"):
            continue

        class_match = _CLASS_LINE.match(line)
        if class_match:
            original, obfuscated = class_match.groups()
            current = _ClassMapping(original_name=original)
            classes[obfuscated] = current
            continue

        method_match = _METHOD_LINE.match(line)
        if method_match and current is not None:
            obf_start, obf_end, original_name, orig_start, orig_end, obf_name = (
                method_match.groups()
            )
            # "pkg.Other.method" marks code inlined from another class
            original_name = original_name.rsplit(".", 1)[-1]
            current.methods.setdefault(obf_name, []).append(
                _MethodRange(
                    original_name=original_name,
                    obf_start=int(obf_start) if obf_start else None,
                    obf_end=int(obf_end) if obf_end else None,
                    original_start=int(orig_start) if orig_start else None,
                    original_end=int(orig_end) if orig_end else None,
                )
            )

    if not classes:
        raise ValueError("Mapping file contains no class entries")
    return classes


class ProGuardDecoder(DecoderPort):
    """Pure-Python retrace of ProGuard/R8 obfuscated stack traces."""

    def decode(self, lines: Sequence[str], mapping: bytes) -> list[str]:
        classes = parse_mapping(mapping)
        decoded = [self._decode_line(line, classes) for line in lines]
        if list(lines) == decoded:
            logger.warning("Retrace produced identical output, mapping may not match")
        return decoded

    def _decode_line(self, line: str, classes: dict[str, _ClassMapping]) -> str:
        frame = _FRAME_LINE.match(line)
        if frame:
            return self._decode_frame(frame, classes)
        return self._decode_exception_line(line, classes)

    @staticmethod
    def _decode_frame(frame: re.Match[str], classes: dict[str, _ClassMapping]) -> str:
        prefix, class_name, method_name, location, rest = frame.groups()
        mapped = classes.get(class_name)
        if mapped is None:
            return frame.group(0)

        line_number: int | None = None
        if ":" in location:
            tail = location.rsplit(":", 1)[1]
            if tail.isdigit():
                line_number = int(tail)

        new_method = method_name
        new_line = line_number
        candidates = mapped.methods.get(method_name, [])
        if candidates:
            chosen = candidates[0]
            if line_number is not None:
                chosen = next((c for c in candidates if c.covers(line_number)), chosen)
                new_line = chosen.map_line(line_number)
            new_method = chosen.original_name

        source = mapped.default_source_file()
        new_location = f"{source}:{new_line}" if new_line is not None else source
        return f"{prefix}{mapped.original_name}.{new_method}({new_location}){rest}"

    @staticmethod
    def _decode_exception_line(line: str, classes: dict[str, _ClassMapping]) -> str:
        indent = line[: len(line) - len(line.lstrip())]
        body = line.lstrip()

        prefix = ""
        for candidate in _EXCEPTION_PREFIXES:
            if body.startswith(candidate):
                prefix = candidate
                body = body[len(candidate):]
                break

        class_name, sep, message = body.partition(":")
        if not _QUALIFIED_NAME.match(class_name):
            return line
        mapped = classes.get(class_name)
        if mapped is None:
            return line
        return f"{indent}{prefix}{mapped.original_name}{sep}{message}"

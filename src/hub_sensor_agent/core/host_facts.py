"""
Host fact collection from the platform description file (/proc/cpuinfo).

Pure line matching, no structured parsing. Each line is tested against three
labels in priority order and contributes to at most one field.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

_LINE_SPLIT_RE = re.compile(r"\r\n|\n")

# (substring label, DeviceMetadata attribute), in per-line priority order
_LABELS = (
    ("model name", "processor_type"),
    ("Model", "platform"),
    ("Hardware", "processor_model"),
)


@dataclass(frozen=True, slots=True)
class DeviceMetadata:
    processor_type: Optional[str] = None
    platform: Optional[str] = None
    processor_model: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Twin shape. Fields that were never found are omitted, not null."""
        out: dict[str, Any] = {}
        if self.processor_type is not None:
            out["processorType"] = self.processor_type
        if self.platform is not None:
            out["platform"] = self.platform
        if self.processor_model is not None:
            out["processorModel"] = self.processor_model
        return out


def parse_host_facts(text: str) -> DeviceMetadata:
    """
    Extract DeviceMetadata from cpuinfo-style text.

    The value is whatever follows the first colon, stripped. The first line
    matching a label wins; lines without a colon are skipped.
    """
    found: dict[str, str] = {}
    for line in _LINE_SPLIT_RE.split(text):
        for label, attr in _LABELS:
            if label in line:
                _, sep, value = line.partition(":")
                if sep and attr not in found:
                    found[attr] = value.strip()
                break
    return DeviceMetadata(**found)


def collect_host_facts(path: str | Path = "/proc/cpuinfo") -> DeviceMetadata:
    """Read the platform description file as UTF-8 (bad bytes replaced) and parse it."""
    text = Path(path).read_text(encoding="utf-8", errors="replace")
    return parse_host_facts(text)

"""
Frame Data Model
=================

Internal frame representation for the preview pipeline.

This module defines the typed Frame class passed from the extractor
to the broadcast registry and the still capture endpoint.

Design Rules:
    - A Frame always holds one complete JPEG (SOI through EOI)
    - Does NOT decode or manipulate image data
    - Immutable once created
"""

import time
from dataclasses import dataclass, field


SOI_MARKER = b"\xff\xd8"
EOI_MARKER = b"\xff\xd9"


@dataclass(frozen=True, slots=True)
class Frame:
    """
    One complete JPEG image cut from the capture byte stream.

    Attributes:
        data: Encoded JPEG bytes, starting with FF D8 and ending with FF D9
        timestamp: Monotonic clock reading when the frame was extracted
    """

    data: bytes
    timestamp: float = field(default_factory=time.monotonic)

    def __len__(self) -> int:
        return len(self.data)

    def __repr__(self) -> str:
        """Compact repr that doesn't dump the full image."""
        return f"Frame(size={len(self.data)}, timestamp={self.timestamp:.3f})"

"""
Frame Extractor
===============

Splits a raw MJPEG byte stream into complete JPEG frames.

The capture process writes back-to-back JPEG images to stdout with no
container framing. Chunks arrive at arbitrary offsets, so frames are
located by scanning for the start-of-image (FF D8) and end-of-image
(FF D9) markers.

Design Rules:
    - Never emits a partial frame
    - Retains at most one in-flight frame between chunks
    - Garbage before a start marker is discarded (silent resync)
    - A lone trailing FF byte is kept, it may begin a split start marker
    - One extractor per capture session, fed in arrival order
"""

import time
from typing import Callable, List

from camstream.stream.frame import EOI_MARKER, SOI_MARKER, Frame


class FrameExtractor:
    """
    Incremental JPEG frame extractor.

    Example:
        extractor = FrameExtractor()

        for chunk in chunks:
            for frame in extractor.feed(chunk):
                broadcast(frame)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._buffer = bytearray()
        self._clock = clock
        self._frames_extracted: int = 0
        self._bytes_discarded: int = 0

    @property
    def buffered(self) -> int:
        """Number of bytes retained for the next frame."""
        return len(self._buffer)

    @property
    def frames_extracted(self) -> int:
        return self._frames_extracted

    @property
    def bytes_discarded(self) -> int:
        """Bytes dropped while resynchronizing on a start marker."""
        return self._bytes_discarded

    def feed(self, chunk: bytes) -> List[Frame]:
        """
        Append a chunk and return every frame it completes.

        Args:
            chunk: Next slice of the capture stream

        Returns:
            Complete frames in stream order (possibly empty)
        """
        buf = self._buffer
        buf += chunk
        frames: List[Frame] = []

        while True:
            soi = buf.find(SOI_MARKER)
            if soi < 0:
                # A trailing FF may be the first half of a split start marker
                keep = 1 if buf.endswith(SOI_MARKER[:1]) else 0
                self._bytes_discarded += len(buf) - keep
                del buf[:len(buf) - keep]
                break

            eoi = buf.find(EOI_MARKER, soi + 2)
            if eoi < 0:
                if soi > 0:
                    self._bytes_discarded += soi
                    del buf[:soi]
                break

            frames.append(Frame(data=bytes(buf[soi:eoi + 2]), timestamp=self._clock()))
            self._bytes_discarded += soi
            del buf[:eoi + 2]

        self._frames_extracted += len(frames)
        return frames

    def reset(self) -> None:
        """Drop any partially received frame."""
        self._buffer.clear()

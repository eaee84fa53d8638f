"""
Stream Module
=============

Byte-stream handling for the preview pipeline.

This module provides the framing layer:
    - Frame: One complete JPEG image
    - FrameExtractor: Splits raw MJPEG bytes into frames
    - encode_part: Multipart part encoding for viewers

Example:
    from camstream.stream import FrameExtractor, encode_part

    extractor = FrameExtractor()
    for frame in extractor.feed(chunk):
        sink.write(encode_part(frame))
"""

from camstream.stream.frame import EOI_MARKER, SOI_MARKER, Frame
from camstream.stream.extractor import FrameExtractor
from camstream.stream.multipart import DEFAULT_BOUNDARY, content_type, encode_part


__all__ = [
    "Frame",
    "FrameExtractor",
    "SOI_MARKER",
    "EOI_MARKER",
    "DEFAULT_BOUNDARY",
    "content_type",
    "encode_part",
]

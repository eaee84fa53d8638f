"""
Multipart Framing
=================

Encodes frames as parts of a multipart/x-mixed-replace response.

Each part is:
    --<boundary>\\r\\n
    Content-Type: image/jpeg\\r\\n
    Content-Length: <N>\\r\\n
    \\r\\n
    <N JPEG bytes>\\r\\n
"""

from camstream.stream.frame import Frame


DEFAULT_BOUNDARY = "frame"


def content_type(boundary: str = DEFAULT_BOUNDARY) -> str:
    """Response Content-Type for a stream using the given boundary."""
    return f"multipart/x-mixed-replace; boundary={boundary}"


def encode_part(frame: Frame, boundary: str = DEFAULT_BOUNDARY) -> bytes:
    """
    Encode one frame as a single multipart part.

    The part is returned as one bytes object so a sink can queue or
    drop it as a unit without tearing a frame.
    """
    header = (
        f"--{boundary}\r\n"
        f"Content-Type: image/jpeg\r\n"
        f"Content-Length: {len(frame.data)}\r\n\r\n"
    ).encode("ascii")
    return header + frame.data + b"\r\n"

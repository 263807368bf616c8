"""Decoder for the multiplexed stdout/stderr stream of ``GET /containers/{id}/logs``.

Each frame is an 8-byte header followed by its payload::

    [stream, 0, 0, 0, size (big-endian uint32)] payload

where stream is 1 for stdout and 2 for stderr.
"""

import struct
from typing import Dict, List

HEADER = struct.Struct('>BxxxL')

STREAM_NAMES = {1: 'stdout', 2: 'stderr'}


def demux_log_frames(data: bytes) -> List[Dict[str, str]]:
    """Split a log buffer into ``{'stream', 'message'}`` lines.

    A trailing frame whose payload is cut short ends decoding; the complete
    frames before it are returned.  Blank payloads are skipped.
    """
    lines = []
    offset = 0
    end = len(data)

    while end - offset >= HEADER.size:
        stream_type, size = HEADER.unpack_from(data, offset)
        start = offset + HEADER.size
        if end - start < size:
            break

        message = data[start:start + size].decode('utf-8', errors='replace').strip()
        if message:
            lines.append({
                'stream': STREAM_NAMES.get(stream_type, 'stderr'),
                'message': message,
            })
        offset = start + size

    return lines

"""
Docker multiplexed stream framing.

When an exec is started without a TTY, Docker sends stdout and stderr over a
single connection. Every frame starts with an 8 byte header:

    byte 0     stream selector (0 stdin, 1 stdout, 2 stderr)
    bytes 1-3  unused
    bytes 4-7  payload length, big-endian uint32

Reads from the socket do not line up with frame boundaries, so the demuxer
buffers partial headers and payloads between calls to feed().
"""

import struct

STDIN = 0
STDOUT = 1
STDERR = 2

HEADER_SIZE = 8
_HEADER = struct.Struct('>BxxxL')


class FrameDemuxer:
    """Incremental parser for Docker's 8-byte framed stream format"""

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, chunk):
        """Consume a chunk and return the list of complete (stream, payload) frames"""
        if chunk:
            self._buffer.extend(chunk)
        frames = []
        while len(self._buffer) >= HEADER_SIZE:
            stream, length = _HEADER.unpack_from(self._buffer, 0)
            end = HEADER_SIZE + length
            if len(self._buffer) < end:
                break
            payload = bytes(self._buffer[HEADER_SIZE:end])
            del self._buffer[:end]
            # stdin frames only show up for attached stdin; treat them as output
            frames.append((STDERR if stream == STDERR else STDOUT, payload))
        return frames

    @property
    def pending(self):
        """Number of buffered bytes belonging to an incomplete frame"""
        return len(self._buffer)


def encode_frame(stream, payload):
    """Build a single frame. Used by tests and by anything faking the daemon."""
    return _HEADER.pack(stream, len(payload)) + payload


class LineSplitter:
    """Turns an arbitrary byte stream into complete decoded lines"""

    def __init__(self, encoding='utf-8'):
        self._encoding = encoding
        self._partial = b''

    def feed(self, data):
        self._partial += data
        *lines, self._partial = self._partial.split(b'\n')
        return [line.decode(self._encoding, errors='replace').rstrip('\r') for line in lines]

    def flush(self):
        rest, self._partial = self._partial, b''
        return [rest.decode(self._encoding, errors='replace')] if rest else []

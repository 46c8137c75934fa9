"""
Bounds-checked reader for little-endian A2S payloads.
"""

import struct

from mastersteam.errors import MalformedFrameError

_INT8 = struct.Struct('<B')
_UINT16 = struct.Struct('<H')
_INT32 = struct.Struct('<i')
_UINT32 = struct.Struct('<I')
_UINT64 = struct.Struct('<Q')
_FLOAT32 = struct.Struct('<f')


class PacketReader:
    """
    Sequential reader over an untrusted datagram.

    Every read checks the remaining length first and raises
    MalformedFrameError instead of running past the end of the buffer.
    """

    def __init__(self, data: bytes, offset: int = 0):
        self.data = bytes(data)
        self.offset = offset

    @property
    def remaining(self) -> int:
        return len(self.data) - self.offset

    def _require(self, size: int, what: str):
        if size > self.remaining:
            raise MalformedFrameError(
                f"truncated packet: need {size} byte(s) for {what} at offset "
                f"{self.offset}, {self.remaining} left"
            )

    def _unpack(self, fmt: struct.Struct, what: str):
        self._require(fmt.size, what)
        value = fmt.unpack_from(self.data, self.offset)[0]
        self.offset += fmt.size
        return value

    def read_uint8(self, what: str = 'byte') -> int:
        return self._unpack(_INT8, what)

    def read_uint16(self, what: str = 'short') -> int:
        return self._unpack(_UINT16, what)

    def read_int32(self, what: str = 'long') -> int:
        return self._unpack(_INT32, what)

    def read_uint32(self, what: str = 'long') -> int:
        return self._unpack(_UINT32, what)

    def read_uint64(self, what: str = 'long long') -> int:
        return self._unpack(_UINT64, what)

    def read_float32(self, what: str = 'float') -> float:
        return self._unpack(_FLOAT32, what)

    def read_bytes(self, size: int, what: str = 'bytes') -> bytes:
        self._require(size, what)
        chunk = self.data[self.offset:self.offset + size]
        self.offset += size
        return chunk

    def read_rest(self) -> bytes:
        chunk = self.data[self.offset:]
        self.offset = len(self.data)
        return chunk

    def read_cstring(self, what: str = 'string') -> str:
        """Read a NUL-terminated string (UTF-8, undecodable bytes replaced)."""
        end = self.data.find(b'\x00', self.offset)
        if end < 0:
            raise MalformedFrameError(
                f"unterminated {what} at offset {self.offset}"
            )
        raw = self.data[self.offset:end]
        self.offset = end + 1
        return raw.decode('utf-8', errors='replace')

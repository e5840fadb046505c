#!/usr/bin/env python3
"""
LZSS decoder for the .lzs entries of the FF4 PAC archives.

Stream layout after a 4-byte preamble: a flag byte, then eight items, each a
literal byte (bit set) or a 2-byte window reference (bit clear). Bits are read
LSB first. References address the 4096-byte window absolutely; the window
starts zeroed and the first decoded byte lands at 0xFEE.
"""

from __future__ import annotations

from typing import Optional

from ff4_errors import InvalidDecodeLength

THRESHOLD = 2
MAX_LENGTH = 18
WINDOW_SIZE = 4096
WINDOW_START = WINDOW_SIZE - MAX_LENGTH  # 0xFEE
PREAMBLE_SIZE = 4

IMAGE_MAGIC = b"TIM2"
LZTX_MAGIC = b"LZTX"


def decompress(src: bytes) -> bytes:
    n = len(src)
    window = bytearray(WINDOW_SIZE + MAX_LENGTH - 1)
    r = WINDOW_START
    out = bytearray()
    pos = PREAMBLE_SIZE
    flags = 0
    bit = 0

    while pos < n:
        if bit == 0:
            flags = src[pos]
            pos += 1
            if pos == n:
                break

        if flags & 1:
            c = src[pos]
            pos += 1
            out.append(c)
            window[r] = c
            r = (r + 1) % WINDOW_SIZE
        else:
            if pos + 1 == n:
                raise InvalidDecodeLength(pos, n)
            b0 = src[pos]
            b1 = src[pos + 1]
            pos += 2
            match_offset = b0 | ((b1 & 0xF0) << 4)
            match_len = (b1 & 0x0F) + THRESHOLD
            # Byte at a time: the match may overlap bytes written by this copy.
            for k in range(match_len + 1):
                c = window[(match_offset + k) % WINDOW_SIZE]
                out.append(c)
                window[r] = c
                r = (r + 1) % WINDOW_SIZE

        flags >>= 1
        bit = (bit + 1) % 8

    return bytes(out)


def decompress_entry(entry: bytes) -> bytes:
    """Decode a whole .lzs entry: a size preamble precedes the stream passed to decompress()."""
    return decompress(entry[PREAMBLE_SIZE:])


def has_image_magic(buffer: bytes) -> bool:
    return len(buffer) > 4 and buffer[:4] == IMAGE_MAGIC


def image_payload_offset(buffer: bytes) -> Optional[int]:
    """Offset of a compressed image wrapped behind a size preamble, if any."""
    if len(buffer) < 16:
        return None
    if buffer[5:9] == IMAGE_MAGIC:
        return 4
    if buffer[9:13] == IMAGE_MAGIC:
        return 8
    return None


def unwrap_image(buffer: bytes) -> bytes:
    off = image_payload_offset(buffer)
    if off is not None:
        return decompress(buffer[off:])
    if buffer[:4] == LZTX_MAGIC:
        return decompress(buffer[4:])
    return bytes(buffer)

#!/usr/bin/env python3
"""
Error types shared by the FF4 (PSP) asset tools.

Format problems derive from DecodeError (a ValueError). Filesystem and
payload problems derive from OSError and abort an extraction run.
"""

from __future__ import annotations


class DecodeError(ValueError):
    pass


class InvalidIdentifier(DecodeError):
    def __init__(self, identifier: int):
        super().__init__(f"invalid image identifier: 0x{identifier:08X}")
        self.identifier = identifier


class InvalidBpp(DecodeError):
    def __init__(self, bpp: int):
        super().__init__(f"unsupported bits per pixel: {bpp}")
        self.bpp = bpp


class InvalidBppFormat(DecodeError):
    def __init__(self, selector: int):
        super().__init__(f"unknown pixel format selector: {selector}")
        self.selector = selector


class TrueColorAndPaletteFound(DecodeError):
    def __init__(self) -> None:
        super().__init__("true color frame declares a palette")


class InvalidRange(DecodeError):
    pass


class InvalidMetadata(DecodeError):
    pass


class InvalidFileNum(DecodeError):
    """Entry number in a nested pack does not match its position."""

    def __init__(self, file_num: int, index: int):
        super().__init__(f"invalid file num: {file_num} should be: {index}")
        self.file_num = file_num
        self.index = index


class InvalidDecodeLength(DecodeError):
    """Compressed stream ends in the middle of a match descriptor."""

    def __init__(self, offset: int, length: int):
        super().__init__(f"mismatch decoding: {offset} / {length}")
        self.offset = offset
        self.length = length


class EmptyStream(DecodeError):
    """A .lzs file decodes to nothing, usually because it was already decoded."""

    def __init__(self) -> None:
        super().__init__("stream decodes to no data (already decompressed?)")


class NestingTooDeep(DecodeError):
    def __init__(self, depth: int):
        super().__init__(f"nested pack depth exceeds {depth}")
        self.depth = depth


class NoBasePath(OSError):
    def __init__(self, path: object):
        super().__init__(f"no base path for {path}")
        self.path = path


class PayloadTruncated(OSError):
    def __init__(self, path: object, offset: int, wanted: int, got: int):
        super().__init__(f"{path}: short read at 0x{offset:08X} (wanted {wanted} bytes, got {got})")
        self.path = path
        self.offset = offset
        self.wanted = wanted
        self.got = got

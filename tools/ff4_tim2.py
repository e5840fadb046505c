#!/usr/bin/env python3
"""
TIM2 (.tm2) image decoding for FF4 (PSP) textures.

A container holds one or more frames. Each frame is a 48-byte header plus
optional user data, the pixel block, then the palette block. Pixel blocks are
stored in 16x8 GS tiles and are unswizzled to row-major order on load.
8-bit palettes in hardware order (CLUT format bit 7 clear) are linearized.
"""

from __future__ import annotations

import dataclasses
import enum
import pathlib
import struct
from typing import List, Optional, Sequence, Tuple, TypeVar

import numpy as np
from PIL import Image as PILImage

from ff4_errors import (
    InvalidBpp,
    InvalidBppFormat,
    InvalidIdentifier,
    InvalidRange,
    TrueColorAndPaletteFound,
)

IDENT = 0x54494D32  # "TIM2"
FILE_HEADER = struct.Struct(">I")
FILE_HEADER_TAIL = struct.Struct("<HH8x")
FRAME_HEADER = struct.Struct("<IIIHHBBBBHH8s8sII")
FRAME_HEADER_SIZE = FRAME_HEADER.size  # 48

SWIZZLE_WIDTH = 16
SWIZZLE_HEIGHT = 8

BPP_BY_SELECTOR = {1: 16, 2: 24, 3: 32, 4: 4, 5: 8}

Pixel = Tuple[int, int, int, int]
T = TypeVar("T")


class PixelFormat(enum.Enum):
    INDEXED = "indexed"
    ABGR1555 = "abgr1555"
    RGB888 = "rgb888"
    RGBA8888 = "rgba8888"


class DataKind(enum.Enum):
    INDICES = "indices"
    PIXELS = "pixels"


def _take(buf: bytes, off: int, size: int, what: str) -> bytes:
    if off < 0 or size < 0 or off + size > len(buf):
        raise InvalidRange(f"{what} out of range: 0x{off:X}+0x{size:X} > 0x{len(buf):X}")
    return buf[off : off + size]


def _expand5(v: int) -> int:
    return int(round(v / 31.0 * 255.0))


def pixel_from_bytes(buf: bytes) -> Pixel:
    n = len(buf)
    if n == 2:
        raw = (buf[0] << 8) | buf[1]
        return (
            _expand5(raw & 0x1F),
            _expand5((raw >> 5) & 0x1F),
            _expand5((raw >> 10) & 0x1F),
            255 if (raw >> 15) == 1 else 0,
        )
    if n == 3:
        return (buf[0], buf[1], buf[2], 255)
    if n == 4:
        return (buf[0], buf[1], buf[2], buf[3])
    raise InvalidRange(f"unsupported color entry size: {n}")


def read_colors(buf: bytes, color_size: int) -> List[Pixel]:
    if color_size not in (2, 3, 4):
        raise InvalidRange(f"unsupported color entry size: {color_size}")
    return [pixel_from_bytes(buf[i : i + color_size]) for i in range(0, len(buf) - color_size + 1, color_size)]


def unswizzle(buffer: Sequence[T], width: int, height: int, fill: T) -> List[T]:
    """Undo 16x8 GS tiling. Cells past the image edge still consume a source item."""
    out: List[T] = [fill] * (width * height)
    n = len(buffer)
    si = 0
    for ty in range(0, height, SWIZZLE_HEIGHT):
        for tx in range(0, width, SWIZZLE_WIDTH):
            for y in range(ty, ty + SWIZZLE_HEIGHT):
                for x in range(tx, tx + SWIZZLE_WIDTH):
                    if x < width and y < height and si < n:
                        out[y * width + x] = buffer[si]
                    si += 1
    return out


def linearize_palette(palette: Sequence[T]) -> List[T]:
    # Undo the CSM1 2x2x8 interleave on each 32-entry part.
    out = list(palette)
    i = 0
    for part in range(len(palette) // 32):
        for block in range(2):
            for stripe in range(2):
                for color in range(8):
                    out[i] = palette[part * 32 + block * 8 + stripe * 16 + color]
                    i += 1
    return out


@dataclasses.dataclass(frozen=True)
class Header:
    total_size: int
    clut_size: int
    image_size: int
    header_size: int
    clut_color_count: int
    picture_format: int
    mipmap_count: int
    clut_format: int
    bpp: int
    width: int
    height: int
    gs_tex0: bytes
    gs_tex1: bytes
    gs_regs: int
    gs_tex_clut: int
    user_data: bytes = b""

    def has_mipmaps(self) -> bool:
        return self.mipmap_count > 1

    def is_linear_palette(self) -> bool:
        return (self.clut_format & 0x80) != 0

    def color_size(self) -> int:
        if self.bpp > 8:
            return self.bpp // 8
        return (self.clut_format & 0x07) + 1

    def pixel_format(self) -> PixelFormat:
        if self.bpp in (4, 8):
            return PixelFormat.INDEXED
        if self.bpp == 16:
            return PixelFormat.ABGR1555
        if self.bpp == 24:
            return PixelFormat.RGB888
        if self.bpp == 32:
            return PixelFormat.RGBA8888
        raise InvalidBpp(self.bpp)


def read_header(buf: bytes, off: int) -> Tuple[Header, int]:
    raw = _take(buf, off, FRAME_HEADER_SIZE, "frame header")
    (
        total_size,
        clut_size,
        image_size,
        header_size,
        clut_color_count,
        picture_format,
        mipmap_count,
        clut_format,
        selector,
        width,
        height,
        gs_tex0,
        gs_tex1,
        gs_regs,
        gs_tex_clut,
    ) = FRAME_HEADER.unpack(raw)
    off += FRAME_HEADER_SIZE

    bpp = BPP_BY_SELECTOR.get(selector)
    if bpp is None:
        raise InvalidBppFormat(selector)

    user_data = b""
    user_size = header_size - FRAME_HEADER_SIZE
    if user_size > 0:
        user_data = _take(buf, off, user_size, "user data")
        off += user_size

    if clut_size > 0 and bpp > 8:
        raise TrueColorAndPaletteFound()

    header = Header(
        total_size=total_size,
        clut_size=clut_size,
        image_size=image_size,
        header_size=header_size,
        clut_color_count=clut_color_count,
        picture_format=picture_format,
        mipmap_count=mipmap_count,
        clut_format=clut_format,
        bpp=bpp,
        width=width,
        height=height,
        gs_tex0=gs_tex0,
        gs_tex1=gs_tex1,
        gs_regs=gs_regs,
        gs_tex_clut=gs_tex_clut,
        user_data=user_data,
    )
    return header, off


def _read_data(buf: bytes, off: int, header: Header) -> Tuple[DataKind, list, int]:
    blob = _take(buf, off, header.image_size, "image data")
    off += header.image_size

    if header.bpp == 4:
        data = bytearray(len(blob) * 2)
        for i, pair in enumerate(blob):
            data[i * 2] = (pair & 0xF0) >> 4
            data[i * 2 + 1] = pair & 0x0F
    else:
        data = bytearray(blob)

    if header.clut_size > 0:
        return DataKind.INDICES, unswizzle(data, header.width, header.height, 0), off

    if header.pixel_format() is PixelFormat.INDEXED:
        # Indexed depth with nothing to index into.
        raise InvalidBpp(header.bpp)
    colors = read_colors(bytes(data), header.bpp // 8)
    return DataKind.PIXELS, unswizzle(colors, header.width, header.height, (0, 0, 0, 0)), off


def _read_palettes(buf: bytes, off: int, header: Header) -> Tuple[List[List[Pixel]], int]:
    total = header.clut_size
    if total == 0:
        return [], off
    blob = _take(buf, off, total, "palette data")
    off += total

    color_size = header.color_size()
    size = header.clut_color_count * color_size
    if size == 0:
        raise InvalidRange("palette declares no colors")

    palettes: List[List[Pixel]] = []
    for i in range(total // size):
        palette = read_colors(blob[i * size : (i + 1) * size], color_size)
        if header.bpp == 8 and not header.is_linear_palette():
            palette = linearize_palette(palette)
        palettes.append(palette)
    return palettes, off


class Frame:
    def __init__(self, header: Header, kind: DataKind, data: list, palettes: List[List[Pixel]]):
        self.header = header
        self.kind = kind
        self.data = data
        self.palettes = palettes

    @classmethod
    def read(cls, buf: bytes, off: int) -> Tuple["Frame", int]:
        header, off = read_header(buf, off)
        kind, data, off = _read_data(buf, off, header)
        palettes, off = _read_palettes(buf, off, header)
        return cls(header, kind, data, palettes), off

    @property
    def width(self) -> int:
        return self.header.width

    @property
    def height(self) -> int:
        return self.header.height

    def has_mipmaps(self) -> bool:
        return self.header.has_mipmaps()

    def get_pixels(self) -> List[Pixel]:
        if self.kind is DataKind.PIXELS:
            return list(self.data)
        if not self.palettes:
            raise InvalidRange("indexed frame has no palette")
        # TODO: pick palettes[n] per animation frame once the variant mapping is known.
        palette = self.palettes[0]
        limit = len(palette)
        out: List[Pixel] = []
        for index in self.data:
            if index >= limit:
                raise InvalidRange(f"palette index {index} >= palette size {limit}")
            out.append(palette[index])
        return out

    def to_raw(self, color_key: Optional[Pixel] = None) -> bytes:
        out = bytearray()
        key = tuple(color_key[:3]) if color_key is not None else None
        for r, g, b, a in self.get_pixels():
            if key is not None and (r, g, b) == key:
                a = 0
            out += bytes((r, g, b, a))
        return bytes(out)

    def to_array(self, color_key: Optional[Pixel] = None) -> np.ndarray:
        raw = np.frombuffer(self.to_raw(color_key), dtype=np.uint8)
        return raw.reshape(self.height, self.width, 4)

    def summary(self) -> dict:
        h = self.header
        return {
            "width": h.width,
            "height": h.height,
            "bpp": h.bpp,
            "pixel_format": h.pixel_format().value,
            "data_kind": self.kind.value,
            "total_size": h.total_size,
            "image_size": h.image_size,
            "clut_size": h.clut_size,
            "clut_color_count": h.clut_color_count,
            "clut_format": f"0x{h.clut_format:02X}",
            "linear_palette": h.is_linear_palette(),
            "palettes": len(self.palettes),
            "mipmap_count": h.mipmap_count,
            "gs_tex0": h.gs_tex0.hex(),
            "gs_tex1": h.gs_tex1.hex(),
            "gs_regs": f"0x{h.gs_regs:08X}",
            "gs_tex_clut": f"0x{h.gs_tex_clut:08X}",
            "user_data": h.user_data.hex(),
        }


@dataclasses.dataclass
class Image:
    version: int
    frames: List[Frame]

    def get_frame(self, index: int) -> Frame:
        return self.frames[index]


def parse(buffer: bytes) -> Image:
    raw = _take(buffer, 0, 16, "file header")
    (identifier,) = FILE_HEADER.unpack_from(raw, 0)
    version, count = FILE_HEADER_TAIL.unpack_from(raw, 4)
    if identifier != IDENT:
        raise InvalidIdentifier(identifier)

    off = 16
    frames: List[Frame] = []
    for _ in range(count):
        frame, off = Frame.read(buffer, off)
        frames.append(frame)
    return Image(version=version, frames=frames)


def load(path: pathlib.Path) -> Image:
    return parse(pathlib.Path(path).read_bytes())


def save_png(out_path: pathlib.Path, frame: Frame, color_key: Optional[Pixel] = None) -> None:
    out_path = pathlib.Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    img = PILImage.frombytes("RGBA", (frame.width, frame.height), frame.to_raw(color_key))
    img.save(out_path)

#!/usr/bin/env python3
"""
Build a deduplicated tile atlas from extracted FF4 map images.

Inputs:
- an extracted data folder holding CN_* map folders
- a tileset name; images named *_<name>.tm2 are used

Output:
- tilemap_<name>.png: every distinct 32x32 tile, first-seen order, packed
  into a near-square grid
"""

from __future__ import annotations

import argparse
import hashlib
import math
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
from PIL import Image

import ff4_tim2

TILE_SIZE = 32
COLOR_KEY = (0, 255, 0, 255)


def _map_dirs(root: Path) -> List[Path]:
    return sorted(
        p
        for p in root.iterdir()
        if p.is_dir() and p.name.startswith("CN_") and not p.name.endswith("_char") and "_d_" not in p.name
    )


def _tileset_files(directory: Path, name: str) -> List[Path]:
    suffix = f"_{name}.tm2"
    return sorted(
        p for p in directory.iterdir() if p.is_file() and p.name.endswith(suffix) and not p.name.startswith("dtown_")
    )


def collect_tiles(paths: List[Path], color_key: Optional[ff4_tim2.Pixel] = COLOR_KEY) -> Dict[str, np.ndarray]:
    tiles: Dict[str, np.ndarray] = {}
    for path in paths:
        image = ff4_tim2.load(path)
        for frame in image.frames:
            arr = frame.to_array(color_key)
            for ty in range(frame.height // TILE_SIZE):
                for tx in range(frame.width // TILE_SIZE):
                    tile = arr[ty * TILE_SIZE : (ty + 1) * TILE_SIZE, tx * TILE_SIZE : (tx + 1) * TILE_SIZE]
                    key = hashlib.sha256(np.ascontiguousarray(tile).tobytes()).hexdigest()
                    if key not in tiles:
                        tiles[key] = tile.copy()
    return tiles


def build_atlas(tiles: List[np.ndarray]) -> np.ndarray:
    if not tiles:
        raise ValueError("No tiles to pack.")
    cols = int(math.ceil(math.sqrt(len(tiles))))
    rows = int(math.ceil(len(tiles) / cols))
    atlas = np.zeros((rows * TILE_SIZE, cols * TILE_SIZE, 4), dtype=np.uint8)
    for i, tile in enumerate(tiles):
        y = (i // cols) * TILE_SIZE
        x = (i % cols) * TILE_SIZE
        atlas[y : y + TILE_SIZE, x : x + TILE_SIZE] = tile
    return atlas


def build_tileset(data_dir: Path, outdir: Path, name: str, color_key: Optional[ff4_tim2.Pixel] = COLOR_KEY) -> Dict[str, object]:
    if not data_dir.is_dir():
        raise FileNotFoundError(f"Input folder not found: {data_dir}")
    paths: List[Path] = []
    for d in _map_dirs(data_dir):
        paths.extend(_tileset_files(d, name))
    if not paths:
        raise FileNotFoundError(f"No *_{name}.tm2 images found under {data_dir}")

    tiles = collect_tiles(paths, color_key)
    atlas = build_atlas(list(tiles.values()))

    outdir.mkdir(parents=True, exist_ok=True)
    out_path = outdir / f"tilemap_{name}.png"
    Image.fromarray(atlas).save(out_path)
    return {
        "out": str(out_path),
        "images": len(paths),
        "tiles": len(tiles),
        "width": int(atlas.shape[1]),
        "height": int(atlas.shape[0]),
    }


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Pack distinct 32x32 map tiles into a tileset PNG.")
    p.add_argument("--input", required=True, type=Path, help="Extracted data folder.")
    p.add_argument("--outdir", required=True, type=Path, help="Output folder.")
    p.add_argument("--name", required=True, type=str, help="Tileset name (matches *_<name>.tm2).")
    return p.parse_args()


def main() -> int:
    args = _parse_args()
    result = build_tileset(args.input, args.outdir, args.name)
    print(f"Generated: {result['out']}")
    print(f"Tiles: {result['tiles']} from {result['images']} images ({result['width']}x{result['height']})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

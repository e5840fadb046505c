#!/usr/bin/env python3
"""
Final Fantasy IV (PSP) asset extraction.

Current capabilities:
- Mirror the PAC0.BIN/PAC1.BIN archive tree to disk.
- Decompress .lzs entries, split nested packs and unwrap compressed TIM2 images.
- Render .tm2 images to PNG, verify stored checksums, list the archive tree.

Per-entry decode problems are logged as warnings and collected in the run
manifest; filesystem problems abort the run.
"""

from __future__ import annotations

import argparse
import dataclasses
import enum
import json
import logging
import pathlib
import sys
from typing import Any, BinaryIO, Dict, List, Optional, Tuple

import ff4_lzss
import ff4_pac
import ff4_tileset
import ff4_tim2
from ff4_errors import DecodeError, EmptyStream, InvalidDecodeLength, NestingTooDeep, NoBasePath
from ff4_pac import DirectoryNode, FileNode

try:
    import yaml  # type: ignore
except Exception:  # pragma: no cover
    yaml = None

log = logging.getLogger(__name__)

COLOR_KEY: ff4_tim2.Pixel = (0, 255, 0, 255)

DEFAULT_CONFIG: Dict[str, Any] = {
    "metadata": "PAC0.BIN",
    "payload": "PAC1.BIN",
    "root": ff4_pac.DEFAULT_ROOT_NAME,
    "color_key": list(COLOR_KEY),
    "recursive": False,
    "png": False,
    "max_depth": 8,
}


class EntryKind(enum.Enum):
    RAW = "raw"
    COMPRESSED = "compressed"
    IMAGE = "image"


def classify(name: str) -> EntryKind:
    ext = pathlib.PurePath(name).suffix.lower()
    if ext == ".lzs":
        return EntryKind.COMPRESSED
    if ext == ".tm2":
        return EntryKind.IMAGE
    return EntryKind.RAW


@dataclasses.dataclass
class ExtractOptions:
    recursive: bool = True
    png: bool = False
    color_key: Optional[ff4_tim2.Pixel] = COLOR_KEY
    max_depth: int = 8


def _new_report() -> Dict[str, Any]:
    return {"files": 0, "directories": 0, "written": [], "warnings": [], "png": 0}


def _warn(report: Dict[str, Any], path: pathlib.Path, exc: Exception) -> None:
    log.warning("%s\n    %s", exc, path)
    report["warnings"].append({"path": str(path), "error": str(exc), "kind": type(exc).__name__})


def replace_ext(path: pathlib.Path, ext: str) -> pathlib.Path:
    if not path.name:
        raise NoBasePath(path)
    return path.with_suffix("." + ext)


def remove_ext(path: pathlib.Path) -> pathlib.Path:
    if not path.name:
        raise NoBasePath(path)
    return path.with_suffix("")


def base_path(path: pathlib.Path) -> pathlib.Path:
    if not path.name:
        raise NoBasePath(path)
    return path.parent


def render_png(path: pathlib.Path, data: bytes, opts: ExtractOptions, report: Dict[str, Any]) -> Optional[pathlib.Path]:
    try:
        image = ff4_tim2.parse(data)
        if not image.frames:
            log.info("No frames in %s", path)
            return None
        frame = image.get_frame(0)
        if frame.has_mipmaps():
            log.info("Skipping PNG for mipmapped image %s", path)
            return None
        out = replace_ext(path, "png")
        ff4_tim2.save_png(out, frame, opts.color_key)
    except DecodeError as exc:
        _warn(report, path, exc)
        return None
    report["png"] += 1
    return out


def write_output(path: pathlib.Path, data: bytes, opts: ExtractOptions, report: Dict[str, Any]) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    report["written"].append(str(path))
    if opts.png and path.suffix.lower() == ".tm2":
        render_png(path, data, opts, report)
    return path


def _write_decoded(path: pathlib.Path, data: bytes, opts: ExtractOptions, report: Dict[str, Any]) -> pathlib.Path:
    if ff4_lzss.has_image_magic(data) and path.suffix.lower() != ".tm2":
        path = replace_ext(path, "tm2")
    return write_output(path, data, opts, report)


def expand_compressed(
    path: pathlib.Path,
    decoded: bytes,
    opts: ExtractOptions,
    report: Dict[str, Any],
) -> None:
    """Write a decompressed .lzs payload: an image, a nested pack, or plain bytes."""
    stack: List[Tuple[pathlib.Path, bytes, int]] = [(path, decoded, 0)]
    while stack:
        cur_path, buf, depth = stack.pop()
        try:
            buf = ff4_lzss.unwrap_image(buf)
        except InvalidDecodeLength as exc:
            _warn(report, cur_path, exc)
            continue

        if ff4_lzss.has_image_magic(buf) or not ff4_pac.looks_like_pack(buf):
            _write_decoded(cur_path, buf, opts, report)
            continue

        if depth >= opts.max_depth:
            _warn(report, cur_path, NestingTooDeep(opts.max_depth))
            continue

        entries, bad = ff4_pac.read_pack_entries(buf)
        for exc in bad:
            _warn(report, cur_path, exc)

        if len(entries) + len(bad) > 1:
            out_dir = remove_ext(cur_path)
            out_dir.mkdir(parents=True, exist_ok=True)
        else:
            out_dir = base_path(cur_path)

        pending: List[Tuple[pathlib.Path, bytes, int]] = []
        for entry in entries:
            target = out_dir / (entry.name or f"{entry.index:04d}.bin")
            data = buf[entry.offset : entry.offset + entry.size]
            try:
                if opts.recursive and classify(target.name) is EntryKind.COMPRESSED:
                    pending.append((target, ff4_lzss.decompress_entry(data), depth + 1))
                else:
                    _write_decoded(target, ff4_lzss.unwrap_image(data), opts, report)
            except InvalidDecodeLength as exc:
                _warn(report, target, exc)
        stack.extend(reversed(pending))


def process_entry(path: pathlib.Path, data: bytes, opts: ExtractOptions, report: Dict[str, Any]) -> None:
    kind = classify(path.name)
    if kind is EntryKind.COMPRESSED:
        try:
            decoded = ff4_lzss.decompress_entry(data)
            if not opts.recursive:
                decoded = ff4_lzss.unwrap_image(decoded)
        except InvalidDecodeLength as exc:
            _warn(report, path, exc)
            return
        if opts.recursive:
            expand_compressed(path, decoded, opts, report)
        else:
            # Nested packs stay whole under the recorded name.
            _write_decoded(path, decoded, opts, report)
    elif kind is EntryKind.IMAGE:
        try:
            decoded = ff4_lzss.unwrap_image(data)
        except InvalidDecodeLength as exc:
            _warn(report, path, exc)
            return
        _write_decoded(path, decoded, opts, report)
    else:
        write_output(path, data, opts, report)


def extract(
    root: DirectoryNode,
    payload: BinaryIO,
    output_root: pathlib.Path,
    recursive: bool = True,
    png: bool = False,
    color_key: Optional[ff4_tim2.Pixel] = COLOR_KEY,
    max_depth: int = 8,
) -> Dict[str, Any]:
    opts = ExtractOptions(recursive=recursive, png=png, color_key=color_key, max_depth=max_depth)
    report = _new_report()
    stack: List[Tuple[ff4_pac.Node, pathlib.Path]] = [(root, pathlib.Path(output_root) / root.name)]
    while stack:
        node, path = stack.pop()
        if isinstance(node, DirectoryNode):
            path.mkdir(parents=True, exist_ok=True)
            report["directories"] += 1
            for child in reversed(node.children):
                stack.append((child, path / child.name))
            continue
        data = ff4_pac.read_payload(payload, node.offset, node.size)
        report["files"] += 1
        process_entry(path, data, opts, report)
    return report


def extract_files(
    meta_path: pathlib.Path,
    payload_path: pathlib.Path,
    output_root: pathlib.Path,
    root_name: str = ff4_pac.DEFAULT_ROOT_NAME,
    **kwargs: Any,
) -> Dict[str, Any]:
    meta = ff4_pac.load_file(meta_path, root_name=root_name)
    with open(payload_path, "rb") as payload:
        log.info("Extracting from %s...", payload_path)
        return extract(meta.root, payload, output_root, **kwargs)


def unpack_lzs_file(path: pathlib.Path, output_dir: pathlib.Path, opts: Optional[ExtractOptions] = None) -> Dict[str, Any]:
    opts = opts or ExtractOptions()
    report = _new_report()
    path = pathlib.Path(path)
    report["files"] += 1
    try:
        decoded = ff4_lzss.decompress_entry(path.read_bytes())
    except InvalidDecodeLength as exc:
        _warn(report, path, exc)
        return report
    expand_compressed(pathlib.Path(output_dir) / path.name, decoded, opts, report)
    return report


def decode_tree(directory: pathlib.Path, opts: Optional[ExtractOptions] = None) -> Dict[str, Any]:
    """Second pass over an extracted tree: expand .lzs files beside themselves, unwrap .tm2 in place.

    The .lzs files are left untouched, so running the pass again gives the same tree.
    """
    opts = opts or ExtractOptions()
    report = _new_report()
    paths = sorted(p for p in pathlib.Path(directory).rglob("*") if p.is_file())
    for path in paths:
        kind = classify(path.name)
        if kind is EntryKind.RAW:
            continue
        report["files"] += 1
        try:
            if kind is EntryKind.COMPRESSED:
                decoded = ff4_lzss.decompress_entry(path.read_bytes())
                if not decoded:
                    raise EmptyStream()
                expand_compressed(remove_ext(path), decoded, opts, report)
            else:
                write_output(path, ff4_lzss.unwrap_image(path.read_bytes()), opts, report)
        except (InvalidDecodeLength, EmptyStream) as exc:
            _warn(report, path, exc)
    return report


def _load_config(path: pathlib.Path) -> Dict[str, Any]:
    """Read extraction options from .json or .yaml/.yml; only DEFAULT_CONFIG keys are accepted."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    elif yaml is None:
        raise RuntimeError(f"{path}: reading .yaml/.yml configs needs PyYAML (pip install pyyaml)")
    else:
        data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping of extraction options, got {type(data).__name__}")
    unknown = sorted(str(k) for k in data if k not in DEFAULT_CONFIG)
    if unknown:
        raise ValueError(f"{path}: unknown option(s): {', '.join(unknown)}")
    return data


def _to_int(v: Any) -> int:
    if isinstance(v, bool):
        raise ValueError(f"Expected int-like value, got: {type(v).__name__}")
    if isinstance(v, int):
        return int(v)
    if isinstance(v, str):
        return int(v, 0)
    raise ValueError(f"Expected int-like value, got: {type(v).__name__}")


def _color_key(v: Any) -> Optional[ff4_tim2.Pixel]:
    if v is None:
        return None
    vals = [_to_int(c) for c in v]
    if len(vals) == 3:
        vals.append(255)
    if len(vals) != 4 or any(c < 0 or c > 255 for c in vals):
        raise ValueError(f"color_key must be 3 or 4 values in 0..255, got: {v!r}")
    return (vals[0], vals[1], vals[2], vals[3])


def resolve_config(args: argparse.Namespace) -> Dict[str, Any]:
    cfg = dict(DEFAULT_CONFIG)
    if getattr(args, "config", None):
        cfg.update(_load_config(pathlib.Path(args.config)))
    if getattr(args, "recursive", False):
        cfg["recursive"] = True
    if getattr(args, "png", False):
        cfg["png"] = True
    if getattr(args, "no_color_key", False):
        cfg["color_key"] = None
    cfg["max_depth"] = _to_int(cfg["max_depth"])
    cfg["color_key"] = _color_key(cfg["color_key"])
    return cfg


def _options(cfg: Dict[str, Any]) -> ExtractOptions:
    return ExtractOptions(
        recursive=bool(cfg["recursive"]),
        png=bool(cfg["png"]),
        color_key=cfg["color_key"],
        max_depth=cfg["max_depth"],
    )


def _summary(report: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "files": report["files"],
        "directories": report["directories"],
        "written": len(report["written"]),
        "png": report["png"],
        "warnings": len(report["warnings"]),
    }


def cmd_extract(args: argparse.Namespace) -> int:
    cfg = resolve_config(args)
    in_dir = pathlib.Path(args.input)
    out_dir = pathlib.Path(args.output) if args.output else in_dir
    out_dir.mkdir(parents=True, exist_ok=True)

    report = extract_files(
        in_dir / cfg["metadata"],
        in_dir / cfg["payload"],
        out_dir,
        root_name=str(cfg["root"]),
        recursive=bool(cfg["recursive"]),
        png=bool(cfg["png"]),
        color_key=cfg["color_key"],
        max_depth=cfg["max_depth"],
    )
    manifest = {
        "input": str(in_dir),
        "output": str(out_dir),
        "config": {k: v for k, v in cfg.items() if k != "color_key"},
        **report,
    }
    out_manifest = pathlib.Path(args.manifest) if args.manifest else out_dir / "manifest.json"
    out_manifest.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    print(json.dumps({"outdir": str(out_dir), "manifest": str(out_manifest), **_summary(report)}, indent=2))
    return 0


def _print_tree(node: ff4_pac.Node, depth: int = 0) -> None:
    if isinstance(node, FileNode):
        print(f"{'  ' * depth}{node.name} - {node.size} bytes")
        return
    print(f"{'  ' * depth}{node.name}/")
    for child in node.children:
        _print_tree(child, depth + 1)


def cmd_list(args: argparse.Namespace) -> int:
    cfg = resolve_config(args)
    meta = ff4_pac.load_file(pathlib.Path(args.input) / cfg["metadata"], root_name=str(cfg["root"]))
    _print_tree(meta.root)
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    cfg = resolve_config(args)
    in_dir = pathlib.Path(args.input)
    meta = ff4_pac.load_file(in_dir / cfg["metadata"], root_name=str(cfg["root"]))
    with open(in_dir / cfg["payload"], "rb") as payload:
        report = ff4_pac.verify_checksums(meta.root, payload)
    if args.json:
        pathlib.Path(args.json).write_text(json.dumps(report, indent=2), encoding="utf-8")
    print(json.dumps({k: v for k, v in report.items() if k != "mismatches"}, indent=2))
    return 0


def cmd_decompress(args: argparse.Namespace) -> int:
    src = pathlib.Path(args.input).read_bytes()
    dec = ff4_lzss.decompress(src) if args.stream else ff4_lzss.decompress_entry(src)
    out = pathlib.Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(dec)
    print(
        json.dumps(
            {
                "input": args.input,
                "out": str(out),
                "compressed_size": len(src),
                "decompressed_size": len(dec),
                "image": ff4_lzss.has_image_magic(dec),
                "pack": ff4_pac.looks_like_pack(dec),
            },
            indent=2,
        )
    )
    return 0


def cmd_unpack_lzs(args: argparse.Namespace) -> int:
    cfg = resolve_config(args)
    out_dir = pathlib.Path(args.outdir)
    out_dir.mkdir(parents=True, exist_ok=True)
    opts = _options(cfg)
    opts.recursive = True
    report = unpack_lzs_file(pathlib.Path(args.input), out_dir, opts)
    print(json.dumps({"outdir": str(out_dir), **_summary(report)}, indent=2))
    return 0


def cmd_decode_tree(args: argparse.Namespace) -> int:
    cfg = resolve_config(args)
    opts = _options(cfg)
    opts.recursive = True
    report = decode_tree(pathlib.Path(args.input), opts)
    print(json.dumps({"input": args.input, **_summary(report)}, indent=2))
    return 0


def cmd_tim2_info(args: argparse.Namespace) -> int:
    image = ff4_tim2.load(pathlib.Path(args.input))
    print(
        json.dumps(
            {
                "input": args.input,
                "version": image.version,
                "frames": [f.summary() for f in image.frames],
            },
            indent=2,
        )
    )
    return 0


def cmd_tim2_png(args: argparse.Namespace) -> int:
    cfg = resolve_config(args)
    image = ff4_tim2.load(pathlib.Path(args.input))
    frame = image.get_frame(int(args.frame))
    out = pathlib.Path(args.out)
    ff4_tim2.save_png(out, frame, cfg["color_key"])
    print(json.dumps({"out": str(out), "width": frame.width, "height": frame.height, "bpp": frame.header.bpp}, indent=2))
    return 0


def cmd_tileset(args: argparse.Namespace) -> int:
    cfg = resolve_config(args)
    out = ff4_tileset.build_tileset(pathlib.Path(args.input), pathlib.Path(args.outdir), args.name, cfg["color_key"])
    print(json.dumps(out, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Final Fantasy IV (PSP) asset extraction helper")
    p.add_argument("-v", "--verbose", action="store_true", help="Log progress")
    p.add_argument("-q", "--quiet", action="store_true", help="Only log errors")
    sub = p.add_subparsers(dest="cmd", required=True)

    pex = sub.add_parser("extract", help="Extract the PAC0/PAC1 archive tree")
    pex.add_argument("--input", default=".", help="Folder holding PAC0.BIN/PAC1.BIN (default: current folder)")
    pex.add_argument("--output", help="Output folder (default: input folder)")
    pex.add_argument("--recursive", action="store_true", help="Split nested packs found in decompressed .lzs entries")
    pex.add_argument("--png", action="store_true", help="Also render .tm2 outputs to PNG")
    pex.add_argument("--config", help="Config file (.json/.yaml/.yml)")
    pex.add_argument("--manifest", help="Manifest path (default: <output>/manifest.json)")
    pex.set_defaults(func=cmd_extract)

    pls = sub.add_parser("list", help="Print the archive tree")
    pls.add_argument("--input", default=".", help="Folder holding PAC0.BIN")
    pls.add_argument("--config", help="Config file (.json/.yaml/.yml)")
    pls.set_defaults(func=cmd_list)

    pvf = sub.add_parser("verify", help="Check stored SHA-256 checksums against the payload")
    pvf.add_argument("--input", default=".", help="Folder holding PAC0.BIN/PAC1.BIN")
    pvf.add_argument("--config", help="Config file (.json/.yaml/.yml)")
    pvf.add_argument("--json", help="Optional output JSON path with every mismatch")
    pvf.set_defaults(func=cmd_verify)

    pdc = sub.add_parser("decompress", help="Decompress a single .lzs stream")
    pdc.add_argument("--input", required=True, help="Compressed file path")
    pdc.add_argument("--out", required=True, help="Output decompressed binary path")
    pdc.add_argument("--stream", action="store_true", help="Input is a bare stream (no .lzs entry size preamble)")
    pdc.set_defaults(func=cmd_decompress)

    pul = sub.add_parser("unpack-lzs", help="Expand one .lzs file (nested packs, wrapped images)")
    pul.add_argument("--input", required=True, help=".lzs file path")
    pul.add_argument("--outdir", required=True, help="Output folder")
    pul.add_argument("--png", action="store_true", help="Also render .tm2 outputs to PNG")
    pul.add_argument("--config", help="Config file (.json/.yaml/.yml)")
    pul.set_defaults(func=cmd_unpack_lzs)

    pdt = sub.add_parser("decode-tree", help="Expand .lzs and unwrap .tm2 files in an extracted folder")
    pdt.add_argument("--input", required=True, help="Extracted folder")
    pdt.add_argument("--png", action="store_true", help="Also render .tm2 outputs to PNG")
    pdt.add_argument("--config", help="Config file (.json/.yaml/.yml)")
    pdt.set_defaults(func=cmd_decode_tree)

    pti = sub.add_parser("tim2-info", help="Print TIM2 frame headers as JSON")
    pti.add_argument("--input", required=True, help=".tm2 file path")
    pti.set_defaults(func=cmd_tim2_info)

    ptp = sub.add_parser("tim2-png", help="Render one TIM2 frame to PNG")
    ptp.add_argument("--input", required=True, help=".tm2 file path")
    ptp.add_argument("--out", required=True, help="Output PNG path")
    ptp.add_argument("--frame", type=int, default=0, help="Frame index (default: 0)")
    ptp.add_argument("--no-color-key", action="store_true", help="Keep native alpha for key-colored pixels")
    ptp.add_argument("--config", help="Config file (.json/.yaml/.yml)")
    ptp.set_defaults(func=cmd_tim2_png)

    pts = sub.add_parser("tileset", help="Build a deduplicated 32x32 tile atlas from extracted map images")
    pts.add_argument("--input", required=True, help="Extracted data folder (holding CN_* folders)")
    pts.add_argument("--outdir", required=True, help="Output folder")
    pts.add_argument("--name", required=True, help="Tileset name, matched as *_<name>.tm2")
    pts.add_argument("--config", help="Config file (.json/.yaml/.yml)")
    pts.set_defaults(func=cmd_tileset)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    level = logging.INFO if args.verbose else logging.ERROR if args.quiet else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    try:
        return int(args.func(args))
    except (OSError, ValueError, RuntimeError) as exc:
        # ValueError covers DecodeError and bad config values.
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

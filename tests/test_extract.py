import argparse
import contextlib
import io
import json
import pathlib
import tempfile
from unittest import TestCase

import ff4_extract
import ff4_pac
from ff4_errors import NoBasePath, PayloadTruncated
from ff4_extract import EntryKind
from ff4_fixtures import build_metadata, build_pack, build_payload, lzs_entry, rgba_image

TIM2 = rgba_image(2, 2, [(0, 255, 0, 255), (1, 2, 3, 255), (4, 5, 6, 255), (7, 8, 9, 255)])
TRUNCATED_LZS = b"\x00" * 8 + b"\x00\x05"


def _archive_bytes(files):
    """Metadata and payload for data/field/<files>."""
    payload, ranges = build_payload([blob for _, blob in files])
    infos = [(False, "field", 0, 0)] + [(True, name, off, size) for (name, _), (off, size) in zip(files, ranges)]
    meta = build_metadata([(0, 1), (1, len(files))], infos, len(payload))
    return meta, payload


def _write_archive(directory, files):
    meta, payload = _archive_bytes(files)
    directory = pathlib.Path(directory)
    (directory / "PAC0.BIN").write_bytes(meta)
    (directory / "PAC1.BIN").write_bytes(payload)


class PathTests(TestCase):
    def test_Classify(self):
        self.assertIs(ff4_extract.classify("map.lzs"), EntryKind.COMPRESSED)
        self.assertIs(ff4_extract.classify("MAP.LZS"), EntryKind.COMPRESSED)
        self.assertIs(ff4_extract.classify("face.Tm2"), EntryKind.IMAGE)
        self.assertIs(ff4_extract.classify("script.bin"), EntryKind.RAW)
        self.assertIs(ff4_extract.classify("README"), EntryKind.RAW)

    def test_PathHelpers(self):
        path = pathlib.Path("out/field/bundle.lzs")
        self.assertEqual(ff4_extract.replace_ext(path, "tm2"), pathlib.Path("out/field/bundle.tm2"))
        self.assertEqual(ff4_extract.remove_ext(path), pathlib.Path("out/field/bundle"))
        self.assertEqual(ff4_extract.base_path(path), pathlib.Path("out/field"))

    def test_NoBasePath(self):
        for helper in (ff4_extract.remove_ext, ff4_extract.base_path):
            with self.assertRaises(NoBasePath):
                helper(pathlib.Path(""))
        with self.assertRaises(NoBasePath):
            ff4_extract.replace_ext(pathlib.Path(""), "png")


class ExtractTests(TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.out = pathlib.Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def _extract(self, files, **kwargs):
        meta, payload = _archive_bytes(files)
        root = ff4_pac.load(meta).root
        return ff4_extract.extract(root, io.BytesIO(payload), self.out, **kwargs)

    def test_DecompressesLzsEntry(self):
        report = self._extract([("hello.lzs", lzs_entry(b"hello"))])
        self.assertEqual((self.out / "data" / "field" / "hello.lzs").read_bytes(), b"hello")
        self.assertEqual(report["files"], 1)
        self.assertEqual(report["directories"], 2)
        self.assertEqual(report["warnings"], [])

    def test_RawEntriesAreCopied(self):
        self._extract([("script.bin", b"\x01\x02\x03")])
        self.assertEqual((self.out / "data" / "field" / "script.bin").read_bytes(), b"\x01\x02\x03")

    def test_NonRecursiveDecompressesEntry(self):
        self._extract([("hello.lzs", lzs_entry(b"hello"))], recursive=False)
        self.assertEqual((self.out / "data" / "field" / "hello.lzs").read_bytes(), b"hello")

    def test_NonRecursiveKeepsPackWhole(self):
        pack = build_pack([("a.txt", b"AAA"), ("b.txt", b"BBB")])
        self._extract([("bundle.lzs", lzs_entry(pack))], recursive=False)
        field = self.out / "data" / "field"
        self.assertEqual((field / "bundle.lzs").read_bytes(), pack)
        self.assertFalse((field / "bundle").exists())

    def test_NonRecursiveRenamesImage(self):
        self._extract([("face.lzs", lzs_entry(TIM2))], recursive=False)
        self.assertEqual((self.out / "data" / "field" / "face.tm2").read_bytes(), TIM2)

    def test_NonRecursiveTruncatedEntryWarns(self):
        report = self._extract([("broken.lzs", TRUNCATED_LZS)], recursive=False)
        self.assertFalse((self.out / "data" / "field" / "broken.lzs").exists())
        self.assertEqual(report["warnings"][0]["kind"], "InvalidDecodeLength")

    def test_CountPrefixedDataIsNotSplit(self):
        decoded = b"\x01\x00" + b"\x00" * 126
        report = self._extract([("table.lzs", lzs_entry(decoded))])
        field = self.out / "data" / "field"
        self.assertEqual((field / "table.lzs").read_bytes(), decoded)
        self.assertFalse((field / "0000.bin").exists())
        self.assertEqual(report["warnings"], [])

    def test_PackNamesCannotLeaveOutputDir(self):
        pack = build_pack([("../evil.txt", b"E"), ("ok.txt", b"O")])
        self._extract([("bundle.lzs", lzs_entry(pack))])
        field = self.out / "data" / "field"
        self.assertEqual((field / "bundle" / ".._evil.txt").read_bytes(), b"E")
        self.assertFalse((field / "evil.txt").exists())

    def test_CompressedImageIsRenamed(self):
        self._extract([("face.lzs", lzs_entry(TIM2))], png=True)
        field = self.out / "data" / "field"
        self.assertEqual((field / "face.tm2").read_bytes(), TIM2)
        self.assertFalse((field / "face.lzs").exists())
        self.assertTrue((field / "face.png").exists())

    def test_ImageEntryRendersPng(self):
        report = self._extract([("face.tm2", TIM2)], png=True)
        self.assertEqual((self.out / "data" / "field" / "face.tm2").read_bytes(), TIM2)
        self.assertTrue((self.out / "data" / "field" / "face.png").exists())
        self.assertEqual(report["png"], 1)

    def test_BrokenImageWarnsInsteadOfRendering(self):
        broken = b"TIM2" + b"\x04\x00\x01\x00" + b"\x00" * 8
        report = self._extract([("bad.tm2", broken)], png=True)
        self.assertTrue((self.out / "data" / "field" / "bad.tm2").exists())
        self.assertFalse((self.out / "data" / "field" / "bad.png").exists())
        self.assertEqual(report["warnings"][0]["kind"], "InvalidRange")

    def test_NestedPackIsSplit(self):
        pack = build_pack([("a.txt", b"AAA"), ("pic.bin", TIM2)])
        self._extract([("bundle.lzs", lzs_entry(pack))])
        bundle = self.out / "data" / "field" / "bundle"
        self.assertEqual((bundle / "a.txt").read_bytes(), b"AAA")
        self.assertEqual((bundle / "pic.tm2").read_bytes(), TIM2)

    def test_NestedCompressedEntryIsExpanded(self):
        pack = build_pack([("inner.lzs", lzs_entry(b"deep")), ("x.txt", b"X")])
        self._extract([("bundle.lzs", lzs_entry(pack))])
        bundle = self.out / "data" / "field" / "bundle"
        self.assertEqual((bundle / "inner.lzs").read_bytes(), b"deep")
        self.assertEqual((bundle / "x.txt").read_bytes(), b"X")

    def test_SingleEntryPackWritesBesideParent(self):
        pack = build_pack([("only.txt", b"ONLY")])
        self._extract([("single.lzs", lzs_entry(pack))])
        field = self.out / "data" / "field"
        self.assertEqual((field / "only.txt").read_bytes(), b"ONLY")
        self.assertFalse((field / "single").exists())

    def test_BadFileNumKeepsSiblings(self):
        pack = build_pack([("a.txt", b"AAA"), ("b.txt", b"BBB")], file_nums=[0, 7])
        report = self._extract([("bundle.lzs", lzs_entry(pack))])
        bundle = self.out / "data" / "field" / "bundle"
        self.assertEqual((bundle / "a.txt").read_bytes(), b"AAA")
        self.assertFalse((bundle / "b.txt").exists())
        self.assertEqual([w["kind"] for w in report["warnings"]], ["InvalidFileNum"])

    def test_TruncatedEntryWarnsAndContinues(self):
        report = self._extract([("broken.lzs", TRUNCATED_LZS), ("ok.txt", b"fine")])
        field = self.out / "data" / "field"
        self.assertFalse((field / "broken.lzs").exists())
        self.assertEqual((field / "ok.txt").read_bytes(), b"fine")
        self.assertEqual(len(report["warnings"]), 1)
        self.assertEqual(report["warnings"][0]["kind"], "InvalidDecodeLength")
        self.assertEqual(report["warnings"][0]["error"], "mismatch decoding: 5 / 6")

    def test_NestingLimit(self):
        pack = build_pack([("a.txt", b"AAA"), ("b.txt", b"BBB")])
        report = self._extract([("bundle.lzs", lzs_entry(pack))], max_depth=0)
        self.assertFalse((self.out / "data" / "field" / "bundle").exists())
        self.assertEqual(report["warnings"][0]["kind"], "NestingTooDeep")

    def test_ShortPayloadIsFatal(self):
        meta, payload = _archive_bytes([("a.bin", b"A" * 32)])
        root = ff4_pac.load(meta).root
        with self.assertRaises(PayloadTruncated):
            ff4_extract.extract(root, io.BytesIO(payload[:8]), self.out)


class SecondPassTests(TestCase):
    def test_UnpackLzsFile(self):
        with tempfile.TemporaryDirectory() as tmp:
            src = pathlib.Path(tmp) / "bundle.lzs"
            src.write_bytes(lzs_entry(build_pack([("a.txt", b"AAA"), ("b.txt", b"BBB")])))
            out = pathlib.Path(tmp) / "out"
            report = ff4_extract.unpack_lzs_file(src, out)
            self.assertEqual((out / "bundle" / "a.txt").read_bytes(), b"AAA")
            self.assertEqual((out / "bundle" / "b.txt").read_bytes(), b"BBB")
            self.assertEqual(report["files"], 1)

    def test_DecodeTree(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = pathlib.Path(tmp)
            (root / "sub").mkdir()
            (root / "sub" / "hello.lzs").write_bytes(lzs_entry(b"hello"))
            (root / "face.tm2").write_bytes(TIM2)
            (root / "notes.txt").write_bytes(b"skip")
            (root / "broken.lzs").write_bytes(TRUNCATED_LZS)
            report = ff4_extract.decode_tree(root)
            self.assertEqual((root / "sub" / "hello").read_bytes(), b"hello")
            self.assertEqual((root / "sub" / "hello.lzs").read_bytes(), lzs_entry(b"hello"))
            self.assertEqual((root / "face.tm2").read_bytes(), TIM2)
            self.assertEqual(report["files"], 3)
            self.assertEqual(len(report["warnings"]), 1)

    def test_DecodeTreeTwiceGivesSameTree(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = pathlib.Path(tmp)
            (root / "hello.lzs").write_bytes(lzs_entry(b"hello"))
            (root / "bundle.lzs").write_bytes(lzs_entry(build_pack([("a.txt", b"AAA"), ("b.txt", b"BBB")])))
            first = ff4_extract.decode_tree(root)
            second = ff4_extract.decode_tree(root)
            self.assertEqual((root / "hello").read_bytes(), b"hello")
            self.assertEqual((root / "hello.lzs").read_bytes(), lzs_entry(b"hello"))
            self.assertEqual((root / "bundle" / "a.txt").read_bytes(), b"AAA")
            self.assertEqual(first["warnings"], [])
            self.assertEqual(second["warnings"], [])

    def test_DecodeTreeSkipsDecodedLzs(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = pathlib.Path(tmp)
            (root / "hello.lzs").write_bytes(b"hello")
            report = ff4_extract.decode_tree(root)
            self.assertEqual((root / "hello.lzs").read_bytes(), b"hello")
            self.assertFalse((root / "hello").exists())
            self.assertEqual([w["kind"] for w in report["warnings"]], ["EmptyStream"])


class ConfigTests(TestCase):
    def _args(self, config=None, **kwargs):
        return argparse.Namespace(config=config, **kwargs)

    def test_Defaults(self):
        cfg = ff4_extract.resolve_config(self._args())
        self.assertEqual(cfg["metadata"], "PAC0.BIN")
        self.assertEqual(cfg["payload"], "PAC1.BIN")
        self.assertFalse(cfg["recursive"])
        self.assertEqual(cfg["color_key"], (0, 255, 0, 255))
        self.assertEqual(cfg["max_depth"], 8)

    def test_JsonConfig(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = pathlib.Path(tmp) / "cfg.json"
            path.write_text(json.dumps({"recursive": True, "max_depth": "0x4", "color_key": [1, 2, 3]}))
            cfg = ff4_extract.resolve_config(self._args(str(path)))
        self.assertTrue(cfg["recursive"])
        self.assertEqual(cfg["max_depth"], 4)
        self.assertEqual(cfg["color_key"], (1, 2, 3, 255))

    def test_YamlConfig(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = pathlib.Path(tmp) / "cfg.yaml"
            path.write_text("metadata: META.BIN\npng: true\ncolor_key: null\n")
            cfg = ff4_extract.resolve_config(self._args(str(path)))
        self.assertEqual(cfg["metadata"], "META.BIN")
        self.assertTrue(cfg["png"])
        self.assertIsNone(cfg["color_key"])

    def test_FlagsOverrideConfig(self):
        cfg = ff4_extract.resolve_config(self._args(recursive=True, png=True, no_color_key=True))
        self.assertTrue(cfg["recursive"])
        self.assertTrue(cfg["png"])
        self.assertIsNone(cfg["color_key"])

    def test_InvalidValues(self):
        with self.assertRaises(ValueError):
            ff4_extract._to_int(True)
        with self.assertRaises(ValueError):
            ff4_extract._color_key([300, 0, 0])
        with tempfile.TemporaryDirectory() as tmp:
            path = pathlib.Path(tmp) / "cfg.json"
            path.write_text("[1, 2]")
            with self.assertRaises(ValueError):
                ff4_extract.resolve_config(self._args(str(path)))

    def test_UnknownOption(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = pathlib.Path(tmp) / "cfg.yml"
            path.write_text("recursive: true\nmax_deph: 3\n")
            with self.assertRaises(ValueError) as ctx:
                ff4_extract.resolve_config(self._args(str(path)))
        self.assertIn("max_deph", str(ctx.exception))


class CommandLineTests(TestCase):
    def _run(self, argv):
        out = io.StringIO()
        err = io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            rc = ff4_extract.main(argv)
        return rc, out.getvalue(), err.getvalue()

    def test_Extract(self):
        with tempfile.TemporaryDirectory() as tmp:
            src = pathlib.Path(tmp) / "in"
            src.mkdir()
            _write_archive(src, [("hello.lzs", lzs_entry(b"hello")), ("x.bin", b"X")])
            dst = pathlib.Path(tmp) / "out"
            rc, out, _ = self._run(["-q", "extract", "--input", str(src), "--output", str(dst), "--recursive"])
            self.assertEqual(rc, 0)
            self.assertEqual(json.loads(out)["files"], 2)
            self.assertEqual((dst / "data" / "field" / "hello.lzs").read_bytes(), b"hello")
            manifest = json.loads((dst / "manifest.json").read_text())
            self.assertEqual(len(manifest["written"]), 2)
            self.assertTrue(manifest["config"]["recursive"])

    def test_MissingInputFails(self):
        with tempfile.TemporaryDirectory() as tmp:
            rc, _, err = self._run(["-q", "extract", "--input", tmp])
        self.assertEqual(rc, 1)
        self.assertTrue(err.startswith("error: "))

    def test_BadConfigFails(self):
        with tempfile.TemporaryDirectory() as tmp:
            _write_archive(tmp, [("hello.lzs", b"12345")])
            cfg = pathlib.Path(tmp) / "cfg.json"
            cfg.write_text(json.dumps({"color_key": [300, 0, 0]}))
            rc, _, err = self._run(["-q", "list", "--input", tmp, "--config", str(cfg)])
        self.assertEqual(rc, 1)
        self.assertTrue(err.startswith("error: "))
        self.assertIn("color_key", err)

    def test_CorruptMetadataFails(self):
        with tempfile.TemporaryDirectory() as tmp:
            (pathlib.Path(tmp) / "PAC0.BIN").write_bytes(b"\x01\x00")
            rc, _, err = self._run(["-q", "list", "--input", tmp])
        self.assertEqual(rc, 1)
        self.assertIn("header", err)

    def test_List(self):
        with tempfile.TemporaryDirectory() as tmp:
            _write_archive(tmp, [("hello.lzs", b"12345")])
            rc, out, _ = self._run(["list", "--input", tmp])
        self.assertEqual(rc, 0)
        self.assertEqual(out.splitlines(), ["data/", "  field/", "    hello.lzs - 5 bytes"])

    def test_Verify(self):
        with tempfile.TemporaryDirectory() as tmp:
            _write_archive(tmp, [("hello.lzs", b"12345")])
            rc, out, _ = self._run(["verify", "--input", tmp])
        self.assertEqual(rc, 0)
        self.assertEqual(json.loads(out)["unset"], 1)

    def test_Decompress(self):
        with tempfile.TemporaryDirectory() as tmp:
            src = pathlib.Path(tmp) / "hello.lzs"
            src.write_bytes(lzs_entry(b"hello"))
            dst = pathlib.Path(tmp) / "hello.bin"
            rc, out, _ = self._run(["decompress", "--input", str(src), "--out", str(dst)])
            self.assertEqual(rc, 0)
            self.assertEqual(dst.read_bytes(), b"hello")
            self.assertEqual(json.loads(out)["decompressed_size"], 5)

    def test_DecompressTruncatedFails(self):
        with tempfile.TemporaryDirectory() as tmp:
            src = pathlib.Path(tmp) / "broken.lzs"
            src.write_bytes(TRUNCATED_LZS)
            rc, _, err = self._run(["decompress", "--input", str(src), "--out", str(pathlib.Path(tmp) / "x")])
        self.assertEqual(rc, 1)
        self.assertIn("mismatch decoding", err)

    def test_Tim2InfoAndPng(self):
        with tempfile.TemporaryDirectory() as tmp:
            src = pathlib.Path(tmp) / "face.tm2"
            src.write_bytes(TIM2)
            rc, out, _ = self._run(["tim2-info", "--input", str(src)])
            self.assertEqual(rc, 0)
            self.assertEqual(json.loads(out)["frames"][0]["bpp"], 32)
            png = pathlib.Path(tmp) / "face.png"
            rc, out, _ = self._run(["tim2-png", "--input", str(src), "--out", str(png)])
            self.assertEqual(rc, 0)
            self.assertTrue(png.exists())
            self.assertEqual(json.loads(out)["width"], 2)

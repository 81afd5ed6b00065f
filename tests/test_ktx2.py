"""Tests for KTX2 parsing and key/value metadata injection."""

import hashlib
import os
import shutil
import struct
import tempfile
import unittest
from unittest import mock

from helpers import build_ktx2, write_ktx2

from KtxForge.core import (
    AlignmentError, IOFailureError, Ktx2Container, MalformedContainerError,
    read_key_value_data,
)
from KtxForge.core.ktx2 import KeyValueEntry, encode_key_value_data
from KtxForge.phases.inject import MetadataInjector, write_atomic

BLOCK = bytes([0x01, 0x10, 0x04, 0x00, 0x00, 0x38, 0x00, 0x34])


def _level_hashes(container):
    return [hashlib.sha256(container.level_bytes(i)).hexdigest()
            for i in range(len(container.levels))]


class TestKtx2Parse(unittest.TestCase):
    def test_parse_synthetic_file(self):
        data = build_ktx2(kv=[("KTXorientation", b"rd\x00"), ("KTXwriter", b"x\x00")])
        container = Ktx2Container.parse(data)
        self.assertEqual(container.header.level_count, 3)
        self.assertEqual(container.header.vk_format, 37)
        self.assertEqual(set(container.key_values), {"KTXorientation", "KTXwriter"})
        self.assertEqual(container.level_bytes(2), bytes([0x12]) * 4)
        self.assertEqual(container.texel_block_bytes, 4)

    def test_bad_identifier(self):
        data = bytearray(build_ktx2())
        data[5] = 0x31
        with self.assertRaises(MalformedContainerError):
            Ktx2Container.parse(bytes(data))

    def test_short_file(self):
        with self.assertRaises(MalformedContainerError):
            Ktx2Container.parse(build_ktx2()[:60])

    def test_truncated_level_index(self):
        with self.assertRaises(MalformedContainerError):
            Ktx2Container.parse(build_ktx2()[:100])

    def test_level_beyond_end_of_file(self):
        data = build_ktx2()
        with self.assertRaises(MalformedContainerError):
            Ktx2Container.parse(data[:-2])

    def test_overlapping_levels(self):
        data = bytearray(build_ktx2())
        offset0, _, _ = struct.unpack_from("<3Q", data, 80)
        # Point level 1 into the middle of level 0.
        struct.pack_into("<Q", data, 80 + 24, offset0 + 4)
        with self.assertRaises(MalformedContainerError):
            Ktx2Container.parse(bytes(data))

    def test_kvd_outside_file(self):
        data = bytearray(build_ktx2(kv=[("a", b"1")]))
        struct.pack_into("<I", data, 60, len(data))  # kvdByteLength
        with self.assertRaises(MalformedContainerError):
            Ktx2Container.parse(bytes(data))

    def test_key_value_data_sorted(self):
        kvd = encode_key_value_data([KeyValueEntry("pc.meta", b"1"),
                                     KeyValueEntry("KTXwriter", b"2")])
        self.assertEqual(kvd[4:13], b"KTXwriter")
        self.assertEqual(len(kvd) % 4, 0)


class TestMetadataInjector(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "tex.ktx2")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_round_trip_keeps_level_bytes(self):
        write_ktx2(self.path, kv=[("KTXwriter", b"tool\x00")])
        before = Ktx2Container.read(self.path)
        result = MetadataInjector().inject(self.path, BLOCK)
        after = Ktx2Container.read(self.path)
        self.assertEqual(read_key_value_data(self.path)["pc.meta"], BLOCK)
        self.assertEqual(after.key_values["KTXwriter"], b"tool\x00")
        self.assertEqual(_level_hashes(before), _level_hashes(after))
        self.assertEqual(result.key_values, after.key_values)
        self.assertEqual([e.key for e in after.kv_entries], ["KTXwriter", "pc.meta"])

    def test_offsets_shift_by_padded_growth(self):
        write_ktx2(self.path, kv=[("KTXwriter", b"tool\x00")])
        before = Ktx2Container.read(self.path)
        after = MetadataInjector().inject(self.path, BLOCK)
        shift = after.levels[0].byte_offset - before.levels[0].byte_offset
        self.assertGreater(shift, 0)
        self.assertEqual(shift % before.required_alignment, 0)
        for old, new in zip(before.levels, after.levels):
            self.assertEqual(new.byte_offset - old.byte_offset, shift)
            self.assertEqual(new.byte_length, old.byte_length)
        self.assertEqual(after.header.dfd_offset, before.header.dfd_offset)
        self.assertEqual(len(after.data), len(before.data) + shift)

    def test_replaces_existing_key(self):
        write_ktx2(self.path)
        MetadataInjector().inject(self.path, b"first")
        container = MetadataInjector().inject(self.path, BLOCK)
        keys = [e.key for e in container.kv_entries]
        self.assertEqual(keys.count("pc.meta"), 1)
        self.assertEqual(container.key_values["pc.meta"], BLOCK)

    def test_file_without_kvd(self):
        write_ktx2(self.path)
        before = Ktx2Container.read(self.path)
        after = MetadataInjector().inject(self.path, BLOCK)
        self.assertEqual(after.header.kvd_offset,
                         before.header.dfd_offset + before.header.dfd_length)
        self.assertEqual(_level_hashes(before), _level_hashes(after))

    def test_block_compressed_levels_stay_aligned(self):
        levels = [bytes([i + 1]) * (16 * (4 - i)) for i in range(4)]
        write_ktx2(self.path, levels=levels, bytes_plane0=16, kv=[("KTXwriter", b"w\x00")])
        after = MetadataInjector().inject(self.path, b"odd-sized-payload")
        for level in after.levels:
            self.assertEqual(level.byte_offset % 16, 0)

    def test_supercompression_global_data_stays_aligned(self):
        sgd = bytes(range(24))
        write_ktx2(self.path, sgd=sgd, supercompression=1, bytes_plane0=0,
                   vk_format=0, kv=[("KTXwriter", b"w\x00")])
        before = Ktx2Container.read(self.path)
        after = MetadataInjector().inject(self.path, b"abc")
        self.assertEqual(after.header.sgd_offset % 8, 0)
        self.assertEqual(
            after.data[after.header.sgd_offset:after.header.sgd_offset + 24], sgd
        )
        self.assertEqual(_level_hashes(before), _level_hashes(after))

    def test_misaligned_kvd_rejected(self):
        data = write_ktx2(self.path, dfd_size=42)
        with self.assertRaises(AlignmentError):
            MetadataInjector().inject(self.path, BLOCK)
        with open(self.path, "rb") as f:
            self.assertEqual(f.read(), data)

    def test_malformed_input_leaves_no_output(self):
        with open(self.path, "wb") as f:
            f.write(b"not a ktx2 file at all" * 8)
        out = os.path.join(self.tmpdir, "out.ktx2")
        with self.assertRaises(MalformedContainerError) as ctx:
            MetadataInjector().inject(self.path, BLOCK, out)
        self.assertEqual(ctx.exception.stage, "inject")
        self.assertFalse(os.path.exists(out))

    def test_separate_output_path(self):
        original = write_ktx2(self.path)
        out = os.path.join(self.tmpdir, "nested", "out.ktx2")
        MetadataInjector("app.range").inject(self.path, BLOCK, out)
        with open(self.path, "rb") as f:
            self.assertEqual(f.read(), original)
        self.assertEqual(read_key_value_data(out)["app.range"], BLOCK)

    def test_missing_input(self):
        with self.assertRaises(IOFailureError):
            MetadataInjector().inject(os.path.join(self.tmpdir, "missing.ktx2"), BLOCK)

    def test_failed_replace_keeps_destination(self):
        original = write_ktx2(self.path)
        with mock.patch("KtxForge.phases.inject.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(IOFailureError):
                MetadataInjector().inject(self.path, BLOCK)
        with open(self.path, "rb") as f:
            self.assertEqual(f.read(), original)
        self.assertEqual(os.listdir(self.tmpdir), ["tex.ktx2"])

    def test_write_atomic_creates_directories(self):
        target = os.path.join(self.tmpdir, "a", "b", "file.bin")
        write_atomic(target, b"payload")
        with open(target, "rb") as f:
            self.assertEqual(f.read(), b"payload")


if __name__ == "__main__":
    unittest.main(verbosity=2)

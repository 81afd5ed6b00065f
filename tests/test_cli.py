"""Tests for CLI argument handling and exit codes."""

import os
import shutil
import tempfile
import unittest
from unittest import mock

from KtxForge import cli
from KtxForge.core import (
    AlignmentError, ConversionCancelledError, ExternalToolFailureError, InvalidDimensionError,
    IOFailureError, MalformedContainerError,
)


class TestExitCodes(unittest.TestCase):
    def test_mapping(self):
        self.assertEqual(cli.exit_code_for(ExternalToolFailureError("x")), 2)
        self.assertEqual(cli.exit_code_for(MalformedContainerError("x")), 3)
        self.assertEqual(cli.exit_code_for(AlignmentError("x")), 3)
        self.assertEqual(cli.exit_code_for(IOFailureError("x")), 4)
        self.assertEqual(cli.exit_code_for(InvalidDimensionError("x")), 4)
        self.assertEqual(cli.exit_code_for(ConversionCancelledError("x")), 130)
        self.assertEqual(cli.exit_code_for(KeyboardInterrupt()), 130)


class TestCLI(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.input = os.path.join(self.tmpdir, "rock_albedo.png")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _run(self, argv):
        with self.assertRaises(SystemExit) as ctx:
            cli.main(argv)
        return ctx.exception.code

    def test_generate_config(self):
        dest = os.path.join(self.tmpdir, "config.yaml")
        self.assertEqual(self._run(["--generate-config", dest]), 0)
        self.assertTrue(os.path.isfile(dest))

    def test_missing_config_file(self):
        code = self._run(["-i", self.input, "-c", os.path.join(self.tmpdir, "none.yaml")])
        self.assertEqual(code, 1)

    def test_missing_input_argument(self):
        self.assertEqual(self._run([]), 1)

    def test_invalid_choice_is_argument_error(self):
        self.assertEqual(self._run(["-i", self.input, "--histogram", "max"]), 1)

    def test_invalid_config_value(self):
        config_path = os.path.join(self.tmpdir, "bad.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write("compression:\n  zstd_level: 99\n")
        self.assertEqual(self._run(["-i", self.input, "-c", config_path]), 1)

    def test_overrides_reach_converter(self):
        with mock.patch("KtxForge.pipeline.TextureConverter") as converter_cls, \
                mock.patch("KtxForge.cli.setup_logging"):
            converter_cls.return_value.convert.return_value = mock.Mock(
                output_path="out.ktx2", mip_levels=3, metadata_size=8
            )
            code = self._run([
                "-i", self.input, "--kernel", "mitchell", "--auto-mips",
                "--histogram", "high_quality", "--per-channel", "--encode", "etc1s",
                "--no-supercompression", "--gloss", "--normal", "n.png",
            ])
        self.assertEqual(code, 0)
        config = converter_cls.call_args[0][0]
        self.assertEqual(config.mipmap.kernel, "mitchell")
        self.assertFalse(config.mipmap.enabled)
        self.assertEqual(config.histogram.mode, "high_quality")
        self.assertEqual(config.histogram.channel_mode, "per_channel")
        self.assertEqual(config.compression.encode, "etc1s")
        self.assertFalse(config.compression.supercompression)
        args, kwargs = converter_cls.return_value.convert.call_args
        self.assertEqual(args[1], os.path.join(self.tmpdir, "rock_albedo.ktx2"))
        self.assertEqual(kwargs["texture_type"].value, "gloss")
        self.assertEqual(kwargs["normal_path"], "n.png")

    def test_pack_flags_reach_converter(self):
        with mock.patch("KtxForge.pipeline.TextureConverter") as converter_cls, \
                mock.patch("KtxForge.cli.setup_logging"):
            converter_cls.return_value.convert_packed.return_value = mock.Mock(
                output_path="out.ktx2", mip_levels=3, metadata_size=0
            )
            code = self._run([
                "-i", self.input, "--pack", "--pack-mode", "og", "--ao", "a.png",
                "--gloss-map", "g.png", "--ao-mode", "percentile",
            ])
        self.assertEqual(code, 0)
        converter_cls.return_value.convert.assert_not_called()
        config = converter_cls.call_args[0][0]
        self.assertEqual(config.packing.mode, "og")
        self.assertEqual(config.packing.ao_mode, "percentile")
        args, _ = converter_cls.return_value.convert_packed.call_args
        self.assertEqual(args[1], os.path.join(self.tmpdir, "rock_albedo_packed.ktx2"))
        self.assertEqual(args[2], {"ao": "a.png", "gloss": "g.png"})

    def test_conversion_error_exit_code(self):
        with mock.patch("KtxForge.pipeline.TextureConverter") as converter_cls, \
                mock.patch("KtxForge.cli.setup_logging"):
            converter_cls.return_value.convert.side_effect = ExternalToolFailureError(
                "ktx create failed", stage="encode", exit_code=5
            )
            self.assertEqual(self._run(["-i", self.input]), 2)

    def test_io_failure_exit_code(self):
        config_path = os.path.join(self.tmpdir, "config.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(f"scratch_dir: '{os.path.join(self.tmpdir, 'scratch')}'\n")
        with mock.patch("KtxForge.cli.setup_logging"):
            self.assertEqual(self._run(["-i", self.input, "-c", config_path]), 4)

    def test_keyboard_interrupt(self):
        with mock.patch("KtxForge.pipeline.TextureConverter") as converter_cls, \
                mock.patch("KtxForge.cli.setup_logging"):
            converter_cls.return_value.convert.side_effect = KeyboardInterrupt
            self.assertEqual(self._run(["-i", self.input]), 130)
        converter_cls.return_value.request_cancel.assert_called_once()


if __name__ == "__main__":
    unittest.main(verbosity=2)

"""End-to-end conversion tests with a substitute encoder."""

import os
import threading
import warnings

import numpy as np
import pytest
from PIL import Image

from helpers import FakeEncoder

from KtxForge.config import TextureType
from KtxForge.core import (
    ConversionCancelledError, DegenerateRangeWarning, ExternalToolFailureError,
    IOFailureError, Ktx2Container, NormalLayout, RangeOverflowError, TextureConversionError,
    read_key_value_data, save_image,
)
from KtxForge.phases.metadata import decode_metadata
from KtxForge.pipeline import TextureConverter


def _scratch_dirs(config):
    return [d for d in os.listdir(config.scratch_dir) if d.startswith("ktxforge_")]


def _save(path, arr):
    save_image(arr, path)
    return path


def test_manual_chain_goes_to_encoder(default_config, gradient_png, tmp_dir):
    encoder = FakeEncoder()
    out = os.path.join(tmp_dir, "out", "rock_albedo.ktx2")
    result = TextureConverter(default_config, encoder).convert(gradient_png, out)

    assert result.success
    assert result.texture_type == "albedo"
    assert result.mip_levels == 5
    inputs, _, settings = encoder.calls[0]
    assert [os.path.basename(p) for p in inputs] == [
        "level_00.png", "level_01.png", "level_02.png", "level_03.png", "level_04.png",
    ]
    assert settings.vk_format == "R8G8B8A8_SRGB"
    assert not settings.generate_mipmaps
    assert Ktx2Container.read(out).header.level_count == 5
    assert result.metadata_size == 0
    assert "pc.meta" not in read_key_value_data(out)
    assert _scratch_dirs(default_config) == []


def test_histogram_metadata_injected(default_config, gradient_png, tmp_dir):
    default_config.histogram.mode = "fast"
    out = os.path.join(tmp_dir, "rock_albedo.ktx2")
    encoder = FakeEncoder()
    result = TextureConverter(default_config, encoder).convert(gradient_png, out)

    assert result.statistics is not None
    block = read_key_value_data(out)["pc.meta"]
    assert len(block) == result.metadata_size
    decoded = decode_metadata(block)
    np.testing.assert_allclose(decoded.inverse.scale_inv, result.inverse.scale_inv, rtol=1e-3)
    np.testing.assert_allclose(decoded.inverse.offset_inv, result.inverse.offset_inv,
                               rtol=1e-3, atol=1e-4)
    assert decoded.quality == "fast"
    # Normalized data is handed over as UNORM.
    assert encoder.calls[0][2].vk_format == "R8G8B8A8_UNORM"
    assert read_key_value_data(out)["KTXwriter"] == b"fake\x00"


def test_automatic_mips_skip_chain_and_analysis(default_config, gradient_png, tmp_dir):
    default_config.mipmap.enabled = False
    default_config.histogram.mode = "high_quality"
    out = os.path.join(tmp_dir, "auto.ktx2")
    encoder = FakeEncoder(levels_when_generating=4)
    result = TextureConverter(default_config, encoder).convert(gradient_png, out)

    inputs, _, settings = encoder.calls[0]
    assert len(inputs) == 1
    assert settings.generate_mipmaps
    assert settings.mipmap_filter == default_config.mipmap.auto_mipmap_filter
    assert result.mip_policy == "automatic"
    assert result.statistics is None
    assert result.mip_levels == 4


@pytest.mark.parametrize("encode,layout", [
    ("uastc", NormalLayout.RG),
    ("etc1s", NormalLayout.RGBxAy),
])
def test_normal_map_layout(default_config, tmp_dir, encode, layout):
    arr = np.empty((8, 8, 3), dtype=np.float32)
    arr[...] = [0.5, 0.5, 1.0]
    path = _save(os.path.join(tmp_dir, "wall_normal.png"), arr)
    default_config.compression.encode = encode
    encoder = FakeEncoder()
    out = os.path.join(tmp_dir, "wall_normal.ktx2")
    TextureConverter(default_config, encoder).convert(path, out)

    assert encoder.calls[0][2].normal_mode
    assert decode_metadata(read_key_value_data(out)["pc.meta"]).normal_layout == layout


def test_toksvig_uses_matching_normal_map(default_config, tmp_dir):
    rng = np.random.default_rng(2)
    vec = rng.normal(scale=0.6, size=(16, 16, 3))
    vec[..., 2] = 1.0
    vec /= np.linalg.norm(vec, axis=-1, keepdims=True)
    normal = _save(os.path.join(tmp_dir, "rock_normal.png"), vec * 0.5 + 0.5)
    rough = _save(os.path.join(tmp_dir, "rock_roughness.png"),
                  np.full((16, 16), 0.4, dtype=np.float32))
    default_config.toksvig.enabled = True
    result = TextureConverter(default_config, FakeEncoder()).convert(
        rough, os.path.join(tmp_dir, "rock_roughness.ktx2")
    )
    assert result.toksvig_applied
    assert result.normal_map_path == normal
    assert result.toksvig_levels[0] == 1


def test_toksvig_without_normal_map_is_skipped(default_config, tmp_dir):
    rough = _save(os.path.join(tmp_dir, "lonely_roughness.png"),
                  np.full((8, 8), 0.4, dtype=np.float32))
    default_config.toksvig.enabled = True
    result = TextureConverter(default_config, FakeEncoder()).convert(
        rough, os.path.join(tmp_dir, "lonely.ktx2")
    )
    assert result.success
    assert not result.toksvig_applied


def test_explicit_type_overrides_filename(default_config, gradient_png, tmp_dir):
    result = TextureConverter(default_config, FakeEncoder()).convert(
        gradient_png, os.path.join(tmp_dir, "o.ktx2"), texture_type="mask"
    )
    assert result.texture_type == TextureType.MASK.value


def test_flat_image_reports_degenerate_range(default_config, tmp_dir):
    path = _save(os.path.join(tmp_dir, "flat_mask.png"),
                 np.full((8, 8), 128.0 / 255.0, dtype=np.float32))
    default_config.histogram.mode = "fast"
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DegenerateRangeWarning)
        result = TextureConverter(default_config, FakeEncoder()).convert(
            path, os.path.join(tmp_dir, "flat.ktx2")
        )
    assert result.degenerate
    assert np.isfinite(result.inverse.scale_inv[0])


def test_intermediates_are_rgba(default_config, tmp_dir):
    path = _save(os.path.join(tmp_dir, "gray_height.png"),
                 np.full((4, 4), 0.25, dtype=np.float32))
    default_config.keep_scratch = True
    result = TextureConverter(default_config, FakeEncoder()).convert(
        path, os.path.join(tmp_dir, "gray.ktx2")
    )
    with Image.open(os.path.join(result.scratch_dir, "level_00.png")) as img:
        assert img.mode == "RGBA"
        assert img.size == (4, 4)


def test_encoder_failure_keeps_scratch(default_config, gradient_png, tmp_dir):
    failure = ExternalToolFailureError("ktx create failed", exit_code=1)
    out = os.path.join(tmp_dir, "failed.ktx2")
    with pytest.raises(ExternalToolFailureError) as excinfo:
        TextureConverter(default_config, FakeEncoder(fail_with=failure)).convert(
            gradient_png, out
        )
    assert excinfo.value.stage == "encode"
    assert not os.path.exists(out)
    scratch = _scratch_dirs(default_config)
    assert len(scratch) == 1
    assert "level_00.png" in os.listdir(os.path.join(default_config.scratch_dir, scratch[0]))


def test_missing_input_is_io_failure(default_config, tmp_dir):
    with pytest.raises(IOFailureError) as excinfo:
        TextureConverter(default_config, FakeEncoder()).convert(
            os.path.join(tmp_dir, "missing_albedo.png"), os.path.join(tmp_dir, "x.ktx2")
        )
    assert excinfo.value.stage == "load"


def test_cancelled_before_start(default_config, gradient_png, tmp_dir):
    cancel = threading.Event()
    cancel.set()
    encoder = FakeEncoder()
    with pytest.raises(ConversionCancelledError):
        TextureConverter(default_config, encoder).convert(
            gradient_png, os.path.join(tmp_dir, "c.ktx2"), cancel_event=cancel
        )
    assert encoder.calls == []


def test_request_cancel(default_config, gradient_png, tmp_dir):
    converter = TextureConverter(default_config, FakeEncoder())
    converter.request_cancel()
    with pytest.raises(ConversionCancelledError):
        converter.convert(gradient_png, os.path.join(tmp_dir, "c.ktx2"))


def test_unrepresentable_range_fails_in_metadata_stage(default_config, tmp_dir):
    rng = np.random.default_rng(5)
    arr = rng.uniform(9e4, 1.1e5, size=(8, 8)).astype(np.float32)
    path = os.path.join(tmp_dir, "terrain_height.tif")
    Image.fromarray(arr).save(path)
    default_config.histogram.mode = "fast"
    encoder = FakeEncoder()
    with pytest.raises(RangeOverflowError) as excinfo:
        TextureConverter(default_config, encoder).convert(
            path, os.path.join(tmp_dir, "terrain.ktx2")
        )
    assert excinfo.value.stage == "metadata"
    assert encoder.calls == []


def test_ao_darkening_applied_to_occlusion_maps(default_config, tmp_dir):
    arr = np.full((16, 16), 0.9, dtype=np.float32)
    arr[:, :4] = 0.1
    path = _save(os.path.join(tmp_dir, "crate_ao.png"), arr)
    default_config.ao.mode = "biased_darkening"
    result = TextureConverter(default_config, FakeEncoder()).convert(
        path, os.path.join(tmp_dir, "crate_ao.ktx2")
    )
    assert result.texture_type == "ao"
    assert result.ao_levels == [1, 2, 3, 4]


def _material(tmp_dir, names, size=16):
    values = {"albedo": 0.5, "ao": 0.6, "gloss": 0.3, "metallic": 1.0, "height": 0.2}
    paths = {}
    for name in names:
        paths[name] = _save(os.path.join(tmp_dir, f"crate_{name}.png"),
                            np.full((size, size), values[name], dtype=np.float32))
    return paths


def test_packed_conversion_interleaves_channels(default_config, tmp_dir):
    paths = _material(tmp_dir, ["albedo", "ao", "gloss", "metallic"])
    default_config.keep_scratch = True
    encoder = FakeEncoder()
    result = TextureConverter(default_config, encoder).convert_packed(
        paths["albedo"], os.path.join(tmp_dir, "crate_packed.ktx2")
    )

    assert result.success
    assert result.packing_mode == "ogm"
    assert result.channel_sources["metallic"] == paths["metallic"]
    assert result.mip_levels == 5
    assert encoder.calls[0][2].vk_format == "R8G8B8A8_UNORM"
    assert not encoder.calls[0][2].generate_mipmaps
    with Image.open(os.path.join(result.scratch_dir, "level_00.png")) as img:
        texel = np.asarray(img)[0, 0]
    np.testing.assert_allclose(texel, [153, 77, 255, 255], atol=1)


def test_packed_conversion_missing_gloss_names_packing_stage(default_config, tmp_dir):
    paths = _material(tmp_dir, ["albedo", "ao"])
    with pytest.raises(TextureConversionError) as excinfo:
        TextureConverter(default_config, FakeEncoder()).convert_packed(
            paths["albedo"], os.path.join(tmp_dir, "crate_packed.ktx2")
        )
    assert excinfo.value.stage == "packing"
    assert "gloss" in str(excinfo.value)

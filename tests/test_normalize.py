"""Tests for the forward/inverse range transforms."""

import unittest

import numpy as np

from KtxForge.config import HistogramConfig
from KtxForge.core import ImagePlane, InvalidDimensionError, MipChain, MipLevel
from KtxForge.phases.histogram import HistogramAnalyzer, RangeStatistics
from KtxForge.phases.metadata import MetadataEncoder, decode_metadata
from KtxForge.phases.normalize import (
    RangeNormalizer, forward_transform, inverse_transform, soft_knee,
)


class TestSoftKnee(unittest.TestCase):
    def test_identity_in_the_middle(self):
        x = np.linspace(0.1, 0.9, 17)
        np.testing.assert_allclose(soft_knee(x, 0.1), x)

    def test_endpoints_and_joins(self):
        k = 0.05
        self.assertAlmostEqual(float(soft_knee(np.array([-k]), k)[0]), 0.0)
        self.assertAlmostEqual(float(soft_knee(np.array([1.0 + k]), k)[0]), 1.0)
        self.assertAlmostEqual(float(soft_knee(np.array([k]), k)[0]), k)
        self.assertAlmostEqual(float(soft_knee(np.array([1.0 - k]), k)[0]), 1.0 - k)

    def test_monotonic_and_bounded(self):
        x = np.linspace(-0.5, 1.5, 2001)
        y = soft_knee(x, 0.02)
        self.assertTrue(np.all(np.diff(y) >= -1e-12))
        self.assertGreaterEqual(float(y.min()), 0.0)
        self.assertLessEqual(float(y.max()), 1.0)

    def test_zero_knee_is_clamp(self):
        np.testing.assert_array_equal(soft_knee(np.array([-1.0, 0.5, 2.0]), 0.0),
                                      [0.0, 0.5, 1.0])


class TestTransforms(unittest.TestCase):
    def test_fast_forward_clamps(self):
        stats = RangeStatistics(lo=(0.2,), hi=(0.6,), quality="fast")
        out = forward_transform(np.array([0.0, 0.2, 0.4, 0.6, 1.0]), stats)
        np.testing.assert_allclose(out, [0.0, 0.0, 0.5, 1.0, 1.0], atol=1e-6)

    def test_inverse_of_forward_inside_range(self):
        stats = RangeStatistics(lo=(0.1, 0.2, 0.3), hi=(0.5, 0.9, 0.4),
                                channel_mode="per_channel", quality="fast")
        values = np.array([[0.3, 0.55, 0.35], [0.1, 0.9, 0.4]], dtype=np.float32)
        recovered = inverse_transform(forward_transform(values, stats), stats)
        np.testing.assert_allclose(recovered, values, atol=1e-6)

    def test_high_quality_is_linear_inside_range(self):
        stats = RangeStatistics(lo=(11.0,), hi=(199.0,), quality="high_quality",
                                knee_width=0.02)
        values = np.array([11.0, 11.5, 12.0, 100.0, 198.5, 199.0])
        recovered = inverse_transform(forward_transform(values, stats), stats)
        np.testing.assert_allclose(recovered, values, atol=1e-3)

    def test_high_quality_bends_only_the_tails(self):
        stats = RangeStatistics(lo=(0.2,), hi=(0.6,), quality="high_quality",
                                knee_width=0.05)
        values = np.array([-1.0, 0.17, 0.19, 0.2, 0.6, 0.61, 0.63, 2.0])
        out = forward_transform(values, stats)
        linear = values * stats.scale[0] + stats.offset[0]
        self.assertEqual(float(out[0]), 0.0)
        self.assertEqual(float(out[-1]), 1.0)
        # Tails are pulled toward the percentile edges, never past 0 or 1.
        self.assertTrue(np.all(out[1:3] > linear[1:3]))
        self.assertTrue(np.all(out[5:7] < linear[5:7]))
        np.testing.assert_allclose(out[3:5], linear[3:5], atol=1e-6)
        self.assertTrue(np.all(np.diff(out) >= 0.0))

    def test_round_trip_through_half_precision_metadata(self):
        rng = np.random.default_rng(11)
        plane = ImagePlane(rng.uniform(0.2, 0.6, size=(128, 128, 1)))
        cfg = HistogramConfig(mode="fast", low_percentile=0.0, high_percentile=100.0)
        stats = HistogramAnalyzer(cfg).analyze(plane)
        block = MetadataEncoder().encode(stats.inverse, stats)
        stored = decode_metadata(block).inverse

        s, o = stats.scale_inv[0], stats.offset_inv[0]
        tol = 0.5 * (float(np.spacing(np.float16(s))) + float(np.spacing(np.float16(o))))
        v = np.linspace(0.0, 1.0, 257)
        exact = v * s + o
        np.testing.assert_array_less(
            np.abs(inverse_transform(v, stored) - exact), tol + 1e-6
        )


class TestRangeNormalizer(unittest.TestCase):
    def _chain(self, channels):
        arr = np.full((4, 4, channels), 0.4, dtype=np.float32)
        return MipChain([
            MipLevel(0, ImagePlane(arr)),
            MipLevel(1, ImagePlane(arr[:2, :2])),
            MipLevel(2, ImagePlane(arr[:1, :1])),
        ])

    def test_every_level_normalized_and_alpha_kept(self):
        chain = self._chain(4)
        stats = RangeStatistics(lo=(0.2,), hi=(0.6,), quality="fast")
        inverse = RangeNormalizer().normalize(chain, stats)
        for level in chain:
            np.testing.assert_allclose(level.plane.pixels[..., :3], 0.5, atol=1e-6)
            np.testing.assert_allclose(level.plane.pixels[..., 3], 0.4, atol=1e-6)
        self.assertEqual(inverse, stats.inverse)

    def test_per_channel_stats_need_three_channels(self):
        chain = self._chain(1)
        stats = RangeStatistics(lo=(0.0, 0.0, 0.0), hi=(1.0, 1.0, 1.0),
                                channel_mode="per_channel")
        with self.assertRaises(InvalidDimensionError) as ctx:
            RangeNormalizer().normalize(chain, stats)
        self.assertEqual(ctx.exception.stage, "normalize")
        self.assertEqual(ctx.exception.actual, 1)

    def test_color_space_tag_kept(self):
        arr = np.full((2, 2, 3), 0.4, dtype=np.float32)
        chain = MipChain([MipLevel(0, ImagePlane(arr, "encoded")),
                          MipLevel(1, ImagePlane(arr[:1, :1], "encoded"))])
        RangeNormalizer().normalize(chain, RangeStatistics(lo=(0.2,), hi=(0.6,)))
        self.assertEqual({lvl.plane.color_space for lvl in chain}, {"encoded"})


if __name__ == "__main__":
    unittest.main(verbosity=2)

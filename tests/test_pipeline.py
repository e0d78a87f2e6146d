"""End-to-end tests for the texture conversion pipeline.

The external encoder is replaced by a small script (see conftest) that
copies its first input PNG to the requested ``.ktx2`` path.
"""

import asyncio
import filecmp
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import cv2
import numpy as np
import pytest

from conftest import save_bumpy_normal_png, save_gray_png, save_test_png, write_fake_encoder

from TexBrew.config import (
    ChannelPackingMode,
    ChannelPackingSettings,
    ChannelType,
    MipGenerationProfile,
    PipelineConfig,
    TextureType,
)
from TexBrew.core import load_image, save_image
from TexBrew.pipeline import TextureConversionPipeline

pytestmark = pytest.mark.slow

_requires_posix = unittest.skipIf(sys.platform == "win32",
                                  "fake encoder scripts need a POSIX shebang")


@_requires_posix
class _PipelineTestCase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.src_dir = os.path.join(self.tmpdir, "src")
        self.out_dir = os.path.join(self.tmpdir, "out")
        self.scratch = os.path.join(self.tmpdir, "scratch")
        self.bin_dir = os.path.join(self.tmpdir, "bin")
        for d in (self.src_dir, self.out_dir, self.scratch, self.bin_dir):
            os.makedirs(d)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _config(self, **fake_kwargs):
        config = PipelineConfig()
        config.scratch_dir = self.scratch
        config.encoder.tool = "toktx"
        config.encoder.tool_path = write_fake_encoder(self.bin_dir, **fake_kwargs)
        return config

    def _pipeline(self, config=None, **kwargs):
        return TextureConversionPipeline(config or self._config(), **kwargs)

    def _src(self, name):
        return os.path.join(self.src_dir, name)

    def _out(self, name):
        return os.path.join(self.out_dir, name)

    def assertScratchEmpty(self):
        self.assertEqual(os.listdir(self.scratch), [])


class TestConvertTexture(_PipelineTestCase):
    def test_successful_conversion(self):
        src = self._src("wall_albedo.png")
        save_test_png(src, 32, 32)
        result = asyncio.run(self._pipeline().convert_texture_async(src, self._out("wall.ktx2")))
        self.assertTrue(result.success, result.error)
        self.assertIsNone(result.error)
        self.assertEqual(result.mip_count, 6)
        self.assertFalse(result.toksvig_applied)
        self.assertGreater(result.duration, 0.0)
        self.assertTrue(os.path.isfile(self._out("wall.ktx2")))
        self.assertIn("encoded 6 levels", result.encoder_output)
        self.assertScratchEmpty()

    def test_encoder_failure_is_reported_not_raised(self):
        src = self._src("wall_albedo.png")
        save_test_png(src, 16, 16)
        pipeline = self._pipeline(self._config(exit_code=2))
        result = asyncio.run(pipeline.convert_texture_async(src, self._out("wall.ktx2")))
        self.assertFalse(result.success)
        self.assertIn("exit code 2", result.error)
        self.assertScratchEmpty()
        errors = [e for e in result.diagnostics if e.level_name == "ERROR"]
        self.assertTrue(errors)

    def test_missing_encoder(self):
        src = self._src("wall_albedo.png")
        save_test_png(src, 16, 16)
        config = PipelineConfig()
        config.scratch_dir = self.scratch
        config.encoder.tool = "toktx"
        config.encoder.tool_path = os.path.join(self.bin_dir, "missing")
        with mock.patch("TexBrew.phases.encoder.shutil.which", return_value=None), \
                mock.patch("TexBrew.BIN_DIR", Path(self.bin_dir)):
            result = asyncio.run(TextureConversionPipeline(config).convert_texture_async(
                src, self._out("wall.ktx2")
            ))
        self.assertFalse(result.success)
        self.assertIn("not available", result.error)

    def test_corrupt_source(self):
        src = self._src("broken_albedo.png")
        with open(src, "wb") as f:
            f.write(b"not really a png")
        result = asyncio.run(self._pipeline().convert_texture_async(src, self._out("b.ktx2")))
        self.assertFalse(result.success)
        self.assertIn("Failed to open image", result.error)
        self.assertFalse(os.path.exists(self._out("b.ktx2")))
        self.assertScratchEmpty()

    def test_zero_byte_source(self):
        src = self._src("empty_albedo.png")
        open(src, "wb").close()
        result = asyncio.run(self._pipeline().convert_texture_async(src, self._out("e.ktx2")))
        self.assertFalse(result.success)
        self.assertFalse(os.path.exists(self._out("e.ktx2")))

    def test_explicit_profile_and_no_custom_mips(self):
        src = self._src("noise.png")
        save_test_png(src, 16, 16)
        config = self._config()
        config.compression.use_custom_mipmaps = False
        result = asyncio.run(self._pipeline(config).convert_texture_async(
            src, self._out("noise.ktx2"),
            profile=MipGenerationProfile.for_texture_type(TextureType.HEIGHT),
        ))
        self.assertTrue(result.success, result.error)
        self.assertEqual(result.mip_count, 1)

    def test_no_custom_mips_skips_mip_generation(self):
        src = self._src("wall_albedo.png")
        save_test_png(src, 16, 16)
        config = self._config()
        config.compression.use_custom_mipmaps = False
        pipeline = self._pipeline(config)
        with mock.patch.object(pipeline.mip_generator, "generate_mipmaps") as generate:
            result = asyncio.run(pipeline.convert_texture_async(src, self._out("wall.ktx2")))
        self.assertTrue(result.success, result.error)
        self.assertEqual(result.mip_count, 1)
        generate.assert_not_called()
        self.assertEqual(load_image(self._out("wall.ktx2")).shape, (16, 16, 3))

    def test_generic_name_is_classified_by_content(self):
        src = self._src("panel.png")
        flat = np.zeros((8, 8, 3), dtype=np.float32)
        flat[:, :] = (0.5, 0.5, 1.0)
        save_image(flat, src)
        result = asyncio.run(self._pipeline().convert_texture_async(src, self._out("panel.ktx2")))
        self.assertTrue(result.success, result.error)
        self.assertTrue(any("type=normal" in e.message for e in result.diagnostics),
                        [e.message for e in result.diagnostics])

    def test_select_profile(self):
        pipeline = self._pipeline()
        flat = np.zeros((8, 8, 3), dtype=np.float32)
        flat[:, :] = (0.5, 0.5, 1.0)
        self.assertEqual(pipeline.select_profile("panel.png", flat).texture_type,
                         TextureType.NORMAL)
        self.assertEqual(pipeline.select_profile("panel.png").texture_type,
                         TextureType.GENERIC)
        self.assertEqual(pipeline.select_profile("wall_albedo.png", flat).texture_type,
                         TextureType.ALBEDO)

    def test_save_separate_mipmaps(self):
        src = self._src("wall_albedo.png")
        save_test_png(src, 8, 8)
        mip_dir = os.path.join(self.tmpdir, "mips")
        result = asyncio.run(self._pipeline().convert_texture_async(
            src, self._out("wall.ktx2"), save_separate_mipmaps=True, mipmap_output_dir=mip_dir,
        ))
        self.assertTrue(result.success, result.error)
        self.assertEqual(result.mipmaps_saved_path, mip_dir)
        self.assertEqual(sorted(os.listdir(mip_dir)),
                         [f"wall_albedo_mip{i}.png" for i in range(4)])
        self.assertScratchEmpty()

    def test_diagnostics_callback(self):
        src = self._src("wall_albedo.png")
        save_test_png(src, 8, 8)
        events = []
        pipeline = self._pipeline(diagnostics_callback=events.append)
        result = asyncio.run(pipeline.convert_texture_async(src, self._out("wall.ktx2")))
        self.assertTrue(result.success, result.error)
        self.assertEqual(events, result.diagnostics)
        self.assertIn("mipmap", {e.stage for e in events})
        self.assertIn("encoder", {e.stage for e in events})

    def test_cancellation_cleans_scratch_and_stops_encoder(self):
        src = self._src("wall_albedo.png")
        save_test_png(src, 16, 16)
        pipeline = self._pipeline(self._config(sleep_seconds=10.0))

        async def run():
            task = asyncio.create_task(
                pipeline.convert_texture_async(src, self._out("wall.ktx2"))
            )
            await asyncio.sleep(1.0)
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task

        asyncio.run(run())
        self.assertScratchEmpty()
        self.assertFalse(os.path.exists(self._out("wall.ktx2")))

    def test_concurrent_conversions_are_isolated(self):
        good = self._src("a_albedo.png")
        bad = self._src("b_albedo.png")
        save_test_png(good, 16, 16)
        with open(bad, "wb") as f:
            f.write(b"garbage")
        pipeline = self._pipeline()

        async def run():
            return await asyncio.gather(
                pipeline.convert_texture_async(good, self._out("a.ktx2")),
                pipeline.convert_texture_async(bad, self._out("b.ktx2")),
            )

        ok, failed = asyncio.run(run())
        self.assertTrue(ok.success, ok.error)
        self.assertFalse(failed.success)
        self.assertScratchEmpty()


class TestToksvigIntegration(_PipelineTestCase):
    def _gloss_with_normal(self):
        gloss = self._src("brick_gloss.png")
        save_gray_png(gloss, 200, 32, 32)
        save_bumpy_normal_png(self._src("brick_normal.png"), 32, 32, strength=1.5)
        return gloss

    def test_toksvig_applied_with_sibling_normal(self):
        gloss = self._gloss_with_normal()
        config = self._config()
        config.toksvig.enabled = True
        mip_dir = os.path.join(self.tmpdir, "mips")
        result = asyncio.run(self._pipeline(config).convert_texture_async(
            gloss, self._out("brick.ktx2"), save_separate_mipmaps=True,
            mipmap_output_dir=mip_dir,
        ))
        self.assertTrue(result.success, result.error)
        self.assertTrue(result.toksvig_applied)
        self.assertEqual(result.normal_map_used, self._src("brick_normal.png"))

        level0 = load_image(os.path.join(mip_dir, "brick_gloss_mip0.png"))
        level3 = load_image(os.path.join(mip_dir, "brick_gloss_mip3.png"))
        self.assertAlmostEqual(float(level0.mean()), 200 / 255.0, places=4)
        self.assertLess(float(level3.mean()), 0.65 * float(level0.mean()))

    def test_missing_normal_map_is_non_fatal(self):
        gloss = self._src("lonely_gloss.png")
        save_gray_png(gloss, 200, 16, 16)
        config = self._config()
        config.toksvig.enabled = True
        result = asyncio.run(self._pipeline(config).convert_texture_async(
            gloss, self._out("lonely.ktx2")
        ))
        self.assertTrue(result.success, result.error)
        self.assertFalse(result.toksvig_applied)
        toksvig_errors = [e for e in result.diagnostics
                          if e.stage == "toksvig" and e.level_name == "ERROR"]
        self.assertEqual(len(toksvig_errors), 1)

    def test_toksvig_ignored_for_albedo(self):
        src = self._src("brick_albedo.png")
        save_test_png(src, 16, 16)
        save_bumpy_normal_png(self._src("brick_normal.png"), 16, 16)
        config = self._config()
        config.toksvig.enabled = True
        result = asyncio.run(self._pipeline(config).convert_texture_async(
            src, self._out("brick.ktx2")
        ))
        self.assertTrue(result.success, result.error)
        self.assertFalse(result.toksvig_applied)

    def test_debug_mipmaps_tagged_by_stage(self):
        gloss = self._gloss_with_normal()
        config = self._config()
        config.toksvig.enabled = True
        config.compression.keep_debug_mipmaps = True
        result = asyncio.run(self._pipeline(config).convert_texture_async(
            gloss, self._out("brick.ktx2")
        ))
        self.assertTrue(result.success, result.error)
        debug_dir = os.path.join(self.src_dir, "mipmaps")
        self.assertEqual(result.mipmaps_saved_path, debug_dir)
        names = set(os.listdir(debug_dir))
        for tag in ("gloss", "toksvig_variance", "composite"):
            self.assertIn(f"brick_{tag}_mip0.png", names)
            self.assertIn(f"brick_{tag}_mip5.png", names)
        self.assertScratchEmpty()


class TestMipmapsOnly(_PipelineTestCase):
    def test_writes_levels_in_order(self):
        src = self._src("tile_albedo.png")
        save_test_png(src, 16, 8)
        paths = asyncio.run(self._pipeline().generate_mipmaps_only_async(src, self.out_dir))
        self.assertEqual([os.path.basename(p) for p in paths],
                         [f"tile_albedo_mip{i}.png" for i in range(5)])

    def test_identical_inputs_give_identical_levels(self):
        src = self._src("tile_gloss.png")
        save_test_png(src, 32, 32)
        pipeline = self._pipeline()
        first = asyncio.run(pipeline.generate_mipmaps_only_async(
            src, os.path.join(self.tmpdir, "run1")))
        second = asyncio.run(pipeline.generate_mipmaps_only_async(
            src, os.path.join(self.tmpdir, "run2")))
        for a, b in zip(first, second):
            self.assertTrue(filecmp.cmp(a, b, shallow=False), a)

    def test_bit_depth(self):
        src = self._src("tile_height.png")
        save_test_png(src, 8, 8)
        config = self._config()
        eight = asyncio.run(self._pipeline(config).generate_mipmaps_only_async(
            src, os.path.join(self.tmpdir, "mips8")))
        self.assertEqual(cv2.imread(eight[0], cv2.IMREAD_UNCHANGED).dtype, np.uint8)

        config.mipmap_bit_depth = 16
        sixteen = asyncio.run(self._pipeline(config).generate_mipmaps_only_async(
            src, os.path.join(self.tmpdir, "mips16")))
        self.assertEqual(len(sixteen), 4)
        for path in sixteen:
            self.assertEqual(cv2.imread(path, cv2.IMREAD_UNCHANGED).dtype, np.uint16, path)


class TestPackedConversion(_PipelineTestCase):
    def _gray(self, name, value, size=16):
        path = self._src(name)
        save_gray_png(path, value, size, size)
        return path

    def test_packed_success(self):
        packing = ChannelPackingSettings.create_default(ChannelPackingMode.OGM, {
            ChannelType.AO: self._gray("rock_ao.png", 10),
            ChannelType.GLOSS: self._gray("rock_gloss.png", 200),
            ChannelType.METALLIC: self._gray("rock_metallic.png", 50),
        })
        results = asyncio.run(self._pipeline().convert_packed_async(
            packing, self._out("rock_ogm.ktx2")
        ))
        self.assertEqual(len(results), 1)
        self.assertTrue(results[0].success, results[0].error)
        self.assertEqual(results[0].mip_count, 5)
        self.assertIn("rock_ao.png", results[0].input_path)
        # The fake encoder copies mip 0 verbatim, so the container is a PNG.
        level0 = load_image(self._out("rock_ogm.ktx2"))
        np.testing.assert_allclose(level0[0, 0], [10 / 255.0, 200 / 255.0, 50 / 255.0, 1.0],
                                   atol=1e-6)
        self.assertScratchEmpty()

    def test_fallback_to_independent_channels(self):
        packing = ChannelPackingSettings.create_default(ChannelPackingMode.OG, {
            ChannelType.AO: self._gray("rock_ao.png", 10),
            ChannelType.GLOSS: self._src("rock_gloss_missing.png"),
        })
        results = asyncio.run(self._pipeline().convert_packed_async(
            packing, self._out("rock_og.ktx2")
        ))
        self.assertEqual(len(results), 2)
        by_output = {os.path.basename(r.output_path): r for r in results}
        self.assertTrue(by_output["rock_og_ao.ktx2"].success)
        self.assertFalse(by_output["rock_og_gloss.ktx2"].success)
        self.assertTrue(os.path.isfile(self._out("rock_og_ao.ktx2")))
        self.assertScratchEmpty()

    def test_invalid_slot_settings_are_reported_not_raised(self):
        packing = ChannelPackingSettings.create_default(ChannelPackingMode.OG, {
            ChannelType.AO: self._gray("rock_ao.png", 10),
            ChannelType.GLOSS: self._gray("rock_gloss.png", 200),
        })
        packing.red.filter = "bogus"
        results = asyncio.run(self._pipeline().convert_packed_async(
            packing, self._out("rock_og.ktx2")
        ))
        self.assertEqual(len(results), 2)
        failed = [r for r in results if not r.success]
        self.assertEqual(len(failed), 1)
        self.assertIn("bogus", failed[0].error)
        self.assertTrue(os.path.isfile(self._out("rock_og_gloss.ktx2")))
        self.assertFalse(os.path.exists(self._out("rock_og.ktx2")))

    def test_unexpected_packing_error_becomes_failed_result(self):
        packing = ChannelPackingSettings.create_default(ChannelPackingMode.OG, {
            ChannelType.AO: self._gray("rock_ao.png", 10),
            ChannelType.GLOSS: self._gray("rock_gloss.png", 200),
        })
        with mock.patch("TexBrew.pipeline.ChannelPackingPipeline.pack_channels_async",
                        side_effect=RuntimeError("packer exploded")):
            results = asyncio.run(self._pipeline().convert_packed_async(
                packing, self._out("rock_og.ktx2")
            ))
        self.assertEqual(len(results), 1)
        self.assertFalse(results[0].success)
        self.assertEqual(results[0].error, "packer exploded")
        self.assertIn("rock_ao.png", results[0].input_path)
        self.assertTrue(results[0].diagnostics)


if __name__ == "__main__":
    unittest.main()

"""Tests for normal-map resolution."""

import os
import shutil
import tempfile
import unittest

from conftest import save_gray_png, save_test_png

from TexBrew.core import (
    ChainedNormalMapResolver,
    ExplicitNormalMapResolver,
    FilenameNormalMapResolver,
    NormalMapResolver,
    default_normal_map_resolver,
    strip_texture_suffix,
)


class TestCandidateNames(unittest.TestCase):
    def test_gloss_suffix_replaced(self):
        names = FilenameNormalMapResolver.candidate_names("brick_gloss")
        self.assertEqual(names[0], "brick_normal")
        self.assertIn("brick_Normal", names)
        self.assertIn("brick_gloss_normal", names)

    def test_roughness_suffix_replaced(self):
        names = FilenameNormalMapResolver.candidate_names("metal_Roughness")
        self.assertEqual(names[0], "metal_normal")

    def test_short_suffixes(self):
        self.assertIn("rock_n", FilenameNormalMapResolver.candidate_names("rock_g"))
        self.assertIn("rock_N", FilenameNormalMapResolver.candidate_names("rock_R"))

    def test_no_duplicates(self):
        names = FilenameNormalMapResolver.candidate_names("brick_gloss")
        self.assertEqual(len(names), len(set(names)))


class TestFilenameResolver(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_resolves_sibling(self):
        gloss = os.path.join(self.tmpdir, "brick_gloss.png")
        normal = os.path.join(self.tmpdir, "brick_normal.png")
        save_gray_png(gloss, 200, 32, 32)
        save_test_png(normal, 32, 32)
        self.assertEqual(FilenameNormalMapResolver().resolve(gloss), normal)

    def test_missing_returns_none(self):
        gloss = os.path.join(self.tmpdir, "brick_gloss.png")
        save_gray_png(gloss, 200, 32, 32)
        self.assertIsNone(FilenameNormalMapResolver().resolve(gloss))

    def test_dimension_mismatch_rejected(self):
        gloss = os.path.join(self.tmpdir, "brick_gloss.png")
        normal = os.path.join(self.tmpdir, "brick_normal.png")
        save_gray_png(gloss, 200, 32, 32)
        save_test_png(normal, 64, 64)
        self.assertIsNone(FilenameNormalMapResolver().resolve(gloss))
        self.assertEqual(
            FilenameNormalMapResolver(validate_dimensions=False).resolve(gloss), normal
        )


class TestExplicitAndChained(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_explicit_existing(self):
        normal = os.path.join(self.tmpdir, "any_name.png")
        save_test_png(normal, 16, 16)
        resolver = ExplicitNormalMapResolver(normal)
        self.assertEqual(resolver.resolve("whatever_gloss.png"), normal)

    def test_explicit_missing_returns_none(self):
        resolver = ExplicitNormalMapResolver(os.path.join(self.tmpdir, "gone.png"))
        self.assertIsNone(resolver.resolve("whatever_gloss.png"))

    def test_chain_first_hit_wins(self):
        class Fixed(NormalMapResolver):
            def __init__(self, value):
                self.value = value
                self.calls = 0

            def resolve(self, texture_path):
                self.calls += 1
                return self.value

        first, second, third = Fixed(None), Fixed("b.png"), Fixed("c.png")
        chain = ChainedNormalMapResolver([first, second, third])
        self.assertEqual(chain.resolve("x.png"), "b.png")
        self.assertEqual((first.calls, second.calls, third.calls), (1, 1, 0))

    def test_default_prefers_explicit(self):
        gloss = os.path.join(self.tmpdir, "brick_gloss.png")
        sibling = os.path.join(self.tmpdir, "brick_normal.png")
        explicit = os.path.join(self.tmpdir, "custom.png")
        save_gray_png(gloss, 200, 16, 16)
        save_test_png(sibling, 16, 16)
        save_test_png(explicit, 16, 16)
        self.assertEqual(default_normal_map_resolver(explicit).resolve(gloss), explicit)
        self.assertEqual(default_normal_map_resolver().resolve(gloss), sibling)

    def test_base_resolver_is_abstract(self):
        with self.assertRaises(NotImplementedError):
            NormalMapResolver().resolve("x.png")


class TestStripSuffix(unittest.TestCase):
    def test_strip(self):
        self.assertEqual(strip_texture_suffix("brick_gloss"), "brick")
        self.assertEqual(strip_texture_suffix("rock_AO"), "rock")
        self.assertEqual(strip_texture_suffix("metal_roughness"), "metal")
        self.assertEqual(strip_texture_suffix("plain"), "plain")

    def test_strips_only_last_suffix(self):
        self.assertEqual(strip_texture_suffix("brick_normal_gloss"), "brick_normal")


if __name__ == "__main__":
    unittest.main()

"""Tests for packaging and pyproject.toml correctness."""

import os
import unittest

_ROOT = os.path.dirname(os.path.dirname(__file__))


def _load_pyproject():
    import tomllib
    with open(os.path.join(_ROOT, "pyproject.toml"), "rb") as f:
        return tomllib.load(f)


def _requirement_names(specs):
    names = set()
    for spec in specs:
        for sep in ("<", ">", "=", "!", "~", "[", ";"):
            spec = spec.split(sep)[0]
        names.add(spec.strip().lower())
    return names


class TestPackaging(unittest.TestCase):
    def test_console_script_points_at_cli(self):
        data = _load_pyproject()
        self.assertEqual(data["project"]["scripts"]["TexBrew"], "TexBrew.cli:main")

    def test_no_gpu_stack_in_base_deps(self):
        deps = _requirement_names(_load_pyproject()["project"]["dependencies"])
        for name in ("torch", "onnxruntime", "onnxruntime-gpu"):
            self.assertNotIn(name, deps)

    def test_pytest_only_in_test_extra(self):
        data = _load_pyproject()
        self.assertNotIn("pytest", _requirement_names(data["project"]["dependencies"]))
        self.assertIn("pytest",
                      _requirement_names(data["project"]["optional-dependencies"]["test"]))

    def test_requirements_txt_matches_pyproject(self):
        with open(os.path.join(_ROOT, "requirements.txt"), "r", encoding="utf-8") as f:
            lines = [
                ln.strip()
                for ln in f.readlines()
                if ln.strip() and not ln.strip().startswith("#")
            ]
        runtime = _requirement_names(_load_pyproject()["project"]["dependencies"])
        self.assertTrue(runtime.issubset(_requirement_names(lines)))


if __name__ == "__main__":
    unittest.main(verbosity=2)

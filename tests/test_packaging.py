"""Tests for packaging and pyproject.toml correctness."""

import os
import re
import unittest

_ROOT = os.path.dirname(os.path.dirname(__file__))
_RUNTIME = {"numpy", "pillow", "opencv-python-headless", "scipy", "pyyaml", "tqdm"}


def _name(spec):
    return re.split(r"[<>=!~ ;\[]", spec, maxsplit=1)[0].strip().lower()


class TestPyproject(unittest.TestCase):
    def setUp(self):
        import tomllib
        with open(os.path.join(_ROOT, "pyproject.toml"), "rb") as f:
            self.data = tomllib.load(f)

    def test_runtime_dependencies_declared(self):
        names = {_name(d) for d in self.data["project"]["dependencies"]}
        self.assertEqual(names, _RUNTIME)

    def test_no_ml_runtime_in_base_deps(self):
        base_deps = self.data["project"]["dependencies"]
        for banned in ("onnxruntime", "torch", "PyQt6"):
            self.assertFalse(any(banned in d for d in base_deps), banned)

    def test_test_extra_has_pytest(self):
        test_deps = self.data["project"]["optional-dependencies"]["test"]
        self.assertTrue(any(_name(d) == "pytest" for d in test_deps))

    def test_console_script(self):
        self.assertEqual(
            self.data["project"]["scripts"]["pixel-overlay"], "PixelOverlay.cli:main",
        )


class TestRequirements(unittest.TestCase):
    def test_requirements_match_pyproject(self):
        with open(os.path.join(_ROOT, "requirements.txt"), "r", encoding="utf-8") as f:
            lines = [
                ln.strip()
                for ln in f.readlines()
                if ln.strip() and not ln.strip().startswith("#")
            ]
        self.assertEqual({_name(ln) for ln in lines}, _RUNTIME)


if __name__ == "__main__":
    unittest.main(verbosity=2)

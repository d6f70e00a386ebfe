"""Checks on what the distribution installs."""

from pathlib import Path

import pytest

tomllib = pytest.importorskip("tomllib")

ROOT = Path(__file__).resolve().parent.parent


def test_only_the_backend_package_is_installed():
    with open(ROOT / "pyproject.toml", "rb") as fh:
        setuptools_cfg = tomllib.load(fh)["tool"]["setuptools"]

    assert setuptools_cfg["packages"] == ["mytools_backend"]
    assert "py-modules" not in setuptools_cfg

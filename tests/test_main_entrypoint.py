"""Tests for b2d.__main__ entrypoint."""

from __future__ import annotations

import runpy
from pathlib import Path
from unittest.mock import patch

import pytest


def test_module_entrypoint_exits_with_cli_status():
    with patch("b2d.cli.main", return_value=2) as mock_main:
        with pytest.raises(SystemExit) as exc:
            runpy.run_module("b2d.__main__", run_name="__main__")
    assert exc.value.code == 2
    mock_main.assert_called_once_with()


def test_packaging_metadata():
    tomllib = pytest.importorskip("tomllib")
    pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
    project = tomllib.loads(pyproject.read_text())["project"]
    assert project["scripts"]["b2d"] == "b2d.cli:main"
    assert str(project.get("readme", "README")).upper().startswith("README")

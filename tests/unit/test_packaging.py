from __future__ import annotations

import tomllib
from pathlib import Path

from setuptools import find_namespace_packages


ROOT = Path(__file__).resolve().parents[2]


def test_console_script_module_is_packaged():
    with open(ROOT / "pyproject.toml", "rb") as fh:
        config = tomllib.load(fh)
    find = config["tool"]["setuptools"]["packages"]["find"]
    src = ROOT / find["where"][0]
    packages = set(find_namespace_packages(where=str(src), include=find["include"]))

    assert find.get("namespaces") is True
    for target in config["project"]["scripts"].values():
        module = target.split(":", 1)[0]
        assert module.rsplit(".", 1)[0] in packages
        assert (src / Path(*module.split("."))).with_suffix(".py").is_file()

import importlib

import pytest


@pytest.mark.parametrize("name", ["pipegate.ui", "pipegate.git_facts"])
def test_subpackages_are_regular_packages(name):
    # namespace packages have no __file__ and are dropped by packages.find
    module = importlib.import_module(name)
    assert module.__file__ is not None
    assert module.__file__.endswith("__init__.py")


def test_cli_helpers_import():
    from pipegate.cli import cli
    from pipegate.git_facts.git import head_sha
    from pipegate.ui.console import Console

    assert callable(cli) and callable(head_sha) and Console().debug is False

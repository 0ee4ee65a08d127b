from pathlib import Path

import pytest

from pipegate.config import EngineConfig
from pipegate.errors import DefinitionError


def test_defaults_from_empty_environment():
    cfg = EngineConfig.from_env({})

    assert cfg.max_parallel >= 1
    assert cfg.primary_branch == "master"
    assert cfg.release_branch == "release"
    assert cfg.allow_overwrite is False
    assert cfg.workdir == Path(".")


def test_environment_overrides():
    cfg = EngineConfig.from_env(
        {
            "PIPEGATE_MAX_PARALLEL": "7",
            "PIPEGATE_PRIMARY_BRANCH": "main",
            "PIPEGATE_RELEASE_BRANCH": "stable",
            "PIPEGATE_ALLOW_OVERWRITE": "yes",
            "PIPEGATE_WORKDIR": "/tmp/build",
        }
    )

    assert cfg == EngineConfig(
        max_parallel=7,
        primary_branch="main",
        release_branch="stable",
        allow_overwrite=True,
        workdir=Path("/tmp/build"),
    )


def test_process_environment_is_the_default_source(monkeypatch):
    monkeypatch.setenv("PIPEGATE_MAX_PARALLEL", "3")
    assert EngineConfig.from_env().max_parallel == 3


@pytest.mark.parametrize("value", ["many", "0", "-2"])
def test_bad_max_parallel(value):
    with pytest.raises(DefinitionError, match="PIPEGATE_MAX_PARALLEL|max_parallel"):
        EngineConfig.from_env({"PIPEGATE_MAX_PARALLEL": value})


def test_override_skips_none():
    cfg = EngineConfig(max_parallel=2).override(max_parallel=None, primary_branch="main", allow_overwrite=None)

    assert cfg.max_parallel == 2
    assert cfg.primary_branch == "main"
    assert cfg.allow_overwrite is False


def test_override_validates():
    with pytest.raises(DefinitionError):
        EngineConfig().override(max_parallel=0)

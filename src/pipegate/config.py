# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from .errors import DefinitionError

DEFAULT_PRIMARY_BRANCH = "master"
DEFAULT_RELEASE_BRANCH = "release"


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class EngineConfig:
    """
    Knobs for one run. Defaults come from the environment:

      PIPEGATE_MAX_PARALLEL     max concurrently running job instances
      PIPEGATE_PRIMARY_BRANCH   default trigger policy primary branch
      PIPEGATE_RELEASE_BRANCH   default trigger policy release branch
      PIPEGATE_ALLOW_OVERWRITE  let an instance rewrite its own artifact
      PIPEGATE_WORKDIR          directory shell steps run in
    """
    max_parallel: int = 4
    primary_branch: str = DEFAULT_PRIMARY_BRANCH
    release_branch: str = DEFAULT_RELEASE_BRANCH
    allow_overwrite: bool = False
    workdir: Path = Path(".")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        raw_parallel = env.get("PIPEGATE_MAX_PARALLEL")
        try:
            max_parallel = int(raw_parallel) if raw_parallel else _default_workers()
        except ValueError as e:
            raise DefinitionError(f"PIPEGATE_MAX_PARALLEL must be an integer, got {raw_parallel!r}") from e

        cfg = cls(
            max_parallel=max_parallel,
            primary_branch=env.get("PIPEGATE_PRIMARY_BRANCH", DEFAULT_PRIMARY_BRANCH),
            release_branch=env.get("PIPEGATE_RELEASE_BRANCH", DEFAULT_RELEASE_BRANCH),
            allow_overwrite=_env_bool(env.get("PIPEGATE_ALLOW_OVERWRITE", "")),
            workdir=Path(env.get("PIPEGATE_WORKDIR", ".")),
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if self.max_parallel < 1:
            raise DefinitionError(f"max_parallel must be >= 1, got {self.max_parallel}")

    def override(self, **changes) -> "EngineConfig":
        """Copy with the non-None changes applied (CLI options)."""
        cfg = replace(self, **{k: v for k, v in changes.items() if v is not None})
        cfg.validate()
        return cfg

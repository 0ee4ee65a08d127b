# schema.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# -------------------- YAML workflow schema --------------------
#
# name: test_package
# on:
#   push: {branches: [master, release]}
#   pull_request: {branches: [master]}
# jobs:
#   build:
#     matrix: {os: [ubuntu-latest, macos-latest]}
#     primary: {os: ubuntu-latest}
#     max-parallel: 2
#     steps:
#       - {name: sdist, run: python setup.py sdist}
#       - {name: keep, primary-only: true, upload: {name: dist, path: "dist/*.tar.gz"}}
#   publish:
#     needs: [build]
#     gate: {event: push, branch: release}
#     steps:
#       - {name: fetch, download: {name: dist, path: dist}}


class _Spec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class UploadSpec(_Spec):
    name: str
    path: Union[str, List[str]]

    @property
    def paths(self) -> List[str]:
        return [self.path] if isinstance(self.path, str) else list(self.path)


class DownloadSpec(_Spec):
    name: str
    path: str = "."
    merge: bool = False
    coordinate: Optional[Dict[str, Any]] = None


class StepSpec(_Spec):
    name: str
    run: Optional[str] = None
    upload: Optional[UploadSpec] = None
    download: Optional[DownloadSpec] = None
    cwd: Optional[str] = None
    if_: Optional[Dict[str, Any]] = Field(default=None, alias="if")
    primary_only: bool = Field(default=False, alias="primary-only")
    timeout: Optional[float] = None

    @model_validator(mode="after")
    def _exactly_one_action(self) -> "StepSpec":
        actions = [a for a in (self.run, self.upload, self.download) if a is not None]
        if len(actions) != 1:
            raise ValueError(f"step {self.name!r} needs exactly one of run / upload / download")
        return self


class GateSpec(_Spec):
    event: Optional[str] = "push"
    branch: Optional[str] = None
    needs: List[str] = Field(default_factory=list)


class JobSpec(_Spec):
    needs: List[str] = Field(default_factory=list)
    matrix: Dict[str, List[Any]] = Field(default_factory=dict)
    primary: Optional[Dict[str, Any]] = None
    max_parallel: Optional[int] = Field(default=None, alias="max-parallel", ge=1)
    env: Dict[str, Any] = Field(default_factory=dict)
    if_: Optional[Dict[str, Any]] = Field(default=None, alias="if")
    gate: Optional[GateSpec] = None
    steps: List[StepSpec] = Field(min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def _single_need(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v


class TriggerRuleSpec(_Spec):
    branches: List[str]


class PipelineSpec(_Spec):
    name: str = "pipeline"
    on: Optional[Dict[str, TriggerRuleSpec]] = None
    jobs: Dict[str, JobSpec]

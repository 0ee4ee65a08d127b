import logging
import threading
import time

import pytest

from pipegate.config import EngineConfig
from pipegate.trigger import PULL_REQUEST, PUSH, TriggerContext


class Recorder:
    """Callable-step factory that logs start/end of every instance it runs."""

    def __init__(self):
        self.lock = threading.Lock()
        self.events = []
        self.active = 0
        self.peak = 0
        self.peak_by_template = {}
        self._active_by_template = {}

    def step(self, fail=False, delay=0.0):
        def _step(ctx):
            iid = ctx.instance.id
            template = ctx.instance.template
            with self.lock:
                self.events.append(("start", iid))
                self.active += 1
                self.peak = max(self.peak, self.active)
                n = self._active_by_template.get(template, 0) + 1
                self._active_by_template[template] = n
                self.peak_by_template[template] = max(self.peak_by_template.get(template, 0), n)
            if delay:
                time.sleep(delay)
            with self.lock:
                self.active -= 1
                self._active_by_template[template] -= 1
                self.events.append(("end", iid))
            if fail:
                raise RuntimeError(f"{iid} exploded")

        return _step

    def started(self):
        return [iid for kind, iid in self.events if kind == "start"]

    def index(self, kind, iid):
        return self.events.index((kind, iid))


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def push_release():
    return TriggerContext(event=PUSH, source_branch="release", target_branch="release")


@pytest.fixture
def push_master():
    return TriggerContext(event=PUSH, source_branch="master", target_branch="master")


@pytest.fixture
def pr_master():
    return TriggerContext(event=PULL_REQUEST, source_branch="feature", target_branch="master")


@pytest.fixture
def config(tmp_path):
    return EngineConfig(max_parallel=4, workdir=tmp_path)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in (
        "PIPEGATE_MAX_PARALLEL",
        "PIPEGATE_PRIMARY_BRANCH",
        "PIPEGATE_RELEASE_BRANCH",
        "PIPEGATE_ALLOW_OVERWRITE",
        "PIPEGATE_WORKDIR",
        "GITHUB_EVENT_NAME",
        "GITHUB_REF",
        "GITHUB_BASE_REF",
        "GITHUB_HEAD_REF",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def restore_logging():
    # the CLI reconfigures the root logger with basicConfig(force=True)
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)

import random
import sys
import threading

import pytest

from pipegate import call, gate, job, pipeline, run_pipeline, sh
from pipegate.config import EngineConfig
from pipegate.dag import plan, transitive_dependents
from pipegate.errors import CycleError, TransitionError, UnsupportedEvent
from pipegate.model import InstanceState, check_transition, template_of
from pipegate.predicates import matrix_is
from pipegate.runner import execute
from pipegate.trigger import PUSH, TriggerEvent

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")

S = InstanceState


def run(p, trigger, config):
    return execute(plan(p), trigger, config, pipeline_name=p.name)


def test_fan_in_waits_for_every_instance(recorder, push_master, config):
    p = pipeline(
        "p",
        job("build", call("b", recorder.step(delay=0.02)), matrix={"os": ["linux", "mac", "win"]}),
        job("deploy", call("d", recorder.step()), needs=["build"]),
    )

    report = run(p, push_master, config)

    assert report.ok
    start = recorder.index("start", "deploy")
    for os_name in ("linux", "mac", "win"):
        assert recorder.index("end", f"build[{os_name}]") < start


def test_failure_cascades_to_transitive_dependents(recorder, push_master, config):
    def flaky(ctx):
        if ctx.matrix["os"] == "win":
            raise RuntimeError("compiler missing")

    p = pipeline(
        "p",
        job("a", call("a", flaky), matrix={"os": ["linux", "win"]}),
        job("b", call("b", recorder.step()), needs=["a"]),
        job("c", call("c", recorder.step()), needs=["b"], matrix={"py": ["3.8", "3.9"]}),
        job("d", call("d", recorder.step())),
    )

    report = run(p, push_master, config)

    assert not report.ok
    assert report.states["a[linux]"] is S.SUCCEEDED
    assert report.states["a[win]"] is S.FAILED
    assert "compiler missing" in report.reasons["a[win]"]
    for iid in ("b", "c[3.8]", "c[3.9]"):
        assert report.states[iid] is S.SKIPPED
        assert report.reasons[iid] == "needs a, which failed"
    assert report.states["d"] is S.SUCCEEDED
    assert recorder.started() == ["d"]


def test_condition_false_skips_instance_and_breaks_group(recorder, push_master, config):
    p = pipeline(
        "p",
        job("a", call("a", recorder.step()), matrix={"os": ["linux", "win"]}, when=matrix_is(os="linux")),
        job("b", call("b", recorder.step()), needs=["a"]),
    )

    report = run(p, push_master, config)

    assert report.ok
    assert report.states["a[linux]"] is S.SUCCEEDED
    assert report.states["a[win]"] is S.SKIPPED
    assert report.reasons["a[win]"].startswith("condition false")
    assert report.states["b"] is S.SKIPPED
    assert recorder.started() == ["a[linux]"]


def test_first_failing_step_aborts_the_rest(recorder, push_master, config):
    p = pipeline(
        "p",
        job("a", call("ok", recorder.step()), call("bad", lambda ctx: False), call("never", recorder.step())),
    )

    report = run(p, push_master, config)

    assert report.states["a"] is S.FAILED
    assert "step 'bad' failed (exit=1)" in report.reasons["a"]
    assert recorder.started() == ["a"]


@pytest.mark.parametrize("result, state", [(None, S.SUCCEEDED), (True, S.SUCCEEDED), (0, S.SUCCEEDED), (3, S.FAILED)])
def test_callable_return_values(result, state, push_master, config):
    p = pipeline("p", job("a", call("s", lambda ctx: result)))
    assert run(p, push_master, config).states["a"] is state


def test_primary_only_and_when_steps(push_master, config):
    seen = []
    lock = threading.Lock()

    def mark(tag):
        def _step(ctx):
            with lock:
                seen.append((tag, ctx.instance.id))
        return _step

    p = pipeline(
        "p",
        job(
            "dist",
            call("all", mark("all")),
            call("keep", mark("keep"), primary_only=True),
            call("mac", mark("mac"), when=matrix_is(os="mac")),
            matrix={"os": ["linux", "mac"]},
            primary={"os": "linux"},
        ),
    )

    report = run(p, push_master, config)

    assert report.ok
    assert sorted(seen) == [
        ("all", "dist[linux]"),
        ("all", "dist[mac]"),
        ("keep", "dist[linux]"),
        ("mac", "dist[mac]"),
    ]


def test_global_parallelism_bound(recorder, push_master, tmp_path):
    p = pipeline("p", job("a", call("s", recorder.step(delay=0.05)), matrix={"n": list(range(6))}))

    report = run(p, push_master, EngineConfig(max_parallel=2, workdir=tmp_path))

    assert report.ok
    assert 1 <= recorder.peak <= 2


def test_per_template_parallelism_bound(recorder, push_master, tmp_path):
    p = pipeline(
        "p",
        job("narrow", call("s", recorder.step(delay=0.03)), matrix={"n": list(range(4))}, max_parallel=1),
        job("wide", call("s", recorder.step(delay=0.03)), matrix={"n": list(range(4))}),
    )

    report = run(p, push_master, EngineConfig(max_parallel=4, workdir=tmp_path))

    assert report.ok
    assert recorder.peak_by_template["narrow"] == 1
    assert len(recorder.started()) == 8


def _random_pipeline(seed, recorder):
    rng = random.Random(seed)
    count = rng.randint(2, 8)
    jobs = []
    for idx in range(count):
        earlier = [f"t{k}" for k in range(idx)]
        needs = rng.sample(earlier, rng.randint(0, len(earlier))) if earlier else []
        width = rng.randint(1, 3)
        matrix = {"k": list(range(width))} if rng.random() < 0.5 else {}
        jobs.append(job(f"t{idx}", call("s", recorder.step(delay=rng.random() / 200)), needs=needs, matrix=matrix))
    rng.shuffle(jobs)
    return pipeline(f"random-{seed}", *jobs)


@pytest.mark.parametrize("seed", range(25))
def test_random_dag_never_starts_before_dependencies(seed, recorder, push_master, tmp_path):
    p = _random_pipeline(seed, recorder)
    execution_plan = plan(p)

    report = execute(execution_plan, push_master, EngineConfig(max_parallel=3, workdir=tmp_path))

    assert report.ok
    assert all(state is S.SUCCEEDED for state in report.states.values())
    assert sorted(recorder.started()) == sorted(i.id for i in execution_plan.all_instances())
    for template in p.jobs:
        for inst in execution_plan.instances[template.name]:
            start = recorder.index("start", inst.id)
            for need in template.needs:
                for upstream in execution_plan.instances[need]:
                    assert recorder.index("end", upstream.id) < start


def test_condition_skip_in_root_leaves_gated_job_skipped(recorder, push_release, config):
    p = pipeline(
        "p",
        job("a", call("a", recorder.step()), matrix={"os": ["linux", "win"]}, when=matrix_is(os="linux")),
        job("b", call("b", recorder.step()), needs=["a"]),
        job("upload", call("u", recorder.step()), needs=["a", "b"], gate=gate("push", branch="release")),
    )

    report = run(p, push_release, config)

    assert report.ok
    assert report.states["b"] is S.SKIPPED
    assert report.states["upload"] is S.SKIPPED
    assert report.gates["upload"].unmet == "job group 'a' is skipped, requires succeeded"
    assert recorder.started() == ["a[linux]"]


def _explode_at(bad):
    def _step(ctx):
        if ctx.instance.id == bad:
            raise RuntimeError("injected")
    return _step


def _faulty_pipeline(seed, recorder):
    rng = random.Random(seed)
    jobs, faults = [], {}
    for idx in range(rng.randint(3, 9)):
        name = f"t{idx}"
        earlier = [f"t{k}" for k in range(idx)]
        needs = rng.sample(earlier, rng.randint(0, min(3, len(earlier)))) if earlier else []
        values = [str(v) for v in range(rng.randint(1, 3))]
        fault = rng.choice(["none", "none", "fail", "skip"])
        bad, when = None, None
        if fault == "fail":
            bad = f"{name}[{rng.choice(values)}]"
            faults[name] = fault
        elif fault == "skip" and len(values) > 1:
            when = matrix_is(k=rng.choice(values))
            faults[name] = fault
        jobs.append(
            job(
                name,
                call("s", recorder.step()),
                call("check", _explode_at(bad)),
                needs=needs,
                matrix={"k": values},
                when=when,
            )
        )
    publish_needs = rng.sample([j.name for j in jobs], rng.randint(1, min(3, len(jobs))))
    jobs.append(job("publish", call("s", recorder.step()), needs=publish_needs, gate=gate("push", branch="release")))
    rng.shuffle(jobs)
    return pipeline(f"faulty-{seed}", *jobs), faults


@pytest.mark.parametrize("seed", range(25))
def test_random_faults_skip_every_dependent(seed, recorder, push_release, tmp_path):
    p, faults = _faulty_pipeline(seed, recorder)
    execution_plan = plan(p)

    report = execute(execution_plan, push_release, EngineConfig(max_parallel=3, workdir=tmp_path))

    origins = {
        template_of(iid)
        for iid, state in report.states.items()
        if state is S.FAILED or report.reasons.get(iid, "").startswith("condition false")
    }
    downstream = set()
    for name in origins:
        downstream.update(transitive_dependents(execution_plan.adj, name))
    started = set(recorder.started())

    for name in downstream:
        for inst in execution_plan.instances[name]:
            assert report.states[inst.id] is S.SKIPPED
            assert inst.id not in started
    for name in faults:
        assert name in origins or name in downstream
    for name in execution_plan.order:
        if name not in origins and name not in downstream:
            assert all(report.states[i.id] is S.SUCCEEDED for i in execution_plan.instances[name])

    assert report.ok == (not any(faults[name] == "fail" for name in origins))
    publish_ok = not set(p.job("publish").needs) & (origins | downstream)
    assert report.gates["publish"].authorized is publish_ok
    assert (report.states["publish"] is S.SUCCEEDED) is publish_ok


def test_structural_error_runs_nothing(recorder, push_master, config):
    p = pipeline(
        "p",
        job("a", call("s", recorder.step()), needs=["b"]),
        job("b", call("s", recorder.step()), needs=["a"]),
        job("c", call("s", recorder.step())),
    )

    with pytest.raises(CycleError):
        run_pipeline(p, push_master, config=config)
    assert recorder.events == []


def test_unsupported_event_runs_nothing(recorder, config):
    p = pipeline("p", job("a", call("s", recorder.step())))

    with pytest.raises(UnsupportedEvent):
        run_pipeline(p, TriggerEvent(kind=PUSH, ref="refs/heads/feature"), config=config)
    assert recorder.events == []


def test_independent_runs_share_nothing(push_master, tmp_path):
    def publish(ctx):
        ctx.publish("dist", ctx.trigger.target_branch)

    p = pipeline("p", job("a", call("publish", publish)))
    reports = []

    def go():
        reports.append(run_pipeline(p, push_master, config=EngineConfig(max_parallel=1, workdir=tmp_path)))

    threads = [threading.Thread(target=go) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert [r.ok for r in reports] == [True, True, True]
    assert len({r.run_id for r in reports}) == 3


@posix_only
def test_shell_step_sees_matrix_and_trigger_env(push_master, config):
    check = 'test "$MATRIX_PYTHON_VERSION" = 3.9 && test "$PIPEGATE_EVENT" = push && test "$GREETING" = hi'
    p = pipeline(
        "p",
        job("a", sh("env", check), matrix={"python-version": ["3.9"]}, env={"GREETING": "hi"}),
    )

    report = run(p, push_master, config)

    assert report.states["a[3.9]"] is S.SUCCEEDED


@posix_only
def test_shell_step_runs_in_workdir(push_master, config, tmp_path):
    (tmp_path / "sub").mkdir()
    p = pipeline("p", job("a", sh("write", "echo hi > out.txt", cwd="sub")))

    assert run(p, push_master, config).ok
    assert (tmp_path / "sub" / "out.txt").read_text().strip() == "hi"


@posix_only
def test_shell_failure_reports_exit_code(push_master, config):
    report = run(pipeline("p", job("a", sh("bad", "exit 3"))), push_master, config)

    assert report.states["a"] is S.FAILED
    assert "exit=3" in report.reasons["a"]


@posix_only
def test_shell_timeout_fails_instance(push_master, config):
    report = run(pipeline("p", job("a", sh("slow", "sleep 5", timeout=0.2))), push_master, config)

    assert report.states["a"] is S.FAILED
    assert "timeout" in report.reasons["a"]


def test_missing_cwd_fails_instance(push_master, config):
    report = run(pipeline("p", job("a", sh("x", "true", cwd="nowhere"))), push_master, config)

    assert report.states["a"] is S.FAILED
    assert "cwd not found" in report.reasons["a"]


def test_lifecycle_is_forward_only():
    check_transition("a", S.PENDING, S.READY)
    check_transition("a", S.BLOCKED, S.SKIPPED)
    with pytest.raises(TransitionError):
        check_transition("a", S.SUCCEEDED, S.RUNNING)
    with pytest.raises(TransitionError):
        check_transition("a", S.RUNNING, S.SKIPPED)
    assert S.SKIPPED.terminal and not S.BLOCKED.terminal

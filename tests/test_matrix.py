import pytest

from pipegate import call, job
from pipegate.errors import EmptyAxis, ExpansionError
from pipegate.matrix import expand, expand_all


def noop(ctx):
    return None


def test_two_axes_expand_first_axis_slowest():
    t = job("t", call("s", noop), matrix={"a": [1, 2], "b": ["x", "y"]})

    instances = expand(t)

    assert [i.coordinate for i in instances] == [
        (("a", "1"), ("b", "x")),
        (("a", "1"), ("b", "y")),
        (("a", "2"), ("b", "x")),
        (("a", "2"), ("b", "y")),
    ]
    assert [i.id for i in instances] == ["t[1,x]", "t[1,y]", "t[2,x]", "t[2,y]"]


def test_expansion_is_deterministic():
    t = job("t", call("s", noop), matrix={"os": ["linux", "mac", "win"], "py": ["3.8", "3.9"]})
    assert expand(t) == expand(t)


def test_no_axes_yields_single_primary_instance():
    instances = expand(job("lint", call("s", noop)))

    assert len(instances) == 1
    only = instances[0]
    assert only.coordinate == ()
    assert only.id == "lint"
    assert only.is_primary
    assert only.matrix == {}


def test_empty_axis_raises():
    t = job("t", call("s", noop), matrix={"os": ["linux"], "py": []})

    with pytest.raises(EmptyAxis) as exc:
        expand(t)

    assert exc.value.axis == "py"
    assert isinstance(exc.value, ExpansionError)


def test_duplicate_axis_value_raises():
    t = job("t", call("s", noop), matrix={"py": ["3.9", "3.9"]})
    with pytest.raises(ExpansionError, match="repeats"):
        expand(t)


def test_primary_marks_exactly_one_instance():
    t = job(
        "dist",
        call("s", noop),
        matrix={"py": ["3.8", "3.9"], "os": ["ubuntu", "mac"]},
        primary={"py": "3.9", "os": "ubuntu"},
    )

    primaries = [i.id for i in expand(t) if i.is_primary]

    assert primaries == ["dist[3.9,ubuntu]"]


def test_matrix_without_primary_has_no_primary_instance():
    t = job("t", call("s", noop), matrix={"os": ["linux", "mac"]})
    assert not any(i.is_primary for i in expand(t))


@pytest.mark.parametrize(
    "primary, message",
    [
        ({"os": "linux", "arch": "x86"}, "unknown axes"),
        ({"os": "linux"}, "pin every axis"),
        ({"os": "beos", "py": "3.9"}, "not in axis"),
    ],
)
def test_invalid_primary_raises(primary, message):
    t = job("t", call("s", noop), matrix={"os": ["linux", "mac"], "py": ["3.9"]}, primary=primary)
    with pytest.raises(ExpansionError, match=message):
        expand(t)


def test_expand_all_keeps_declaration_order():
    a = job("a", call("s", noop), matrix={"os": ["linux", "mac"]})
    b = job("b", call("s", noop))

    assert [i.id for i in expand_all([a, b])] == ["a[linux]", "a[mac]", "b"]


def test_comma_in_axis_value_raises():
    # "1,2"/"3" and "1"/"2,3" would both be labelled t[1,2,3]
    t = job("t", call("s", noop), matrix={"a": ["1,2", "1"], "b": ["3", "2,3"]})
    with pytest.raises(ExpansionError, match="comma"):
        expand(t)

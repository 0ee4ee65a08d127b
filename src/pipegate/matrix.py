# matrix.py
from __future__ import annotations

from itertools import product
from typing import Iterable, List

from .errors import EmptyAxis, ExpansionError
from .model import Coordinate, JobInstance, JobTemplate


def expand(template: JobTemplate) -> List[JobInstance]:
    """
    Expand a template into its concrete instances.

    Cartesian product over the matrix axes in declaration order, first axis
    varying slowest:

        {"a": [1, 2], "b": ["x", "y"]} -> (1,x) (1,y) (2,x) (2,y)

    A template without axes yields exactly one instance with an empty
    coordinate. That instance is the primary one; inside a matrix only the
    coordinate pinned by `template.primary` is.
    """
    axes = list(template.matrix.items())

    for axis, values in axes:
        if len(values) == 0:
            raise EmptyAxis(template.name, axis)
        seen = set()
        for v in values:
            if "," in str(v):
                # instance ids join values with commas
                raise ExpansionError(f"Job '{template.name}' matrix axis '{axis}' value {v!r} contains a comma")
            if str(v) in seen:
                raise ExpansionError(f"Job '{template.name}' matrix axis '{axis}' repeats value {v!r}")
            seen.add(str(v))

    primary = _primary_coordinate(template)

    if not axes:
        return [JobInstance(template=template.name, coordinate=(), is_primary=True)]

    names = [axis for axis, _ in axes]
    instances: List[JobInstance] = []
    for combo in product(*(values for _, values in axes)):
        coordinate: Coordinate = tuple(zip(names, (str(v) for v in combo)))
        instances.append(
            JobInstance(
                template=template.name,
                coordinate=coordinate,
                is_primary=(coordinate == primary),
            )
        )
    return instances


def expand_all(templates: Iterable[JobTemplate]) -> List[JobInstance]:
    out: List[JobInstance] = []
    for t in templates:
        out.extend(expand(t))
    return out


def _primary_coordinate(template: JobTemplate) -> Coordinate | None:
    if template.primary is None:
        return None

    pinned = {k: str(v) for k, v in template.primary.items()}
    unknown = sorted(set(pinned) - set(template.matrix))
    if unknown:
        raise ExpansionError(f"Job '{template.name}' primary names unknown axes {unknown}")
    missing = [axis for axis in template.matrix if axis not in pinned]
    if missing:
        raise ExpansionError(f"Job '{template.name}' primary must pin every axis, missing {missing}")

    coordinate = []
    for axis, values in template.matrix.items():
        if pinned[axis] not in {str(v) for v in values}:
            raise ExpansionError(
                f"Job '{template.name}' primary value {pinned[axis]!r} is not in axis '{axis}'"
            )
        coordinate.append((axis, pinned[axis]))
    return tuple(coordinate)

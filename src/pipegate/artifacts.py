# artifacts.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .errors import AmbiguousProducer, ArtifactError, DuplicateArtifact, NotFound
from .model import Coordinate, JobInstance, coordinate_label, template_of

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Artifacts are run-scoped, write-once, read-many:
#   name -> one producing template -> one payload per producing instance
#
# A payload is a set of files: relative path -> bytes. It is frozen on
# write, so readers never see a half-written artifact.
#
# Addressing:
#   get("dist")                      single producing instance
#   get("wheelhouse", {"os": "..."}) one instance of a matrix producer
#   collect("wheelhouse")            every instance merged, expansion order
# ---------------------------------------------------------------------

Payload = Mapping[str, bytes]
PayloadInput = Union[Mapping[str, Union[bytes, str]], bytes, str]
CoordinateRef = Union[Mapping[str, str], Coordinate, str]


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _payload_digest(payload: Payload) -> str:
    files = [(path, _sha256_bytes(data), len(data)) for path, data in sorted(payload.items())]
    return _sha256_str(_json_dumps_stable({"v": 1, "files": files}))


def _freeze(name: str, payload: PayloadInput) -> Payload:
    if isinstance(payload, (bytes, str)):
        payload = {name: payload}
    frozen: Dict[str, bytes] = {}
    for path, data in payload.items():
        frozen[str(path).replace("\\", "/")] = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    return MappingProxyType(frozen)


@dataclass(frozen=True)
class Artifact:
    name: str
    producer: str
    template: str
    matrix: Mapping[str, str]
    payload: Payload
    digest: str

    @property
    def coordinate(self) -> str:
        return ",".join(self.matrix.values())


class ArtifactStore:
    """
    In-memory artifact store scoped to one run.

    `order` lists instance ids in expansion order; it fixes the merge order
    of collect() and the producer order of error messages. Producers not in
    `order` sort after it, by id.
    """

    def __init__(self, *, allow_overwrite: bool = False, order: Sequence[str] = ()):
        self.allow_overwrite = allow_overwrite
        self._rank = {iid: idx for idx, iid in enumerate(order)}
        self._lock = threading.Lock()
        self._owner: Dict[str, str] = {}              # name -> producing template
        self._entries: Dict[str, Dict[str, Artifact]] = {}  # name -> producer id -> artifact

    # ---- write ----

    def put(
        self,
        name: str,
        producer: Union[JobInstance, str],
        payload: PayloadInput,
    ) -> Artifact:
        if isinstance(producer, JobInstance):
            producer_id, template, matrix = producer.id, producer.template, producer.matrix
        else:
            producer_id, template, matrix = producer, template_of(producer), {}

        frozen = _freeze(name, payload)
        artifact = Artifact(
            name=name,
            producer=producer_id,
            template=template,
            matrix=MappingProxyType(dict(matrix)),
            payload=frozen,
            digest=_payload_digest(frozen),
        )

        with self._lock:
            owner = self._owner.get(name)
            if owner is not None and owner != template:
                existing = next(iter(self._entries[name]))
                raise DuplicateArtifact(name, producer_id, existing)
            entries = self._entries.setdefault(name, {})
            if producer_id in entries and not self.allow_overwrite:
                raise DuplicateArtifact(name, producer_id, producer_id)
            self._owner[name] = template
            entries[producer_id] = artifact

        logger.debug("artifact %s <- %s (%d files, %s)", name, producer_id, len(frozen), artifact.digest[:12])
        return artifact

    def upload_files(
        self,
        name: str,
        producer: Union[JobInstance, str],
        root: Union[str, Path],
        patterns: Iterable[str],
    ) -> Artifact:
        """
        Store the files matched by `patterns` (paths, dirs or globs relative
        to `root`). Paths inside the artifact are relative to the deepest
        directory shared by every matched file.
        """
        root_p = Path(root).resolve()
        files: List[Path] = []
        for p in _resolve_globs(root_p, list(patterns)):
            if p.is_dir():
                files.extend(_iter_files_under(p))
            elif p.is_file():
                files.append(p)
        if not files:
            raise ArtifactError(f"Artifact '{name}': no files matched {list(patterns)} under {root_p}")

        base = Path(os.path.commonpath([str(f.parent) for f in files]))
        payload = {str(f.relative_to(base)).replace("\\", "/"): f.read_bytes() for f in files}
        return self.put(name, producer, payload)

    # ---- read ----

    def get(self, name: str, coordinate: Optional[CoordinateRef] = None) -> Artifact:
        with self._lock:
            entries = dict(self._entries.get(name, {}))
        if not entries:
            raise NotFound(name)

        if coordinate is None:
            if len(entries) > 1:
                raise AmbiguousProducer(name, self._ordered_ids(entries))
            return next(iter(entries.values()))

        for artifact in entries.values():
            if _matches(artifact, coordinate):
                return artifact
        raise NotFound(name, _describe(coordinate))

    def collect(self, name: str) -> Payload:
        """Merge every instance's payload in expansion order."""
        with self._lock:
            entries = dict(self._entries.get(name, {}))
        if not entries:
            raise NotFound(name)

        merged: Dict[str, bytes] = {}
        origin: Dict[str, str] = {}
        for producer_id in self._ordered_ids(entries):
            for path, data in entries[producer_id].payload.items():
                if path in merged and merged[path] != data:
                    raise DuplicateArtifact(f"{name}/{path}", producer_id, origin[path])
                merged[path] = data
                origin.setdefault(path, producer_id)
        return MappingProxyType(merged)

    def download(
        self,
        name: str,
        dest: Union[str, Path],
        *,
        coordinate: Optional[CoordinateRef] = None,
        merge: bool = False,
    ) -> List[Path]:
        payload = self.collect(name) if merge else self.get(name, coordinate).payload
        dest_p = Path(dest)
        root = dest_p.resolve()
        # every path must land under dest; check all before writing any
        for rel in payload:
            target = (dest_p / rel).resolve()
            if target != root and root not in target.parents:
                raise ArtifactError(f"Artifact '{name}': path {rel!r} escapes {dest_p}")

        written: List[Path] = []
        for rel, data in sorted(payload.items()):
            target = dest_p / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            written.append(target)
        return written

    def manifest(self) -> List[Dict]:
        """Explainability summary of everything stored, for the run report."""
        with self._lock:
            snapshot = {n: dict(e) for n, e in self._entries.items()}
        out = []
        for name in sorted(snapshot):
            entries = snapshot[name]
            out.append(
                {
                    "name": name,
                    "template": self._owner.get(name),
                    "producers": [
                        {
                            "id": pid,
                            "digest": entries[pid].digest,
                            "files": sorted(entries[pid].payload),
                        }
                        for pid in self._ordered_ids(entries)
                    ],
                }
            )
        return out

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._owner.clear()

    def _ordered_ids(self, entries: Mapping[str, Artifact]) -> List[str]:
        last = len(self._rank)
        return sorted(entries, key=lambda pid: (self._rank.get(pid, last), pid))


def _matches(artifact: Artifact, coordinate: CoordinateRef) -> bool:
    if isinstance(coordinate, str):
        return coordinate in (artifact.producer, artifact.coordinate)
    wanted = dict(coordinate)
    return {k: str(v) for k, v in wanted.items()} == dict(artifact.matrix)


def _describe(coordinate: CoordinateRef) -> str:
    if isinstance(coordinate, str):
        return coordinate
    if isinstance(coordinate, tuple):
        return coordinate_label(coordinate)
    return ",".join(f"{k}={v}" for k, v in coordinate.items())


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _resolve_globs(root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand artifact path patterns into concrete paths.
    Supports:
      - file path: "dist/sgp4.tar.gz"
      - dir path:  "wheelhouse"
      - glob:      "dist/*.tar.gz", "build/**/*.whl"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq

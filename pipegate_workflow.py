# pipegate_workflow.py
# Release pipeline for pipegate itself:
#   build_test_dist    sdist + tests on every python/os pair; the 3.9/ubuntu
#                      instance keeps the sdist as `dist`
#   build_test_wheels  one wheel build per os, each kept in `wheelhouse`
#   upload             publish dist + wheelhouse, only for a push to release
from __future__ import annotations

from pipegate import download_artifact, gate, job, pipeline, sh, triggers, upload_artifact

PYTHONS = ["3.8", "3.9", "3.10", "3.11", "3.12"]
OSES = ["ubuntu-latest", "windows-latest", "macos-latest"]


def workflow():
    return pipeline(
        "test_package",
        job(
            "build_test_dist",
            sh("install_deps", "pip install build twine pytest"),
            sh("build_sdist", "python -m build --sdist"),
            sh("check_metadata", "twine check dist/*", primary_only=True),
            upload_artifact("upload_sdist", "dist", "dist/*.tar.gz", primary_only=True),
            sh("install_dist", "pip install dist/*.tar.gz"),
            sh("run_tests", "pytest -q"),
            matrix={"python-version": PYTHONS, "os": OSES},
            primary={"python-version": "3.9", "os": "ubuntu-latest"},
            max_parallel=18,
        ),
        job(
            "build_test_wheels",
            sh("install_deps", "pip install build"),
            sh("build_wheel", "python -m build --wheel --outdir wheelhouse"),
            upload_artifact("upload_wheels", "wheelhouse", "wheelhouse"),
            needs=["build_test_dist"],
            matrix={"os": ["windows-latest", "ubuntu-latest", "macos-latest"]},
            max_parallel=3,
        ),
        job(
            "upload",
            download_artifact("download_dist", "dist", "upload/dist"),
            download_artifact("download_wheels", "wheelhouse", "upload/dist", merge=True),
            sh("upload_to_pypi", "twine upload --skip-existing upload/dist/*"),
            needs=["build_test_dist", "build_test_wheels"],
            gate=gate("push", branch="release"),
        ),
        on=triggers(push=["master", "release"], pull_request=["master"]),
    )

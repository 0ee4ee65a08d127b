import shutil
import subprocess

import pytest

from pipegate.git_facts.git import current_branch, head_sha, repo_root

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def repo(tmp_path):
    def git(*args):
        subprocess.run(["git", *args], cwd=tmp_path, check=True, capture_output=True)

    git("init")
    git("checkout", "-b", "release")
    git("-c", "user.name=ci", "-c", "user.email=ci@example.com", "commit", "--allow-empty", "-m", "init")
    return tmp_path


def test_repository_facts(repo):
    assert repo_root(str(repo)) == repo.resolve()
    assert len(head_sha(str(repo))) == 40
    assert current_branch(str(repo)) == "release"


def test_detached_head_has_no_branch(repo):
    sha = head_sha(str(repo))
    subprocess.run(["git", "checkout", "--detach", sha], cwd=repo, check=True, capture_output=True)

    assert current_branch(str(repo)) is None


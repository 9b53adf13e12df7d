import shutil
import subprocess
import sys
from pathlib import Path

import pytest
import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from update_homebrew_tap.config import Settings  # noqa: E402

FIXTURES = Path(__file__).resolve().parent / "fixtures"

OLD_SHA = "e682cba09ebcea5de044526e5f46d79ef3fc6a188ae62f7079f333901958f3c4"
OLD_SYSEXT_SHA = "c7ad52775af9b27c5437446bd79f125869a2688f6cbae079f4b428f5f26c0b74"
NEW_SHA = "a" * 64
NEW_SYSEXT_SHA = "b" * 64
RELEASE_URL = (
    "https://github.com/beriberikix/usbipd-mac/releases/download/v0.2.0/usbipd-v0.2.0-macos"
)


class FakeResponse:
    def __init__(self, status_code=200, body=b"", text=None, error=None):
        self.status_code = status_code
        self.body = body
        self.text = text if text is not None else body.decode("utf-8", "replace")
        self.error = error

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error", response=self)

    def iter_content(self, chunk_size=1):
        if self.error is not None:
            raise self.error
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start:start + chunk_size]


class FakeSession:
    """Replays canned responses per URL; a list value is consumed one call at a time."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(status_code=404)
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if isinstance(route, Exception):
            raise route
        return route


class FakeChecksums:
    def __init__(self, digest=None):
        self.digest = digest
        self.lookups = []

    def lookup(self, owner, repo, tag, filename):
        self.lookups.append((owner, repo, tag, filename))
        return self.digest


@pytest.fixture
def settings():
    return Settings(ruby_executable=None, push=False)


@pytest.fixture
def formula_text():
    return (FIXTURES / "usbip.rb").read_text(encoding="utf-8")


@pytest.fixture
def formula_path(tmp_path, formula_text):
    path = tmp_path / "Formula" / "usbip.rb"
    path.parent.mkdir()
    path.write_text(formula_text, encoding="utf-8")
    return path


def git(repo, *args):
    return subprocess.run(
        ["git", "-C", str(repo), *args],
        capture_output=True,
        text=True,
        check=True,
    ).stdout


@pytest.fixture
def tap_repo(tmp_path):
    """A git repository holding the fixture formula in one commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "tap"
    (repo / "Formula").mkdir(parents=True)
    shutil.copyfile(FIXTURES / "usbip.rb", repo / "Formula" / "usbip.rb")
    subprocess.run(["git", "init", str(repo)], capture_output=True, check=True)
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "user.email", "test@test.com")
    git(repo, "config", "commit.gpgsign", "false")
    git(repo, "add", ".")
    git(repo, "commit", "-m", "initial")
    return repo

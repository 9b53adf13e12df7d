"""
Runtime settings for the tap updater.

Settings are built once at process entry (``Settings.from_env``) and passed
into every component. Nothing below the CLI reads the environment.

Environment overrides:
    VALIDATE_BINARY_TIMEOUT    per-attempt download timeout in seconds (300)
    VALIDATE_BINARY_MAX_SIZE   maximum artifact size in MB (100)
    VALIDATE_BINARY_RETRIES    maximum download attempts (3)
    TAP_FORMULA                formula path (Formula/usbip.rb)
    TAP_GIT_REMOTE             remote to push to (origin)
    TAP_GIT_BRANCH             branch to push (main)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from update_homebrew_tap import __version__
from update_homebrew_tap.errors import InvalidInput


@dataclass(frozen=True)
class Settings:
    max_retries: int = 3
    connect_timeout: float = 30.0
    timeout: float = 300.0
    max_size_mb: int = 100
    trusted_host: str = "github.com"
    formula_path: Path = Path("Formula/usbip.rb")
    backup_suffix: str = ".backup"
    artifact_suffixes: Tuple[str, ...] = (".tar.gz", ".tgz", "-macos")
    secondary_resource: str = "systemextension"
    ruby_executable: Optional[str] = "ruby"
    ruby_timeout: float = 60.0
    git_remote: str = "origin"
    git_branch: str = "main"
    push: bool = True
    user_agent: str = f"update-homebrew-tap/{__version__}"

    @property
    def max_bytes(self) -> int:
        return self.max_size_mb * 1024 * 1024

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "Settings":
        """Build settings from defaults, environment overrides, then explicit overrides."""
        env = os.environ if environ is None else environ
        values = {}

        timeout = env.get("VALIDATE_BINARY_TIMEOUT")
        if timeout:
            values["timeout"] = _positive(timeout, "VALIDATE_BINARY_TIMEOUT", float)
        max_size = env.get("VALIDATE_BINARY_MAX_SIZE")
        if max_size:
            values["max_size_mb"] = _positive(max_size, "VALIDATE_BINARY_MAX_SIZE", int)
        retries = env.get("VALIDATE_BINARY_RETRIES")
        if retries:
            values["max_retries"] = _positive(retries, "VALIDATE_BINARY_RETRIES", int)

        if env.get("TAP_FORMULA"):
            values["formula_path"] = Path(env["TAP_FORMULA"])
        if env.get("TAP_GIT_REMOTE"):
            values["git_remote"] = env["TAP_GIT_REMOTE"]
        if env.get("TAP_GIT_BRANCH"):
            values["git_branch"] = env["TAP_GIT_BRANCH"]

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def run_reference(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """URL of the current GitHub Actions run, if we are inside one."""
    env = os.environ if environ is None else environ
    server = env.get("GITHUB_SERVER_URL", "https://github.com")
    repository = env.get("GITHUB_REPOSITORY")
    run_id = env.get("GITHUB_RUN_ID")
    if not repository or not run_id:
        return None
    return f"{server}/{repository}/actions/runs/{run_id}"


def _positive(raw: str, name: str, kind):
    try:
        value = kind(raw)
    except ValueError:
        raise InvalidInput(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise InvalidInput(f"{name} must be positive, got {raw!r}")
    return value

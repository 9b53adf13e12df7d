"""
Release descriptors: the (version, URL, checksum) tuple a dispatch event carries.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from update_homebrew_tap.errors import (
    InvalidChecksum,
    InvalidInput,
    InvalidURL,
    InvalidVersion,
)

VERSION_PATTERN = re.compile(r"^v\d+\.\d+\.\d+(-[A-Za-z0-9.-]+)?\Z")
SHA256_PATTERN = re.compile(r"^[0-9a-fA-F]{64}\Z")
_NAME = r"[A-Za-z0-9._-]+"


def release_asset_pattern(host: str) -> re.Pattern:
    """Pattern for ``https://<host>/<owner>/<repo>/releases/download/<tag>/<file>``."""
    return re.compile(
        rf"^https://{re.escape(host)}/(?P<owner>{_NAME})/(?P<repo>{_NAME})"
        r"/releases/download/(?P<tag>[^/\s]+)/(?P<filename>[^/\s]+)\Z"
    )


def normalize_version(version: str) -> str:
    return version[1:] if version.startswith("v") else version


def is_sha256(value: Optional[str]) -> bool:
    return bool(value) and bool(SHA256_PATTERN.match(value))


def split_asset_url(url: str, host: str = "github.com") -> Optional[Tuple[str, str, str, str]]:
    """Return (owner, repo, tag, filename) for a release asset URL, or None."""
    match = release_asset_pattern(host).match(url or "")
    if not match:
        return None
    return match.group("owner"), match.group("repo"), match.group("tag"), match.group("filename")


@dataclass(frozen=True)
class ReleaseDescriptor:
    """
    One release to apply to the tap.

    The secondary pair describes an auxiliary artifact (the system extension
    bundle). When it is omitted the secondary checksum is looked up in the
    release's checksums manifest.
    """

    version: str
    binary_url: str
    checksum: str
    secondary_url: Optional[str] = None
    secondary_checksum: Optional[str] = None
    host: str = "github.com"

    def problems(self) -> List[Tuple[type, str]]:
        found = []
        if not self.version or not VERSION_PATTERN.match(self.version):
            found.append((
                InvalidVersion,
                f"Invalid version format: {self.version!r} "
                "(expected vX.Y.Z or vX.Y.Z-suffix)",
            ))
        if not split_asset_url(self.binary_url, self.host):
            found.append((
                InvalidURL,
                f"Invalid binary URL format: {self.binary_url!r} "
                f"(expected https://{self.host}/<owner>/<repo>/releases/download/<tag>/<file>)",
            ))
        if not is_sha256(self.checksum):
            found.append((
                InvalidChecksum,
                f"Invalid SHA256 format: {self.checksum!r} (must be 64 hexadecimal characters)",
            ))
        if self.secondary_url is not None and not split_asset_url(self.secondary_url, self.host):
            found.append((InvalidURL, f"Invalid secondary URL format: {self.secondary_url!r}"))
        if self.secondary_checksum is not None and not is_sha256(self.secondary_checksum):
            found.append((
                InvalidChecksum,
                f"Invalid secondary SHA256 format: {self.secondary_checksum!r}",
            ))
        return found

    def validate(self) -> "ReleaseDescriptor":
        """Raise ``InvalidInput`` listing every malformed field; return self otherwise."""
        found = self.problems()
        if not found:
            return self
        kinds = {kind for kind, _ in found}
        error_class = kinds.pop() if len(kinds) == 1 else InvalidInput
        messages = [message for _, message in found]
        raise error_class("; ".join(messages), messages)

    @property
    def bare_version(self) -> str:
        return normalize_version(self.version)

    @property
    def normalized_checksum(self) -> str:
        return self.checksum.lower()

    @property
    def normalized_secondary_checksum(self) -> Optional[str]:
        return self.secondary_checksum.lower() if self.secondary_checksum else None

    def _parts(self) -> Tuple[str, str, str, str]:
        parts = split_asset_url(self.binary_url, self.host)
        if parts is None:
            raise InvalidURL(f"Invalid binary URL format: {self.binary_url!r}")
        return parts

    @property
    def owner(self) -> str:
        return self._parts()[0]

    @property
    def repo(self) -> str:
        return self._parts()[1]

    @property
    def filename(self) -> str:
        return self._parts()[3]

    def release_base_url(self) -> str:
        return f"https://{self.host}/{self.owner}/{self.repo}/releases/download/{self.version}"

    def checksums_manifest_url(self) -> str:
        return f"{self.release_base_url()}/checksums-{self.version}.sha256"

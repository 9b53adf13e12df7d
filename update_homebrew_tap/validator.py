"""
Artifact validation: shape checks, download, size and checksum verification.

Validation is read-only. Nothing here touches the formula or the repository;
the only files written are one temporary download (always removed) and, on
request, a durable copy of an artifact that passed every check.
"""

import logging
import re
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from update_homebrew_tap.checksums import sha256_file
from update_homebrew_tap.download import Downloader
from update_homebrew_tap.errors import ChecksumMismatch, FileTooLarge, InvalidChecksum, InvalidURL
from update_homebrew_tap.release import SHA256_PATTERN

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
SMALL_FILE_BYTES = 1024
_NAME = r"[A-Za-z0-9._-]+"


@dataclass
class ValidatedArtifact:
    url: str
    sha256: str
    size: Optional[int] = None
    path: Optional[Path] = None
    looks_like_archive: Optional[bool] = None
    dry_run: bool = False


def artifact_url_pattern(host: str) -> re.Pattern:
    return re.compile(
        rf"^https://{re.escape(host)}/(?P<owner>{_NAME})/(?P<repo>{_NAME})/"
        r"(?:archive/(?:refs/tags/)?(?P<archive>[^/\s]+)"
        r"|releases/download/(?P<tag>[^/\s]+)/(?P<asset>[^/\s]+))\Z"
    )


def looks_like_archive(path: Path) -> bool:
    """Cheap sniff for a gzip stream or an uncompressed tar."""
    with open(path, "rb") as handle:
        if handle.read(2) == GZIP_MAGIC:
            return True
    return tarfile.is_tarfile(path)


class ArtifactValidator:
    def __init__(self, settings, downloader: Optional[Downloader] = None):
        self.settings = settings
        self.downloader = downloader or Downloader(settings)

    def check_url(self, url: str) -> None:
        match = artifact_url_pattern(self.settings.trusted_host).match(url or "")
        if not match:
            raise InvalidURL(
                f"Invalid URL format: {url!r}. Must be a "
                f"https://{self.settings.trusted_host}/<owner>/<repo> archive or release asset URL"
            )

        filename = match.group("archive") or match.group("asset")
        if not filename.endswith(tuple(self.settings.artifact_suffixes)):
            raise InvalidURL(
                f"Invalid archive name: {filename!r} (expected one of "
                f"{', '.join(self.settings.artifact_suffixes)})"
            )
        if match.group("archive") and not re.match(r"^v?\d+\.\d+\.\d+", filename):
            raise InvalidURL(f"Invalid archive name format: {filename!r}")
        logger.debug("URL format validation passed: %s", url)

    def check_checksum(self, checksum: str) -> None:
        if not checksum or not SHA256_PATTERN.match(checksum):
            raise InvalidChecksum(
                f"Invalid SHA256 format: {checksum!r}. Must be 64 hexadecimal characters."
            )

    def validate(
        self,
        url: str,
        expected_checksum: str,
        dry_run: bool = False,
        output_file: Optional[Path] = None,
    ) -> ValidatedArtifact:
        """
        Validate the artifact at ``url`` against ``expected_checksum``.

        Args:
            url: Release asset or source archive URL.
            expected_checksum: 64-character SHA-256, any case.
            dry_run: Only check the URL and checksum formats.
            output_file: Where to keep the artifact once it has passed.

        Returns:
            ValidatedArtifact describing what was checked.
        """
        self.check_url(url)
        self.check_checksum(expected_checksum)
        expected = expected_checksum.lower()

        if dry_run:
            logger.info("Dry run: URL and SHA256 format validation passed")
            return ValidatedArtifact(url=url, sha256=expected, dry_run=True)

        with tempfile.TemporaryDirectory(prefix="tap-artifact-") as workdir:
            download_path = Path(workdir) / "artifact"
            limit = self.settings.max_bytes
            self.downloader.fetch(url, download_path, max_bytes=limit)

            size = download_path.stat().st_size
            if size > limit:
                raise FileTooLarge(size, limit)

            actual = sha256_file(download_path)
            if actual != expected:
                raise ChecksumMismatch(expected, actual)
            logger.info("SHA256 checksum verification passed")

            archive = looks_like_archive(download_path)
            if not archive:
                logger.warning("File does not appear to be a gzip/tar archive: %s", url)
            if size < SMALL_FILE_BYTES:
                logger.warning("File is very small (%d bytes), may be a placeholder", size)

            kept = None
            if output_file is not None:
                kept = Path(output_file)
                kept.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(download_path, kept)
                logger.info("Copied validated artifact to %s", kept)

        return ValidatedArtifact(
            url=url,
            sha256=actual,
            size=size,
            path=kept,
            looks_like_archive=archive,
        )

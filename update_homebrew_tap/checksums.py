"""
SHA-256 helpers and release checksum manifests.

A release publishes a manifest next to its assets, one ``<sha256>  <filename>``
line per artifact. The conventional name for this tap is
``checksums-<tag>.sha256``; common alternatives are tried after it, and as a
last resort the release page is scraped for a checksum asset link.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, Optional

import requests
from bs4 import BeautifulSoup

from update_homebrew_tap.download import build_session
from update_homebrew_tap.release import is_sha256

logger = logging.getLogger(__name__)

CHECKSUM_FILE_NAMES = (
    "checksums.txt",
    "checksums.sha256",
    "SHA256SUMS",
    "SHA256SUMS.txt",
)


def sha256_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def parse_checksum_manifest(text: str) -> Dict[str, str]:
    """
    Parse a checksum manifest of the form::

        <sha256>  <filename>
        <sha256> *<filename>

    Values are returned as found; callers decide whether a value is usable.
    """
    results: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        parts = line.split(None, 1)
        if len(parts) != 2:
            continue

        digest, filename = parts
        results[filename.strip().lstrip("*")] = digest
    return results


def _looks_like_manifest(filename: str) -> bool:
    lowered = filename.lower()
    return "checksum" in lowered or "sha256" in lowered or lowered.endswith("sums.txt")


class ReleaseChecksums:
    """Looks up artifact digests in a release's published checksum manifest."""

    def __init__(self, settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or build_session(settings)

    def candidate_urls(self, owner: str, repo: str, tag: str) -> Iterable[str]:
        base = f"https://{self.settings.trusted_host}/{owner}/{repo}/releases/download/{tag}"
        yield f"{base}/checksums-{tag}.sha256"
        for name in CHECKSUM_FILE_NAMES:
            yield f"{base}/{name}"

    def discover_manifest_url(self, owner: str, repo: str, tag: str) -> Optional[str]:
        """Find a checksum asset link on the release page."""
        page_url = f"https://{self.settings.trusted_host}/{owner}/{repo}/releases/tag/{tag}"
        response = self.session.get(page_url, timeout=self.settings.connect_timeout)
        response.raise_for_status()

        soup = BeautifulSoup(response.text, "html.parser")
        for link in soup.find_all("a", href=re.compile(r"/releases/download/")):
            href = link.get("href", "")
            if _looks_like_manifest(href.rsplit("/", 1)[-1]):
                if href.startswith("/"):
                    return f"https://{self.settings.trusted_host}{href}"
                return href
        return None

    def _get_manifest(self, url: str) -> Dict[str, str]:
        logger.debug("Fetching checksums manifest: %s", url)
        response = self.session.get(url, timeout=self.settings.connect_timeout)
        response.raise_for_status()
        return parse_checksum_manifest(response.text)

    def fetch(self, owner: str, repo: str, tag: str) -> Dict[str, str]:
        """Return the first non-empty manifest for the release."""
        last_error: Optional[Exception] = None
        for url in self.candidate_urls(owner, repo, tag):
            try:
                entries = self._get_manifest(url)
            except requests.RequestException as exc:
                last_error = exc
                continue
            if entries:
                return entries

        discovered = self.discover_manifest_url(owner, repo, tag)
        if discovered:
            entries = self._get_manifest(discovered)
            if entries:
                return entries

        if last_error:
            raise last_error
        raise LookupError(f"No checksum manifest found for release {tag}")

    def lookup(self, owner: str, repo: str, tag: str, filename: str) -> Optional[str]:
        """
        Digest for ``filename`` in the release manifest, lowercased.

        Returns None (and logs why) when the manifest cannot be fetched, has no
        entry for the file, or the entry is not a well-formed SHA-256.
        """
        try:
            entries = self.fetch(owner, repo, tag)
        except (requests.RequestException, LookupError) as exc:
            logger.warning("Could not fetch checksums manifest for %s: %s", tag, exc)
            return None

        digest = entries.get(filename)
        if digest is None:
            logger.warning("No entry for %s in checksums manifest for %s", filename, tag)
            return None
        if not is_sha256(digest):
            logger.warning("Ignoring malformed checksum for %s: %r", filename, digest)
            return None
        return digest.lower()

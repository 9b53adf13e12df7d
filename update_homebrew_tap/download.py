"""
Bounded-retry artifact downloads.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Optional

import requests

from update_homebrew_tap.errors import DownloadFailed, FileTooLarge

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def build_session(settings) -> requests.Session:
    session = requests.Session()
    session.headers["User-Agent"] = settings.user_agent
    return session


class Downloader:
    """
    Streams a URL to disk, retrying failed attempts with exponential backoff.

    Each attempt is bounded by the connect timeout and by an overall
    per-attempt deadline; between attempts the downloader sleeps
    ``2 ** attempt`` seconds.
    """

    def __init__(
        self,
        settings,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.session = session or build_session(settings)
        self.sleep = sleep
        self.clock = clock

    def fetch(self, url: str, destination: Path, max_bytes: Optional[int] = None) -> int:
        """
        Download ``url`` into ``destination`` and return the number of bytes written.

        Raises:
            FileTooLarge: the body grew past ``max_bytes`` (not retried).
            DownloadFailed: every attempt failed.
        """
        attempts = self.settings.max_retries
        last_error: Optional[Exception] = None

        logger.info("Downloading %s", url)
        for attempt in range(1, attempts + 1):
            logger.debug("Download attempt %d/%d", attempt, attempts)
            try:
                size = self._attempt(url, destination, max_bytes)
            except (requests.RequestException, OSError) as exc:
                last_error = exc
                logger.warning("Download attempt %d failed: %s", attempt, exc)
            else:
                logger.info("Downloaded %d bytes", size)
                return size

            if attempt < attempts:
                wait = 2 ** attempt
                logger.debug("Waiting %ds before retry", wait)
                self.sleep(wait)

        raise DownloadFailed(f"All {attempts} download attempts failed for {url}: {last_error}")

    def _attempt(self, url: str, destination: Path, max_bytes: Optional[int]) -> int:
        deadline = self.clock() + self.settings.timeout
        written = 0
        with self.session.get(
            url,
            stream=True,
            timeout=(self.settings.connect_timeout, self.settings.timeout),
        ) as response:
            response.raise_for_status()
            with open(destination, "wb") as handle:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    written += len(chunk)
                    if max_bytes is not None and written > max_bytes:
                        raise FileTooLarge(written, max_bytes)
                    handle.write(chunk)
                    if self.clock() > deadline:
                        raise requests.Timeout(
                            f"download exceeded {self.settings.timeout:g}s"
                        )
        return written

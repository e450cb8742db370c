"""
TripleSearch Tika — Text Extraction
===================================

Client for an Apache Tika server plus an on-disk cache of extraction
results keyed by the SHA-256 of the file content. Byte-identical files are
only ever sent to Tika once; files Tika cannot extract anything from are
cached as an empty placeholder so they are not retried either.
"""

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import ExtractionError


logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 6


class _TransientTikaError(ExtractionError):
    pass


class TikaClient:
    """Extracts plain text from binary documents through Tika's /tika endpoint."""

    def __init__(self, url: str = "http://localhost:9998", request_timeout: float = 300.0,
                 max_attempts: int = MAX_ATTEMPTS):
        self.url = url.rstrip("/")
        self.request_timeout = request_timeout
        self._session = requests.Session()
        self._retrying = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, max=36),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout, _TransientTikaError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )

    def _put(self, filename: str, data: bytes) -> str:
        response = self._session.put(
            f"{self.url}/tika",
            data=data,
            headers={"Accept": "text/plain", "Content-Disposition": f'attachment; filename="{filename}"'},
            timeout=self.request_timeout
        )
        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientTikaError(f"Tika responded {response.status_code} for {filename}")
        if response.status_code == 204:
            return ""
        if response.status_code >= 400:
            raise ExtractionError(f"Failed to process document {filename}: {response.status_code} {response.reason}")
        response.encoding = response.encoding or "utf-8"
        return response.text

    def extract_text(self, filename: str, data: bytes) -> str:
        """
        Extract the text of a document.

        Returns:
            The extracted text, empty if Tika found none

        Raises:
            ExtractionError: if extraction failed
        """
        try:
            return self._retrying(self._put, filename, data)
        except requests.RequestException as e:
            raise ExtractionError(f"Failed to process document {filename}: {e}") from e

    def up(self) -> bool:
        try:
            return self._session.get(f"{self.url}/tika", timeout=10).ok
        except requests.RequestException:
            return False

    def close(self) -> None:
        self._session.close()


class ExtractionCache:
    """
    Extraction results stored as files named after the content hash.

    The cache directory is sharded on the first two hex digits of the hash.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)

    @staticmethod
    def content_hash(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def _path(self, digest: str) -> Path:
        return self.directory / digest[:2] / digest

    def get(self, digest: str) -> Optional[str]:
        """Cached text for a hash, "" for a known-empty file, None if unknown."""
        path = self._path(digest)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def put(self, digest: str, text: str) -> None:
        path = self._path(digest)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, path)
        except BaseException:
            os.unlink(tmp)
            raise


class TextExtractor:
    """Tika extraction behind the content-hash cache."""

    def __init__(self, tika: TikaClient, cache: ExtractionCache):
        self.tika = tika
        self.cache = cache

    def extract(self, filename: str, data: bytes) -> str:
        digest = self.cache.content_hash(data)
        cached = self.cache.get(digest)
        if cached is not None:
            logger.debug("Using cached extraction %s for %s", digest, filename)
            return cached
        text = self.tika.extract_text(filename, data)
        if not text:
            logger.info("Tika extracted no content from %s, caching empty result", filename)
        self.cache.put(digest, text or "")
        return text or ""

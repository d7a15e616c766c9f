"""Streaming HTTP downloads with progress reporting.

Downloads land in a temporary sibling file first and are renamed onto the
destination only after the whole body has been written and synced, so a cache
path either does not exist or holds a complete file.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import httpx

from llamabox.errors import IoError, MissingLengthError, NetworkError, ParseError, TransferError

logger = logging.getLogger(__name__)

USER_AGENT = "llamabox"
CHUNK_SIZE = 1024 * 1024

# (downloaded_bytes, total_bytes)
ProgressCallback = Callable[[int, int], None]


class LoggingProgress:
    """Progress callback that logs every `step_pct` percent of a download."""

    def __init__(self, label: str, step_pct: int = 10):
        self.label = label
        self.step_pct = step_pct
        self._next_pct = step_pct

    def __call__(self, downloaded: int, total: int) -> None:
        if total <= 0:
            return
        pct = downloaded * 100 // total
        if pct >= self._next_pct:
            logger.info(f"{self.label}: {pct}% ({downloaded}/{total} bytes)")
            self._next_pct = (pct // self.step_pct + 1) * self.step_pct


def _set_mode(path: Path, executable: bool) -> None:
    if os.name != "posix":
        return
    os.chmod(path, 0o755 if executable else 0o644)


class StreamingDownloader:
    """HTTP GET client that exposes response bodies as chunk streams.

    Every download must advertise a Content-Length; the total size drives
    progress reporting and the pipeline refuses to proceed without it.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout_s: float | None = None,
        chunk_size: int = CHUNK_SIZE,
    ):
        """Initialize the downloader.

        Args:
            client: Pre-built httpx client (tests inject one with a MockTransport)
            timeout_s: Request timeout in seconds; None disables timeouts
            chunk_size: Size of chunks yielded from response bodies
        """
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout_s)
        self.chunk_size = chunk_size

    def download(self, url: str) -> tuple[int, Iterator[bytes]]:
        """Start a GET request and return the advertised size and a chunk iterator.

        The response is closed when the iterator is exhausted, fails, or is
        closed by the caller.

        Raises:
            NetworkError: Request could not be sent or status is not 2xx
            MissingLengthError: No Content-Length header in the response
        """
        try:
            request = self.client.build_request("GET", url, headers={"User-Agent": USER_AGENT})
            response = self.client.send(request, stream=True, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(f"Failed to GET from '{url}': {e}") from e

        if not response.is_success:
            response.close()
            raise NetworkError(f"GET '{url}' returned status {response.status_code}")

        content_length = response.headers.get("Content-Length")
        if content_length is None:
            response.close()
            raise MissingLengthError(f"Failed to get content length from '{url}'")
        try:
            total_size = int(content_length)
        except ValueError:
            response.close()
            raise MissingLengthError(
                f"Invalid content length {content_length!r} from '{url}'"
            ) from None

        return total_size, self._iter_body(response, url)

    def _iter_body(self, response: httpx.Response, url: str) -> Iterator[bytes]:
        try:
            for chunk in response.iter_bytes(chunk_size=self.chunk_size):
                yield chunk
        except httpx.HTTPError as e:
            raise TransferError(f"Error while downloading '{url}': {e}") from e
        finally:
            response.close()

    def download_to(
        self,
        url: str,
        destination: str | Path,
        make_executable: bool = False,
        progress: ProgressCallback | None = None,
    ) -> Path:
        """Download `url` into `destination`, reporting progress as chunks arrive.

        Args:
            url: Source URL
            destination: Final file path; its parent directory must exist
            make_executable: Set mode 0o755 on the file (POSIX only)
            progress: Callback receiving (downloaded, total); defaults to logging

        Returns:
            The destination path

        Raises:
            NetworkError, MissingLengthError: From download(), before any file is created
            IoError: Temp file could not be created, written, or moved into place
            TransferError: The body stream failed mid-transfer
        """
        destination = Path(destination)
        total_size, stream = self.download(url)
        if progress is None:
            progress = LoggingProgress(f"Downloading {url}")

        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=destination.parent, prefix=f".{destination.name}.", suffix=".part"
            )
        except OSError as e:
            stream.close()
            raise IoError(f"Failed to open file '{destination}': {e}") from e

        tmp_path = Path(tmp_name)
        downloaded = 0
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in stream:
                    f.write(chunk)
                    downloaded = min(downloaded + len(chunk), total_size)
                    self._report(progress, downloaded, total_size)
                f.flush()
                os.fsync(f.fileno())
            _set_mode(tmp_path, make_executable)
            os.replace(tmp_path, destination)
        except OSError as e:
            raise IoError(f"Error while writing to '{destination}': {e}") from e
        finally:
            stream.close()

        logger.info(f"Downloaded {url} to {destination}")
        return destination

    @staticmethod
    def _report(progress: ProgressCallback, downloaded: int, total: int) -> None:
        try:
            progress(downloaded, total)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def get_json(self, url: str) -> Any:
        """GET `url` and decode the body as JSON.

        Raises:
            NetworkError: Request could not be sent or status is not 2xx
            ParseError: Body is not valid JSON
        """
        try:
            response = self.client.get(
                url,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                follow_redirects=True,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(f"Failed to GET from '{url}': {e}") from e

        if not response.is_success:
            raise NetworkError(f"GET '{url}' returned status {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise ParseError(f"Failed to parse JSON from '{url}': {e}") from e

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> StreamingDownloader:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

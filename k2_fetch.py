import time
from typing import Callable, Optional

import httpx

from k2_errors import DownloadFailedError, DownloadStalledError
from k2_process import CancelToken


DEFAULT_STALL_TIMEOUT_SECONDS = 30.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_PROGRESS_INTERVAL_SECONDS = 1.0
DOWNLOAD_CHUNK_SIZE = 64 * 1024
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
MB = 1024 * 1024


def format_eta(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{seconds / 60:.0f}min"
    return f"{seconds / 3600:.1f}h"


def format_progress_line(received: int, total: int, elapsed: float, instant_rate: float) -> str:
    speed = f"{instant_rate / MB:.2f} MB/s"
    if total <= 0:
        return f"Downloaded: {received / MB:.2f} MB, speed: {speed}"
    percent = received * 100.0 / total
    average_rate = received / elapsed if elapsed > 0 else 0.0
    if average_rate > 0:
        eta = format_eta((total - received) / average_rate)
    else:
        eta = "calculating..."
    return (
        f"Download progress: {percent:.1f}% ({received / MB:.2f}/{total / MB:.2f} MB), "
        f"speed: {speed}, remaining: {eta}"
    )


def describe_http_error(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return f"connection timed out ({type(exc).__name__})"
    if isinstance(exc, httpx.ConnectError):
        return f"connection failed: {exc}"
    return f"{type(exc).__name__}: {exc}"


class MirrorFetcher:
    """Downloads one artifact, falling through an ordered list of mirrors.

    A mirror fails on connection errors, timeouts, non-2xx responses or a
    stalled transfer; the next one is then tried. Partial destination files are
    left in place for the caller to clean up.
    """

    def __init__(
        self,
        log: Callable[[str], None],
        client: Optional[httpx.Client] = None,
        stall_timeout: float = DEFAULT_STALL_TIMEOUT_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.log = log
        self.client = client
        self.stall_timeout = stall_timeout
        self.connect_timeout = connect_timeout
        self.progress_interval = progress_interval
        self.clock = clock
        self.cancel = cancel

    def _new_client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(self.stall_timeout, connect=self.connect_timeout),
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    def fetch(self, urls: list[str], destination: str) -> str:
        if not urls:
            raise DownloadFailedError("No download URLs were provided.")

        client = self.client
        owns_client = client is None
        if client is None:
            client = self._new_client()

        last_error: Optional[DownloadFailedError] = None
        try:
            for index, url in enumerate(urls, start=1):
                if self.cancel is not None:
                    self.cancel.raise_if_cancelled()
                self.log(f"Downloading from mirror {index}/{len(urls)}: {url}")
                try:
                    self._download(client, url, destination)
                    return url
                except DownloadFailedError as exc:
                    last_error = exc
                except httpx.HTTPError as exc:
                    last_error = DownloadFailedError(describe_http_error(exc), exc)
                except OSError as exc:
                    last_error = DownloadFailedError(f"unable to write {destination}: {exc}", exc)
                self.log(f"Mirror {index}/{len(urls)} failed: {last_error}")
        finally:
            if owns_client:
                client.close()

        raise DownloadFailedError(
            f"All {len(urls)} download mirrors failed. Last error: {last_error}",
            last_error,
        )

    def _download(self, client: httpx.Client, url: str, destination: str) -> None:
        with client.stream("GET", url, headers={"User-Agent": USER_AGENT}) as response:
            if not response.is_success:
                raise DownloadFailedError(f"HTTP status {response.status_code} from {url}")

            try:
                total = int(response.headers.get("Content-Length") or 0)
            except ValueError:
                total = 0
            if total > 0:
                self.log(f"File size: {total / MB:.2f} MB")
            else:
                self.log("File size: unknown")

            received = self._copy_body(response, url, destination, total)

            if total > 0 and received < total and "Content-Encoding" not in response.headers:
                raise DownloadFailedError(
                    f"Download interrupted: received {received} of {total} bytes from {url}"
                )
        self.log(f"Download complete: {received / MB:.2f} MB")

    def _copy_body(self, response: httpx.Response, url: str, destination: str, total: int) -> int:
        received = 0
        started = self.clock()
        last_log = started
        last_log_bytes = 0
        last_byte_at = started
        chunks = response.iter_bytes(DOWNLOAD_CHUNK_SIZE)

        with open(destination, "wb") as out:
            while True:
                try:
                    chunk = next(chunks)
                except StopIteration:
                    break
                except httpx.ReadTimeout as exc:
                    if received > 0:
                        raise DownloadStalledError(
                            f"Download stalled: no data for more than {self.stall_timeout:.0f}s from {url}",
                            exc,
                        ) from exc
                    raise DownloadFailedError(f"Timed out waiting for data from {url}", exc) from exc

                now = self.clock()
                if received > 0 and now - last_byte_at > self.stall_timeout:
                    raise DownloadStalledError(
                        f"Download stalled: no data for more than {self.stall_timeout:.0f}s from {url}"
                    )
                if self.cancel is not None:
                    self.cancel.raise_if_cancelled()

                out.write(chunk)
                received += len(chunk)
                last_byte_at = now

                if now - last_log >= self.progress_interval:
                    instant_rate = (received - last_log_bytes) / max(now - last_log, 0.001)
                    self.log(format_progress_line(received, total, now - started, instant_rate))
                    last_log = now
                    last_log_bytes = received
        return received

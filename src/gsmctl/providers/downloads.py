"""HTTP client used for version lookups and server downloads."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests

from ..errors import FilesystemError, NetworkError, ParseError

CHUNK_SIZE = 64 * 1024
USER_AGENT = "gsmctl"
_DISPOSITION_FILENAME = re.compile(r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", re.IGNORECASE)


def filename_from_response(response: requests.Response, url: str) -> str:
    """Pick a local file name from ``Content-Disposition`` or the final URL."""
    disposition = response.headers.get("Content-Disposition", "")
    match = _DISPOSITION_FILENAME.search(disposition)
    if match:
        name = Path(unquote(match.group(1))).name
        if name:
            return name
    final_url = response.url or url
    name = Path(unquote(urlparse(final_url).path)).name
    return name or "download"


@dataclass
class HttpClient:
    """Small wrapper around a :class:`requests.Session`."""

    timeout: float = 30.0
    session: requests.Session = field(default_factory=requests.Session)

    def __post_init__(self) -> None:
        """Set a stable user agent."""
        self.session.headers.setdefault("User-Agent", USER_AGENT)

    def get_text(self, url: str) -> str:
        """Return the body of a GET request as text."""
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise NetworkError(f"GET {url} failed: {exc}", operation="http.get", target=url) from exc
        return response.text

    def get_json(self, url: str) -> object:
        """Return the decoded JSON body of a GET request."""
        text = self.get_text(url)
        try:
            return json.loads(text)
        except ValueError as exc:
            raise ParseError(
                f"Response from {url} is not valid JSON: {exc}", operation="http.get", target=url
            ) from exc

    def download(self, url: str, destination_dir: Path, *, filename: str | None = None) -> Path:
        """Stream *url* into *destination_dir* and return the written file."""
        try:
            destination_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError(
                f"Unable to create {destination_dir}: {exc}",
                operation="download",
                target=destination_dir,
            ) from exc
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                target = destination_dir / (filename or filename_from_response(response, url))
                with target.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
        except requests.RequestException as exc:
            raise NetworkError(
                f"Download {url} failed: {exc}", operation="download", target=url
            ) from exc
        except OSError as exc:
            raise FilesystemError(
                f"Unable to write download from {url}: {exc}", operation="download", target=url
            ) from exc
        return target


__all__ = ["HttpClient", "filename_from_response"]

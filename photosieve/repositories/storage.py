"""Image byte access for the pipeline.

HTTP(S) URLs are fetched with a shared ``httpx.AsyncClient``; everything
else (local paths, ``file://`` and ``gs://`` URLs) goes through fsspec.
"""

from __future__ import annotations

import asyncio
from io import BytesIO
from pathlib import Path

import fsspec
import httpx
from PIL import Image


class StorageBackend:
    """Async read access to image URIs regardless of where they live.

    fsspec filesystem instances are lazily created and cached per protocol
    (``file`` for local, ``gcs`` for Cloud Storage).  The HTTP client is
    created on first use and must be released with :meth:`aclose`.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._filesystems: dict[str, fsspec.AbstractFileSystem] = {}
        self._timeout = timeout
        self._http: httpx.AsyncClient | None = http_client

    def _get_fs(self, path: str) -> tuple[fsspec.AbstractFileSystem, str]:
        """Resolve the fsspec filesystem and normalised path for *path*.

        GCS paths (``gs://...``) use the ``gcs`` protocol.  Everything else
        is treated as a local file and resolved to an absolute path.
        """
        if path.startswith("gs://"):
            protocol = "gcs"
            norm_path = path
        else:
            protocol = "file"
            if path.startswith("file://"):
                path = path[len("file://"):]
            norm_path = str(Path(path).resolve())

        if protocol not in self._filesystems:
            self._filesystems[protocol] = fsspec.filesystem(protocol)

        return self._filesystems[protocol], norm_path

    @staticmethod
    def is_remote(uri: str) -> bool:
        return uri.startswith(("http://", "https://"))

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=True
            )
        return self._http

    async def read_bytes(self, uri: str) -> bytes:
        """Read the entire contents of *uri* as bytes.

        Raises on any transport failure or non-2xx response; callers decide
        whether a failure is isolated or fatal.
        """
        if self.is_remote(uri):
            response = await self._client().get(uri)
            response.raise_for_status()
            return response.content

        fs, norm_path = self._get_fs(uri)
        return await asyncio.to_thread(fs.cat, norm_path)

    async def load_image(self, uri: str) -> Image.Image:
        """Fetch *uri* and decode it into an RGB PIL image."""
        data = await self.read_bytes(uri)
        return decode_image(data)

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None


def decode_image(data: bytes) -> Image.Image:
    """Decode raw bytes into an RGB image, forcing the pixel data to load."""
    img = Image.open(BytesIO(data))
    img.load()
    if img.mode != "RGB":
        img = img.convert("RGB")
    return img

"""Tests for the HTTP and local VLM caption providers."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import httpx

from conftest import FakeCaptioner, make_photo, noise_image, save_png
from photosieve.services.caption_service import (
    CAPTION_PROMPT,
    HttpCaptionClient,
    VLMCaptioner,
    batch_generate_descriptions,
)

ENDPOINT = "https://captions.example.com/describe"


def _client(handler) -> HttpCaptionClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpCaptionClient(ENDPOINT, http_client=http)


class TestHttpCaptionClient:
    async def test_posts_photo_and_reads_description(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"description": "  Framing on level two. "})

        client = _client(handler)
        description = await client.generate_description("https://cdn/p1.jpg", "p1")

        assert description == "Framing on level two."
        assert seen == [{"photoUrl": "https://cdn/p1.jpg", "photoId": "p1"}]

    async def test_server_error_yields_none(self) -> None:
        client = _client(lambda request: httpx.Response(503))
        assert await client.generate_description("u", "p1") is None

    async def test_malformed_body_yields_none(self) -> None:
        client = _client(lambda request: httpx.Response(200, content=b"<html>"))
        assert await client.generate_description("u", "p1") is None

        client = _client(lambda request: httpx.Response(200, json=["not", "a", "dict"]))
        assert await client.generate_description("u", "p1") is None

    async def test_blank_description_yields_none(self) -> None:
        client = _client(lambda request: httpx.Response(200, json={"description": "  "}))
        assert await client.generate_description("u", "p1") is None

    async def test_no_endpoint_makes_no_request(self) -> None:
        calls: list[httpx.Request] = []
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: calls.append(r) or httpx.Response(200))
        )
        client = HttpCaptionClient(None, http_client=http)

        assert await client.generate_description("u", "p1") is None
        assert calls == []
        await http.aclose()


class TestVLMCaptioner:
    async def test_caption_from_local_image(self, storage, tmp_path: Path) -> None:
        url = save_png(noise_image(1), tmp_path / "p.png")
        captioner = VLMCaptioner(storage)
        model = MagicMock()
        model.encode_image.return_value = "encoded"
        model.query.return_value = {"answer": " Exposed ductwork in the ceiling. "}
        captioner._model = model

        description = await captioner.generate_description(url, "p")

        assert description == "Exposed ductwork in the ceiling."
        model.query.assert_called_once_with("encoded", CAPTION_PROMPT)

    async def test_model_failure_yields_none(self, storage, tmp_path: Path, monkeypatch) -> None:
        url = save_png(noise_image(1), tmp_path / "p.png")
        captioner = VLMCaptioner(storage)

        def fail() -> None:
            raise OSError("weights unavailable")

        monkeypatch.setattr(captioner, "load_model", fail)

        assert await captioner.generate_description(url, "p") is None


async def test_batch_generate_descriptions_isolates_failures() -> None:
    captioner = FakeCaptioner(
        descriptions={"a": "roof", "c": "slab"},
        failing={"b"},
    )
    photos = [(make_photo(pid), f"{pid}.png") for pid in ["a", "b", "c", "d"]]
    done: list[int] = []

    descriptions = await batch_generate_descriptions(
        captioner,
        photos,
        batch_size=3,
        delay=0.0,
        on_batch_done=lambda d, t: done.append(d),
    )

    assert descriptions == [("a", "roof"), ("c", "slab")]
    assert captioner.calls == ["a", "b", "c", "d"]
    assert done == [3, 4]

"""Tests for ProgressReporter — best-effort stage callbacks over httpx."""

from __future__ import annotations

import json

import httpx
import pytest

from latex_service.models.schemas import ProgressCallback
from latex_service.tools.progress import ProgressReporter

CALLBACK = ProgressCallback(url="https://backend.example/progress", paper_id="p-1", secret="shh")


def _reporter(handler) -> ProgressReporter:
    reporter = ProgressReporter(CALLBACK)
    reporter._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return reporter


@pytest.mark.asyncio
async def test_send_posts_stage_with_secret_header():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    reporter = _reporter(handler)
    await reporter.send("Cloning repository...")
    await reporter.close()

    assert len(seen) == 1
    assert str(seen[0].url) == CALLBACK.url
    assert seen[0].headers["X-Compile-Secret"] == "shh"
    assert json.loads(seen[0].content) == {"paperId": "p-1", "progress": "Cloning repository..."}


@pytest.mark.asyncio
async def test_rejected_callback_does_not_raise():
    reporter = _reporter(lambda request: httpx.Response(500))
    await reporter.send("Starting compilation...")
    await reporter.close()


@pytest.mark.asyncio
async def test_transport_error_does_not_raise():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    reporter = _reporter(handler)
    await reporter.send("Finalizing...")
    await reporter.close()


@pytest.mark.asyncio
async def test_disabled_without_callback():
    reporter = ProgressReporter(None)
    assert not reporter.enabled
    await reporter.send("ignored")
    assert reporter._client is None


def test_wire_aliases_accepted():
    cb = ProgressCallback.model_validate({"url": "https://x", "paperId": "42", "secret": "s"})
    assert cb.paper_id == "42"
    assert "secret" not in repr(cb)

"""Progress callbacks for long git compiles.

The web backend passes ``progressCallback{url, paperId, secret}``; each stage
message is POSTed there. Delivery is best effort: failures are logged and the
compile carries on.
"""

from __future__ import annotations

import httpx
import structlog

from latex_service.models.schemas import ProgressCallback

logger = structlog.get_logger().bind(component="tools.progress")


class ProgressReporter:
    """Posts stage messages to the caller's progress endpoint."""

    def __init__(self, callback: ProgressCallback | None, timeout: float = 10.0) -> None:
        self.callback = callback
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.callback and self.callback.url and self.callback.paper_id)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def send(self, message: str) -> None:
        if not self.enabled:
            return
        client = await self._get_client()
        try:
            resp = await client.post(
                self.callback.url,
                json={"paperId": self.callback.paper_id, "progress": message},
                headers={"X-Compile-Secret": self.callback.secret},
            )
            if resp.is_error:
                logger.warning("progress_callback_rejected", status=resp.status_code)
        except httpx.HTTPError as e:
            logger.warning("progress_callback_failed", error=type(e).__name__)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

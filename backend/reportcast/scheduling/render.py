"""Chart image rendering.

``RenderPool`` bounds concurrent renders with a semaphore and turns every
failure mode (backend exception, timeout, oversized image) into
``RenderError``. The default backend drives a single headless Chromium
through Playwright, one page per request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode, urlparse

from reportcast.config import Settings
from reportcast.core.errors import RenderError

logger = logging.getLogger(__name__)

CHART_READY_SELECTOR = '[data-chart-ready="true"]'

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


@dataclass(frozen=True)
class RenderRequest:
    report_id: str
    report_name: str
    data: Any
    chart_config: dict[str, Any] | None = field(default=None)

    def to_chart_data(self) -> dict[str, Any]:
        """Value injected into the page as ``window.CHART_DATA``."""
        return {
            "dataJson": self.data,
            "chartConfig": self.chart_config,
            "name": self.report_name,
        }


class RenderBackend(ABC):
    """Something that turns a :class:`RenderRequest` into PNG bytes."""

    async def start(self) -> None:
        """Acquire long-lived resources. Called once before the first render."""

    async def close(self) -> None:
        """Release resources acquired by :meth:`start`."""

    @abstractmethod
    async def render(self, request: RenderRequest) -> bytes: ...


class PlaywrightRenderBackend(RenderBackend):
    """Screenshots the chart page served at ``render_url``.

    Requests leaving the render host are aborted so report data cannot be
    exfiltrated by markup loaded into the page.
    """

    def __init__(
        self,
        render_url: str,
        render_secret: str = "",
        headless: bool = True,
        navigation_timeout_ms: int = 10_000,
    ) -> None:
        self._render_url = render_url
        self._render_secret = render_secret
        self._headless = headless
        self._navigation_timeout_ms = navigation_timeout_ms
        self._allowed_hosts = _LOCAL_HOSTS | {urlparse(render_url).hostname or ""}
        self._playwright = None
        self._browser = None
        self._start_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlaywrightRenderBackend":
        return cls(
            settings.render_url,
            render_secret=settings.render_secret,
            headless=settings.playwright_headless,
        )

    async def start(self) -> None:
        async with self._start_lock:
            if self._browser is not None:
                return
            from playwright.async_api import async_playwright

            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self._headless,
                args=["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"],
            )
            logger.info("render: chromium started (headless=%s)", self._headless)

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
            logger.info("render: chromium stopped")

    def _is_allowed(self, url: str) -> bool:
        if url.startswith("data:"):
            return True
        return urlparse(url).hostname in self._allowed_hosts

    async def _route(self, route, request) -> None:
        if self._is_allowed(request.url):
            await route.continue_()
        else:
            logger.warning("render: blocked external request %s", request.url)
            await route.abort()

    async def render(self, request: RenderRequest) -> bytes:
        if self._browser is None:
            await self.start()

        page = await self._browser.new_page()
        try:
            await page.route("**/*", self._route)
            url = self._render_url
            if self._render_secret:
                url = f"{url}?{urlencode({'secret': self._render_secret})}"
            await page.goto(url, wait_until="networkidle", timeout=self._navigation_timeout_ms)
            await page.evaluate("data => { window.CHART_DATA = data; }", request.to_chart_data())
            element = await page.wait_for_selector(
                CHART_READY_SELECTOR, timeout=self._navigation_timeout_ms
            )
            if element is None:
                raise RenderError("Chart element not found")
            await page.evaluate("document.fonts.ready")
            return await element.screenshot(type="png")
        finally:
            await page.close()


class RenderPool:
    """Semaphore-bounded front for a :class:`RenderBackend`."""

    def __init__(
        self,
        backend: RenderBackend,
        *,
        concurrency: int = 3,
        max_image_bytes: int = 10 * 1024 * 1024,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._backend = backend
        self._semaphore = asyncio.Semaphore(concurrency)
        self._max_image_bytes = max_image_bytes
        self._timeout_seconds = timeout_seconds

    async def start(self) -> None:
        await self._backend.start()

    async def close(self) -> None:
        await self._backend.close()

    async def render(self, request: RenderRequest) -> bytes:
        async with self._semaphore:
            started = time.monotonic()
            try:
                image = await asyncio.wait_for(
                    self._backend.render(request), timeout=self._timeout_seconds
                )
            except RenderError:
                raise
            except asyncio.TimeoutError as exc:
                raise RenderError(
                    f"Chart render for report {request.report_id} timed out after {self._timeout_seconds:.0f}s"
                ) from exc
            except Exception as exc:
                raise RenderError(f"Chart render for report {request.report_id} failed: {exc}") from exc

        size_kb = len(image) / 1024
        if len(image) > self._max_image_bytes:
            raise RenderError(
                f"Chart image too large: {size_kb:.2f}KB (limit: {self._max_image_bytes // (1024 * 1024)}MB)"
            )

        logger.info(
            "render: report %s rendered in %dms, %.2fKB",
            request.report_id,
            (time.monotonic() - started) * 1000,
            size_kb,
        )
        return image

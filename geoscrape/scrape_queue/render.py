"""Fetch-and-render capability used by the consumer.

Two backends:
- ``HttpRenderClient`` posts to a remote render service (``POST {base}/scrape``)
- ``PlaywrightRenderClient`` drives a local headless Chromium
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

LOGGER = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class RenderError(RuntimeError):
    """Render call failed (transport error or unusable response)."""


class RenderTimeout(RenderError):
    """Render call exceeded its timeout."""


@dataclass
class RenderRequest:
    target_url: str
    wait_condition: Optional[str] = "table"
    timeout_ms: int = 30000

    def to_payload(self) -> Dict[str, Any]:
        """Wire format expected by the render service."""
        return {
            "url": self.target_url,
            "waitFor": self.wait_condition,
            "screenshot": False,
            "extractText": True,
            "timeout": self.timeout_ms,
        }


@dataclass
class RenderResponse:
    status: int
    content: str = ""
    html: str = ""

    @property
    def success(self) -> bool:
        return 200 <= self.status < 300


class RenderClient(Protocol):
    """Abstract render interface."""

    def render(self, request: RenderRequest) -> RenderResponse:
        """Fetch and render a page.

        Parameters
        ----------
        request : RenderRequest
            Target URL, wait condition and timeout

        Returns
        -------
        RenderResponse
            Status plus extracted text and HTML

        Raises
        ------
        RenderTimeout
            If the page did not load within the timeout
        RenderError
            On transport failures
        """
        ...


class HttpRenderClient:
    """Client for a remote render service."""

    def __init__(self, base_url: str, client: Optional[httpx.Client] = None) -> None:
        """Initialize client.

        Parameters
        ----------
        base_url : str
            Render service root, e.g. ``http://localhost:8787``
        client : httpx.Client, optional
            Preconfigured client (tests pass one with a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(headers={"User-Agent": USER_AGENT})

    def render(self, request: RenderRequest) -> RenderResponse:
        # Leave the service its own timeout plus a margin for the round trip
        timeout = request.timeout_ms / 1000.0 + 5.0
        try:
            response = self._client.post(
                f"{self.base_url}/scrape",
                json=request.to_payload(),
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise RenderTimeout(
                f"Render timed out after {request.timeout_ms}ms: {request.target_url}"
            ) from exc
        except httpx.HTTPError as exc:
            raise RenderError(f"Render request failed: {exc}") from exc

        if response.status_code >= 400:
            return RenderResponse(status=response.status_code, content=response.text[:500])

        try:
            data = response.json()
        except ValueError as exc:
            raise RenderError("Render service returned non-JSON body") from exc

        return RenderResponse(
            status=int(data.get("status", response.status_code)),
            content=data.get("text") or data.get("content") or "",
            html=data.get("html") or "",
        )

    def close(self) -> None:
        self._client.close()


class PlaywrightRenderClient:
    """Render pages with a local headless browser."""

    def __init__(self, headless: bool = True, proxy: Optional[str] = None) -> None:
        self.headless = headless
        self.proxy = proxy
        self._playwright = None
        self._browser = None

    def _ensure_browser(self):
        if self._browser is None:
            self._playwright = sync_playwright().start()
            launch_options: Dict[str, Any] = {"headless": self.headless}
            if self.proxy:
                launch_options["proxy"] = {"server": self.proxy}
            self._browser = self._playwright.chromium.launch(**launch_options)
            LOGGER.info("Browser started (headless=%s)", self.headless)
        return self._browser

    def render(self, request: RenderRequest) -> RenderResponse:
        browser = self._ensure_browser()
        page = browser.new_page(user_agent=USER_AGENT)
        try:
            response = page.goto(
                request.target_url,
                timeout=request.timeout_ms,
                wait_until="domcontentloaded",
            )
            if request.wait_condition:
                page.wait_for_selector(request.wait_condition, timeout=request.timeout_ms)
            return RenderResponse(
                status=response.status if response is not None else 200,
                content=page.inner_text("body"),
                html=page.content(),
            )
        except PlaywrightTimeoutError as exc:
            raise RenderTimeout(
                f"Render timed out after {request.timeout_ms}ms: {request.target_url}"
            ) from exc
        except PlaywrightError as exc:
            raise RenderError(f"Browser render failed: {exc}") from exc
        finally:
            page.close()

    def close(self) -> None:
        if self._browser is not None:
            self._browser.close()
            self._browser = None
        if self._playwright is not None:
            self._playwright.stop()
            self._playwright = None
            LOGGER.info("Browser closed")

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import httpx
from bs4 import BeautifulSoup

from sidecar.tools.web_utils import clean_content, is_valid_url

_USER_AGENT = "research-sidecar/0.1 (+https://github.com/)"
_STRIP_TAGS = ("script", "style", "noscript", "nav", "footer", "header", "aside", "form", "svg")


@dataclass(slots=True)
class ExtractedPage:
    url: str
    title: str
    content: str


class ContentExtractor(Protocol):
    async def extract(self, url: str, *, timeout: float) -> ExtractedPage: ...


def html_to_page(url: str, html: str, *, max_chars: int) -> ExtractedPage:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    title = soup.title.get_text(strip=True) if soup.title else ""
    root = soup.find("main") or soup.find("article") or soup.body or soup
    text = root.get_text(separator=" ", strip=True)
    return ExtractedPage(url=url, title=title, content=clean_content(text, max_length=max_chars))


class HttpContentExtractor:
    """Fetch a page over HTTP and reduce it to readable text."""

    def __init__(self, *, max_chars: int = 8000, client: httpx.AsyncClient | None = None):
        self.max_chars = max_chars
        self._client = client

    async def extract(self, url: str, *, timeout: float) -> ExtractedPage:
        if not is_valid_url(url):
            raise ValueError(f"Invalid URL: {url}")
        if self._client is not None:
            response = await self._client.get(url, timeout=timeout)
        else:
            async with httpx.AsyncClient(
                follow_redirects=True, headers={"User-Agent": _USER_AGENT}
            ) as client:
                response = await client.get(url, timeout=timeout)
        response.raise_for_status()
        content_type = response.headers.get("content-type", "")
        if "html" not in content_type and content_type:
            return ExtractedPage(
                url=url, title="", content=clean_content(response.text, max_length=self.max_chars)
            )
        return html_to_page(url, response.text, max_chars=self.max_chars)

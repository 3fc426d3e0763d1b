"""
Fetching pages and extracting their article structure
"""
import asyncio
import logging
from typing import List, Optional, Tuple, Union

import aiohttp
from bs4 import BeautifulSoup

from browser_utils import BrowserManager
from config import config as default_config
from errors import FetchError, NotFoundError
from models import Heading, ScrapedDocument
from utils import RetryPolicy, safe_extract_text, clean_text, validate_url

logger = logging.getLogger(__name__)

BOILERPLATE_SELECTORS = (
    "script, style, nav, header, footer, aside, "
    ".ad, .ads, .advertisement, .sidebar, .menu, .navigation"
)


def parse_html(url: str, html: str, min_paragraph_length: int = 20) -> ScrapedDocument:
    """Extract title, headings, paragraphs and lists from the main content of a page"""
    soup = BeautifulSoup(html or "", "html.parser")

    title = safe_extract_text(soup.find("title")) or safe_extract_text(soup.find("h1"))
    if not title:
        og_title = soup.find("meta", attrs={"property": "og:title"})
        title = (og_title.get("content") or "").strip() if og_title else ""

    # Structured data lives in script tags, so look before stripping them
    has_structured_data = soup.find("script", attrs={"type": "application/ld+json"}) is not None

    for element in soup.select(BOILERPLATE_SELECTORS):
        element.decompose()

    container = soup.find("article") or soup.find("main") or soup.body or soup

    headings = []
    for element in container.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
        text = safe_extract_text(element)
        if text:
            headings.append(Heading(level=int(element.name[1]), text=text))

    paragraphs = []
    for element in container.find_all("p"):
        text = safe_extract_text(element)
        if len(text) > min_paragraph_length:
            paragraphs.append(text)

    lists = []
    for element in container.find_all(["ul", "ol"]):
        items = [safe_extract_text(li) for li in element.find_all("li")]
        items = [item for item in items if item]
        if items:
            lists.append(items)

    full_text = clean_text(container.get_text(" ", strip=True))

    return ScrapedDocument(
        url=url,
        title=title.strip(),
        headings=headings,
        paragraphs=paragraphs,
        lists=lists,
        full_text=full_text,
        word_count=len(full_text.split()),
        has_structured_data=has_structured_data,
    )


class ContentFetcher:
    """Downloads pages over plain HTTP or through a browser and parses them"""

    def __init__(self, analyzer_config=None, browser_manager: BrowserManager = None):
        self.config = analyzer_config or default_config
        self.browser_manager = browser_manager or BrowserManager(self.config)
        self.session: Optional[aiohttp.ClientSession] = None
        self.retry_policy = RetryPolicy(
            max_attempts=self.config.fetch_attempts,
            base_delay=self.config.fetch_backoff,
            backoff="linear",
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the HTTP session and the browser if either was opened"""
        try:
            if self.session is not None:
                await self.session.close()
                self.session = None
        finally:
            await self.browser_manager.close()

    async def fetch(self, url: str, rendered: bool = False) -> ScrapedDocument:
        """
        Fetch and parse a single page

        A 404 raises NotFoundError immediately; other failures are retried
        with a linear backoff and the last FetchError propagates.
        """
        if not validate_url(url):
            raise FetchError(f"Invalid URL: {url}", url=url)
        fetch_html = self._fetch_rendered if rendered else self._fetch_plain
        html = await self.retry_policy.run(
            fetch_html, url,
            retry_on=(FetchError,),
            give_up_on=(NotFoundError,),
            label=f"fetch {url}",
        )
        document = parse_html(url, html, self.config.min_paragraph_length)
        logger.info(
            f"Fetched {url}: {len(document.headings)} headings, "
            f"{len(document.paragraphs)} paragraphs, {document.word_count} words"
        )
        return document

    async def fetch_many(self, urls: List[str], rendered: bool = False) -> List[Union[ScrapedDocument, BaseException]]:
        """Fetch concurrently; each slot holds a document or the error for that URL"""
        tasks = [self.fetch(url, rendered) for url in urls]
        return await asyncio.gather(*tasks, return_exceptions=True)

    async def _fetch_plain(self, url: str) -> str:
        status, html = await self._get(url)
        if status == 404:
            raise NotFoundError(f"Page not found: {url}", url=url, status=status)
        if status >= 400:
            raise FetchError(f"HTTP {status} for {url}", url=url, status=status)
        return html

    async def _get(self, url: str) -> Tuple[int, str]:
        """GET url and return (status, body text)"""
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.fetch_timeout)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={
                    'User-Agent': self.config.user_agents[0],
                    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
                    'Accept-Language': self.config.locale_language,
                    'Upgrade-Insecure-Requests': '1',
                }
            )
        try:
            async with self.session.get(url) as response:
                return response.status, await response.text(errors="replace")
        except asyncio.TimeoutError as e:
            raise FetchError(f"Timeout for {url}", url=url) from e
        except aiohttp.ClientError as e:
            raise FetchError(f"Request error for {url}: {e}", url=url) from e

    async def _fetch_rendered(self, url: str) -> str:
        context = await self.browser_manager.new_context(user_agent=self.config.user_agents[0])
        try:
            page = await context.new_page()
            response = await page.goto(
                url,
                wait_until="networkidle",
                timeout=self.config.fetch_timeout * 1000
            )
            if response is not None and response.status == 404:
                raise NotFoundError(f"Page not found: {url}", url=url, status=404)
            await asyncio.sleep(self.config.render_settle_delay)
            return await page.content()
        except FetchError:
            raise
        except Exception as e:
            raise FetchError(f"Rendered fetch failed for {url}: {e}", url=url) from e
        finally:
            await context.close()

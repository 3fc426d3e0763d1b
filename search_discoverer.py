"""
Competitor discovery through search result pages or a search API
"""
import logging
from typing import List, Optional, Tuple
from urllib.parse import urlencode, urlparse

import aiohttp

from browser_utils import BrowserManager
from config import config as default_config
from errors import CaptchaDetected, DiscoveryError
from models import SearchResultEntry, CompetitorSet
from utils import RetryPolicy, normalize_url, random_delay

logger = logging.getLogger(__name__)

FIRST_PAGE_SIZE = 10

CAPTCHA_SELECTORS = [
    "#captcha-form",
    ".g-recaptcha",
    "#recaptcha",
    "iframe[src*='recaptcha']",
]

RESULT_BLOCK_SELECTORS = [
    "div.g",
    "div[data-ved]",
]

SEARCH_ENGINE_HOSTS = ("google.", "googleusercontent.", "gstatic.")


def find_own_position(results: List[SearchResultEntry], own_url: str) -> Optional[int]:
    own = normalize_url(own_url)
    for result in results:
        if normalize_url(result.url) == own:
            return result.position
    return None


def api_result_count(own_position: Optional[int]) -> int:
    """How many results to request from the API, sized by the known own rank"""
    if own_position is not None and own_position <= 5:
        return 10
    if own_position is not None and own_position <= 10:
        return 15
    return 20


def apply_competitor_window(results: List[SearchResultEntry], own_url: str,
                            own_position: Optional[int], max_competitors: int) -> List[SearchResultEntry]:
    """
    Pick the competing results for a page

    Rank 1 has no competitors. Ranks 2-10 compete only with the results
    above them. Anything lower, or not ranked at all, is compared with the
    first page of results.
    """
    if own_position is not None and own_position <= 1:
        return []

    own = normalize_url(own_url)
    if own_position is not None and own_position <= FIRST_PAGE_SIZE:
        in_window = lambda r: r.position < own_position
    else:
        in_window = lambda r: r.position <= FIRST_PAGE_SIZE

    competitors = [
        result for result in results
        if normalize_url(result.url) != own and in_window(result)
    ]
    return competitors[:max_competitors]


class BrowserSearchStrategy:
    """Searches through a headless browser, backing off when a CAPTCHA appears"""

    name = "browser"

    def __init__(self, browser_manager: BrowserManager = None, analyzer_config=None):
        self.config = analyzer_config or default_config
        self.browser_manager = browser_manager or BrowserManager(self.config)

    def is_available(self) -> bool:
        return True

    def search_url(self, keyword: str) -> str:
        query = urlencode({"q": keyword, "hl": self.config.search_language})
        return f"{self.config.search_engine_url}?{query}"

    async def search(self, keyword: str, own_url: str, result_count: int = None,
                     retry_count: int = None, known_position: Optional[int] = None) -> List[SearchResultEntry]:
        """Run the search, retrying with a long jittered wait after each CAPTCHA"""
        retry_count = retry_count or self.config.discovery_retry_count
        policy = RetryPolicy(
            max_attempts=retry_count,
            base_delay=0.0,
            jitter=self.config.captcha_backoff,
            backoff="fixed",
        )
        try:
            return await policy.run(self._attempt, keyword, own_url, label=f"search '{keyword}'")
        except CaptchaDetected as e:
            e.own_position = e.own_position or known_position
            raise

    async def _attempt(self, keyword: str, own_url: str) -> List[SearchResultEntry]:
        context = await self.browser_manager.new_context()
        try:
            page = await context.new_page()
            await page.goto(
                self.search_url(keyword),
                wait_until="domcontentloaded",
                timeout=self.config.search_timeout * 1000
            )
            await random_delay(self.config.settle_delay, "for the result page to settle")

            if await self.detect_captcha(page):
                logger.warning(f"CAPTCHA detected while searching '{keyword}'")
                raise CaptchaDetected(f"CAPTCHA detected for keyword '{keyword}'")

            results = await self.parse_results(page, own_url)
            logger.info(f"Parsed {len(results)} search results for keyword '{keyword}'")
            return results
        finally:
            await context.close()

    async def detect_captcha(self, page) -> bool:
        """Probe for CAPTCHA widgets, then fall back to the page title"""
        for selector in CAPTCHA_SELECTORS:
            if await page.query_selector(selector):
                return True
        title = (await page.title() or "").lower()
        return "captcha" in title or "robot" in title

    async def parse_results(self, page, own_url: str) -> List[SearchResultEntry]:
        """First external link and heading of each result block, in page order"""
        own = normalize_url(own_url)
        results: List[SearchResultEntry] = []
        seen = set()

        for selector in RESULT_BLOCK_SELECTORS:
            blocks = await page.query_selector_all(selector)
            logger.debug(f"Found {len(blocks)} elements with selector '{selector}'")

            for block in blocks:
                link = await block.query_selector("a[href^='http']")
                if not link:
                    continue
                href = await link.get_attribute("href")
                if not href or not href.startswith("http") or self._is_search_engine_link(href):
                    continue

                url = normalize_url(href)
                if url in seen:
                    continue
                seen.add(url)

                heading = await block.query_selector("h3") or await block.query_selector("h2") or link
                title = (await heading.text_content() or "").strip()
                results.append(SearchResultEntry(url=url, title=title, position=len(results) + 1))

                if url == own:
                    logger.info(f"Own URL found at position {len(results)}, stopping scan")
                    return results

            if results:
                break

        if not results:
            logger.warning(f"No search results found. Page title: {await page.title()}")
        return results

    @staticmethod
    def _is_search_engine_link(href: str) -> bool:
        host = (urlparse(href).hostname or "").lower()
        return any(marker in host for marker in SEARCH_ENGINE_HOSTS)


class SerpApiSearchStrategy:
    """Searches through a paid search results API"""

    name = "api"

    def __init__(self, analyzer_config=None, api_key: str = None):
        self.config = analyzer_config or default_config
        self.api_key = api_key or self.config.search_api_key

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def search(self, keyword: str, own_url: str, result_count: int = 10,
                     retry_count: int = None, known_position: Optional[int] = None) -> List[SearchResultEntry]:
        if not self.api_key:
            raise DiscoveryError("Search API key is not configured")

        payload = {
            "q": keyword,
            "location": self.config.search_location,
            "num": result_count,
            "hl": self.config.search_language,
            "gl": self.config.search_country,
        }
        logger.info(f"Requesting {result_count} API results for keyword '{keyword}'")
        status, data = await self._post(payload)
        if status >= 400:
            raise DiscoveryError(f"Search API error for '{keyword}': HTTP {status} - {data}")

        organic = (data.get("organic") if isinstance(data, dict) else None) or []
        return [
            SearchResultEntry(
                url=normalize_url(item.get("link") or item.get("url") or ""),
                title=(item.get("title") or "").strip(),
                position=index + 1,
            )
            for index, item in enumerate(organic)
            if item.get("link") or item.get("url")
        ]

    async def _post(self, payload) -> Tuple[int, dict]:
        headers = {"X-API-KEY": self.api_key, "Content-Type": "application/json"}
        timeout = aiohttp.ClientTimeout(total=self.config.search_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.config.search_api_url, json=payload, headers=headers) as response:
                    try:
                        data = await response.json(content_type=None)
                    except ValueError:
                        data = {"error": await response.text()}
                    return response.status, data
        except aiohttp.ClientError as e:
            raise DiscoveryError(f"Search API request failed: {e}") from e


class SearchResultDiscoverer:
    """Finds the pages competing with the subject page for a keyword"""

    def __init__(self, analyzer_config=None, browser_strategy: BrowserSearchStrategy = None,
                 api_strategy: SerpApiSearchStrategy = None):
        self.config = analyzer_config or default_config
        self.browser_strategy = browser_strategy or BrowserSearchStrategy(analyzer_config=self.config)
        self.api_strategy = api_strategy or SerpApiSearchStrategy(self.config)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Release the browser, if one was started"""
        await self.browser_strategy.browser_manager.close()

    @property
    def api_available(self) -> bool:
        return self.api_strategy.is_available()

    def uses_api(self, api_preferred: bool = None) -> bool:
        if api_preferred is None:
            api_preferred = self.config.prefer_search_api
        return api_preferred and self.api_available

    async def wait_before_next_keyword(self, api_preferred: bool = None) -> float:
        """Pause between keywords of one run; the browser path waits much longer"""
        if self.uses_api(api_preferred):
            return await random_delay(self.config.api_keyword_delay, "before the next keyword (API)")
        return await random_delay(self.config.browser_keyword_delay, "before the next keyword (browser)")

    async def discover(self, keyword: str, own_url: str, max_competitors: int = None,
                       retry_count: int = None, api_preferred: bool = None,
                       known_position: Optional[int] = None) -> CompetitorSet:
        """Search for keyword and return the competitor window for own_url"""
        max_competitors = max_competitors or self.config.max_competitors_per_keyword
        if api_preferred is None:
            api_preferred = self.config.prefer_search_api

        results, source, carried_position = None, None, None

        if api_preferred and self.api_available:
            try:
                results = await self.api_strategy.search(keyword, own_url, api_result_count(known_position))
                source = self.api_strategy.name
            except DiscoveryError as e:
                logger.warning(f"Search API failed for '{keyword}', falling back to browser: {e}")

        if results is None:
            try:
                results = await self.browser_strategy.search(
                    keyword, own_url, retry_count=retry_count, known_position=known_position
                )
                source = self.browser_strategy.name
            except CaptchaDetected as e:
                if api_preferred or not self.api_available:
                    raise
                carried_position = e.own_position
                logger.warning(f"CAPTCHA persisted for '{keyword}', falling back to search API")
                results = await self.api_strategy.search(keyword, own_url, api_result_count(carried_position))
                source = self.api_strategy.name

        own_position = find_own_position(results, own_url) or carried_position
        competitors = apply_competitor_window(results, own_url, own_position, max_competitors)
        logger.info(
            f"Keyword '{keyword}': own position {own_position or 'not found'}, "
            f"{len(competitors)} competitors from {len(results)} results ({source})"
        )
        return CompetitorSet(
            keyword=keyword,
            competitors=competitors,
            own_position=own_position,
            total_results=len(results),
            source=source,
        )

"""
Browser utilities for search automation and rendered page fetching
"""
import logging
from typing import List, Optional

from playwright.async_api import async_playwright

from config import config as default_config

logger = logging.getLogger(__name__)

LAUNCH_ARGS = [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-blink-features=AutomationControlled',
    '--disable-extensions',
    '--disable-dev-shm-usage',
    '--disable-background-networking',
    '--disable-default-apps',
    '--disable-sync',
    '--disable-translate',
    '--hide-scrollbars',
    '--metrics-recording-only',
    '--mute-audio',
    '--no-first-run',
    '--safebrowsing-disable-auto-update',
    '--password-store=basic',
    '--use-mock-keychain'
]

STEALTH_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', {
        get: () => undefined,
    });
    Object.defineProperty(navigator, 'plugins', {
        get: () => [1, 2, 3, 4, 5],
    });
    window.chrome = {
        runtime: {},
    };
"""


class UserAgentRotator:
    """Round-robin over a fixed User-Agent pool; one instance per discoverer"""

    def __init__(self, user_agents: List[str]):
        if not user_agents:
            raise ValueError("User-Agent pool cannot be empty")
        self.user_agents = list(user_agents)
        self.index = 0

    def next(self) -> str:
        user_agent = self.user_agents[self.index]
        self.index = (self.index + 1) % len(self.user_agents)
        return user_agent


class BrowserManager:
    """Owns one headless browser and hands out stealth contexts"""

    def __init__(self, analyzer_config=None, rotator: UserAgentRotator = None):
        self.config = analyzer_config or default_config
        self.rotator = rotator or UserAgentRotator(self.config.user_agents)
        self.playwright = None
        self.browser = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Launch the browser if it is not running yet"""
        if self.browser is not None:
            return
        self.playwright = await async_playwright().start()
        try:
            self.browser = await self.playwright.chromium.launch(
                headless=self.config.headless,
                args=LAUNCH_ARGS
            )
        except Exception:
            await self.playwright.stop()
            self.playwright = None
            raise
        logger.info("Browser started")

    async def new_context(self, user_agent: Optional[str] = None):
        """Create a browser context with the next User-Agent and stealth patches"""
        await self.start()
        context = await self.browser.new_context(
            user_agent=user_agent or self.rotator.next(),
            viewport={'width': 1920, 'height': 1080},
            locale=self.config.browser_locale,
            timezone_id=self.config.browser_timezone,
            extra_http_headers={
                'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
                'Accept-Language': self.config.locale_language,
                'Upgrade-Insecure-Requests': '1',
            }
        )
        if self.config.stealth_mode:
            await context.add_init_script(STEALTH_SCRIPT)
        return context

    async def close(self):
        """Close browser and playwright; safe to call more than once"""
        browser, playwright = self.browser, self.playwright
        self.browser = None
        self.playwright = None
        try:
            if browser is not None:
                await browser.close()
        finally:
            if playwright is not None:
                await playwright.stop()
                logger.info("Browser closed")

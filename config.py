"""
Configuration file for the content gap analyzer
"""
import os
from dataclasses import dataclass
from typing import List, Tuple


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AnalyzerConfig:
    """Configuration settings for the content gap analyzer"""

    # Database settings
    db_path: str = "content_gap.db"

    # Browser settings
    headless: bool = True
    stealth_mode: bool = True
    search_timeout: int = 30
    browser_locale: str = "ja-JP"
    browser_timezone: str = "Asia/Tokyo"

    # User agents for rotation
    user_agents: List[str] = None

    # Discovery
    search_engine_url: str = "https://www.google.com/search"
    search_language: str = "ja"
    search_country: str = "jp"
    search_location: str = "Japan"
    search_api_url: str = "https://google.serper.dev/search"
    search_api_key: str = None
    prefer_search_api: bool = False
    discovery_retry_count: int = 5
    settle_delay: Tuple[float, float] = (1.0, 3.0)
    captcha_backoff: Tuple[float, float] = (10.0, 20.0)
    browser_keyword_delay: Tuple[float, float] = (10.0, 20.0)
    api_keyword_delay: Tuple[float, float] = (1.0, 3.0)

    # Content fetching
    fetch_timeout: int = 30
    fetch_attempts: int = 3
    fetch_backoff: float = 2.0
    render_settle_delay: float = 2.0
    min_paragraph_length: int = 20

    # Telemetry
    telemetry_api_url: str = "https://www.googleapis.com/webmasters/v3/sites"
    telemetry_lag_days: int = 2
    keyword_window_days: int = 30
    telemetry_row_limit: int = 1000

    # Rank change detection
    comparison_days: int = 7
    drop_threshold: float = 2.0
    keyword_drop_threshold: float = 10.0
    rise_threshold: float = 2.0
    keyword_rise_threshold: float = 3.0

    # Keyword selection
    min_impressions: int = 1
    max_keywords: int = 3

    # Pipeline
    max_competitors_per_keyword: int = 10
    max_competitor_documents: int = 3
    max_semantic_keywords: int = 3
    semantic_timeout: float = 15.0
    pipeline_budget: float = 58.0

    # LLM providers
    llm_provider: str = None
    llm_temperature: float = 0.7
    groq_api_key: str = None
    groq_model: str = "llama-3.3-70b-versatile"
    openrouter_api_key: str = None
    openrouter_model: str = "google/gemini-flash-1.5"
    qwen_api_key: str = None
    qwen_model: str = "qwen-turbo"
    gemini_api_key: str = None
    gemini_model: str = "gemini-2.0-flash-lite"
    llm_request_timeout: int = 60
    app_url: str = "http://localhost:8000"

    # Telemetry credential used by the CLI when none is passed
    telemetry_access_token: str = None

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_format: str = "%(asctime)s - %(levelname)s - %(message)s"

    def __post_init__(self):
        if self.user_agents is None:
            self.user_agents = [
                "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
                "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
                "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:132.0) Gecko/20100101 Firefox/132.0"
            ]

        # Secrets and switches come from the environment when not given explicitly
        self.search_api_key = self.search_api_key or os.getenv("SERPER_API_KEY")
        self.telemetry_access_token = self.telemetry_access_token or os.getenv("SEARCH_CONSOLE_ACCESS_TOKEN")
        self.prefer_search_api = self.prefer_search_api or _env_flag("PREFER_SEARCH_API")
        self.llm_provider = (self.llm_provider or os.getenv("LLM_PROVIDER") or "groq").lower()
        self.groq_api_key = self.groq_api_key or os.getenv("GROQ_API_KEY")
        self.openrouter_api_key = self.openrouter_api_key or os.getenv("OPENROUTER_API_KEY")
        self.qwen_api_key = self.qwen_api_key or os.getenv("QWEN_API_KEY")
        self.gemini_api_key = self.gemini_api_key or os.getenv("GEMINI_API_KEY")
        self.gemini_model = os.getenv("GEMINI_MODEL", self.gemini_model)
        self.log_level = os.getenv("CONTENT_GAP_LOG_LEVEL", self.log_level).upper()

    @property
    def locale_language(self) -> str:
        """Accept-Language header matching the browser locale"""
        primary = self.browser_locale.split("-")[0]
        return f"{self.browser_locale},{primary};q=0.9,en-US;q=0.8,en;q=0.7"


# Default configuration instance
config = AnalyzerConfig()

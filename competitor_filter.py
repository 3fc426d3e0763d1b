"""
Exclusion rules for discovered competitor URLs
"""
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Iterable, Tuple

from utils import normalize_domain

logger = logging.getLogger(__name__)

# Never analyzed: encyclopedias, social networks, video hosts, search engines, image hosts
GLOBAL_EXCLUDED_DOMAINS = [
    "wikipedia.org",
    "wikipedia.com",
    "twitter.com",
    "x.com",
    "facebook.com",
    "instagram.com",
    "linkedin.com",
    "tiktok.com",
    "pinterest.com",
    "youtube.com",
    "youtu.be",
    "vimeo.com",
    "dailymotion.com",
    "google.com",
    "google.co.jp",
    "bing.com",
    "yahoo.co.jp",
    "yahoo.com",
    "imgur.com",
    "flickr.com",
]

# Large marketplaces, excluded unless the caller turns this list off
DEFAULT_EXCLUDED_DOMAINS = [
    "amazon.co.jp",
    "amazon.com",
    "rakuten.co.jp",
    "rakuten.com",
    "yahoo.co.jp",
]

EXCLUSION_REASONS = {
    "global": "System exclusion (encyclopedias, social media, video sites, search engines)",
    "default": "Default exclusion (major e-commerce sites)",
    "custom": "Excluded by user settings",
    "own_site": "Excluded (own site)",
}


def is_domain_excluded(domain: str, excluded_domains: Iterable[str]) -> bool:
    """True if domain or any parent domain of it is listed"""
    excluded = {d.lower() for d in excluded_domains}
    parts = domain.lower().split(".")
    return any(".".join(parts[i:]) in excluded for i in range(len(parts)))


def is_own_site(url: str, own_site_url: str) -> bool:
    """Same domain, or one is a subdomain of the other"""
    if not own_site_url:
        return False
    competitor = normalize_domain(url)
    own = normalize_domain(own_site_url)
    if not competitor or not own:
        return False
    return competitor == own or competitor.endswith(f".{own}") or own.endswith(f".{competitor}")


@dataclass
class CompetitorFilter:
    """Drops URLs that should never be treated as competing articles"""
    use_global_exclusion: bool = True
    use_default_exclusion: bool = True
    custom_excluded_domains: List[str] = field(default_factory=list)

    def exclusion_reason(self, url: str, own_site_url: str = None) -> str:
        """Reason key for excluding url, or an empty string to keep it"""
        domain = normalize_domain(url)
        if self.use_global_exclusion and is_domain_excluded(domain, GLOBAL_EXCLUDED_DOMAINS):
            return "global"
        if self.use_default_exclusion and is_domain_excluded(domain, DEFAULT_EXCLUDED_DOMAINS):
            return "default"
        if self.custom_excluded_domains and is_domain_excluded(domain, self.custom_excluded_domains):
            return "custom"
        if own_site_url and is_own_site(url, own_site_url):
            return "own_site"
        return ""

    def filter_urls(self, urls: Iterable[str], own_site_url: str = None) -> Tuple[List[str], List[Dict[str, str]]]:
        """Split urls into (kept, excluded) preserving order"""
        kept, excluded = [], []
        for url in urls:
            reason = self.exclusion_reason(url, own_site_url)
            if reason:
                excluded.append({"url": url, "reason": reason, "domain": normalize_domain(url)})
            else:
                kept.append(url)
        if excluded:
            logger.info(f"Excluded {len(excluded)} competitor URLs: {[e['domain'] for e in excluded]}")
        return kept, excluded

"""
Search performance telemetry client (Search Console search analytics)
"""
import logging
from datetime import date, timedelta
from typing import List, Dict, Any, Optional
from urllib.parse import quote

import aiohttp

from config import config as default_config
from errors import AuthorizationError, TelemetryError
from models import TimeSeriesPoint, KeywordRecord

logger = logging.getLogger(__name__)

DOMAIN_PREFIX = "sc-domain:"


def is_domain_property(site_identifier: str) -> bool:
    return site_identifier.startswith(DOMAIN_PREFIX)


def normalize_site_identifier(site_identifier: str) -> str:
    """Domain properties carry no trailing slash, URL-prefix properties always do"""
    if is_domain_property(site_identifier):
        return site_identifier.rstrip("/")
    return site_identifier if site_identifier.endswith("/") else f"{site_identifier}/"


def alternate_site_identifier(site_identifier: str) -> str:
    """Swap between the URL-prefix and domain property formats"""
    if is_domain_property(site_identifier):
        domain = site_identifier[len(DOMAIN_PREFIX):].strip("/")
        return f"https://{domain}/"
    host = site_identifier.split("://", 1)[-1].split("/", 1)[0]
    if host.startswith("www."):
        host = host[4:]
    return f"{DOMAIN_PREFIX}{host}"


def resolve_page_url(site_identifier: str, page_url: str) -> str:
    """Turn a path relative to the property into an absolute page URL"""
    if not page_url or page_url.startswith("http"):
        return page_url
    path = page_url if page_url.startswith("/") else f"/{page_url}"
    site = normalize_site_identifier(site_identifier)
    if is_domain_property(site):
        return f"https://{site[len(DOMAIN_PREFIX):]}{path}"
    return f"{site.rstrip('/')}{path}"


def reporting_window(days: int, lag_days: int = 2, today: date = None) -> tuple:
    """(start, end) ISO dates for the last `days` days of available data"""
    today = today or date.today()
    end = today - timedelta(days=lag_days)
    start = today - timedelta(days=days + lag_days)
    return start.isoformat(), end.isoformat()


class TelemetryClient:
    """Typed wrapper over the search analytics query endpoint"""

    def __init__(self, access_token: str, session: aiohttp.ClientSession = None, analyzer_config=None):
        self.access_token = access_token
        self.config = analyzer_config or default_config
        self._session = session
        self._owns_session = False

    async def __aenter__(self):
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.fetch_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
            self._owns_session = False

    async def get_page_time_series(self, site_identifier: str, page_url: str,
                                   start_date: str, end_date: str) -> List[TimeSeriesPoint]:
        """Daily position/impressions for a single page"""
        rows = await self.query(site_identifier, start_date, end_date, ["date"], page_url=page_url)
        points = [
            TimeSeriesPoint(
                date=row["keys"][0],
                position=row.get("position", 0.0),
                impressions=row.get("impressions", 0),
                clicks=row.get("clicks", 0),
                ctr=row.get("ctr", 0.0),
            )
            for row in rows
        ]
        return sorted(points, key=lambda p: p.date)

    async def get_keyword_data(self, site_identifier: str, page_url: Optional[str],
                               start_date: str, end_date: str,
                               row_limit: int = None, start_row: int = 0) -> List[KeywordRecord]:
        """Per-query aggregates for a page, or for the whole property when page_url is None"""
        rows = await self.query(site_identifier, start_date, end_date, ["query"],
                                page_url=page_url, row_limit=row_limit, start_row=start_row)
        return [self._keyword_record(row) for row in rows]

    async def get_keyword_time_series(self, site_identifier: str, page_url: str,
                                      start_date: str, end_date: str,
                                      keywords: List[str] = None) -> Dict[str, List[TimeSeriesPoint]]:
        """Daily rows per query, optionally restricted to the given keywords"""
        filters = None
        if keywords:
            filters = {
                "groupType": "or",
                "filters": [
                    {"dimension": "query", "operator": "equals", "expression": keyword}
                    for keyword in keywords
                ],
            }
        rows = await self.query(site_identifier, start_date, end_date, ["date", "query"],
                                page_url=page_url, row_limit=10000, extra_filter_group=filters)
        series: Dict[str, List[TimeSeriesPoint]] = {}
        for row in rows:
            day, keyword = row["keys"][0], row["keys"][1]
            series.setdefault(keyword, []).append(TimeSeriesPoint(
                date=day,
                position=row.get("position", 0.0),
                impressions=row.get("impressions", 0),
                clicks=row.get("clicks", 0),
                ctr=row.get("ctr", 0.0),
            ))
        for points in series.values():
            points.sort(key=lambda p: p.date)
        return series

    async def get_page_urls(self, site_identifier: str, start_date: str, end_date: str,
                            row_limit: int = 1000) -> List[Dict[str, Any]]:
        """Pages of the property that appeared in search results"""
        rows = await self.query(site_identifier, start_date, end_date, ["page"], row_limit=row_limit)
        return [
            {
                "url": resolve_page_url(site_identifier, row["keys"][0]),
                "impressions": row.get("impressions", 0),
                "clicks": row.get("clicks", 0),
                "position": row.get("position", 0.0),
            }
            for row in rows
        ]

    async def query(self, site_identifier: str, start_date: str, end_date: str,
                    dimensions: List[str], page_url: str = None, row_limit: int = None,
                    start_row: int = 0, extra_filter_group: Dict[str, Any] = None) -> List[Dict[str, Any]]:
        """Send one search analytics query and return its rows"""
        site = normalize_site_identifier(site_identifier)
        body: Dict[str, Any] = {
            "startDate": start_date,
            "endDate": end_date,
            "dimensions": dimensions,
            "rowLimit": row_limit or self.config.telemetry_row_limit,
        }
        if start_row > 0:
            body["startRow"] = start_row

        filter_groups = []
        if page_url:
            filter_groups.append({
                "filters": [{
                    "dimension": "page",
                    "operator": "equals",
                    "expression": resolve_page_url(site, page_url),
                }]
            })
        if extra_filter_group:
            filter_groups.append(extra_filter_group)
        if filter_groups:
            body["dimensionFilterGroups"] = filter_groups

        url = f"{self.config.telemetry_api_url}/{quote(site, safe='')}/searchAnalytics/query"
        logger.info(f"Telemetry query for {site}: dimensions={dimensions}, {start_date}..{end_date}")

        status, payload = await self._post(url, body)
        if status == 403:
            raise AuthorizationError(f"Telemetry access denied for {site}: {payload}", status=status)
        if status >= 400:
            raise TelemetryError(f"Telemetry query failed for {site}: HTTP {status} - {payload}", status=status)

        rows = (payload.get("rows") if isinstance(payload, dict) else None) or []
        logger.debug(f"Telemetry returned {len(rows)} rows")
        return rows

    async def _post(self, url: str, body: Dict[str, Any]):
        """POST the query and return (status, decoded JSON body)"""
        if self._session is None:
            raise TelemetryError("TelemetryClient must be used as an async context manager")
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        try:
            async with self._session.post(url, json=body, headers=headers) as response:
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = {"error": await response.text()}
                return response.status, payload
        except aiohttp.ClientError as e:
            raise TelemetryError(f"Telemetry request error: {e}") from e

    @staticmethod
    def _keyword_record(row: Dict[str, Any]) -> KeywordRecord:
        return KeywordRecord(
            keyword=row["keys"][0],
            position=row.get("position", 0.0),
            impressions=row.get("impressions", 0),
            clicks=row.get("clicks", 0),
            ctr=row.get("ctr", 0.0),
        )

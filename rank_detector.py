"""
Ranking change detection over page telemetry
"""
import logging
from typing import List

from config import config as default_config
from models import TimeSeriesPoint, KeywordRecord, RankChangeResult
from telemetry_client import TelemetryClient, reporting_window

logger = logging.getLogger(__name__)

TARGET_KEYWORD_COUNT = 3


def average_position(series: List[TimeSeriesPoint], days: int) -> float:
    """Impression-weighted mean position over the last `days` points"""
    if not series or days <= 0:
        return 0.0
    recent = series[-days:]
    total_impressions = sum(point.impressions for point in recent)
    if total_impressions <= 0:
        return 0.0
    weighted = sum(point.position * point.impressions for point in recent)
    return weighted / total_impressions


def _by_impressions(keywords: List[KeywordRecord]) -> List[KeywordRecord]:
    return sorted(keywords, key=lambda k: k.impressions, reverse=True)


class RankChangeDetector:
    """Flags ranking drops and rises for a page and picks keywords to analyze"""

    def __init__(self, analyzer_config=None):
        self.config = analyzer_config or default_config

    def detect_drop(self, series: List[TimeSeriesPoint], keywords: List[KeywordRecord],
                    comparison_days: int = None, drop_threshold: float = None,
                    keyword_drop_threshold: float = None) -> RankChangeResult:
        """Compare the recent average position with the last day's"""
        comparison_days = comparison_days or self.config.comparison_days
        drop_threshold = self.config.drop_threshold if drop_threshold is None else drop_threshold
        if keyword_drop_threshold is None:
            keyword_drop_threshold = self.config.keyword_drop_threshold

        base = average_position(series, comparison_days)
        current = average_position(series, 1)
        delta = current - base

        dropped = _by_impressions([k for k in keywords if k.position >= keyword_drop_threshold])
        detected = bool(series) and (delta >= drop_threshold or len(dropped) > 0)

        logger.info(
            f"Average position {base:.2f} -> {current:.2f} (delta {delta:+.2f}), "
            f"{len(dropped)} keywords at or below position {keyword_drop_threshold:g}"
        )
        return RankChangeResult(
            detected=detected,
            delta=delta,
            base_average_position=base,
            current_average_position=current,
            changed_keywords=dropped,
            target_keywords=[k.keyword for k in dropped[:TARGET_KEYWORD_COUNT]],
        )

    def detect_rise(self, series: List[TimeSeriesPoint], keywords: List[KeywordRecord],
                    comparison_days: int = None, rise_threshold: float = None,
                    keyword_rise_threshold: float = None) -> RankChangeResult:
        """Mirror of detect_drop: a falling position number is an improvement"""
        comparison_days = comparison_days or self.config.comparison_days
        rise_threshold = self.config.rise_threshold if rise_threshold is None else rise_threshold
        if keyword_rise_threshold is None:
            keyword_rise_threshold = self.config.keyword_rise_threshold

        base = average_position(series, comparison_days)
        current = average_position(series, 1)
        delta = base - current

        risen = _by_impressions([k for k in keywords if 0 < k.position <= keyword_rise_threshold])
        detected = bool(series) and (delta >= rise_threshold or len(risen) > 0)

        return RankChangeResult(
            detected=detected,
            delta=delta,
            base_average_position=base,
            current_average_position=current,
            changed_keywords=risen,
            target_keywords=[k.keyword for k in risen[:TARGET_KEYWORD_COUNT]],
        )

    async def detect_rank_drop(self, client: TelemetryClient, site_identifier: str, page_url: str,
                               comparison_days: int = None, drop_threshold: float = None,
                               keyword_drop_threshold: float = None) -> RankChangeResult:
        """Query telemetry for the comparison window and run detect_drop on it"""
        comparison_days = comparison_days or self.config.comparison_days
        start_date, end_date = reporting_window(comparison_days, self.config.telemetry_lag_days)

        series = await client.get_page_time_series(site_identifier, page_url, start_date, end_date)
        keywords = await client.get_keyword_data(site_identifier, page_url, start_date, end_date)

        result = self.detect_drop(series, keywords, comparison_days, drop_threshold, keyword_drop_threshold)
        result.base_date = start_date
        result.current_date = end_date
        return result

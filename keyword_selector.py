"""
Keyword normalization, scoring and selection
"""
import re
import logging
import unicodedata
from datetime import date
from typing import List, Dict, Optional, Iterable

from config import config as default_config
from models import KeywordRecord, PrioritizedKeyword, KeywordTrend, TimeSeriesPoint

logger = logging.getLogger(__name__)

MANUAL_PRIORITY = 100.0
RECENT_DROP_GAP_DAYS = 3


def normalize_keyword(keyword: str) -> str:
    """Width, case and whitespace insensitive key for a keyword"""
    # NFKC folds the ideographic space and other full-width forms
    folded = unicodedata.normalize("NFKC", keyword or "").lower()
    return re.sub(r"\s+", " ", folded).strip()


def score_keyword(record: KeywordRecord, min_impressions: int = 1) -> float:
    """Composite priority score, 0 for keywords below the impression floor"""
    if record.impressions < min_impressions:
        return 0.0

    impressions_score = min(record.impressions / 1000 * 50, 50)
    clicks_score = min(record.clicks / 100 * 30, 30)

    if record.position <= 5:
        position_score = 15
    elif record.position <= 10:
        position_score = 10
    elif record.position <= 20:
        position_score = 5
    else:
        position_score = 0

    ctr_score = min(record.ctr * 100 * 5, 5)
    return impressions_score + clicks_score + position_score + ctr_score


class KeywordSelector:
    """Builds the prioritized keyword set for a page"""

    def __init__(self, analyzer_config=None):
        self.config = analyzer_config or default_config

    def prioritize(self, keywords: Iterable[KeywordRecord], max_keywords: int = None,
                   min_impressions: int = None, multiplier: float = 1.0) -> List[PrioritizedKeyword]:
        """Score, sort and cap; keywords under the impression floor are dropped"""
        max_keywords = max_keywords or self.config.max_keywords
        if min_impressions is None:
            min_impressions = self.config.min_impressions

        prioritized = [
            PrioritizedKeyword(
                keyword=record.keyword,
                priority_score=score_keyword(record, min_impressions) * multiplier,
                impressions=record.impressions,
                clicks=record.clicks,
                position=record.position,
                ctr=record.ctr,
            )
            for record in keywords
            if record.impressions >= min_impressions
        ]
        prioritized.sort(key=lambda k: k.priority_score, reverse=True)
        return prioritized[:max_keywords]

    def prioritize_dropped(self, dropped: Iterable[KeywordRecord], max_keywords: int = None,
                           min_impressions: int = None) -> List[PrioritizedKeyword]:
        """Dropped keywords count double"""
        return self.prioritize(dropped, max_keywords, min_impressions, multiplier=2.0)

    @staticmethod
    def merge(candidates: Iterable[PrioritizedKeyword], max_keywords: int) -> List[PrioritizedKeyword]:
        """Dedupe by normalized keyword keeping the best-scoring variant"""
        best: Dict[str, PrioritizedKeyword] = {}
        for candidate in candidates:
            key = normalize_keyword(candidate.keyword)
            current = best.get(key)
            if current is None or candidate.priority_score > current.priority_score:
                best[key] = candidate
        merged = sorted(best.values(), key=lambda k: k.priority_score, reverse=True)
        return merged[:max_keywords]

    def select(self, keywords: List[KeywordRecord], dropped: List[KeywordRecord] = None,
               max_keywords: int = None, explicit: List[KeywordRecord] = None) -> List[PrioritizedKeyword]:
        """
        Final keyword set for a page

        An explicit list from the caller is used as-is with a fixed priority.
        Otherwise dropped keywords (doubled) and regular keywords are scored,
        merged by normalized form and capped at max_keywords.
        """
        max_keywords = max_keywords or self.config.max_keywords

        if explicit:
            logger.info(f"Using {len(explicit)} manually selected keywords")
            return [
                PrioritizedKeyword(
                    keyword=record.keyword,
                    priority_score=MANUAL_PRIORITY,
                    impressions=record.impressions,
                    clicks=record.clicks,
                    position=record.position,
                    ctr=record.ctr,
                )
                for record in explicit
            ]

        candidates: List[PrioritizedKeyword] = []
        if dropped:
            candidates.extend(self.prioritize_dropped(dropped, max_keywords * 2))
        candidates.extend(self.prioritize(keywords, max_keywords * 2))

        selected = self.merge(candidates, max_keywords)
        logger.info(
            f"Selected {len(selected)} keywords from {len(keywords)} candidates "
            f"({len(dropped or [])} dropped): {[k.keyword for k in selected]}"
        )
        return selected

    def group_and_select(self, keywords: List[KeywordRecord], max_groups: int = 5) -> List[PrioritizedKeyword]:
        """One representative per group of keywords sharing their first two words"""
        groups: Dict[str, List[KeywordRecord]] = {}
        for record in keywords:
            words = normalize_keyword(record.keyword).split(" ")
            groups.setdefault(" ".join(words[:2]), []).append(record)

        representatives = []
        for members in groups.values():
            top = self.prioritize(members, max_keywords=1, min_impressions=0)
            if top:
                representatives.append(top[0])
        representatives.sort(key=lambda k: k.priority_score, reverse=True)
        return representatives[:max_groups]


def top_ranking_keywords(keywords: List[KeywordRecord], limit: int = 5,
                         min_impressions: int = 10) -> List[KeywordRecord]:
    """Keywords the page still holds in positions 1-5"""
    holding = [k for k in keywords if 1 <= k.position <= 5 and k.impressions >= min_impressions]
    holding.sort(key=lambda k: k.position)
    return holding[:limit]


def build_keyword_trends(series: Dict[str, List[TimeSeriesPoint]],
                         selected: List[PrioritizedKeyword], end_date: str) -> List[KeywordTrend]:
    """Attach recent-drop metadata to each selected keyword's time series"""
    end = date.fromisoformat(end_date)
    trends = []
    for keyword in selected:
        points = series.get(keyword.keyword, [])
        if not points:
            # No rows at all in the window counts as having dropped out
            trends.append(KeywordTrend(
                keyword=keyword.keyword,
                points=[],
                has_recent_drop=True,
                last_position=keyword.position,
            ))
            continue

        last = points[-1]
        gap = (end - date.fromisoformat(last.date)).days
        trends.append(KeywordTrend(
            keyword=keyword.keyword,
            points=points,
            last_data_date=last.date,
            days_since_last_data=gap,
            has_recent_drop=gap >= RECENT_DROP_GAP_DAYS,
            last_position=last.position,
        ))
    return trends


def find_keyword(keywords: List[KeywordRecord], keyword: str) -> Optional[KeywordRecord]:
    key = normalize_keyword(keyword)
    for record in keywords:
        if normalize_keyword(record.keyword) == key:
            return record
    return None

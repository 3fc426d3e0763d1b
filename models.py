"""
Data models for the content gap analyzer
"""
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Optional


@dataclass
class TimeSeriesPoint:
    """One day of ranking telemetry for a page"""
    date: str
    position: float
    impressions: int
    clicks: int
    ctr: float


@dataclass
class KeywordRecord:
    """Raw telemetry row for a single search query"""
    keyword: str
    position: float
    impressions: int
    clicks: int
    ctr: float


@dataclass
class PrioritizedKeyword:
    """Keyword selected for deep analysis"""
    keyword: str
    priority_score: float
    impressions: int
    clicks: int
    position: float
    ctr: float = 0.0


@dataclass
class KeywordTrend:
    """Per-keyword time series with recent-drop metadata"""
    keyword: str
    points: List[TimeSeriesPoint]
    last_data_date: Optional[str] = None
    days_since_last_data: Optional[int] = None
    has_recent_drop: bool = False
    last_position: Optional[float] = None


@dataclass
class RankChangeResult:
    """Outcome of a drop or rise check over a page's telemetry"""
    detected: bool
    delta: float
    base_average_position: float
    current_average_position: float
    changed_keywords: List[KeywordRecord]
    target_keywords: List[str]
    base_date: Optional[str] = None
    current_date: Optional[str] = None


@dataclass
class SearchResultEntry:
    """A single organic search result"""
    url: str
    title: str
    position: int


@dataclass
class CompetitorSet:
    """Discovery result for one keyword"""
    keyword: str
    competitors: List[SearchResultEntry]
    own_position: Optional[int] = None
    total_results: int = 0
    error: Optional[str] = None
    source: Optional[str] = None


@dataclass
class Heading:
    level: int
    text: str


@dataclass
class ScrapedDocument:
    """Structured content extracted from a fetched page"""
    url: str
    title: str
    headings: List[Heading]
    paragraphs: List[str]
    lists: List[List[str]]
    full_text: str
    word_count: int
    has_structured_data: bool = False


@dataclass
class MissingHeading:
    heading: str
    level: int
    found_in: List[str]


@dataclass
class MissingKeyword:
    keyword: str
    frequency: int
    found_in: List[str]


@dataclass
class WordCountDelta:
    own: int
    average: int
    diff: int


@dataclass
class DiffReport:
    """Structural differences between the subject page and its competitors"""
    missing_headings: List[MissingHeading]
    missing_keywords: List[MissingKeyword]
    word_count_delta: WordCountDelta
    recommendations: List[str]


@dataclass
class QualityChecklist:
    """Heuristic quality signals for one document"""
    has_faq: bool = False
    has_summary: bool = False
    has_update_date: bool = False
    has_author_info: bool = False
    has_data_or_stats: bool = False
    has_structured_data: bool = False
    has_question_headings: bool = False
    has_bullet_points: bool = False
    has_tables: bool = False


@dataclass
class MissingElement:
    element: str
    description: str
    found_in: List[str]
    recommendation: str


@dataclass
class QualityReport:
    """Checklist comparison between the subject page and its competitors"""
    own: QualityChecklist
    competitors: List[QualityChecklist]
    missing_elements: List[MissingElement]
    recommendations: List[str]


@dataclass
class RecommendedAddition:
    section: str
    reason: str
    content: str
    competitor_urls: List[str] = field(default_factory=list)


@dataclass
class WhatToAddItem:
    item: str
    competitor_urls: List[str] = field(default_factory=list)


@dataclass
class KeywordAnalysis:
    """LLM explanation for a single keyword"""
    keyword: str
    why_ranking_dropped: str
    what_to_add: List[WhatToAddItem] = field(default_factory=list)
    status: str = "analyzed"


@dataclass
class SemanticDiffResult:
    """Qualitative gap analysis produced by an LLM backend"""
    why_competitors_rank_higher: str
    missing_content: List[str] = field(default_factory=list)
    recommended_additions: List[RecommendedAddition] = field(default_factory=list)
    keyword_specific_analysis: List[KeywordAnalysis] = field(default_factory=list)


@dataclass
class Stage1Result:
    """Telemetry and keyword selection output"""
    site_identifier: str
    page_url: str
    prioritized_keywords: List[PrioritizedKeyword]
    rank_change: Optional[RankChangeResult] = None
    top_ranking_keywords: List[KeywordRecord] = field(default_factory=list)
    keyword_trends: List[KeywordTrend] = field(default_factory=list)
    keyword_groups: List[PrioritizedKeyword] = field(default_factory=list)
    identifier_corrected: bool = False


@dataclass
class Stage2Result:
    """Competitor discovery output"""
    competitor_sets: List[CompetitorSet]
    unique_competitor_urls: List[str]
    excluded_urls: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class Stage3Result:
    """Fetch, diff and semantic analysis output"""
    diff_report: Optional[DiffReport] = None
    quality_report: Optional[QualityReport] = None
    semantic_diff: Optional[SemanticDiffResult] = None
    partial_results: bool = False
    subject_not_found: bool = False
    fetched_urls: List[str] = field(default_factory=list)
    failed_urls: List[str] = field(default_factory=list)
    error: Optional[str] = None
    elapsed: float = 0.0


@dataclass
class PipelineResult:
    """Everything one analysis run produced"""
    stage1: Stage1Result
    stage2: Optional[Stage2Result] = None
    stage3: Optional[Stage3Result] = None
    timestamp: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def to_dict(record) -> Dict[str, Any]:
    """Convert any model in this module into plain JSON-friendly data"""
    return asdict(record) if record is not None else None


def prioritized_keyword_from_dict(data: Dict[str, Any]) -> PrioritizedKeyword:
    return PrioritizedKeyword(
        keyword=data["keyword"],
        priority_score=data.get("priority_score", 0.0),
        impressions=data.get("impressions", 0),
        clicks=data.get("clicks", 0),
        position=data.get("position", 0.0),
        ctr=data.get("ctr", 0.0),
    )


def stage2_from_dict(data: Dict[str, Any]) -> Stage2Result:
    """Rebuild a discovery result sent back by a client between stages"""
    competitor_sets = [
        CompetitorSet(
            keyword=item["keyword"],
            competitors=[SearchResultEntry(**c) for c in item.get("competitors", [])],
            own_position=item.get("own_position"),
            total_results=item.get("total_results", 0),
            error=item.get("error"),
            source=item.get("source"),
        )
        for item in data.get("competitor_sets", [])
    ]
    return Stage2Result(
        competitor_sets=competitor_sets,
        unique_competitor_urls=list(data.get("unique_competitor_urls", [])),
        excluded_urls=list(data.get("excluded_urls", [])),
    )

"""
Pytest configuration and shared fixtures
"""
import pytest
import os
import tempfile

# Add project root to path
import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from config import AnalyzerConfig
from database import AnalysisRepository
from models import (
    ScrapedDocument, Heading, KeywordRecord, PrioritizedKeyword, TimeSeriesPoint,
    SearchResultEntry, CompetitorSet, Stage2Result
)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing"""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def test_config(temp_db, tmp_path):
    """Configuration with a temporary database and no waiting anywhere"""
    config = AnalyzerConfig()
    config.db_path = temp_db
    config.log_dir = str(tmp_path / "logs")
    config.settle_delay = (0.0, 0.0)
    config.captcha_backoff = (0.0, 0.0)
    config.browser_keyword_delay = (0.0, 0.0)
    config.api_keyword_delay = (0.0, 0.0)
    config.fetch_backoff = 0.0
    config.render_settle_delay = 0.0
    config.search_api_key = None
    config.prefer_search_api = False
    config.groq_api_key = None
    config.openrouter_api_key = None
    config.qwen_api_key = None
    config.gemini_api_key = None
    config.telemetry_access_token = None
    return config


@pytest.fixture
def repository(temp_db):
    """History repository with temporary database"""
    return AnalysisRepository(temp_db)


def make_document(url, headings=None, paragraphs=None, lists=None, full_text=None,
                  has_structured_data=False, title="Page"):
    headings = headings or []
    paragraphs = paragraphs or []
    text = full_text if full_text is not None else " ".join([h.text for h in headings] + paragraphs)
    return ScrapedDocument(
        url=url,
        title=title,
        headings=headings,
        paragraphs=paragraphs,
        lists=lists or [],
        full_text=text,
        word_count=len(text.split()),
        has_structured_data=has_structured_data,
    )


@pytest.fixture
def own_document():
    """The page being analyzed"""
    return make_document(
        "https://example.com/guide",
        headings=[Heading(1, "SEO pricing guide"), Heading(2, "What affects the price")],
        paragraphs=["SEO pricing depends on the scope of the work and the size of the site."],
    )


@pytest.fixture
def competitor_documents():
    """Two competing pages with sections the subject page lacks"""
    return [
        make_document(
            "https://rival-one.com/seo-cost",
            headings=[
                Heading(1, "SEO pricing guide"),
                Heading(2, "Monthly retainer plans"),
                Heading(2, "Frequently asked questions"),
            ],
            paragraphs=[
                "Monthly retainer plans usually include reporting, audits and content production.",
                "Frequently asked questions about retainer contracts are answered below.",
            ],
            lists=[["Audit", "Reporting", "Content"]],
            has_structured_data=True,
        ),
        make_document(
            "https://rival-two.com/pricing",
            headings=[Heading(1, "How much does SEO cost?"), Heading(2, "Monthly retainer plans")],
            paragraphs=["Retainer pricing ranges widely between agencies and freelancers."],
        ),
    ]


@pytest.fixture
def keyword_records():
    return [
        KeywordRecord(keyword="seo pricing", position=12.0, impressions=800, clicks=20, ctr=0.025),
        KeywordRecord(keyword="seo cost", position=4.0, impressions=300, clicks=30, ctr=0.1),
        KeywordRecord(keyword="seo agency fees", position=25.0, impressions=50, clicks=1, ctr=0.02),
        KeywordRecord(keyword="rare query", position=40.0, impressions=0, clicks=0, ctr=0.0),
    ]


@pytest.fixture
def page_series():
    """Seven days of telemetry ending with a worse position"""
    points = [
        TimeSeriesPoint(date=f"2024-05-0{day}", position=5.0, impressions=100, clicks=5, ctr=0.05)
        for day in range(1, 7)
    ]
    points.append(TimeSeriesPoint(date="2024-05-07", position=12.0, impressions=100, clicks=1, ctr=0.01))
    return points


@pytest.fixture
def prioritized_keywords():
    return [
        PrioritizedKeyword(keyword="seo pricing", priority_score=60.0, impressions=800, clicks=20, position=12.0),
        PrioritizedKeyword(keyword="seo cost", priority_score=40.0, impressions=300, clicks=30, position=4.0),
    ]


@pytest.fixture
def stage2_result():
    return Stage2Result(
        competitor_sets=[
            CompetitorSet(
                keyword="seo pricing",
                competitors=[
                    SearchResultEntry(url="https://rival-one.com/seo-cost", title="Rival one", position=1),
                    SearchResultEntry(url="https://rival-two.com/pricing", title="Rival two", position=2),
                ],
                own_position=5,
                total_results=10,
                source="browser",
            ),
            CompetitorSet(
                keyword="seo cost",
                competitors=[
                    SearchResultEntry(url="https://rival-two.com/pricing", title="Rival two", position=1),
                ],
                own_position=3,
                total_results=10,
                source="browser",
            ),
        ],
        unique_competitor_urls=["https://rival-one.com/seo-cost", "https://rival-two.com/pricing"],
    )


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()

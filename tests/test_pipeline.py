"""
Tests for the three-stage pipeline
"""
import asyncio
import pytest
from unittest.mock import AsyncMock, Mock, patch

from google.api_core.exceptions import ResourceExhausted

from competitor_filter import CompetitorFilter
from diff_engine import ContentDiffEngine
from errors import (
    AuthorizationError, CaptchaDetected, DiscoveryError, NoKeywordsError, NotFoundError, ProviderError, TelemetryError
)
from models import (
    CompetitorSet, SearchResultEntry, Stage2Result, PrioritizedKeyword, SemanticDiffResult, KeywordAnalysis
)
from monitoring import PipelineMetrics
from pipeline import PipelineOrchestrator
from semantic_diff import SemanticDiffEngine, GeminiBackend, placeholder_result, TIMEOUT_MESSAGE, SKIPPED_MESSAGE


class AsyncContext:
    """Wraps a mock so it can be used with `async with`"""

    def __init__(self, target):
        self.target = target
        self.exited = False

    async def __aenter__(self):
        return self.target

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.exited = True


def telemetry_mock(series, records, denied_sites=(), trend_error=None):
    client = Mock()

    def guard(site):
        if site in denied_sites:
            raise AuthorizationError(f"denied for {site}", status=403)

    async def page_series(site, *args, **kwargs):
        guard(site)
        return series

    async def keyword_data(site, *args, **kwargs):
        guard(site)
        return records

    client.get_page_time_series = AsyncMock(side_effect=page_series)
    client.get_keyword_data = AsyncMock(side_effect=keyword_data)
    client.get_keyword_time_series = AsyncMock(return_value={}, side_effect=trend_error)
    return client


def fetcher_mock(documents, errors=None):
    """Fetcher whose fetch_many answers from a url -> document map"""
    errors = errors or {}
    fetcher = Mock()

    async def fetch_many(urls, rendered=False):
        return [errors[u] if u in errors else documents[u] for u in urls]

    fetcher.fetch_many = AsyncMock(side_effect=fetch_many)
    return fetcher


def analysis(keyword, why="Competitors cover retainers."):
    return SemanticDiffResult(
        why_competitors_rank_higher=why,
        missing_content=["Retainer plans"],
        keyword_specific_analysis=[KeywordAnalysis(keyword=keyword, why_ranking_dropped="Missing retainers.")],
    )


def semantic_mock(side_effect=None, available=True):
    engine = Mock()
    engine.is_available.return_value = available
    engine.analyze_semantic_diff = AsyncMock(
        side_effect=side_effect or (lambda keyword, own, competitors, locale: analysis(keyword))
    )
    return engine


@pytest.fixture
def documents(own_document, competitor_documents):
    return {doc.url: doc for doc in [own_document] + competitor_documents}


def make_orchestrator(config, telemetry=None, discoverer=None, fetcher=None, semantic=None,
                      clock=None, metrics=None):
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    return PipelineOrchestrator(
        config,
        telemetry_factory=lambda token: AsyncContext(telemetry),
        discoverer_factory=lambda: AsyncContext(discoverer),
        fetcher_factory=lambda: AsyncContext(fetcher),
        semantic_engine=semantic or semantic_mock(available=False),
        competitor_filter=CompetitorFilter(),
        metrics=metrics or PipelineMetrics(),
        **kwargs
    )


class TestStage1:
    """Telemetry and keyword selection"""

    async def test_selects_keywords(self, test_config, page_series, keyword_records):
        telemetry = telemetry_mock(page_series, keyword_records)
        orchestrator = make_orchestrator(test_config, telemetry=telemetry)

        result = await orchestrator.run_stage1("token", "https://example.com/", "/guide")

        assert result.rank_change.detected
        assert [k.keyword for k in result.prioritized_keywords] == ["seo pricing", "seo cost", "seo agency fees"]
        assert [k.keyword for k in result.top_ranking_keywords] == ["seo cost"]
        assert len(result.keyword_trends) == 3
        assert {"seo pricing", "seo cost"} <= {k.keyword for k in result.keyword_groups}
        assert not result.identifier_corrected

    async def test_retries_with_alternate_identifier(self, test_config, page_series, keyword_records):
        telemetry = telemetry_mock(page_series, keyword_records, denied_sites=["https://example.com/"])
        orchestrator = make_orchestrator(test_config, telemetry=telemetry)

        result = await orchestrator.run_stage1("token", "https://example.com/", "/guide")

        assert result.identifier_corrected
        assert result.site_identifier == "sc-domain:example.com"

    async def test_original_error_when_both_formats_denied(self, test_config, page_series, keyword_records):
        telemetry = telemetry_mock(
            page_series, keyword_records, denied_sites=["https://example.com/", "sc-domain:example.com"]
        )
        metrics = PipelineMetrics()
        orchestrator = make_orchestrator(test_config, telemetry=telemetry, metrics=metrics)

        with pytest.raises(AuthorizationError) as exc_info:
            await orchestrator.run_stage1("token", "https://example.com/", "/guide")

        assert "https://example.com/" in str(exc_info.value)
        assert metrics.snapshot()["failures"] == {"stage1": 1}

    async def test_no_keywords(self, test_config, page_series):
        orchestrator = make_orchestrator(test_config, telemetry=telemetry_mock(page_series, []))
        with pytest.raises(NoKeywordsError):
            await orchestrator.run_stage1("token", "https://example.com/", "/guide")

    async def test_explicit_keywords_without_telemetry_rows(self, test_config, page_series):
        orchestrator = make_orchestrator(test_config, telemetry=telemetry_mock(page_series, []))

        result = await orchestrator.run_stage1("token", "https://example.com/", "/guide", keywords=["seo audit"])

        assert [k.keyword for k in result.prioritized_keywords] == ["seo audit"]
        assert result.prioritized_keywords[0].position == 0.0

    async def test_explicit_keywords_reuse_telemetry(self, test_config, page_series, keyword_records):
        orchestrator = make_orchestrator(test_config, telemetry=telemetry_mock(page_series, keyword_records))

        result = await orchestrator.run_stage1("token", "https://example.com/", "/guide", keywords=["SEO Cost"])

        assert result.prioritized_keywords[0].keyword == "seo cost"
        assert result.prioritized_keywords[0].impressions == 300

    async def test_trend_failure_is_not_fatal(self, test_config, page_series, keyword_records):
        telemetry = telemetry_mock(page_series, keyword_records, trend_error=TelemetryError("HTTP 500", status=500))
        orchestrator = make_orchestrator(test_config, telemetry=telemetry)

        result = await orchestrator.run_stage1("token", "https://example.com/", "/guide")

        assert result.keyword_trends == []
        assert result.prioritized_keywords


class TestListPages:

    async def test_sorted_by_impressions(self, test_config):
        telemetry = Mock()
        telemetry.get_page_urls = AsyncMock(return_value=[
            {"url": "https://example.com/a", "impressions": 5, "clicks": 1, "position": 3.0},
            {"url": "https://example.com/b", "impressions": 90, "clicks": 4, "position": 8.0},
        ])
        orchestrator = make_orchestrator(test_config, telemetry=telemetry)

        pages = await orchestrator.list_pages("token", "sc-domain:example.com")

        assert [p["url"] for p in pages] == ["https://example.com/b", "https://example.com/a"]
        assert telemetry.get_page_urls.await_args.args[0] == "sc-domain:example.com"


class TestStage2:
    """Competitor discovery"""

    def discoverer(self, responses):
        discoverer = Mock()
        discoverer.wait_before_next_keyword = AsyncMock(return_value=0.0)

        async def discover(keyword, own_url, **kwargs):
            response = responses[keyword]
            if isinstance(response, Exception):
                raise response
            return response

        discoverer.discover = AsyncMock(side_effect=discover)
        return discoverer

    async def test_discovers_filters_and_dedupes(self, test_config, prioritized_keywords):
        discoverer = self.discoverer({
            "seo pricing": CompetitorSet(
                keyword="seo pricing",
                competitors=[
                    SearchResultEntry(url="https://rival-one.com/seo-cost", title="One", position=1),
                    SearchResultEntry(url="https://www.youtube.com/watch", title="Video", position=2),
                    SearchResultEntry(url="https://rival-two.com/pricing", title="Two", position=3),
                ],
                own_position=5,
                source="browser",
            ),
            "seo cost": CompetitorSet(
                keyword="seo cost",
                competitors=[SearchResultEntry(url="https://rival-two.com/pricing", title="Two", position=1)],
                own_position=3,
                source="browser",
            ),
        })
        orchestrator = make_orchestrator(test_config, discoverer=discoverer)

        result = await orchestrator.run_stage2("https://example.com/guide", prioritized_keywords)

        assert result.unique_competitor_urls == ["https://rival-one.com/seo-cost", "https://rival-two.com/pricing"]
        assert result.excluded_urls[0]["reason"] == "global"
        assert [c.url for c in result.competitor_sets[0].competitors] == [
            "https://rival-one.com/seo-cost", "https://rival-two.com/pricing"
        ]
        assert discoverer.wait_before_next_keyword.await_count == 1
        assert discoverer.discover.await_args_list[0].kwargs["known_position"] == 12

    async def test_rank_one_is_skipped(self, test_config):
        keywords = [PrioritizedKeyword(keyword="brand", priority_score=50, impressions=100, clicks=50, position=1.0)]
        discoverer = self.discoverer({})
        orchestrator = make_orchestrator(test_config, discoverer=discoverer)

        result = await orchestrator.run_stage2("https://example.com/", keywords)

        discoverer.discover.assert_not_awaited()
        assert result.competitor_sets[0].own_position == 1
        assert result.unique_competitor_urls == []

    async def test_errors_are_embedded(self, test_config, prioritized_keywords):
        discoverer = self.discoverer({
            "seo pricing": CaptchaDetected("blocked"),
            "seo cost": DiscoveryError("quota exceeded"),
        })
        metrics = PipelineMetrics()
        orchestrator = make_orchestrator(test_config, discoverer=discoverer, metrics=metrics)

        result = await orchestrator.run_stage2("https://example.com/guide", prioritized_keywords)

        assert result.competitor_sets[0].error == CaptchaDetected.default_user_message
        assert result.competitor_sets[1].error == "quota exceeded"
        assert result.unique_competitor_urls == []
        assert metrics.snapshot()["discovery_errors"] == 2


class TestStage3:
    """Fetch, diff and semantic analysis under the budget"""

    async def test_no_competitors_skips_diff(self, test_config, prioritized_keywords):
        fetcher = fetcher_mock({})
        orchestrator = make_orchestrator(test_config, fetcher=fetcher)

        result = await orchestrator.run_stage3(
            "https://example.com/guide", prioritized_keywords, Stage2Result(competitor_sets=[], unique_competitor_urls=[])
        )

        assert result.diff_report is None
        assert not result.partial_results
        fetcher.fetch_many.assert_not_awaited()

    async def test_subject_not_found(self, test_config, prioritized_keywords, stage2_result, documents):
        fetcher = fetcher_mock(documents, errors={"https://example.com/guide": NotFoundError("404")})
        orchestrator = make_orchestrator(test_config, fetcher=fetcher)

        result = await orchestrator.run_stage3("https://example.com/guide", prioritized_keywords, stage2_result)

        assert result.subject_not_found
        assert result.diff_report is None
        assert result.error == NotFoundError.default_user_message

    async def test_diff_without_semantic_provider(self, test_config, prioritized_keywords, stage2_result, documents):
        orchestrator = make_orchestrator(test_config, fetcher=fetcher_mock(documents))

        result = await orchestrator.run_stage3("https://example.com/guide", prioritized_keywords, stage2_result)

        assert result.diff_report.missing_headings[0].heading == "Monthly retainer plans"
        assert result.quality_report.missing_elements
        assert result.semantic_diff is None
        assert not result.partial_results
        assert result.fetched_urls == [
            "https://example.com/guide", "https://rival-one.com/seo-cost", "https://rival-two.com/pricing"
        ]

    async def test_failed_competitor_is_skipped(self, test_config, prioritized_keywords, stage2_result, documents):
        fetcher = fetcher_mock(documents, errors={"https://rival-two.com/pricing": TelemetryError("boom")})
        orchestrator = make_orchestrator(test_config, fetcher=fetcher)

        result = await orchestrator.run_stage3("https://example.com/guide", prioritized_keywords, stage2_result)

        assert result.failed_urls == ["https://rival-two.com/pricing"]
        assert result.diff_report is not None

    async def test_semantic_per_keyword(self, test_config, prioritized_keywords, stage2_result, documents):
        semantic = semantic_mock()
        orchestrator = make_orchestrator(test_config, fetcher=fetcher_mock(documents), semantic=semantic)

        result = await orchestrator.run_stage3(
            "https://example.com/guide", prioritized_keywords, stage2_result, locale="en"
        )

        assert result.semantic_diff.why_competitors_rank_higher == "Competitors cover retainers."
        assert [k.keyword for k in result.semantic_diff.keyword_specific_analysis] == ["seo pricing", "seo cost"]
        second_call = semantic.analyze_semantic_diff.await_args_list[1]
        assert [d.url for d in second_call.args[2]] == ["https://rival-two.com/pricing"]
        assert second_call.args[3] == "en"

    async def test_skip_semantic(self, test_config, prioritized_keywords, stage2_result, documents):
        semantic = semantic_mock()
        orchestrator = make_orchestrator(test_config, fetcher=fetcher_mock(documents), semantic=semantic)

        result = await orchestrator.run_stage3(
            "https://example.com/guide", prioritized_keywords, stage2_result, skip_semantic=True
        )

        assert result.diff_report is not None
        assert result.semantic_diff is None
        semantic.analyze_semantic_diff.assert_not_awaited()

    async def test_keywords_past_cap_are_skipped(self, test_config, prioritized_keywords, stage2_result, documents):
        test_config.max_semantic_keywords = 1
        semantic = semantic_mock()
        orchestrator = make_orchestrator(test_config, fetcher=fetcher_mock(documents), semantic=semantic)

        result = await orchestrator.run_stage3("https://example.com/guide", prioritized_keywords, stage2_result)

        skipped = result.semantic_diff.keyword_specific_analysis[1]
        assert skipped.status == "skipped"
        assert skipped.why_ranking_dropped == SKIPPED_MESSAGE
        assert semantic.analyze_semantic_diff.await_count == 1
        assert not result.partial_results

    async def test_budget_expires_after_diff(self, test_config, prioritized_keywords, stage2_result, documents,
                                             fake_clock):
        semantic = semantic_mock()
        orchestrator = make_orchestrator(
            test_config, fetcher=fetcher_mock(documents), semantic=semantic, clock=fake_clock
        )
        real_engine = ContentDiffEngine()

        def slow_diff(own, competitors):
            fake_clock.advance(test_config.pipeline_budget + 1)
            return real_engine.analyze(own, competitors)

        orchestrator.diff_engine = Mock()
        orchestrator.diff_engine.analyze = Mock(side_effect=slow_diff)

        result = await orchestrator.run_stage3("https://example.com/guide", prioritized_keywords, stage2_result)

        assert result.partial_results
        assert result.diff_report is not None
        assert result.semantic_diff is None
        assert result.elapsed == test_config.pipeline_budget + 1
        semantic.analyze_semantic_diff.assert_not_awaited()

    async def test_budget_expires_between_keywords(self, test_config, prioritized_keywords, stage2_result,
                                                   documents, fake_clock):
        def first_uses_budget(keyword, own, competitors, locale):
            fake_clock.advance(test_config.pipeline_budget)
            return analysis(keyword)

        semantic = semantic_mock(side_effect=first_uses_budget)
        orchestrator = make_orchestrator(
            test_config, fetcher=fetcher_mock(documents), semantic=semantic, clock=fake_clock
        )

        result = await orchestrator.run_stage3("https://example.com/guide", prioritized_keywords, stage2_result)

        assert result.partial_results
        entries = result.semantic_diff.keyword_specific_analysis
        assert entries[0].status == "analyzed"
        assert entries[1].status == "skipped"

    async def test_semantic_timeout_gives_placeholder(self, test_config, prioritized_keywords, stage2_result,
                                                      documents):
        test_config.semantic_timeout = 0.01

        async def hang(keyword, own, competitors, locale):
            await asyncio.sleep(5)

        semantic = semantic_mock(side_effect=hang)
        orchestrator = make_orchestrator(test_config, fetcher=fetcher_mock(documents), semantic=semantic)

        result = await orchestrator.run_stage3("https://example.com/guide", prioritized_keywords[:1], stage2_result)

        entry = result.semantic_diff.keyword_specific_analysis[0]
        assert entry.status == "timeout"
        assert entry.why_ranking_dropped == TIMEOUT_MESSAGE
        assert result.semantic_diff.why_competitors_rank_higher == ""

    async def test_provider_error_keeps_diff(self, test_config, prioritized_keywords, stage2_result, documents):
        test_config.gemini_api_key = "gemini-key"
        engine = SemanticDiffEngine(test_config, backend=GeminiBackend(test_config))
        orchestrator = make_orchestrator(test_config, fetcher=fetcher_mock(documents), semantic=engine)

        with patch("semantic_diff.genai") as genai:
            genai.GenerativeModel.return_value.generate_content.side_effect = ResourceExhausted("quota exceeded")
            result = await orchestrator.run_stage3(
                "https://example.com/guide", prioritized_keywords, stage2_result, locale="en"
            )

        assert result.diff_report is not None
        assert result.quality_report is not None
        entries = result.semantic_diff.keyword_specific_analysis
        assert [e.keyword for e in entries] == ["seo pricing", "seo cost"]
        assert all(e.status == "failed" for e in entries)
        assert all(e.why_ranking_dropped == ProviderError.default_user_message for e in entries)

    async def test_parse_failure_keeps_result_shape(self, test_config, prioritized_keywords, stage2_result,
                                                    documents):
        semantic = semantic_mock(side_effect=lambda keyword, own, competitors, locale: placeholder_result(keyword))
        orchestrator = make_orchestrator(test_config, fetcher=fetcher_mock(documents), semantic=semantic)

        result = await orchestrator.run_stage3("https://example.com/guide", prioritized_keywords, stage2_result)

        assert result.semantic_diff.why_competitors_rank_higher == ""
        assert all(e.status == "failed" for e in result.semantic_diff.keyword_specific_analysis)


class TestFullRun:

    async def test_run_all_stages(self, test_config, page_series, keyword_records, documents):
        telemetry = telemetry_mock(page_series, keyword_records)
        discoverer = Mock()
        discoverer.wait_before_next_keyword = AsyncMock(return_value=0.0)
        discoverer.discover = AsyncMock(side_effect=lambda keyword, own_url, **kwargs: CompetitorSet(
            keyword=keyword,
            competitors=[SearchResultEntry(url="https://rival-one.com/seo-cost", title="One", position=1)],
            own_position=4,
            source="browser",
        ))
        metrics = PipelineMetrics()
        orchestrator = make_orchestrator(
            test_config, telemetry=telemetry, discoverer=discoverer, fetcher=fetcher_mock(documents),
            metrics=metrics,
        )

        result = await orchestrator.run("token", "https://example.com/", "/guide")

        assert discoverer.discover.await_args_list[0].args[1] == "https://example.com/guide"
        assert result.stage2.unique_competitor_urls == ["https://rival-one.com/seo-cost"]
        assert result.stage3.diff_report is not None
        assert result.timestamp
        assert metrics.snapshot()["runs"] == 1
        assert set(result.to_dict()) == {"stage1", "stage2", "stage3", "timestamp"}

"""
Three-stage content gap analysis pipeline

Stage 1 reads telemetry and selects keywords, stage 2 discovers competing
pages for each keyword, stage 3 fetches the pages and runs the structural,
quality and semantic comparisons under a wall-clock budget.
"""
import time
import asyncio
import logging
from datetime import datetime
from typing import List, Dict, Any, Optional, Callable

from competitor_filter import CompetitorFilter
from config import config as default_config
from content_fetcher import ContentFetcher
from diff_engine import ContentDiffEngine
from errors import (
    ContentGapError, AuthorizationError, TelemetryError, NoKeywordsError, NotFoundError, CaptchaDetected
)
from keyword_selector import KeywordSelector, top_ranking_keywords, build_keyword_trends, find_keyword
from models import (
    KeywordRecord, PrioritizedKeyword, CompetitorSet, ScrapedDocument, KeywordAnalysis, SemanticDiffResult,
    Stage1Result, Stage2Result, Stage3Result, PipelineResult
)
from monitoring import PipelineMetrics
from quality_checker import QualitySignalChecker
from rank_detector import RankChangeDetector
from search_discoverer import SearchResultDiscoverer
from semantic_diff import (
    SemanticDiffEngine, placeholder_analysis, is_placeholder,
    SKIPPED_MESSAGE, TIMEOUT_MESSAGE, NO_COMPETITORS_MESSAGE
)
from telemetry_client import TelemetryClient, alternate_site_identifier, reporting_window, resolve_page_url
from utils import Deadline, PerformanceMonitor, normalize_url

logger = logging.getLogger(__name__)

NO_KEYWORD_COMPETITORS_MESSAGE = "No competing pages were found for this keyword."


class PipelineOrchestrator:
    """Runs the analysis stages; every collaborator can be swapped for tests"""

    def __init__(self, analyzer_config=None,
                 telemetry_factory: Callable[[str], TelemetryClient] = None,
                 discoverer_factory: Callable[[], SearchResultDiscoverer] = None,
                 fetcher_factory: Callable[[], ContentFetcher] = None,
                 semantic_engine: SemanticDiffEngine = None,
                 competitor_filter: CompetitorFilter = None,
                 metrics: PipelineMetrics = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = analyzer_config or default_config
        self.telemetry_factory = telemetry_factory or (
            lambda token: TelemetryClient(token, analyzer_config=self.config)
        )
        self.discoverer_factory = discoverer_factory or (lambda: SearchResultDiscoverer(self.config))
        self.fetcher_factory = fetcher_factory or (lambda: ContentFetcher(self.config))
        self.semantic_engine = semantic_engine or SemanticDiffEngine(self.config)
        self.competitor_filter = competitor_filter or CompetitorFilter()
        self.metrics = metrics or PipelineMetrics()
        self.clock = clock

        self.rank_detector = RankChangeDetector(self.config)
        self.keyword_selector = KeywordSelector(self.config)
        self.diff_engine = ContentDiffEngine()
        self.quality_checker = QualitySignalChecker()
        self.performance_monitor = PerformanceMonitor()

    # Stage 1

    async def run_stage1(self, access_token: str, site_identifier: str, page_url: str,
                         keywords: List[str] = None) -> Stage1Result:
        """
        Telemetry and keyword selection

        A 403 is retried once with the other property format; if that also
        fails the original error propagates.
        """
        self.performance_monitor.start_timer("stage1")
        try:
            async with self.telemetry_factory(access_token) as client:
                try:
                    result = await self._stage1(client, site_identifier, page_url, keywords)
                except AuthorizationError as original:
                    alternate = alternate_site_identifier(site_identifier)
                    logger.warning(f"Access denied for {site_identifier}, retrying as {alternate}")
                    try:
                        result = await self._stage1(client, alternate, page_url, keywords)
                    except AuthorizationError:
                        raise original
                    result.identifier_corrected = True
                    logger.info(f"Site identifier corrected to {alternate}")
            return result
        except ContentGapError:
            self.metrics.record_failure("stage1")
            raise
        finally:
            self.metrics.record_stage("stage1", self.performance_monitor.end_timer("stage1"))

    async def _stage1(self, client: TelemetryClient, site_identifier: str, page_url: str,
                      keywords: Optional[List[str]]) -> Stage1Result:
        rank_change = await self.rank_detector.detect_rank_drop(client, site_identifier, page_url)

        start_date, end_date = reporting_window(self.config.keyword_window_days, self.config.telemetry_lag_days)
        records = await client.get_keyword_data(site_identifier, page_url, start_date, end_date)
        logger.info(f"Found {len(records)} keywords for {page_url}")

        explicit = None
        if keywords:
            explicit = [
                find_keyword(records, keyword)
                or KeywordRecord(keyword=keyword, position=0.0, impressions=0, clicks=0, ctr=0.0)
                for keyword in keywords
            ]
        elif not records:
            raise NoKeywordsError(f"No keywords found for {page_url} between {start_date} and {end_date}")

        prioritized = self.keyword_selector.select(records, rank_change.changed_keywords, explicit=explicit)

        trends = []
        try:
            series = await client.get_keyword_time_series(
                site_identifier, page_url, start_date, end_date, [k.keyword for k in prioritized]
            )
            trends = build_keyword_trends(series, prioritized, end_date)
        except AuthorizationError:
            raise
        except TelemetryError as e:
            logger.warning(f"Keyword time series unavailable, continuing without trends: {e}")

        return Stage1Result(
            site_identifier=site_identifier,
            page_url=page_url,
            prioritized_keywords=prioritized,
            rank_change=rank_change,
            top_ranking_keywords=top_ranking_keywords(records),
            keyword_trends=trends,
            keyword_groups=self.keyword_selector.group_and_select(records),
        )

    # Stage 2

    async def run_stage2(self, own_url: str, keywords: List[PrioritizedKeyword],
                         api_preferred: bool = None) -> Stage2Result:
        """Discover competitors keyword by keyword; failures are embedded, never raised"""
        self.performance_monitor.start_timer("stage2")
        competitor_sets: List[CompetitorSet] = []
        excluded: List[Dict[str, str]] = []
        searches = 0

        try:
            async with self.discoverer_factory() as discoverer:
                for keyword in keywords:
                    if 0 < keyword.position <= 1:
                        logger.info(f"'{keyword.keyword}' already ranks first, skipping discovery")
                        competitor_set = CompetitorSet(keyword=keyword.keyword, competitors=[], own_position=1)
                    else:
                        if searches > 0:
                            await discoverer.wait_before_next_keyword(api_preferred)
                        searches += 1
                        competitor_set = await self._discover(discoverer, keyword, own_url, api_preferred)

                    if competitor_set.competitors:
                        kept, dropped = self.competitor_filter.filter_urls(
                            [c.url for c in competitor_set.competitors], own_url
                        )
                        kept_urls = set(kept)
                        competitor_set.competitors = [c for c in competitor_set.competitors if c.url in kept_urls]
                        excluded.extend(dropped)

                    self.metrics.record_discovery(competitor_set)
                    competitor_sets.append(competitor_set)
        finally:
            self.metrics.record_stage("stage2", self.performance_monitor.end_timer("stage2"))

        unique_urls: List[str] = []
        seen = set()
        for competitor_set in competitor_sets:
            for competitor in competitor_set.competitors:
                key = normalize_url(competitor.url)
                if key not in seen:
                    seen.add(key)
                    unique_urls.append(competitor.url)

        logger.info(
            f"Discovery finished: {len(competitor_sets)} keywords, {len(unique_urls)} unique competitor URLs"
        )
        return Stage2Result(competitor_sets=competitor_sets, unique_competitor_urls=unique_urls,
                            excluded_urls=excluded)

    async def _discover(self, discoverer: SearchResultDiscoverer, keyword: PrioritizedKeyword,
                        own_url: str, api_preferred: Optional[bool]) -> CompetitorSet:
        known_position = round(keyword.position) if keyword.position > 0 else None
        try:
            return await discoverer.discover(
                keyword.keyword, own_url, api_preferred=api_preferred, known_position=known_position
            )
        except CaptchaDetected as e:
            logger.warning(f"Discovery blocked by CAPTCHA for '{keyword.keyword}'")
            message = e.user_message
        except ContentGapError as e:
            logger.error(f"Discovery failed for '{keyword.keyword}': {e}")
            message = str(e)
        except Exception as e:
            logger.error(f"Unexpected discovery error for '{keyword.keyword}': {e}")
            message = str(e) or type(e).__name__
        return CompetitorSet(keyword=keyword.keyword, competitors=[], error=message)

    # Stage 3

    async def run_stage3(self, own_url: str, keywords: List[PrioritizedKeyword], stage2: Stage2Result,
                         locale: str = "ja", skip_semantic: bool = False) -> Stage3Result:
        """
        Fetch, diff and semantic analysis under the pipeline budget

        The budget is checked between phases. Once it runs out the result
        carries whatever was finished with partial_results set.
        """
        deadline = Deadline(self.config.pipeline_budget, self.clock)
        result = Stage3Result()
        competitor_urls = stage2.unique_competitor_urls[:self.config.max_competitor_documents]

        try:
            if not competitor_urls:
                logger.info("No competitor URLs to compare against, skipping diff")
                return result

            async with self.fetcher_factory() as fetcher:
                await self._stage3(fetcher, deadline, result, own_url, competitor_urls,
                                   keywords, stage2, locale, skip_semantic)
            return result
        finally:
            result.elapsed = deadline.elapsed()
            self.metrics.record_stage("stage3", result.elapsed)
            self.metrics.record_stage3(result)
            logger.info(
                f"Stage 3 finished in {result.elapsed:.2f}s "
                f"(partial={result.partial_results}, subject_not_found={result.subject_not_found})"
            )

    async def _stage3(self, fetcher: ContentFetcher, deadline: Deadline, result: Stage3Result,
                      own_url: str, competitor_urls: List[str], keywords: List[PrioritizedKeyword],
                      stage2: Stage2Result, locale: str, skip_semantic: bool):
        outcomes = await fetcher.fetch_many([own_url] + competitor_urls)
        own_outcome = outcomes[0]

        if isinstance(own_outcome, NotFoundError):
            logger.warning(f"Subject page returned 404: {own_url}")
            result.subject_not_found = True
            result.error = own_outcome.user_message
            result.failed_urls.append(own_url)
            return
        if isinstance(own_outcome, BaseException):
            logger.error(f"Could not fetch subject page {own_url}: {own_outcome}")
            result.error = getattr(own_outcome, "user_message", str(own_outcome))
            result.failed_urls.append(own_url)
            return

        own_document: ScrapedDocument = own_outcome
        result.fetched_urls.append(own_url)
        documents: Dict[str, ScrapedDocument] = {}
        for url, outcome in zip(competitor_urls, outcomes[1:]):
            if isinstance(outcome, BaseException):
                logger.warning(f"Skipping competitor {url}: {outcome}")
                result.failed_urls.append(url)
            else:
                documents[url] = outcome
                result.fetched_urls.append(url)

        if not documents:
            result.error = "None of the competitor pages could be retrieved."
            return

        if self._out_of_budget(deadline, result, "before diff"):
            return

        competitors = list(documents.values())
        result.diff_report = self.diff_engine.analyze(own_document, competitors)
        result.quality_report = self.quality_checker.compare(own_document, competitors)

        if skip_semantic or not keywords:
            return
        if not self.semantic_engine.is_available():
            logger.info("No LLM provider configured, skipping semantic analysis")
            return
        if self._out_of_budget(deadline, result, "before semantic analysis"):
            return

        result.semantic_diff = await self._semantic_phase(
            fetcher, deadline, result, own_document, documents, keywords, stage2, locale
        )

    async def _semantic_phase(self, fetcher: ContentFetcher, deadline: Deadline, result: Stage3Result,
                              own_document: ScrapedDocument, documents: Dict[str, ScrapedDocument],
                              keywords: List[PrioritizedKeyword], stage2: Stage2Result,
                              locale: str) -> Optional[SemanticDiffResult]:
        """One analysis per keyword, sequentially, each under its own timeout"""
        analyses: List[KeywordAnalysis] = []
        first: Optional[SemanticDiffResult] = None
        competitors_by_keyword = {cs.keyword: cs for cs in stage2.competitor_sets}

        for index, keyword in enumerate(keywords):
            name = keyword.keyword
            if index >= self.config.max_semantic_keywords or deadline.expired():
                if index < self.config.max_semantic_keywords:
                    result.partial_results = True
                analyses.append(placeholder_analysis(name, SKIPPED_MESSAGE, status="skipped"))
                continue

            competitor_set = competitors_by_keyword.get(name)
            urls = [c.url for c in competitor_set.competitors][:self.config.max_competitor_documents] \
                if competitor_set else []
            if not urls:
                analyses.append(placeholder_analysis(name, NO_KEYWORD_COMPETITORS_MESSAGE, status="skipped"))
                continue

            keyword_documents = await self._documents_for(fetcher, deadline, result, documents, urls)
            if not keyword_documents:
                analyses.append(placeholder_analysis(name, NO_COMPETITORS_MESSAGE))
                continue

            timeout = deadline.bound(self.config.semantic_timeout)
            try:
                semantic = await asyncio.wait_for(
                    self.semantic_engine.analyze_semantic_diff(name, own_document, keyword_documents, locale),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Semantic analysis for '{name}' timed out after {timeout:.1f}s")
                analyses.append(placeholder_analysis(name, TIMEOUT_MESSAGE, status="timeout"))
                continue
            except ContentGapError as e:
                logger.error(f"Semantic analysis failed for '{name}': {e}")
                analyses.append(placeholder_analysis(name, e.user_message))
                continue

            if first is None and not is_placeholder(semantic):
                first = semantic
            analyses.extend(semantic.keyword_specific_analysis)

        if not analyses:
            return None
        if first is None:
            return SemanticDiffResult(why_competitors_rank_higher="", keyword_specific_analysis=analyses)
        return SemanticDiffResult(
            why_competitors_rank_higher=first.why_competitors_rank_higher,
            missing_content=first.missing_content,
            recommended_additions=first.recommended_additions,
            keyword_specific_analysis=analyses,
        )

    async def _documents_for(self, fetcher: ContentFetcher, deadline: Deadline, result: Stage3Result,
                             documents: Dict[str, ScrapedDocument], urls: List[str]) -> List[ScrapedDocument]:
        """Documents for urls, fetching the ones not seen yet while budget remains"""
        missing = [u for u in urls if u not in documents and u not in result.failed_urls]
        if missing and not deadline.expired():
            try:
                outcomes = await asyncio.wait_for(
                    fetcher.fetch_many(missing),
                    timeout=deadline.bound(self.config.fetch_timeout),
                )
            except asyncio.TimeoutError:
                logger.warning(f"Fetching {len(missing)} keyword competitors ran out of time")
                outcomes = []
            for url, outcome in zip(missing, outcomes):
                if isinstance(outcome, BaseException):
                    result.failed_urls.append(url)
                else:
                    documents[url] = outcome
                    result.fetched_urls.append(url)
        return [documents[u] for u in urls if u in documents]

    def _out_of_budget(self, deadline: Deadline, result: Stage3Result, phase: str) -> bool:
        if deadline.expired():
            logger.warning(f"Budget of {deadline.budget_seconds:.0f}s exhausted {phase}, returning partial results")
            result.partial_results = True
            return True
        return False

    async def list_pages(self, access_token: str, site_identifier: str) -> List[Dict[str, Any]]:
        """Pages of the property that appeared in search results, most impressions first"""
        start_date, end_date = reporting_window(self.config.keyword_window_days, self.config.telemetry_lag_days)
        async with self.telemetry_factory(access_token) as client:
            pages = await client.get_page_urls(site_identifier, start_date, end_date)
        pages.sort(key=lambda p: p["impressions"], reverse=True)
        logger.info(f"Found {len(pages)} pages for {site_identifier}")
        return pages

    # Full run

    async def run(self, access_token: str, site_identifier: str, page_url: str,
                  keywords: List[str] = None, locale: str = "ja", api_preferred: bool = None,
                  skip_semantic: bool = False) -> PipelineResult:
        """All three stages in order"""
        stage1 = await self.run_stage1(access_token, site_identifier, page_url, keywords)
        own_url = resolve_page_url(stage1.site_identifier, page_url)

        stage2 = await self.run_stage2(own_url, stage1.prioritized_keywords, api_preferred)
        stage3 = await self.run_stage3(own_url, stage1.prioritized_keywords, stage2, locale, skip_semantic)

        self.metrics.record_run()
        return PipelineResult(
            stage1=stage1,
            stage2=stage2,
            stage3=stage3,
            timestamp=datetime.now().isoformat(),
        )

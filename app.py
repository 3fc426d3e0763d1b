"""
Main application for the content gap analyzer - wires the pipeline, storage and monitoring
"""
import argparse
import time
import logging
import json
from typing import List, Dict, Any

from config import config as default_config
from database import AnalysisRepository
from errors import ContentGapError
from models import PrioritizedKeyword, Stage2Result, to_dict
from monitoring import PipelineMetrics, HealthChecker, setup_logging
from pipeline import PipelineOrchestrator
from telemetry_client import resolve_page_url

logger = logging.getLogger(__name__)


class ContentGapApp:
    """Content gap analysis application"""

    def __init__(self, analyzer_config=None, orchestrator: PipelineOrchestrator = None,
                 init_logging: bool = True):
        self.config = analyzer_config or default_config

        # Initialize logging first
        if init_logging:
            setup_logging(self.config.log_level, self.config.log_dir, self.config.log_format)

        self.metrics = PipelineMetrics()
        self.repository = AnalysisRepository(self.config.db_path)
        self.health_checker = HealthChecker(self.metrics, self.config.db_path)
        self.orchestrator = orchestrator or PipelineOrchestrator(self.config, metrics=self.metrics)
        if orchestrator is not None:
            self.metrics = orchestrator.metrics
            self.health_checker.metrics = orchestrator.metrics

        logger.info("Content gap application initialized")

    def _failure(self, action: str, error: Exception) -> Dict[str, Any]:
        if isinstance(error, ContentGapError):
            logger.error(f"{action} failed: {error}")
            return {"success": False, "error": error.user_message}
        logger.exception(f"Unexpected error during {action}: {error}")
        return {"success": False, "error": str(error) or type(error).__name__}

    async def analyze(self, access_token: str, site_identifier: str, page_url: str,
                      keywords: List[str] = None, locale: str = "ja", api_preferred: bool = None,
                      skip_semantic: bool = False, save: bool = True) -> Dict[str, Any]:
        """Run all three stages and store the result"""
        logger.info(f"Analyzing page: {page_url} ({site_identifier})")

        start_time = time.time()
        try:
            result = await self.orchestrator.run(
                access_token, site_identifier, page_url, keywords, locale, api_preferred, skip_semantic
            )
            response_time = time.time() - start_time
            data = result.to_dict()
            if save:
                data["analysis_id"] = self.repository.save_analysis(result)
            logger.info(f"Analysis of {page_url} finished in {response_time:.2f}s")
            return {"success": True, "data": data, "response_time": response_time}
        except Exception as e:
            return self._failure("analysis", e)

    async def step1(self, access_token: str, site_identifier: str, page_url: str,
                    keywords: List[str] = None) -> Dict[str, Any]:
        start_time = time.time()
        try:
            result = await self.orchestrator.run_stage1(access_token, site_identifier, page_url, keywords)
            data = to_dict(result)
            data["own_url"] = resolve_page_url(result.site_identifier, page_url)
            return {"success": True, "data": data, "response_time": time.time() - start_time}
        except Exception as e:
            return self._failure("keyword selection", e)

    async def step2(self, own_url: str, keywords: List[PrioritizedKeyword],
                    api_preferred: bool = None) -> Dict[str, Any]:
        start_time = time.time()
        try:
            result = await self.orchestrator.run_stage2(own_url, keywords, api_preferred)
            return {"success": True, "data": to_dict(result), "response_time": time.time() - start_time}
        except Exception as e:
            return self._failure("competitor discovery", e)

    async def step3(self, own_url: str, keywords: List[PrioritizedKeyword], stage2: Stage2Result,
                    locale: str = "ja", skip_semantic: bool = False) -> Dict[str, Any]:
        start_time = time.time()
        try:
            result = await self.orchestrator.run_stage3(own_url, keywords, stage2, locale, skip_semantic)
            return {"success": True, "data": to_dict(result), "response_time": time.time() - start_time}
        except Exception as e:
            return self._failure("content comparison", e)

    async def list_pages(self, access_token: str, site_identifier: str) -> Dict[str, Any]:
        """Pages of the property with search impressions, to choose what to analyze"""
        start_time = time.time()
        try:
            pages = await self.orchestrator.list_pages(access_token, site_identifier)
            return {"success": True, "data": {"pages": pages, "total": len(pages)},
                    "response_time": time.time() - start_time}
        except Exception as e:
            return self._failure("page listing", e)

    def get_history(self, page_url: str, limit: int = 10) -> List[Dict[str, Any]]:
        return self.repository.get_recent_analyses(page_url, limit)

    def get_system_status(self) -> Dict[str, Any]:
        """Get comprehensive system status"""
        return {
            "health": self.health_checker.check_health(),
            "metrics": self.metrics.snapshot(),
            "llm_provider": self.config.llm_provider,
            "semantic_analysis_available": self.orchestrator.semantic_engine.is_available(),
            "search_api_available": bool(self.config.search_api_key),
        }

    def cleanup_old_data(self, days_to_keep: int = 30):
        logger.info(f"Cleaning up data older than {days_to_keep} days")
        self.repository.cleanup_old_data(days_to_keep)

    def shutdown(self):
        logger.info("Shutting down content gap application")


def create_cli():
    """Create command line interface"""
    parser = argparse.ArgumentParser(description="Content gap analyzer")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    analyze_parser = subparsers.add_parser("analyze", help="Compare a page against its search competitors")
    analyze_parser.add_argument("--site", required=True, help="Site identifier (https://example.com/ or sc-domain:example.com)")
    analyze_parser.add_argument("--page", required=True, help="Page URL or path to analyze")
    analyze_parser.add_argument("--keywords", nargs="*", help="Analyze these keywords instead of selecting them")
    analyze_parser.add_argument("--token", help="Telemetry access token (defaults to SEARCH_CONSOLE_ACCESS_TOKEN)")
    analyze_parser.add_argument("--locale", default="ja", help="Language of the generated analysis")
    analyze_parser.add_argument("--api", action="store_true", help="Prefer the search API over the browser")
    analyze_parser.add_argument("--skip-semantic", action="store_true", help="Skip the LLM analysis")

    pages_parser = subparsers.add_parser("pages", help="List pages of a property that appear in search")
    pages_parser.add_argument("--site", required=True, help="Site identifier")
    pages_parser.add_argument("--token", help="Telemetry access token (defaults to SEARCH_CONSOLE_ACCESS_TOKEN)")

    history_parser = subparsers.add_parser("history", help="Show recent analyses for a page")
    history_parser.add_argument("page", help="Page URL")
    history_parser.add_argument("--limit", type=int, default=10, help="Number of analyses to show")

    subparsers.add_parser("status", help="Get system status")

    cleanup_parser = subparsers.add_parser("cleanup", help="Clean up old data")
    cleanup_parser.add_argument("--days", type=int, default=30, help="Days of data to keep")

    server_parser = subparsers.add_parser("server", help="Run the HTTP API")
    server_parser.add_argument("--host", default="0.0.0.0", help="Server host")
    server_parser.add_argument("--port", type=int, default=8000, help="Server port")

    return parser


async def main(argv: List[str] = None):
    """Main entry point"""
    parser = create_cli()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    app = ContentGapApp()

    try:
        if args.command == "analyze":
            token = args.token or app.config.telemetry_access_token
            if not token:
                print("Error: an access token is required (--token or SEARCH_CONSOLE_ACCESS_TOKEN)")
                return
            result = await app.analyze(
                token, args.site, args.page, args.keywords, args.locale,
                api_preferred=True if args.api else None, skip_semantic=args.skip_semantic,
            )
            print(json.dumps(result, indent=2, ensure_ascii=False, default=str))

        elif args.command == "pages":
            token = args.token or app.config.telemetry_access_token
            if not token:
                print("Error: an access token is required (--token or SEARCH_CONSOLE_ACCESS_TOKEN)")
                return
            result = await app.list_pages(token, args.site)
            print(json.dumps(result, indent=2, ensure_ascii=False, default=str))

        elif args.command == "history":
            history = app.get_history(args.page, args.limit)
            print(json.dumps(history, indent=2, ensure_ascii=False, default=str))

        elif args.command == "status":
            status = app.get_system_status()
            print(json.dumps(status, indent=2, default=str))

        elif args.command == "cleanup":
            app.cleanup_old_data(args.days)
            print(f"Cleaned up data older than {args.days} days")

    except KeyboardInterrupt:
        print("\nInterrupted by user")
    finally:
        app.shutdown()

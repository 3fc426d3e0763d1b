"""
Tests for the application wiring and command line
"""
import json
from unittest.mock import Mock, AsyncMock, patch

from app import ContentGapApp, create_cli, main
from errors import NoKeywordsError, TelemetryError
from models import PipelineResult, Stage1Result, Stage2Result
from monitoring import PipelineMetrics


def make_app(test_config, **orchestrator_methods):
    orchestrator = Mock()
    orchestrator.metrics = PipelineMetrics()
    orchestrator.semantic_engine.is_available.return_value = False
    for name, value in orchestrator_methods.items():
        setattr(orchestrator, name, value)
    return ContentGapApp(test_config, orchestrator=orchestrator, init_logging=False)


class TestContentGapApp:
    """Application facade over the pipeline"""

    async def test_analyze_saves_result(self, test_config, prioritized_keywords, stage2_result):
        result = PipelineResult(
            stage1=Stage1Result("https://example.com/", "/guide", prioritized_keywords),
            stage2=stage2_result,
            timestamp="2024-05-01T10:00:00",
        )
        gap_app = make_app(test_config, run=AsyncMock(return_value=result))

        response = await gap_app.analyze("token", "https://example.com/", "/guide")

        assert response["success"] is True
        analysis_id = response["data"]["analysis_id"]
        assert gap_app.get_history("/guide")[0]["id"] == analysis_id
        gap_app.orchestrator.run.assert_awaited_once_with(
            "token", "https://example.com/", "/guide", None, "ja", None, False
        )

    async def test_step1_adds_own_url(self, test_config, prioritized_keywords):
        stage1 = Stage1Result("sc-domain:example.com", "/guide", prioritized_keywords)
        gap_app = make_app(test_config, run_stage1=AsyncMock(return_value=stage1))

        response = await gap_app.step1("token", "sc-domain:example.com", "/guide")

        assert response["data"]["own_url"] == "https://example.com/guide"
        assert response["data"]["prioritized_keywords"][0]["keyword"] == "seo pricing"

    async def test_known_error_uses_user_message(self, test_config):
        gap_app = make_app(test_config, run_stage1=AsyncMock(side_effect=NoKeywordsError("empty")))

        response = await gap_app.step1("token", "https://example.com/", "/guide")

        assert response == {"success": False, "error": NoKeywordsError.default_user_message}

    async def test_unexpected_error(self, test_config, prioritized_keywords):
        gap_app = make_app(test_config, run_stage2=AsyncMock(side_effect=RuntimeError("boom")))

        response = await gap_app.step2("https://example.com/guide", prioritized_keywords)

        assert response == {"success": False, "error": "boom"}

    async def test_step3(self, test_config, prioritized_keywords):
        gap_app = make_app(test_config, run_stage3=AsyncMock(side_effect=TelemetryError("x", status=500)))

        response = await gap_app.step3("https://example.com/guide", prioritized_keywords, Stage2Result())

        assert response["success"] is False
        assert response["error"] == TelemetryError.default_user_message

    async def test_list_pages(self, test_config):
        pages = [{"url": "https://example.com/guide", "impressions": 40, "clicks": 2, "position": 6.0}]
        gap_app = make_app(test_config, list_pages=AsyncMock(return_value=pages))

        response = await gap_app.list_pages("token", "https://example.com/")

        assert response["data"] == {"pages": pages, "total": 1}
        gap_app.orchestrator.list_pages.assert_awaited_once_with("token", "https://example.com/")

    def test_system_status(self, test_config):
        status = make_app(test_config).get_system_status()

        assert status["health"]["overall_status"] == "healthy"
        assert status["semantic_analysis_available"] is False
        assert status["search_api_available"] is False
        assert status["metrics"]["runs"] == 0


class TestCLI:
    """Command line parsing and dispatch"""

    def test_analyze_arguments(self):
        args = create_cli().parse_args([
            "analyze", "--site", "sc-domain:example.com", "--page", "/guide",
            "--keywords", "seo pricing", "seo cost", "--api", "--skip-semantic",
        ])

        assert args.command == "analyze"
        assert args.keywords == ["seo pricing", "seo cost"]
        assert args.api is True
        assert args.skip_semantic is True
        assert args.locale == "ja"

    def test_pages_arguments(self):
        args = create_cli().parse_args(["pages", "--site", "sc-domain:example.com"])
        assert args.command == "pages"
        assert args.token is None

    def test_server_arguments(self):
        args = create_cli().parse_args(["server", "--port", "9000"])
        assert args.port == 9000
        assert args.host == "0.0.0.0"

    async def test_history_command(self, capsys):
        gap_app = Mock()
        gap_app.get_history.return_value = [{"id": 1, "page_url": "/guide"}]
        with patch("app.ContentGapApp", return_value=gap_app):
            await main(["history", "/guide", "--limit", "3"])

        assert json.loads(capsys.readouterr().out) == [{"id": 1, "page_url": "/guide"}]
        gap_app.get_history.assert_called_once_with("/guide", 3)
        gap_app.shutdown.assert_called_once()

    async def test_analyze_requires_token(self, capsys):
        gap_app = Mock()
        gap_app.config.telemetry_access_token = None
        gap_app.analyze = AsyncMock()
        with patch("app.ContentGapApp", return_value=gap_app):
            await main(["analyze", "--site", "https://example.com/", "--page", "/guide"])

        assert "access token is required" in capsys.readouterr().out
        gap_app.analyze.assert_not_awaited()

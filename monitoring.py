"""
Logging setup, run metrics and health checks for the content gap analyzer
"""
import os
import logging
import sqlite3
from datetime import datetime
from threading import Lock
from typing import Dict, List, Any

from config import config
from models import CompetitorSet, Stage3Result


def setup_logging(log_level: str = "INFO", log_dir: str = "logs", log_format: str = None):
    """Console, full-file and errors-only handlers plus a separate performance log"""

    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    detailed_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    )
    simple_formatter = logging.Formatter(log_format or config.log_format)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(simple_formatter)
    root_logger.addHandler(console_handler)

    file_handler = logging.FileHandler(os.path.join(log_dir, 'content_gap.log'), encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(detailed_formatter)
    root_logger.addHandler(file_handler)

    error_handler = logging.FileHandler(os.path.join(log_dir, 'errors.log'), encoding='utf-8')
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(detailed_formatter)
    root_logger.addHandler(error_handler)

    # Stage timings go to their own file only
    perf_handler = logging.FileHandler(os.path.join(log_dir, 'performance.log'), encoding='utf-8')
    perf_handler.setLevel(logging.INFO)
    perf_handler.setFormatter(simple_formatter)

    perf_logger = logging.getLogger('performance')
    perf_logger.handlers.clear()
    perf_logger.addHandler(perf_handler)
    perf_logger.setLevel(logging.INFO)
    perf_logger.propagate = False

    return root_logger


class PipelineMetrics:
    """In-process counters for analysis runs; safe to share between requests"""

    def __init__(self):
        self.metrics_lock = Lock()
        self.started_at = datetime.now().isoformat()
        self.runs = 0
        self.partial_runs = 0
        self.failures: Dict[str, int] = {}
        self.keywords_discovered = 0
        self.discovery_errors = 0
        self.api_discoveries = 0
        self.subject_not_found = 0
        self.stage_durations: Dict[str, List[float]] = {}

    def record_stage(self, stage: str, seconds: float):
        with self.metrics_lock:
            self.stage_durations.setdefault(stage, []).append(seconds)

    def record_failure(self, stage: str):
        with self.metrics_lock:
            self.failures[stage] = self.failures.get(stage, 0) + 1

    def record_discovery(self, competitor_set: CompetitorSet):
        with self.metrics_lock:
            self.keywords_discovered += 1
            if competitor_set.error:
                self.discovery_errors += 1
            if competitor_set.source == "api":
                self.api_discoveries += 1

    def record_stage3(self, result: Stage3Result):
        with self.metrics_lock:
            if result.partial_results:
                self.partial_runs += 1
            if result.subject_not_found:
                self.subject_not_found += 1

    def record_run(self):
        with self.metrics_lock:
            self.runs += 1

    def snapshot(self) -> Dict[str, Any]:
        """Plain-dict copy of every counter with per-stage averages"""
        with self.metrics_lock:
            stages = {
                stage: {
                    'count': len(durations),
                    'avg_seconds': round(sum(durations) / len(durations), 3),
                    'max_seconds': round(max(durations), 3),
                }
                for stage, durations in self.stage_durations.items()
            }
            return {
                'started_at': self.started_at,
                'runs': self.runs,
                'partial_runs': self.partial_runs,
                'subject_not_found': self.subject_not_found,
                'failures': dict(self.failures),
                'keywords_discovered': self.keywords_discovered,
                'discovery_errors': self.discovery_errors,
                'api_discoveries': self.api_discoveries,
                'stages': stages,
            }


class HealthChecker:
    """Health check over the history database and run metrics"""

    def __init__(self, metrics: PipelineMetrics, db_path: str = None):
        self.metrics = metrics
        self.db_path = db_path or config.db_path

    def check_health(self) -> Dict[str, Any]:
        health_status = {
            'timestamp': datetime.now().isoformat(),
            'overall_status': 'healthy',
            'components': {
                'database': self._check_database_health(),
                'pipeline': self._check_pipeline_health(),
            }
        }

        component_statuses = [comp['status'] for comp in health_status['components'].values()]
        if 'critical' in component_statuses:
            health_status['overall_status'] = 'critical'
        elif 'warning' in component_statuses:
            health_status['overall_status'] = 'warning'

        return health_status

    def _check_database_health(self) -> Dict[str, Any]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=5)
            try:
                conn.execute("SELECT 1").fetchone()
            finally:
                conn.close()
            return {'status': 'healthy', 'issues': []}
        except sqlite3.Error as e:
            return {'status': 'critical', 'issues': [f"Database error: {e}"]}

    def _check_pipeline_health(self) -> Dict[str, Any]:
        snapshot = self.metrics.snapshot()
        issues = []
        status = 'healthy'

        if snapshot['keywords_discovered']:
            error_rate = snapshot['discovery_errors'] / snapshot['keywords_discovered']
            if error_rate > 0.5:
                status = 'warning'
                issues.append(f"Discovery error rate high: {error_rate:.0%}")

        if snapshot['runs'] and snapshot['partial_runs'] / snapshot['runs'] > 0.5:
            status = 'warning'
            issues.append("More than half of recent runs returned partial results")

        return {'status': status, 'runs': snapshot['runs'], 'issues': issues}

"""
History storage for finished analysis runs
"""
import sqlite3
import json
import logging
from typing import Optional, List, Dict, Any
from datetime import datetime, timedelta

from models import PipelineResult, to_dict

logger = logging.getLogger(__name__)


class AnalysisRepository:
    """Stores each run's keywords, competitors, diff and semantic result as JSON"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.setup_database()

    def setup_database(self):
        """Create the history tables if they do not exist"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        try:
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS analyses (
                    id INTEGER PRIMARY KEY,
                    site_identifier TEXT,
                    page_url TEXT,
                    keywords TEXT,
                    competitor_sets TEXT,
                    diff_report TEXT,
                    quality_report TEXT,
                    semantic_diff TEXT,
                    partial_results BOOLEAN,
                    subject_not_found BOOLEAN,
                    timestamp TEXT
                )
            ''')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_analyses_page ON analyses(page_url, timestamp)')
            conn.commit()
        finally:
            conn.close()
        logger.info("Database schema initialized successfully")

    def save_analysis(self, result: PipelineResult) -> int:
        """Persist a finished run and return its row id"""
        stage2 = result.stage2
        stage3 = result.stage3

        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        try:
            cursor.execute('''
                INSERT INTO analyses
                (site_identifier, page_url, keywords, competitor_sets, diff_report, quality_report,
                 semantic_diff, partial_results, subject_not_found, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                result.stage1.site_identifier,
                result.stage1.page_url,
                json.dumps([to_dict(k) for k in result.stage1.prioritized_keywords], ensure_ascii=False),
                json.dumps([to_dict(c) for c in stage2.competitor_sets] if stage2 else [], ensure_ascii=False),
                json.dumps(to_dict(stage3.diff_report) if stage3 else None, ensure_ascii=False),
                json.dumps(to_dict(stage3.quality_report) if stage3 else None, ensure_ascii=False),
                json.dumps(to_dict(stage3.semantic_diff) if stage3 else None, ensure_ascii=False),
                bool(stage3 and stage3.partial_results),
                bool(stage3 and stage3.subject_not_found),
                result.timestamp or datetime.now().isoformat(),
            ))
            conn.commit()
            analysis_id = cursor.lastrowid
            logger.info(f"Saved analysis {analysis_id} for: {result.stage1.page_url}")
            return analysis_id
        finally:
            conn.close()

    def get_analysis(self, analysis_id: int) -> Optional[Dict[str, Any]]:
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        try:
            cursor.execute("SELECT * FROM analyses WHERE id = ?", (analysis_id,))
            row = cursor.fetchone()
            return self._row_to_dict(row) if row else None
        finally:
            conn.close()

    def get_recent_analyses(self, page_url: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Newest runs first for one page"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        try:
            cursor.execute(
                "SELECT * FROM analyses WHERE page_url = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
                (page_url, limit)
            )
            return [self._row_to_dict(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def cleanup_old_data(self, days_to_keep: int = 30):
        """Remove runs older than days_to_keep"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        try:
            cutoff_date = (datetime.now() - timedelta(days=days_to_keep)).isoformat()
            cursor.execute("DELETE FROM analyses WHERE timestamp < ?", (cutoff_date,))
            conn.commit()
            logger.info(f"Cleaned up {cursor.rowcount} analyses older than {days_to_keep} days")
        finally:
            conn.close()

    @staticmethod
    def _row_to_dict(row) -> Dict[str, Any]:
        return {
            'id': row[0],
            'site_identifier': row[1],
            'page_url': row[2],
            'keywords': json.loads(row[3]),
            'competitor_sets': json.loads(row[4]),
            'diff_report': json.loads(row[5]),
            'quality_report': json.loads(row[6]),
            'semantic_diff': json.loads(row[7]),
            'partial_results': bool(row[8]),
            'subject_not_found': bool(row[9]),
            'timestamp': row[10],
        }

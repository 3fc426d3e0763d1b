"""
Heuristic quality checklist for articles
"""
import re
import logging
from dataclasses import dataclass, fields
from typing import List

from models import ScrapedDocument, QualityChecklist, QualityReport, MissingElement

logger = logging.getLogger(__name__)

FAQ_MARKERS = ['よくある質問', 'faq', 'frequently asked', 'q&a', 'q and a', '質問', '疑問']
FAQ_QUESTION_MARKERS = ['?', '？', 'とは', 'どう', 'なぜ', '何']
FAQ_MIN_QUESTION_HEADINGS = 3

SUMMARY_MARKERS = ['主なポイント', 'まとめ', '要約', 'summary', 'key points', '要点', '結論', 'conclusion', 'サマリー']
SUMMARY_INTRO_MARKERS = ['本記事', 'この記事', 'まとめ', '要約']
SUMMARY_INTRO_MAX_LENGTH = 300

DATE_MARKERS = ['更新日', '更新', 'updated', '最終更新', 'last updated', '公開日', 'published', '投稿日', '作成日', 'created']
DATE_PATTERNS = [
    re.compile(r"\d{4}[-/年]\d{1,2}[-/月]\d{1,2}日?"),
    re.compile(r"\d{4}\.\d{1,2}\.\d{1,2}"),
]

AUTHOR_MARKERS = ['著者', 'author', '執筆者', 'writer', '作成者', 'creator', '監修', 'supervisor', '編集', 'editor']

DATA_MARKERS = [
    '調査', 'survey', 'データ', 'data', '統計', 'statistics', 'アンケート', '分析', 'analysis',
    '結果', 'results', '人に', '件', '%', 'パーセント', '割合',
]
DATA_PATTERNS = [
    re.compile(r"\d+人"),
    re.compile(r"\d+[件個]"),
    re.compile(r"\d+[%％]"),
    re.compile(r"\d+\.\d+[KkMm]"),
    re.compile(r"\d+割"),
]

QUESTION_MARKERS = ['?', '？', 'とは', 'どう', 'なぜ', '何', 'どの', 'いつ', 'どこ', '誰']

TABLE_MARKERS = ['表', 'table', '比較表', '一覧', 'リスト']


@dataclass
class ChecklistItem:
    key: str
    name: str
    description: str
    recommendation: str


CHECKLIST_ITEMS = [
    ChecklistItem(
        "has_faq", "FAQ section", "A section answering frequently asked questions",
        "Add a frequently asked questions (FAQ) section that answers reader questions directly.",
    ),
    ChecklistItem(
        "has_summary", "Summary section", "A key points or summary section",
        "Add a key points or summary section near the top so the answer is clear from the start.",
    ),
    ChecklistItem(
        "has_update_date", "Update date", "A timestamp showing when the article was last updated",
        "Show the date the article was last updated to signal that the information is current.",
    ),
    ChecklistItem(
        "has_author_info", "Author information", "The name of the author or supervising expert",
        "Name the author or supervisor to demonstrate expertise and trustworthiness.",
    ),
    ChecklistItem(
        "has_data_or_stats", "Data and statistics", "Original data or statistics",
        "Present survey results or statistics to make the article more original and credible.",
    ),
    ChecklistItem(
        "has_question_headings", "Question headings", "Headings phrased as questions",
        "Phrase headings as questions (for example \"How much does SEO cost?\") so they answer search intent directly.",
    ),
    ChecklistItem(
        "has_bullet_points", "Bullet points", "Information organized in bulleted lists",
        "Organize information into bullet points so it is easy to scan and act on.",
    ),
    ChecklistItem(
        "has_tables", "Tables", "Comparison tables or overview lists",
        "Use comparison tables or overview tables to organize information visually.",
    ),
    ChecklistItem(
        "has_structured_data", "Structured data", "Structured data (JSON-LD) markup",
        "Implement structured data (JSON-LD) so search engines understand the content and can show rich results.",
    ),
]


def _contains_any(text: str, markers: List[str]) -> bool:
    return any(marker in text for marker in markers)


class QualitySignalChecker:
    """Evaluates the fixed checklist and compares a page against competitors"""

    def check(self, document: ScrapedDocument) -> QualityChecklist:
        full_text = document.full_text.lower()
        headings_text = " ".join(h.text.lower() for h in document.headings)

        return QualityChecklist(
            has_faq=self._has_faq(document, full_text, headings_text),
            has_summary=self._has_summary(document, full_text, headings_text),
            has_update_date=_contains_any(full_text, DATE_MARKERS) or any(p.search(full_text) for p in DATE_PATTERNS),
            has_author_info=_contains_any(full_text, AUTHOR_MARKERS),
            has_data_or_stats=(
                _contains_any(full_text, DATA_MARKERS)
                or any(p.search(full_text) for p in DATA_PATTERNS)
                or len(document.lists) > 0
            ),
            has_structured_data=document.has_structured_data,
            has_question_headings=any(_contains_any(h.text, QUESTION_MARKERS) for h in document.headings),
            has_bullet_points=len(document.lists) > 0,
            has_tables=_contains_any(full_text, TABLE_MARKERS),
        )

    def _has_faq(self, document: ScrapedDocument, full_text: str, headings_text: str) -> bool:
        if _contains_any(headings_text, FAQ_MARKERS) or _contains_any(full_text, FAQ_MARKERS):
            return True
        questions = [h for h in document.headings if _contains_any(h.text, FAQ_QUESTION_MARKERS)]
        return len(questions) >= FAQ_MIN_QUESTION_HEADINGS

    def _has_summary(self, document: ScrapedDocument, full_text: str, headings_text: str) -> bool:
        if _contains_any(headings_text, SUMMARY_MARKERS) or _contains_any(full_text, SUMMARY_MARKERS):
            return True
        first = document.paragraphs[0] if document.paragraphs else ""
        return len(first) < SUMMARY_INTRO_MAX_LENGTH and _contains_any(first, SUMMARY_INTRO_MARKERS)

    def compare(self, own: ScrapedDocument, competitors: List[ScrapedDocument]) -> QualityReport:
        """Report checklist items the page lacks but at least one competitor has"""
        own_check = self.check(own)
        competitor_checks = [self.check(c) for c in competitors]

        missing_elements = []
        for item in CHECKLIST_ITEMS:
            if getattr(own_check, item.key):
                continue
            found_in = [
                competitor.url
                for competitor, check in zip(competitors, competitor_checks)
                if getattr(check, item.key)
            ]
            if found_in:
                missing_elements.append(MissingElement(
                    element=item.name,
                    description=item.description,
                    found_in=found_in,
                    recommendation=item.recommendation,
                ))

        passed = sum(1 for f in fields(QualityChecklist) if getattr(own_check, f.name))
        logger.info(
            f"Quality checklist for {own.url}: {passed}/{len(CHECKLIST_ITEMS)} passed, "
            f"{len(missing_elements)} elements missing compared to competitors"
        )
        return QualityReport(
            own=own_check,
            competitors=competitor_checks,
            missing_elements=missing_elements,
            recommendations=[e.recommendation for e in missing_elements],
        )

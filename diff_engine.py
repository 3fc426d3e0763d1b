"""
Structural diff between a page and its competitors
"""
import re
import logging
from typing import List, Dict, Set

from models import ScrapedDocument, DiffReport, MissingHeading, MissingKeyword, WordCountDelta

logger = logging.getLogger(__name__)

MAX_MISSING_HEADINGS = 10
MAX_MISSING_KEYWORDS = 20
RECOMMENDED_ITEMS = 5
WORD_GAP_THRESHOLD = 500

CJK_RUN = re.compile(r"[\u3040-\u309F\u30A0-\u30FF\u4E00-\u9FAF]{2,}")
LATIN_WORD = re.compile(r"\b[a-zA-Z]{3,}\b")


def normalize_text(text: str) -> str:
    """Lowercase, collapse whitespace and drop punctuation"""
    text = re.sub(r"\s+", " ", (text or "").lower())
    return re.sub(r"[^\w\s]", "", text).strip()


def extract_keywords(text: str) -> Set[str]:
    """CJK runs of 2-10 characters and Latin words of 3+ letters"""
    keywords = {word for word in CJK_RUN.findall(text) if len(word) <= 10}
    keywords.update(word.lower() for word in LATIN_WORD.findall(text))
    return keywords


class ContentDiffEngine:
    """Compares headings, vocabulary and length; performs no I/O"""

    def analyze(self, own: ScrapedDocument, competitors: List[ScrapedDocument]) -> DiffReport:
        missing_headings = self.find_missing_headings(own, competitors)
        missing_keywords = self.find_missing_keywords(own, competitors)
        word_count_delta = self.word_count_delta(own, competitors)
        report = DiffReport(
            missing_headings=missing_headings,
            missing_keywords=missing_keywords,
            word_count_delta=word_count_delta,
            recommendations=self.recommendations(missing_headings, missing_keywords, word_count_delta),
        )
        logger.info(
            f"Diff against {len(competitors)} competitors: {len(missing_headings)} missing headings, "
            f"{len(missing_keywords)} missing keywords, word gap {word_count_delta.diff}"
        )
        return report

    def find_missing_headings(self, own: ScrapedDocument,
                              competitors: List[ScrapedDocument]) -> List[MissingHeading]:
        """Competitor headings the page lacks, most widely shared first"""
        own_headings = {normalize_text(h.text) for h in own.headings}
        missing: Dict[str, MissingHeading] = {}

        for competitor in competitors:
            for heading in competitor.headings:
                key = normalize_text(heading.text)
                if not key or key in own_headings:
                    continue
                entry = missing.get(key)
                if entry is None:
                    missing[key] = MissingHeading(heading=heading.text, level=heading.level, found_in=[competitor.url])
                elif competitor.url not in entry.found_in:
                    entry.found_in.append(competitor.url)

        ranked = sorted(missing.values(), key=lambda m: len(m.found_in), reverse=True)
        return ranked[:MAX_MISSING_HEADINGS]

    def find_missing_keywords(self, own: ScrapedDocument,
                              competitors: List[ScrapedDocument]) -> List[MissingKeyword]:
        """Terms used by competitors but not by the page, by number of competitors using them"""
        own_keywords = extract_keywords(normalize_text(own.full_text))
        missing: Dict[str, MissingKeyword] = {}

        for competitor in competitors:
            for keyword in sorted(extract_keywords(normalize_text(competitor.full_text))):
                if keyword in own_keywords:
                    continue
                entry = missing.get(keyword)
                if entry is None:
                    missing[keyword] = MissingKeyword(keyword=keyword, frequency=1, found_in=[competitor.url])
                else:
                    entry.frequency += 1
                    if competitor.url not in entry.found_in:
                        entry.found_in.append(competitor.url)

        ranked = sorted(missing.values(), key=lambda m: m.frequency, reverse=True)
        return ranked[:MAX_MISSING_KEYWORDS]

    def word_count_delta(self, own: ScrapedDocument, competitors: List[ScrapedDocument]) -> WordCountDelta:
        if not competitors:
            return WordCountDelta(own=own.word_count, average=own.word_count, diff=0)
        average = sum(c.word_count for c in competitors) / len(competitors)
        return WordCountDelta(own=own.word_count, average=round(average), diff=round(average - own.word_count))

    def recommendations(self, missing_headings: List[MissingHeading], missing_keywords: List[MissingKeyword],
                        word_count_delta: WordCountDelta) -> List[str]:
        recommendations = []
        if missing_headings:
            headings = ", ".join(f'"{h.heading}"' for h in missing_headings[:RECOMMENDED_ITEMS])
            recommendations.append(f"Add headings that competing articles cover: {headings}")
        if missing_keywords:
            keywords = ", ".join(k.keyword for k in missing_keywords[:RECOMMENDED_ITEMS])
            recommendations.append(f"Use terms that competing articles use frequently: {keywords}")
        if word_count_delta.diff > WORD_GAP_THRESHOLD:
            recommendations.append(
                f"Expand the article (current: {word_count_delta.own} words, competitor average: "
                f"{word_count_delta.average} words, gap: {word_count_delta.diff} words)"
            )
        return recommendations

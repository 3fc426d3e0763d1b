"""
LLM-backed semantic diff between a page and its competitors

Backends are interchangeable: each one only knows how to send a system
prompt and a user prompt and return the raw text. Prompt construction,
JSON extraction and schema validation happen here, once, for all of them.
"""
import re
import json
import asyncio
import logging
from typing import List, Dict, Any, Optional, Callable

import aiohttp
import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import config as default_config
from errors import ParseError, ProviderError, ProviderUnavailableError
from models import (
    ScrapedDocument, SemanticDiffResult, KeywordAnalysis, WhatToAddItem, RecommendedAddition
)

logger = logging.getLogger(__name__)

GROQ_URL = "https://api.groq.com/openai/v1/chat/completions"
OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
QWEN_URL = "https://dashscope.aliyuncs.com/api/v1/services/aigc/text-generation/generation"

OWN_PARAGRAPHS = 5
COMPETITOR_PARAGRAPHS = 3
EXCERPT_LENGTH = 200

PARSE_FAILED_MESSAGE = (
    "The language model analysis could not be read. "
    "The API may have returned a response in an unexpected format."
)
TIMEOUT_MESSAGE = "The analysis did not finish within the time limit."
SKIPPED_MESSAGE = "Skipped to keep the analysis within its time budget."
NO_COMPETITORS_MESSAGE = (
    "Competitor articles could not be retrieved for this keyword. Competitor URLs "
    "were found, but their content could not be scraped."
)


# Response schema

class _LenientModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def _url_list(value):
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


class WhatToAddSchema(_LenientModel):
    item: str
    competitor_urls: List[str] = Field(default_factory=list, alias="competitorUrls")

    @field_validator("competitor_urls", mode="before")
    @classmethod
    def _coerce_urls(cls, value):
        return _url_list(value)


class RecommendedAdditionSchema(_LenientModel):
    section: str = ""
    reason: str = ""
    content: str = ""
    competitor_urls: List[str] = Field(default_factory=list, alias="competitorUrls")

    @field_validator("competitor_urls", mode="before")
    @classmethod
    def _coerce_urls(cls, value):
        return _url_list(value)


class KeywordAnalysisSchema(_LenientModel):
    keyword: str = ""
    why_ranking_dropped: str = Field("", alias="whyRankingDropped")
    what_to_add: List[WhatToAddSchema] = Field(default_factory=list, alias="whatToAdd")

    @field_validator("what_to_add", mode="before")
    @classmethod
    def _accept_plain_items(cls, value):
        # Older prompts asked for a flat list of strings
        if isinstance(value, list):
            return [{"item": v} if isinstance(v, str) else v for v in value]
        return value


class SemanticAnalysisSchema(_LenientModel):
    why_competitors_rank_higher: str = Field("", alias="whyCompetitorsRankHigher")
    missing_content: List[str] = Field(default_factory=list, alias="missingContent")
    recommended_additions: List[RecommendedAdditionSchema] = Field(
        default_factory=list, alias="recommendedAdditions"
    )


class SemanticResponseSchema(_LenientModel):
    semantic_analysis: SemanticAnalysisSchema = Field(alias="semanticAnalysis")
    keyword_specific_analysis: List[KeywordAnalysisSchema] = Field(
        default_factory=list, alias="keywordSpecificAnalysis"
    )


# Prompt

SYSTEM_PROMPT = "You are an SEO content analysis expert. {instruction} Always respond in valid JSON format."

LANGUAGE_INSTRUCTIONS = {
    "en": "Analyze the differences between articles and provide recommendations in English.",
    "ja": "記事の違いを分析し、日本語で推奨事項を提供してください。",
}

PROMPT_TEXT = {
    "en": {
        "intro": 'Please analyze and compare your company\'s article with competitor articles for the search keyword "{keyword}".',
        "own": "## Your Company's Article",
        "competitors": "## Competitor Articles (Top {count} sites)",
        "competitor": "Competitor Article {index}:",
        "title": "Title",
        "words": "Word Count",
        "headings": "Heading Structure",
        "paragraphs": "Main Paragraphs (first {count})",
        "tasks": "\n".join([
            "## Analysis Tasks",
            '1. **Why competitors rank higher**: Analyze why competitor articles rank higher for "{keyword}".',
            "2. **Missing content**: List specific content that is missing from your company's article.",
            '3. **Recommended additions**: Suggest sections or content to add so the article meets the search intent of "{keyword}". '
            "For each item, include the URLs of the competitor articles where this content is found "
            "(use an empty array if none apply).",
            "",
            "**Important**:",
            "- whatToAdd in keywordSpecificAnalysis must list specific items tailored to the search keyword.",
            "- Each item must reflect content **actually present** in the competitor articles above. "
            "Do not invent formats (for example a \"comparison table\") that the competitor articles do not contain.",
            "- For each item, include the URLs of the competitor articles where it is found.",
        ]),
        "format": "## Output Format (JSON)\nRespond with JSON in exactly this shape:",
        "example": {
            "why": "Why competitors rank higher (2-3 sentences)",
            "missing": "Missing content (be specific)",
            "section": "Section to add",
            "reason": "Why it should be added (relevance to search intent)",
            "content": "Overview of the content to add (2-3 sentences)",
            "dropped": "Why the ranking dropped for this keyword (2-3 sentences)",
            "item": "Item to add, as actually found in competitor articles",
            "url": "URL of a competitor article containing it",
        },
    },
    "ja": {
        "intro": "検索キーワード「{keyword}」で、自社記事と競合記事を比較分析してください。",
        "own": "## 自社記事",
        "competitors": "## 競合記事（上位{count}サイト）",
        "competitor": "競合記事{index}:",
        "title": "タイトル",
        "words": "文字数",
        "headings": "見出し構造",
        "paragraphs": "主要な段落（最初の{count}つ）",
        "tasks": "\n".join([
            "## 分析タスク",
            "1. **なぜ競合が上位なのか**: 検索キーワード「{keyword}」で競合記事が上位にランクインしている理由を分析してください。",
            "2. **不足している内容**: 自社記事に不足している内容を具体的に箇条書きで提示してください。",
            "3. **追加すべき項目**: 検索キーワード「{keyword}」の検索意図に応えるために、自社記事に追加すべきセクションや内容を"
            "具体的に提示してください。各項目について、その内容が記載されている競合記事のURLも含めてください"
            "（該当する競合記事がない場合は空配列にしてください）。",
            "",
            "**重要**:",
            "- keywordSpecificAnalysisのwhatToAddは、検索キーワードに特化した具体的な追加項目を提示してください。",
            "- 各項目は、上記の競合記事に**実際に記載されている内容**を正確に反映してください。"
            "競合記事に記載されていない形式（例：「比較表」など）を推測しないでください。",
            "- 各項目について、その内容が記載されている競合記事のURLも含めてください。",
        ]),
        "format": "## 出力形式（JSON）\n以下のJSON形式で出力してください：",
        "example": {
            "why": "競合が上位な理由（2-3文で説明）",
            "missing": "不足している内容（具体的に）",
            "section": "追加すべきセクション名",
            "reason": "なぜ追加すべきか（検索意図との関連性）",
            "content": "追加すべき内容の概要（2-3文）",
            "dropped": "なぜこのキーワードで順位が下がったか（2-3文）",
            "item": "競合記事に実際に記載されている追加すべき項目",
            "url": "この項目が記載されている競合記事のURL",
        },
    },
}


def prompt_language(locale: str) -> str:
    return "en" if (locale or "").lower().startswith("en") else "ja"


def _document_block(document: ScrapedDocument, text: Dict[str, Any], paragraph_count: int) -> List[str]:
    lines = [
        f"- URL: {document.url}",
        f"- {text['title']}: {document.title}",
        f"- {text['words']}: {document.word_count}",
        f"- {text['headings']}:",
    ]
    lines.extend(f"  H{h.level}: {h.text}" for h in document.headings)
    lines.append(f"- {text['paragraphs'].format(count=paragraph_count)}:")
    lines.extend(f"  {p[:EXCERPT_LENGTH]}..." for p in document.paragraphs[:paragraph_count])
    return lines


def build_prompt(keyword: str, own: ScrapedDocument, competitors: List[ScrapedDocument],
                 locale: str = "ja") -> str:
    """User prompt with both sides' structure and the required JSON shape"""
    text = PROMPT_TEXT[prompt_language(locale)]
    example = text["example"]
    response_shape = {
        "semanticAnalysis": {
            "whyCompetitorsRankHigher": example["why"],
            "missingContent": [example["missing"]],
            "recommendedAdditions": [{
                "section": example["section"],
                "reason": example["reason"],
                "content": example["content"],
                "competitorUrls": [example["url"]],
            }],
        },
        "keywordSpecificAnalysis": [{
            "keyword": keyword,
            "whyRankingDropped": example["dropped"],
            "whatToAdd": [{"item": example["item"], "competitorUrls": [example["url"]]}],
        }],
    }

    lines = [text["intro"].format(keyword=keyword), "", text["own"]]
    lines.extend(_document_block(own, text, OWN_PARAGRAPHS))
    lines.extend(["", text["competitors"].format(count=len(competitors))])
    for index, competitor in enumerate(competitors, start=1):
        lines.extend(["", text["competitor"].format(index=index)])
        lines.extend(_document_block(competitor, text, COMPETITOR_PARAGRAPHS))
    lines.extend([
        "",
        text["tasks"].format(keyword=keyword),
        "",
        text["format"],
        "",
        json.dumps(response_shape, ensure_ascii=False, indent=2),
    ])
    return "\n".join(lines)


def system_prompt(locale: str = "ja") -> str:
    return SYSTEM_PROMPT.format(instruction=LANGUAGE_INSTRUCTIONS[prompt_language(locale)])


# Response parsing

FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")
FENCED_ANY = re.compile(r"```\s*([\s\S]*?)\s*```")


def extract_json(text: str) -> Dict[str, Any]:
    """Decode JSON from a raw or markdown-fenced model response"""
    match = FENCED_JSON.search(text or "") or FENCED_ANY.search(text or "")
    payload = match.group(1) if match else (text or "").strip()
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ParseError(f"Response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def placeholder_analysis(keyword: str, message: str, status: str = "failed") -> KeywordAnalysis:
    return KeywordAnalysis(keyword=keyword, why_ranking_dropped=message, what_to_add=[], status=status)


def placeholder_result(keyword: str, message: str = PARSE_FAILED_MESSAGE, status: str = "failed") -> SemanticDiffResult:
    """Result standing in for an analysis that produced nothing usable"""
    return SemanticDiffResult(
        why_competitors_rank_higher="",
        keyword_specific_analysis=[placeholder_analysis(keyword, message, status)],
    )


def parse_response(text: str, keyword: str) -> SemanticDiffResult:
    """Validate a model response against the result schema; raises ParseError"""
    data = extract_json(text)
    try:
        parsed = SemanticResponseSchema.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"Response does not match the expected schema: {e}") from e

    analysis = parsed.semantic_analysis
    keyword_analyses = [
        KeywordAnalysis(
            keyword=entry.keyword or keyword,
            why_ranking_dropped=entry.why_ranking_dropped,
            what_to_add=[WhatToAddItem(item=w.item, competitor_urls=w.competitor_urls) for w in entry.what_to_add],
        )
        for entry in parsed.keyword_specific_analysis
    ]
    if not keyword_analyses:
        keyword_analyses = [placeholder_analysis(keyword, PARSE_FAILED_MESSAGE)]

    return SemanticDiffResult(
        why_competitors_rank_higher=analysis.why_competitors_rank_higher,
        missing_content=analysis.missing_content,
        recommended_additions=[
            RecommendedAddition(
                section=a.section, reason=a.reason, content=a.content, competitor_urls=a.competitor_urls
            )
            for a in analysis.recommended_additions
        ],
        keyword_specific_analysis=keyword_analyses,
    )


def is_placeholder(result: Optional[SemanticDiffResult]) -> bool:
    """True when no entry of the result came from a parsed model response"""
    if result is None:
        return True
    return all(entry.status != "analyzed" for entry in result.keyword_specific_analysis)


# Backends

async def _post_json(url: str, headers: Dict[str, str], payload: Dict[str, Any], timeout: int,
                     provider: str) -> Dict[str, Any]:
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.post(url, json=payload, headers=headers) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = {"error": await response.text()}
                if response.status >= 400:
                    raise ProviderError(f"{provider} API error: HTTP {response.status} - {data}")
                return data
    except aiohttp.ClientError as e:
        raise ProviderError(f"{provider} request failed: {e}") from e


class ChatCompletionsBackend:
    """OpenAI-compatible chat completions endpoint"""

    def __init__(self, name: str, url: str, api_key: Optional[str], model: str, analyzer_config=None,
                 extra_headers: Dict[str, str] = None, json_mode: bool = False):
        self.name = name
        self.url = url
        self.api_key = api_key
        self.model = model
        self.config = analyzer_config or default_config
        self.extra_headers = extra_headers or {}
        self.json_mode = json_mode

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def complete(self, system: str, prompt: str) -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            **self.extra_headers,
        }
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.config.llm_temperature,
        }
        if self.json_mode:
            payload["response_format"] = {"type": "json_object"}

        data = await _post_json(self.url, headers, payload, self.config.llm_request_timeout, self.name)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content:
            raise ProviderError(f"No response content from {self.name}")
        return content


class QwenBackend:
    """DashScope text generation endpoint"""

    name = "qwen"

    def __init__(self, analyzer_config=None):
        self.config = analyzer_config or default_config
        self.api_key = self.config.qwen_api_key

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def complete(self, system: str, prompt: str) -> str:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        payload = {
            "model": self.config.qwen_model,
            "input": {
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ]
            },
            "parameters": {
                "temperature": self.config.llm_temperature,
                "result_format": "message",
            },
        }
        data = await _post_json(QWEN_URL, headers, payload, self.config.llm_request_timeout, self.name)
        choices = (data.get("output") or {}).get("choices") or []
        content = (choices[0].get("message") or {}).get("content") if choices else None
        if not content:
            raise ProviderError("No response content from qwen")
        return content


class GeminiBackend:
    """Google Gemini through the google-generativeai SDK"""

    name = "gemini"

    def __init__(self, analyzer_config=None):
        self.config = analyzer_config or default_config
        self.api_key = self.config.gemini_api_key
        self._models: Dict[str, Any] = {}

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _get_model(self, system: str):
        # system_instruction is fixed per model, so keep one model per prompt
        if system not in self._models:
            genai.configure(api_key=self.api_key)
            self._models[system] = genai.GenerativeModel(self.config.gemini_model, system_instruction=system)
        return self._models[system]

    async def complete(self, system: str, prompt: str) -> str:
        model = self._get_model(system)
        try:
            response = await asyncio.to_thread(
                model.generate_content,
                prompt,
                generation_config=genai.GenerationConfig(
                    temperature=self.config.llm_temperature,
                    response_mime_type="application/json",
                ),
            )
            return response.text
        except ValueError as e:
            # response.text raises when the candidate was blocked or empty
            raise ProviderError(f"No usable response from gemini: {e}") from e
        except google_exceptions.GoogleAPIError as e:
            raise ProviderError(f"Gemini request failed: {e}") from e


def _groq(analyzer_config):
    return ChatCompletionsBackend(
        "groq", GROQ_URL, analyzer_config.groq_api_key, analyzer_config.groq_model,
        analyzer_config, json_mode=True,
    )


def _openrouter(analyzer_config):
    return ChatCompletionsBackend(
        "openrouter", OPENROUTER_URL, analyzer_config.openrouter_api_key, analyzer_config.openrouter_model,
        analyzer_config, extra_headers={"HTTP-Referer": analyzer_config.app_url, "X-Title": "Content Gap Analyzer"},
    )


BACKENDS: Dict[str, Callable] = {
    "groq": _groq,
    "openrouter": _openrouter,
    "qwen": QwenBackend,
    "gemini": GeminiBackend,
}


def create_backend(name: str = None, analyzer_config=None):
    """Build the backend registered under name; unknown names fall back to groq"""
    analyzer_config = analyzer_config or default_config
    name = (name or analyzer_config.llm_provider or "groq").lower()
    factory = BACKENDS.get(name)
    if factory is None:
        logger.warning(f"Unknown LLM provider '{name}', using groq")
        factory = BACKENDS["groq"]
    return factory(analyzer_config)


class SemanticDiffEngine:
    """Asks the configured backend why competitors outrank the page"""

    def __init__(self, analyzer_config=None, backend=None):
        self.config = analyzer_config or default_config
        self.backend = backend or create_backend(analyzer_config=self.config)

    def is_available(self) -> bool:
        return self.backend.is_available()

    async def analyze_semantic_diff(self, keyword: str, own: ScrapedDocument,
                                    competitors: List[ScrapedDocument], locale: str = "ja") -> SemanticDiffResult:
        """
        Run one analysis for keyword

        A response that is not valid JSON or does not match the schema is
        turned into a placeholder result. Transport failures raise
        ProviderError and a missing backend raises ProviderUnavailableError.
        """
        if not self.is_available():
            raise ProviderUnavailableError(f"LLM provider '{self.backend.name}' has no API key configured")

        prompt = build_prompt(keyword, own, competitors, locale)
        logger.info(
            f"Semantic analysis for '{keyword}' with {self.backend.name}: "
            f"{len(competitors)} competitors, prompt {len(prompt)} chars"
        )
        text = await self.backend.complete(system_prompt(locale), prompt)

        try:
            result = parse_response(text, keyword)
        except ParseError as e:
            logger.warning(f"Could not parse {self.backend.name} response for '{keyword}': {e}")
            return placeholder_result(keyword)

        logger.info(
            f"Semantic analysis for '{keyword}' complete: "
            f"{sum(len(k.what_to_add) for k in result.keyword_specific_analysis)} items to add"
        )
        return result

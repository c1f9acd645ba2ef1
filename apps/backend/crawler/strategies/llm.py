"""
LLM extraction strategy.

Uses an LLM (OpenRouter) as a last resort when a career page has no
structured data and the DOM heuristics find nothing. The prompt is
deterministic and the response must be strict JSON.
"""

import json
import hashlib
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from core.errors import ErrorKind, ScrapingError
from core.models import CompanyConfig, ExtractionMethod
from crawler.job_builder import build_jobs
from crawler.strategies.base import CompanyRun, ExtractionStrategy, StrategyOutcome

logger = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
MAX_JOBS = 20
STRIP_TAGS = ['script', 'style', 'noscript', 'nav', 'header', 'footer', 'svg', 'iframe']


def clean_page_text(html: str, max_chars: int) -> str:
    """Visible page text with scripts, styles and navigation removed."""
    soup = BeautifulSoup(html, 'lxml')
    for tag in soup(STRIP_TAGS):
        tag.decompose()
    text = soup.get_text(separator='\n')
    lines = [line.strip() for line in text.splitlines()]
    text = '\n'.join(line for line in lines if line)
    return text[:max_chars]


def build_prompt(text: str, company: CompanyConfig, page_url: str) -> str:
    return f"""Extract the open job postings listed on this career page.

Company: {company.name}
URL: {page_url}

Page text:
{text}

Return ONLY valid JSON in this exact format:
{{
  "jobs": [
    {{
      "title": "string",
      "location": "string or null",
      "department": "string or null",
      "employment_type": "string or null",
      "apply_url": "absolute or relative URL, or null",
      "description": "short summary or null",
      "posted_at": "YYYY-MM-DD or null"
    }}
  ],
  "confidence": 0.0-1.0,
  "total_found": 0
}}

Rules:
- List at most {MAX_JOBS} jobs.
- Only include real job openings, never navigation links or blog posts.
- If the page lists no jobs, return {{"jobs": [], "confidence": 0.0, "total_found": 0}}."""


def strip_code_fence(content: str) -> str:
    content = content.strip()
    if content.startswith('```'):
        lines = content.split('\n')
        content = '\n'.join(lines[1:-1]) if len(lines) > 2 else content
    return content.strip()


def parse_llm_payload(content: str) -> Dict[str, Any]:
    try:
        data = json.loads(strip_code_fence(content))
    except ValueError as e:
        raise ScrapingError(ErrorKind.PARSE, f"LLM returned invalid JSON: {e}")
    if not isinstance(data, dict) or not isinstance(data.get('jobs', []), list):
        raise ScrapingError(ErrorKind.PARSE, "LLM response missing jobs list")
    return data


class LlmStrategy(ExtractionStrategy):
    """AI-powered extraction as last resort"""

    name = 'llm'
    method = ExtractionMethod.LLM.value

    def skip_reason(self, company: CompanyConfig, ctx) -> Optional[str]:
        reason = super().skip_reason(company, ctx)
        if reason:
            return reason
        if not ctx.config.openrouter_api_key:
            return "LLM extraction disabled: no API key"
        if not ctx.llm_budget_left():
            return f"LLM call budget exhausted ({ctx.config.llm_max_calls} calls)"
        return None

    async def extract(self, company: CompanyConfig, run: CompanyRun) -> StrategyOutcome:
        page = await run.career_page()
        config = run.ctx.config
        text = clean_page_text(page.text, config.llm_max_chars)
        if not text:
            return StrategyOutcome(jobs=[], confidence=0.0, message="Empty page text")

        cache_key = hashlib.sha256(text.encode('utf-8')).hexdigest()
        data = run.ctx.llm_responses.get(cache_key)
        if data is not None:
            logger.debug(f"[llm] Using cached extraction for {company.id}")
        else:
            data = await self._call_llm(build_prompt(text, company, page.url), run)
            run.ctx.llm_responses[cache_key] = data

        confidence = float(data.get('confidence') or 0.0)
        if confidence < config.llm_confidence_floor:
            logger.info(f"[llm] {company.id}: rejected response (confidence {confidence:.2f} < "
                        f"{config.llm_confidence_floor})")
            return StrategyOutcome(jobs=[], confidence=confidence,
                                   message="LLM confidence below floor",
                                   metadata={'total_found': data.get('total_found')})

        raws: List[Dict[str, Any]] = [j for j in data.get('jobs', [])[:MAX_JOBS] if isinstance(j, dict)]
        for raw in raws:
            if raw.get('apply_url'):
                raw['apply_url'] = urljoin(page.url, str(raw["apply_url"]))
        jobs = build_jobs(raws, company, self.method, source_url=page.url, confidence=confidence)
        logger.info(f"[llm] {company.id}: {len(jobs)} jobs (confidence {confidence:.2f})")
        return StrategyOutcome(
            jobs=jobs,
            confidence=confidence,
            message=f"LLM extracted {len(jobs)} jobs",
            metadata={'total_found': data.get('total_found'), 'raw_count': len(raws)},
        )

    async def _call_llm(self, prompt: str, run: CompanyRun) -> Dict[str, Any]:
        config = run.ctx.config
        payload = {
            "model": config.llm_model,
            "messages": [
                {"role": "system", "content": "You are a job extraction assistant. Return only valid JSON."},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.1,  # Low temperature for deterministic output
            "max_tokens": 4000,
        }
        headers = {
            "Authorization": f"Bearer {config.openrouter_api_key}",
            "Content-Type": "application/json",
        }
        run.ctx.llm_calls += 1
        response = await run.ctx.http.fetch(
            OPENROUTER_URL,
            method="POST",
            headers=headers,
            json_data=payload,
            cancel=run.ctx.cancel,
            apply_jitter=False,
        )
        body = response.json()
        try:
            content = body['choices'][0]['message']['content']
        except (KeyError, IndexError, TypeError):
            raise ScrapingError(ErrorKind.PARSE, "Unexpected LLM response shape", url=OPENROUTER_URL)
        return parse_llm_payload(content or '')

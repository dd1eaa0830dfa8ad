"""
LLM risk-analysis client and reply parser.

The collaborator is a single OpenAI-compatible chat endpoint: one POST with
the assembled prompt, one free-form text reply.  parse_risk_response() turns
that reply into the small structured record the dashboard shows and never
raises.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import requests

import config
from errors import UpstreamTimeout, UpstreamUnavailable

log = logging.getLogger("risk_agent")

SECTION_NAMES = (
    "risk level",
    "risk category",
    "key risk factors",
    "trend analysis",
    "recommendations",
    "confidence level",
)

_SECTION_RE = re.compile(
    r"^\s*(?:\d+[.)]\s*)?(" + "|".join(SECTION_NAMES) + r")\b[^:\n]*:\s*(.*)$",
    re.IGNORECASE,
)
_ITEM_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$")

_PCT = r"(\d{1,3}(?:\.\d+)?)"
RISK_LEVEL_PATTERNS = [
    re.compile(r"risk\s*level[^:\n]*:\s*" + _PCT + r"\s*%", re.IGNORECASE),
    re.compile(r"risk\s*level[^\n\d]{0,40}" + _PCT + r"\s*%", re.IGNORECASE),
    re.compile(_PCT + r"\s*%\s*(?:risk|probability|chance|likelihood)", re.IGNORECASE),
    re.compile(r"risk\s*level[^:\n]*:\s*" + _PCT + r"\b", re.IGNORECASE),
]
RISK_CATEGORY_PATTERNS = [
    re.compile(r"risk\s*category[^:\n]*:\s*(very\s+high|high|moderate|medium|low)\b", re.IGNORECASE),
    re.compile(r"\b(very\s+high|high|moderate|low)\s+risk\b", re.IGNORECASE),
]
CONFIDENCE_PATTERNS = [
    re.compile(r"confidence\s*level[^:\n]*:\s*(low|medium|moderate|high)\b", re.IGNORECASE),
    re.compile(r"confidence[^:\n]*:\s*(low|medium|moderate|high)\b", re.IGNORECASE),
    re.compile(r"\b(low|medium|moderate|high)\s+confidence\b", re.IGNORECASE),
]

CATEGORY_NAMES = {
    "low": "Low",
    "moderate": "Moderate",
    "medium": "Moderate",
    "high": "High",
    "very high": "Very High",
}
CONFIDENCE_NAMES = {"low": "Low", "medium": "Medium", "moderate": "Medium", "high": "High"}


# ─── Parsing ───────────────────────────────────────────────

_BULLET_RE = re.compile(r"^[-*•]\s+")
# single-character emphasis; underscores inside words are kept
_EMPHASIS_RE = re.compile(r"\*|(?<!\w)_|_(?!\w)")


def _clean(text: str) -> str:
    text = re.sub(r"\*\*|__", "", text or "")
    lines = []
    for line in text.splitlines():
        line = line.lstrip().lstrip("#").strip()
        m = _BULLET_RE.match(line)
        bullet = m.group(0) if m else ""
        lines.append(bullet + _EMPHASIS_RE.sub("", line[len(bullet):]))
    return "\n".join(lines)


def _sections(lines: List[str]) -> Dict[str, Dict[str, Any]]:
    """First occurrence of each known header -> inline text + body lines."""
    out: Dict[str, Dict[str, Any]] = {}
    current: Optional[Dict[str, Any]] = None
    for line in lines:
        m = _SECTION_RE.match(line)
        if m:
            name = re.sub(r"\s+", " ", m.group(1).lower())
            current = {"inline": m.group(2).strip(), "lines": []}
            out.setdefault(name, current)
            continue
        if current is not None:
            current["lines"].append(line)
    return out


def _first(patterns, text: str) -> Optional[str]:
    for pattern in patterns:
        m = pattern.search(text)
        if m:
            return m.group(1)
    return None


def _list_items(section: Optional[Dict[str, Any]]) -> List[str]:
    if not section:
        return []
    items = []
    for line in section["lines"]:
        m = _ITEM_RE.match(line)
        if m:
            items.append(m.group(1))
    if not items and section["inline"]:
        items = [p.strip() for p in re.split(r";|,\s+", section["inline"]) if p.strip()]
    return items


def _section_text(section: Optional[Dict[str, Any]]) -> str:
    if not section:
        return ""
    parts = [section["inline"]] + [line for line in section["lines"] if line]
    return " ".join(p.strip() for p in parts if p.strip())


def parse_risk_response(text: str) -> Dict[str, Any]:
    """Extract the structured risk summary; missing fields keep defaults."""
    result: Dict[str, Any] = {
        "riskLevel": 0,
        "riskLevelFound": False,
        "riskCategory": "Unknown",
        "keyRiskFactors": [],
        "trendAnalysis": "Unknown",
        "recommendations": [],
        "confidenceLevel": "Unknown",
        "fullAnalysis": text or "",
    }
    try:
        cleaned = _clean(text)
        sections = _sections(cleaned.splitlines())

        level_section = sections.get("risk level")
        level_text = _section_text(level_section)
        raw_level = None
        if level_text:
            raw_level = _first(RISK_LEVEL_PATTERNS[:1], "Risk Level: " + level_text) or _first(
                [re.compile(_PCT + r"\s*%")], level_text
            )
        raw_level = raw_level or _first(RISK_LEVEL_PATTERNS, cleaned)
        if raw_level is not None:
            result["riskLevel"] = int(max(0, min(100, round(float(raw_level)))))
            result["riskLevelFound"] = True

        category = _first(RISK_CATEGORY_PATTERNS, cleaned)
        if category:
            result["riskCategory"] = CATEGORY_NAMES[re.sub(r"\s+", " ", category.lower())]

        confidence = _first(CONFIDENCE_PATTERNS, cleaned)
        if confidence:
            result["confidenceLevel"] = CONFIDENCE_NAMES[confidence.lower()]

        result["keyRiskFactors"] = _list_items(sections.get("key risk factors"))
        result["recommendations"] = _list_items(sections.get("recommendations"))
        result["trendAnalysis"] = _section_text(sections.get("trend analysis")) or "Unknown"
    except (ValueError, KeyError, TypeError) as e:
        log.warning("Risk reply only partially parsed: %s", e)
    return result


# ─── LLM collaborator ──────────────────────────────────────

def _sanitize(message: str, secret: str = "") -> str:
    text = str(message or "")
    if secret:
        text = text.replace(secret, "***")
    text = " ".join(text.split())
    return text[:197] + "..." if len(text) > 200 else text


def extract_reply(payload: Any) -> Optional[str]:
    """choices[0].message.content (OpenAI style) or top-level content."""
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        message = (choices[0] or {}).get("message") or {}
        content = message.get("content")
        if isinstance(content, str):
            return content
    content = payload.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [c.get("text", "") for c in content if isinstance(c, dict)]
        return "".join(texts) or None
    return None


class RiskAgent:
    """Thin client for the configured LLM endpoint."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        session=None,
    ):
        self.api_url = api_url if api_url is not None else config.LLM_API_URL
        self.api_key = api_key if api_key is not None else config.LLM_API_KEY
        self.model = model if model is not None else config.LLM_MODEL
        self.timeout = timeout or config.LLM_TIMEOUT_SEC
        self.session = session or requests.Session()

    def complete(self, prompt: str) -> str:
        if not self.api_url:
            raise UpstreamUnavailable("LLM endpoint is not configured")

        body: Dict[str, Any] = {
            "messages": [{"role": "user", "content": prompt}],
            "temperature": config.LLM_TEMPERATURE,
        }
        if self.model:
            body["model"] = self.model
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            resp = self.session.post(self.api_url, json=body, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            log.warning("LLM call timed out after %ss", self.timeout)
            raise UpstreamTimeout(f"LLM did not answer within {self.timeout:g}s") from e
        except requests.exceptions.RequestException as e:
            log.warning("LLM call failed: %s", e)
            raise UpstreamUnavailable(_sanitize(f"LLM unreachable: {e}", self.api_key)) from e

        if resp.status_code >= 400:
            log.warning("LLM returned HTTP %s", resp.status_code)
            raise UpstreamUnavailable(
                _sanitize(f"LLM returned HTTP {resp.status_code}: {resp.text}", self.api_key)
            )
        try:
            payload = resp.json()
        except ValueError as e:
            raise UpstreamUnavailable("LLM returned a non-JSON reply") from e

        reply = extract_reply(payload)
        if reply is None:
            raise UpstreamUnavailable("LLM reply has no content")
        return reply

    def analyze(self, prompt: str) -> Dict[str, Any]:
        return parse_risk_response(self.complete(prompt))

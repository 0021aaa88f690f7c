"""
Profiling agents. Each agent wraps one kind of external call (web fetch or AI
inference) and reports through AgentResult; upstream failures become
success=False results, never exceptions, so the orchestrator can degrade.
"""
from __future__ import annotations
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx
from bs4 import BeautifulSoup, Comment

from . import ai_runner
from .schemas import ProfilingTarget
from .settings import env_int

log = logging.getLogger("agents")


@dataclass
class AgentContext:
    target: ProfilingTarget
    previous_results: Dict[str, Any] = field(default_factory=dict)
    shared_memory: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentResult:
    agent_id: str
    success: bool
    data: Optional[Dict[str, Any]] = None
    confidence: int = 0
    sources: List[str] = field(default_factory=list)
    execution_time_ms: int = 0
    error: Optional[str] = None


class Agent:
    agent_id: str = "agent"
    section: str = ""
    description: str = ""

    def run(self, context: AgentContext) -> Tuple[Dict[str, Any], int, List[str]]:
        raise NotImplementedError

    def execute(self, context: AgentContext) -> AgentResult:
        t0 = time.time()
        try:
            data, confidence, sources = self.run(context)
        except Exception as e:
            elapsed = int((time.time() - t0) * 1000)
            log.warning("agent %s failed after %dms: %s", self.agent_id, elapsed, e)
            return AgentResult(self.agent_id, False, error=str(e) or type(e).__name__, execution_time_ms=elapsed)
        elapsed = int((time.time() - t0) * 1000)
        log.info("agent %s ok in %dms confidence=%d", self.agent_id, elapsed, confidence)
        return AgentResult(self.agent_id, True, data, confidence, sources, elapsed)


# -----------------------------
# Web data gathering
# -----------------------------
_DROP_TAGS = ("script", "style", "noscript")


def html_to_text(html: str, limit: int = 4000) -> Tuple[str, str]:
    """Return (title, visible text) from an HTML document."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(_DROP_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    title = soup.title.get_text(" ", strip=True) if soup.title else ""
    text = soup.get_text(" ", strip=True)
    return title, " ".join(text.split())[:limit]


def assess_completeness(target: ProfilingTarget, sources: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Rough signal of how much public data is available for the target."""
    optional = ["data_nascita", "citta", "email", "phone", "linkedin_url", "facebook_url", "instagram_url", "website_url"]
    present = [f for f in optional if getattr(target, f)]
    ok_sources = [s for s in sources if s.get("ok")]
    score = round(60 * len(present) / len(optional) + 40 * min(1.0, len(ok_sources) / 2))
    level = "high" if score >= 70 else "medium" if score >= 35 else "low"
    return {
        "score": score,
        "level": level,
        "missing_fields": [f for f in optional if f not in present],
    }


class DataGatheringAgent(Agent):
    agent_id = "data_gathering"
    section = "raw_data"
    description = "Fetch public pages supplied for the target (website, social profiles)"

    def __init__(self, client: Optional[httpx.Client] = None):
        self._client = client

    def _fetch(self, client: httpx.Client, url: str) -> Dict[str, Any]:
        try:
            resp = client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            log.info("data_gathering fetch failed url=%s err=%s", url, e)
            return {"url": url, "ok": False, "error": str(e)}
        title, text = html_to_text(resp.text)
        return {"url": url, "ok": True, "status_code": resp.status_code, "title": title, "text": text}

    def run(self, context: AgentContext) -> Tuple[Dict[str, Any], int, List[str]]:
        urls = context.target.source_urls()
        sources: List[Dict[str, Any]] = []
        if urls:
            client = self._client or httpx.Client(
                timeout=float(env_int("SCRAPE_TIMEOUT_S", 15)),
                follow_redirects=True,
                headers={"User-Agent": "Mozilla/5.0 (compatible; profiler/1.0)"},
            )
            try:
                sources = [self._fetch(client, u) for u in urls]
            finally:
                if self._client is None:
                    client.close()
            if not any(s["ok"] for s in sources):
                raise RuntimeError(f"no source reachable ({len(urls)} tried)")

        ok = [s for s in sources if s["ok"]]
        data = {
            "sources": sources,
            "stats": {
                "sources_total": len(sources),
                "sources_ok": len(ok),
                "success_rate": round(100 * len(ok) / len(sources)) if sources else 0,
            },
            "completeness": assess_completeness(context.target, sources),
        }
        confidence = data["completeness"]["score"]
        return data, confidence, [s["url"] for s in ok]


# -----------------------------
# AI analysis agents
# -----------------------------
_BASE_SYSTEM = (
    "You are an OSINT analyst supporting an Italian insurance advisor. Use only the "
    "public information provided and state uncertainty explicitly. Reply with a single "
    "JSON object. Always include an integer field confidence_score between 0 and 100 "
    "and a list field fonti with the sources you relied on."
)


def _compact(value: Any, limit: int = 3000) -> str:
    s = json.dumps(value, ensure_ascii=False, default=str)
    return s if len(s) <= limit else s[:limit] + "...(truncated)"


class PromptAgent(Agent):
    def __init__(self, agent_id: str, section: str, description: str, instructions: str, uses: Tuple[str, ...] = (), max_tokens: int = 1500):
        self.agent_id = agent_id
        self.section = section
        self.description = description
        self.instructions = instructions
        self.uses = uses
        self.max_tokens = max_tokens

    def build_prompt(self, context: AgentContext) -> str:
        t = context.target
        parts = [
            f"TARGET: {_compact(t.model_dump(exclude={'consenso_profilazione', 'data_consenso'}, exclude_none=True))}",
            f"TASK: {self.instructions}",
        ]
        raw = context.shared_memory.get("raw_data") or {}
        pages = [
            {"url": s.get("url"), "title": s.get("title"), "text": (s.get("text") or "")[:1500]}
            for s in raw.get("sources", [])
            if s.get("ok")
        ]
        if pages:
            parts.append(f"PUBLIC PAGES: {_compact(pages, 6000)}")
        prior = {k: context.previous_results.get(k) for k in self.uses if context.previous_results.get(k)}
        if prior:
            parts.append(f"PREVIOUS ANALYSIS: {_compact(prior, 4000)}")
        return "\n\n".join(parts)

    def run(self, context: AgentContext) -> Tuple[Dict[str, Any], int, List[str]]:
        reply = ai_runner.run_prompt(_BASE_SYSTEM, self.build_prompt(context), max_tokens=self.max_tokens)
        data = ai_runner.parse_json_object(reply)
        try:
            confidence = int(data.get("confidence_score", 50))
        except (TypeError, ValueError):
            confidence = 50
        confidence = max(0, min(100, confidence))
        data["confidence_score"] = confidence
        sources = [str(s) for s in (data.get("fonti") or []) if s]
        return data, confidence, sources


BASE_AGENT_IDS = ("family", "career", "education", "lifestyle", "wealth", "social", "content")
ADVANCED_AGENT_IDS = ("authority_signals", "work_model", "vision_goals", "needs_mapping", "engagement")
ANALYSIS_AGENT_IDS = BASE_AGENT_IDS + ADVANCED_AGENT_IDS


def build_agents() -> Dict[str, Agent]:
    prompt_agents = [
        PromptAgent("family", "family", "Family situation and residence",
                    "Describe the current household (spouse, children), previous household if public, and residence area type."),
        PromptAgent("career", "career", "Current role and career history",
                    "Identify current profession, seniority, employer, sector and career trajectory."),
        PromptAgent("education", "education", "Education level and field",
                    "Identify the highest education level, field of study, institutions and certifications."),
        PromptAgent("lifestyle", "lifestyle", "Lifestyle and interests",
                    "Classify lifestyle type, main interests, hobbies and travel habits.",
                    uses=("family", "career", "education")),
        PromptAgent("wealth", "wealth", "Economic capacity estimate",
                    "Estimate economic bracket and standard of living with the indicators used.",
                    uses=("family", "career", "education", "lifestyle")),
        PromptAgent("social", "social_graph", "Social network map",
                    "Describe the size of the social network, key connections and communities.",
                    uses=("career", "lifestyle")),
        PromptAgent("content", "content_analysis", "Published content analysis",
                    "Analyse topics, tone and values expressed in the public content.",
                    uses=("career", "lifestyle", "social_graph")),
        PromptAgent("authority_signals", "authority_signals", "Professional authority signals",
                    "Assess influence signals: awards, publications, speaking, media presence.",
                    uses=("career", "content_analysis")),
        PromptAgent("work_model", "work_model", "Working model",
                    "Describe work model (employee, entrepreneur, freelance), income stability and risk exposure.",
                    uses=("career", "wealth")),
        PromptAgent("vision_goals", "vision_goals", "Vision and goals",
                    "Infer personal and professional goals and time horizon.",
                    uses=("career", "lifestyle", "content_analysis")),
        PromptAgent("needs_mapping", "needs_mapping", "Insurance and financial needs",
                    "Map protection, savings, retirement and health needs with priority levels.",
                    uses=("family", "career", "wealth", "work_model", "vision_goals")),
        PromptAgent("engagement", "engagement", "Engagement strategy",
                    "Propose an approach strategy: channel, timing, opening topics, objections to expect.",
                    uses=("needs_mapping", "lifestyle", "authority_signals")),
    ]
    agents: Dict[str, Agent] = {"data_gathering": DataGatheringAgent()}
    agents.update({a.agent_id: a for a in prompt_agents})
    return agents

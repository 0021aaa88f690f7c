"""
profiler_app.orchestrator
Runs the profiling agents for one target in fixed phases and merges their
output into a single composite profile.

Usage example:
    from profiler_app.orchestrator import Orchestrator
    profile = Orchestrator().profile_target(target)
"""
from __future__ import annotations
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .agents import (
    ANALYSIS_AGENT_IDS,
    BASE_AGENT_IDS,
    Agent,
    AgentContext,
    AgentResult,
    build_agents,
)
from .schemas import ProfilingTarget
from .settings import orchestrator_timeout_s

log = logging.getLogger("orchestrator")

ProgressCallback = Callable[[int, str], None]


class ConsentError(ValueError):
    pass


class OrchestrationError(RuntimeError):
    pass


class OrchestrationTimeout(OrchestrationError):
    pass


@dataclass(frozen=True)
class Phase:
    number: int
    name: str
    agents: tuple[str, ...]
    parallel: bool
    progress: int

    @property
    def label(self) -> str:
        return f"Phase {self.number}: {self.name}"


PHASES: tuple[Phase, ...] = (
    Phase(0, "Data Gathering", ("data_gathering",), False, 12),
    Phase(1, "Base Research", ("family", "career", "education"), True, 15),
    Phase(2, "Lifestyle Analysis", ("lifestyle",), False, 35),
    Phase(3, "Advanced Analysis", ("wealth", "social"), True, 45),
    Phase(4, "Content Deep Dive", ("content", "authority_signals"), False, 60),
    Phase(5, "Work Model and Vision", ("work_model", "vision_goals"), True, 75),
    Phase(6, "Strategic Analysis", ("needs_mapping", "engagement"), False, 85),
)
SUMMARY_PHASE = Phase(7, "Executive Summary", (), False, 95)

# agent id -> key in the composite profile
SECTIONS: Dict[str, str] = {
    "data_gathering": "raw_data",
    "family": "family",
    "career": "career",
    "education": "education",
    "lifestyle": "lifestyle",
    "wealth": "wealth",
    "social": "social_graph",
    "content": "content_analysis",
    "authority_signals": "authority_signals",
    "work_model": "work_model",
    "vision_goals": "vision_goals",
    "needs_mapping": "needs_mapping",
    "engagement": "engagement",
}

EMPTY_STATE = {
    "family": "No public information about the household was found.",
    "career": "No verifiable professional history was found.",
    "education": "No public education records were found.",
    "lifestyle": "Too little public activity to describe lifestyle and interests.",
    "wealth": "Economic capacity could not be estimated from the available signals.",
    "social_graph": "Social connections are private or not discoverable.",
    "content_analysis": "No public content was available to analyse.",
    "authority_signals": "No awards, publications or media presence were found.",
    "work_model": "The working model could not be inferred.",
    "vision_goals": "Goals could not be inferred from public statements.",
    "needs_mapping": "Needs could not be mapped without enough base data.",
    "engagement": "No engagement strategy without a needs map.",
}

PHASE1_MIN_SUCCESS = 2


def empty_state_explanation(section: str, error: Optional[str] = None) -> str:
    base = EMPTY_STATE.get(section, "Data not available.")
    return f"{base} ({error})" if error else base


class Orchestrator:
    def __init__(self, agents: Optional[Dict[str, Agent]] = None, timeout_s: Optional[float] = None, max_parallel: int = 3):
        self.agents = agents if agents is not None else build_agents()
        self.timeout_s = float(timeout_s if timeout_s is not None else orchestrator_timeout_s())
        self.max_parallel = max(1, max_parallel)

    # -----------------------------
    # Plan (no side effects)
    # -----------------------------
    def generate_orchestration_plan(self) -> Dict[str, Any]:
        return {
            "phases": [
                {
                    "phase_number": p.number,
                    "phase_name": p.name,
                    "agents": list(p.agents),
                    "parallel": p.parallel,
                }
                for p in PHASES + (SUMMARY_PHASE,)
            ],
            "estimated_time_ms": 300000,
            "estimated_cost_usd": 0.50,
            "timeout_s": self.timeout_s,
        }

    # -----------------------------
    # Execution
    # -----------------------------
    def profile_target(self, target: ProfilingTarget, progress_cb: Optional[ProgressCallback] = None) -> Dict[str, Any]:
        if not target.consenso_profilazione:
            raise ConsentError("Profiling consent missing: operation not authorized")

        started = time.monotonic()
        deadline = started + self.timeout_s
        log.info("profiling start target=%s %s %s", target.id, target.nome, target.cognome)

        sections: Dict[str, Any] = {}
        results: Dict[str, AgentResult] = {}
        shared: Dict[str, Any] = {"raw_data": None}

        def notify(progress: int, label: str) -> None:
            if progress_cb is None:
                return
            try:
                progress_cb(progress, label)
            except Exception:
                log.exception("progress callback failed target=%s", target.id)

        pool = ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="agent")
        try:
            for phase in PHASES:
                self._check_deadline(deadline, phase)
                notify(phase.progress, phase.label)
                if phase.parallel:
                    ctx = AgentContext(target, dict(sections), shared)
                    futures = {aid: self._submit(pool, aid, ctx) for aid in phase.agents}
                    for aid, fut in futures.items():
                        results[aid] = self._collect(aid, fut, deadline)
                        self._merge(aid, results[aid], sections, shared)
                else:
                    for aid in phase.agents:
                        ctx = AgentContext(target, dict(sections), shared)
                        results[aid] = self._collect(aid, self._submit(pool, aid, ctx), deadline)
                        self._merge(aid, results[aid], sections, shared)
                if phase.number == 1:
                    self._require_base_research(phase, results)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        notify(SUMMARY_PHASE.progress, SUMMARY_PHASE.label)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        profile = self._assemble(target, sections, results, elapsed_ms)
        log.info(
            "profiling done target=%s in %.2fs agents=%d/%d score=%d completeness=%d%% errors=%d",
            target.id, elapsed_ms / 1000, len(profile["agents_used"]), len(SECTIONS),
            profile["overall_score"], profile["completeness"], len(profile["errors"]),
        )
        return profile

    def _submit(self, pool: ThreadPoolExecutor, agent_id: str, ctx: AgentContext) -> Optional[Future]:
        agent = self.agents.get(agent_id)
        if agent is None:
            return None
        return pool.submit(agent.execute, ctx)

    def _collect(self, agent_id: str, fut: Optional[Future], deadline: float) -> AgentResult:
        if fut is None:
            return AgentResult(agent_id, False, error="agent not configured")
        remaining = deadline - time.monotonic()
        try:
            return fut.result(timeout=max(0.0, remaining))
        except FutureTimeout:
            raise OrchestrationTimeout(
                f"Profiling exceeded {self.timeout_s:.0f}s while waiting for agent '{agent_id}'"
            ) from None
        except Exception as e:
            return AgentResult(agent_id, False, error=str(e) or type(e).__name__)

    def _check_deadline(self, deadline: float, phase: Phase) -> None:
        if time.monotonic() >= deadline:
            raise OrchestrationTimeout(f"Profiling exceeded {self.timeout_s:.0f}s before {phase.label}")

    @staticmethod
    def _merge(agent_id: str, result: AgentResult, sections: Dict[str, Any], shared: Dict[str, Any]) -> None:
        key = SECTIONS.get(agent_id, agent_id)
        data = result.data if result.success else None
        if agent_id == "data_gathering":
            shared["raw_data"] = data
        sections[key] = data

    @staticmethod
    def _require_base_research(phase: Phase, results: Dict[str, AgentResult]) -> None:
        ok = [aid for aid in phase.agents if results[aid].success]
        if len(ok) >= PHASE1_MIN_SUCCESS:
            return
        errors = "; ".join(f"{aid}: {results[aid].error}" for aid in phase.agents if not results[aid].success)
        raise OrchestrationError(
            f"Phase 1 failed: insufficient data collected ({len(ok)}/{len(phase.agents)} agents succeeded). Errors: {errors}"
        )

    def _assemble(self, target: ProfilingTarget, sections: Dict[str, Any], results: Dict[str, AgentResult], elapsed_ms: int) -> Dict[str, Any]:
        agents_used = [aid for aid in SECTIONS if aid in results and results[aid].success]
        errors = [
            {"agent": aid, "error": r.error or "Unknown"}
            for aid, r in results.items()
            if not r.success
        ]
        missing = []
        for aid in ANALYSIS_AGENT_IDS:
            r = results.get(aid)
            if r is None or not r.success:
                section = SECTIONS[aid]
                missing.append({
                    "section": section,
                    "agent": aid,
                    "explanation": empty_state_explanation(section),
                    "reason": r.error if r else "not executed",
                })

        profile: Dict[str, Any] = {
            "target": target.model_dump(mode="json"),
            "nome": target.nome,
            "cognome": target.cognome,
        }
        for aid, key in SECTIONS.items():
            profile[key] = sections.get(key)
        profile.update({
            "agents_used": agents_used,
            "errors": errors,
            "missing_sections": missing,
            "executive_summary": build_executive_summary(sections),
            "overall_score": overall_score(results),
            "completeness": completeness(results),
            "profiled_at": datetime.now(timezone.utc).isoformat(),
            "processing_time_ms": elapsed_ms,
        })
        return profile


def overall_score(results: Dict[str, AgentResult]) -> int:
    """Mean confidence of the base agents that produced data."""
    scores = [results[a].confidence for a in BASE_AGENT_IDS if a in results and results[a].success]
    if not scores:
        return 0
    return max(0, min(100, round(sum(scores) / len(scores))))


def completeness(results: Dict[str, AgentResult]) -> int:
    done = sum(1 for a in ANALYSIS_AGENT_IDS if a in results and results[a].success)
    return round(100 * done / len(ANALYSIS_AGENT_IDS))


_SUMMARY_ORDER = (
    ("family", "FAMILY"),
    ("career", "PROFESSION"),
    ("education", "EDUCATION"),
    ("lifestyle", "LIFESTYLE"),
    ("wealth", "ECONOMIC CAPACITY"),
    ("social_graph", "SOCIAL NETWORK"),
)


def _headline(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    for key in ("sintesi", "summary", "descrizione", "description"):
        v = data.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
    for k, v in data.items():
        if k in ("fonti", "confidence_score"):
            continue
        if isinstance(v, str) and v.strip() and v.strip().lower() not in ("non_determinato", "non determinato", "n/a"):
            return v.strip()
    return None


def build_executive_summary(sections: Dict[str, Any]) -> str:
    parts: List[str] = []
    for key, label in _SUMMARY_ORDER:
        line = _headline(sections.get(key))
        if line:
            parts.append(f"{label}: {line.rstrip('.')}")
    if not parts:
        return "Profile incomplete: not enough public data to summarise."
    return ". ".join(parts) + "."

from __future__ import annotations
import hashlib
import json
import logging
import re
import time
from typing import Any, Dict

import openai

from .settings import BASE_DIR, env_bool, env_int, env_str


CACHE_DIR = BASE_DIR / "results" / ".ai_cache"

log = logging.getLogger("ai_runner")


class AIUnavailable(RuntimeError):
    """AI calls are disabled or not configured."""


class AICallError(RuntimeError):
    """The model endpoint failed after all retries."""


def ai_enabled() -> bool:
    return env_bool("AI_ENABLED", False) and bool(env_str("OPENAI_API_KEY", ""))


def default_model() -> str:
    return env_str("AI_MODEL", "gpt-4o-mini")


def _hash_key(model: str, system: str, prompt: str) -> str:
    h = hashlib.sha256()
    h.update((model + "|" + system + "|" + prompt).encode("utf-8", errors="ignore"))
    return h.hexdigest()


def _cache_get(key: str) -> str | None:
    fp = CACHE_DIR / f"{key}.json"
    if not fp.exists():
        return None
    try:
        content = fp.read_text(encoding="utf-8")
    except OSError as e:
        log.debug("ai_cache read failed key=%s: %s", key[:8], e)
        return None
    log.debug("ai_cache hit key=%s", key[:8])
    return content


def _cache_set(key: str, content: str) -> None:
    try:
        CACHE_DIR.mkdir(parents=True, exist_ok=True)
        (CACHE_DIR / f"{key}.json").write_text(content, encoding="utf-8")
        log.debug("ai_cache write key=%s resp_len=%d", key[:8], len(content))
    except OSError as e:
        log.debug("ai_cache write failed key=%s: %s", key[:8], e)


def parse_json_object(content: str) -> Dict[str, Any]:
    """
    Normalize a model reply into a dict. Accepts strict JSON, JSON wrapped in
    markdown fences, or a JSON object embedded in surrounding prose.
    Raises ValueError when no object can be recovered.
    """
    text = (content or "").strip()
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        snippet = text[:80].replace("\n", " ")
        log.debug("ai_parse strict json failed; snippet='%s'", snippet)

    match = re.search(r"\{[\s\S]*\}", text)
    if match:
        try:
            data = json.loads(match.group(0))
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass
    raise ValueError("model reply did not contain a JSON object")


def _client() -> "openai.OpenAI":
    return openai.OpenAI(
        api_key=env_str("OPENAI_API_KEY", ""),
        base_url=env_str("AI_BASE_URL", "") or None,
        timeout=float(env_int("AI_TIMEOUT_S", 90)),
        max_retries=0,
    )


def run_prompt(system: str, prompt: str, *, model: str | None = None, max_tokens: int = 1500, temperature: float = 0.3, use_cache: bool | None = None) -> str:
    """
    Run one chat completion and return the reply text. Retries transient
    failures up to AI_MAX_RETRIES times with a linear backoff.
    """
    if not ai_enabled():
        note = "AI_ENABLED is false" if not env_bool("AI_ENABLED", False) else "OPENAI_API_KEY missing"
        raise AIUnavailable(note)

    model = model or default_model()
    if use_cache is None:
        use_cache = env_bool("AI_CACHE", True)
    key = _hash_key(model, system, prompt)
    if use_cache:
        cached = _cache_get(key)
        if cached is not None:
            return cached

    client = _client()
    attempts = 1 + max(0, env_int("AI_MAX_RETRIES", 2))
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            t0 = time.time()
            resp = client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=max(1, int(max_tokens)),
                temperature=float(temperature or 0.0),
                response_format={"type": "json_object"},
            )
            content = (resp.choices[0].message.content or "").strip()
            dt = time.time() - t0
            log.info("ai_runner call ok: model=%s latency=%.2fs resp_len=%d attempt=%d", model, dt, len(content), attempt)
            if use_cache and content:
                _cache_set(key, content)
            return content
        except openai.APIError as e:
            last_error = e
            log.warning("ai_runner call failed: model=%s attempt=%d/%d err=%s", model, attempt, attempts, e)
            if attempt < attempts:
                time.sleep(min(5.0, 1.0 * attempt))
    raise AICallError(f"model {model} unreachable after {attempts} attempt(s): {last_error}")

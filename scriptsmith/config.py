"""Configuration settings for Scriptsmith."""

import json
import os
from typing import Dict, List, Tuple

# LLM model name (can be overridden via environment variable)
LLM_MODEL_NAME: str = os.environ.get("OPENAI_MODEL", "gpt-4o")

# Model recommended for outlines backed by strong research
PREMIUM_MODEL_NAME: str = os.environ.get("SCRIPT_PREMIUM_MODEL", "gpt-4o")

# Model recommended for everything else
STANDARD_MODEL_NAME: str = os.environ.get("SCRIPT_STANDARD_MODEL", "gpt-4o-mini")

# Research score above which the premium model is recommended
PREMIUM_MODEL_SCORE_THRESHOLD: float = 0.8

# Sampling temperatures per generation stage
PLANNING_TEMPERATURE: float = 0.3
OUTLINE_TEMPERATURE: float = 0.3
CHUNK_TEMPERATURE: float = 0.7

# Token ceilings per generation stage
PLANNING_MAX_TOKENS: int = 2048
OUTLINE_MAX_TOKENS: int = 4096
CHUNK_MAX_TOKENS: int = 8192

# Spoken words per minute used to size chunks
WORDS_PER_MINUTE: int = 130

# Chunk brackets: (max total minutes, chunk count), ascending.
# Anything longer than the last bracket uses MAX_CHUNK_COUNT.
CHUNK_THRESHOLDS: List[Tuple[int, int]] = [
    (40, 3),
    (50, 4),
]
MAX_CHUNK_COUNT: int = 5

_last_minutes = 0
for _minutes, _count in CHUNK_THRESHOLDS:
    if _minutes <= _last_minutes:
        raise ValueError("CHUNK_THRESHOLDS must be sorted by ascending minutes")
    _last_minutes = _minutes

# Shortest script (in minutes) that goes through the outline workflow
MIN_OUTLINE_MINUTES: int = 35

# Accepted script duration range for async generation (in minutes)
MIN_SCRIPT_MINUTES: int = 1
MAX_SCRIPT_MINUTES: int = int(os.environ.get("SCRIPT_MAX_MINUTES", "90"))

# Research requirements keyed by the upper bound of a duration bracket (minutes).
# A request uses the first bracket whose bound is >= its duration; longer
# requests use the largest bracket.
DEFAULT_RESEARCH_REQUIREMENTS: Dict[int, Dict[str, float]] = {
    35: {"min_words": 7000, "min_sources": 10, "min_quality": 0.70},
    40: {"min_words": 8500, "min_sources": 12, "min_quality": 0.72},
    45: {"min_words": 10000, "min_sources": 15, "min_quality": 0.75},
    50: {"min_words": 11500, "min_sources": 17, "min_quality": 0.77},
    60: {"min_words": 13000, "min_sources": 20, "min_quality": 0.80},
}

# Requirements for scripts shorter than the outline minimum
BASELINE_RESEARCH_REQUIREMENTS: Dict[str, float] = {
    "min_words": 3000,
    "min_sources": 5,
    "min_quality": 0.60,
}


def _load_research_requirements() -> Dict[int, Dict[str, float]]:
    """Load the research bracket table, honoring SCRIPT_RESEARCH_REQUIREMENTS.

    The environment variable holds a JSON object such as
    ``{"35": {"min_words": 6000, "min_sources": 8, "min_quality": 0.7}}``.
    """
    raw = os.environ.get("SCRIPT_RESEARCH_REQUIREMENTS")
    if not raw:
        return dict(DEFAULT_RESEARCH_REQUIREMENTS)

    data = json.loads(raw)
    if not isinstance(data, dict) or not data:
        raise ValueError("SCRIPT_RESEARCH_REQUIREMENTS must be a non-empty JSON object")

    table: Dict[int, Dict[str, float]] = {}
    for minutes, values in data.items():
        missing = {"min_words", "min_sources", "min_quality"} - set(values)
        if missing:
            raise ValueError(f"Research bracket {minutes} is missing {sorted(missing)}")
        table[int(minutes)] = {key: float(values[key]) for key in ("min_words", "min_sources", "min_quality")}
    return table


RESEARCH_REQUIREMENTS: Dict[int, Dict[str, float]] = _load_research_requirements()

# Research sources quoted in outline and chunk prompts, and the characters
# of each one quoted
PROMPT_RESEARCH_SOURCES: int = 5
PROMPT_RESEARCH_EXCERPT_CHARS: int = 200

# Research score weights (must sum to 1.0)
RESEARCH_SCORE_WEIGHTS: Dict[str, float] = {
    "sources": 0.3,
    "words": 0.4,
    "quality": 0.3,
}

# Source count and word count at which their score components saturate
RESEARCH_SOURCE_SATURATION: int = 15
RESEARCH_WORD_SATURATION: int = 10000

# Tolerance for floating-point comparison of weights
WEIGHTS_TOLERANCE: float = 0.001

_weights_sum = sum(RESEARCH_SCORE_WEIGHTS.values())
if abs(_weights_sum - 1.0) > WEIGHTS_TOLERANCE:
    raise ValueError(f"RESEARCH_SCORE_WEIGHTS must sum to 1.0, got {_weights_sum}")

# Invocation ceiling of the scheduler host (seconds) and the share of it a
# single run may spend on generation
INVOCATION_CEILING_SECONDS: float = float(os.environ.get("SCRIPT_INVOCATION_CEILING_SECONDS", "300"))


def _load_budget_fraction() -> float:
    """Read SCRIPT_BUDGET_FRACTION, which must lie strictly between 0 and 1."""
    fraction = float(os.environ.get("SCRIPT_BUDGET_FRACTION", "0.9"))
    if not 0 < fraction < 1:
        raise ValueError(f"SCRIPT_BUDGET_FRACTION must be between 0 and 1 (exclusive), got {fraction}")
    return fraction


BUDGET_FRACTION: float = _load_budget_fraction()
PROCESSING_BUDGET_SECONDS: float = INVOCATION_CEILING_SECONDS * BUDGET_FRACTION

# A processing job older than this multiple of the budget is considered abandoned
STALE_JOB_BUDGET_MULTIPLIER: float = 2.0

# Job defaults
DEFAULT_JOB_PRIORITY: int = 5
DEFAULT_MAX_RETRIES: int = 3

# Timeouts for outbound calls (seconds)
LLM_REQUEST_TIMEOUT_SECONDS: float = float(os.environ.get("SCRIPT_LLM_TIMEOUT_SECONDS", "120"))
STORE_TIMEOUT_SECONDS: float = 10.0

# Outbound generation limits (shared by every call made through one client)
GENERATION_REQUESTS_PER_MINUTE: int = int(os.environ.get("SCRIPT_GENERATION_RPM", "50"))
GENERATION_MAX_CONCURRENCY: int = int(os.environ.get("SCRIPT_GENERATION_CONCURRENCY", "4"))
GENERATION_ACQUIRE_TIMEOUT_SECONDS: float = 30.0

# Per-owner limits on job submission
ENQUEUE_RATE_LIMIT: int = int(os.environ.get("SCRIPT_ENQUEUE_RATE_LIMIT", "10"))
ENQUEUE_RATE_WINDOW_SECONDS: int = 60

# Shared secret for the scheduler trigger endpoint
TRIGGER_SECRET: str = os.environ.get("SCRIPT_TRIGGER_SECRET", "")

# Webhook delivery
WEBHOOK_URL: str = os.environ.get("SCRIPT_WEBHOOK_URL", "")
WEBHOOK_SECRET: str = os.environ.get("SCRIPT_WEBHOOK_SECRET", "")
WEBHOOK_TIMEOUT_SECONDS: float = 5.0
WEBHOOK_MAX_RETRIES: int = 2
WEBHOOK_RETRY_DELAY_SECONDS: float = 1.0

# Output directory for exported scripts
DEFAULT_OUTPUT_DIR: str = "./scripts"

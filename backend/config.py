"""
Configuration for the assessment backend.

RouterConfig holds the routing thresholds from data/router_config.json.
AppConfig holds file locations, session TTL and text-generation settings,
with overrides from the environment:

    ASSESSMENT_CONFIG_PATH           router config JSON path
    ASSESSMENT_SESSION_TTL_SECONDS   idle session lifetime
    ASSESSMENT_LLM_MODEL             HuggingFace model id (unset = rules only)
    ASSESSMENT_LLM_TIMEOUT_SECONDS   timeout for one text-generation call
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = PROJECT_ROOT / "data"

DEFAULT_SESSION_TTL_SECONDS = 2 * 60 * 60


@dataclass(frozen=True)
class RouterConfig:
    """
    Routing thresholds.

    Attributes:
        min_discovery_questions: Discovery answers that end the discovery block
        fast_path_confidence: Classification confidence that ends discovery early
        fast_path_min_answers: Discovery answers required before the fast path applies
        expertise_confidence_threshold: Confidence that ends (or skips) the expertise block
        max_expertise_questions: Hard cap on expertise answers
        deep_dive_min_score: Minimum area score to be selected for deep-dive
        deep_dive_top_k: Maximum number of deep-dive areas
        deep_dive_extend_score: Areas at or above this score run to their max question count
        question_budget: Total answers after which deep-dive stops and risk-scan starts
        max_total_questions: Total answers after which the assessment completes
        max_follow_up_depth: Maximum depth of inserted follow-up chains
        risk_scan_area_count: Number of areas covered by the risk scan
        inference_confidence_threshold: Confidence at which an inferred fact counts as known
    """
    min_discovery_questions: int = 4
    fast_path_confidence: float = 0.7
    fast_path_min_answers: int = 2
    expertise_confidence_threshold: float = 0.7
    max_expertise_questions: int = 3
    deep_dive_min_score: int = 30
    deep_dive_top_k: int = 2
    deep_dive_extend_score: int = 60
    question_budget: int = 18
    max_total_questions: int = 25
    max_follow_up_depth: int = 2
    risk_scan_area_count: int = 3
    inference_confidence_threshold: float = 0.8

    def __post_init__(self):
        errors = []
        for name in ("min_discovery_questions",
                     "fast_path_min_answers", "max_expertise_questions",
                     "deep_dive_top_k", "question_budget", "max_total_questions",
                     "max_follow_up_depth", "risk_scan_area_count"):
            if getattr(self, name) < 0:
                errors.append(f"{name} must be >= 0")
        for name in ("fast_path_confidence", "expertise_confidence_threshold",
                     "inference_confidence_threshold"):
            if not 0.0 <= getattr(self, name) <= 1.0:
                errors.append(f"{name} must be within 0..1")
        if self.question_budget > self.max_total_questions:
            errors.append("question_budget must be <= max_total_questions")
        if self.max_total_questions < 1:
            errors.append("max_total_questions must be >= 1")

        if errors:
            raise ValueError("Router config validation failed:\n  - " + "\n  - ".join(errors))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RouterConfig":
        """
        Build config from a dict, rejecting unknown keys.

        Raises:
            ValueError: Unknown keys or out-of-range values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown router config keys: {unknown}")
        return cls(**dict(data))

    @classmethod
    def load(cls, path: str | Path) -> "RouterConfig":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Router config not found: {path}")
        with open(path, 'r') as f:
            data = json.load(f)
        config = cls.from_dict(data)
        logger.info(f"Router config loaded from {path}")
        return config


@dataclass(frozen=True)
class AppConfig:
    """File locations and service settings for one process."""
    question_bank_path: Path = DATA_DIR / "question_bank.json"
    scoring_rules_path: Path = DATA_DIR / "scoring_rules.json"
    router_config_path: Path = DATA_DIR / "router_config.json"
    session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS
    llm_model: Optional[str] = None
    llm_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AppConfig":
        """
        Build config from defaults plus environment overrides.

        Raises:
            ValueError: If a numeric override cannot be parsed
        """
        environ = os.environ if environ is None else environ
        overrides = {}

        if environ.get("ASSESSMENT_CONFIG_PATH"):
            overrides['router_config_path'] = Path(environ["ASSESSMENT_CONFIG_PATH"])

        if environ.get("ASSESSMENT_SESSION_TTL_SECONDS"):
            try:
                overrides['session_ttl_seconds'] = int(environ["ASSESSMENT_SESSION_TTL_SECONDS"])
            except ValueError:
                raise ValueError(
                    f"ASSESSMENT_SESSION_TTL_SECONDS must be an integer, "
                    f"got {environ['ASSESSMENT_SESSION_TTL_SECONDS']!r}"
                ) from None

        if environ.get("ASSESSMENT_LLM_MODEL"):
            overrides['llm_model'] = environ["ASSESSMENT_LLM_MODEL"]

        if environ.get("ASSESSMENT_LLM_TIMEOUT_SECONDS"):
            try:
                overrides['llm_timeout_seconds'] = float(environ["ASSESSMENT_LLM_TIMEOUT_SECONDS"])
            except ValueError:
                raise ValueError(
                    f"ASSESSMENT_LLM_TIMEOUT_SECONDS must be a number, "
                    f"got {environ['ASSESSMENT_LLM_TIMEOUT_SECONDS']!r}"
                ) from None

        if overrides:
            logger.info(f"Config overrides from environment: {sorted(overrides)}")
        return cls(**overrides)

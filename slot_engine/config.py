"""
Engine configuration

Responsibilities:
- Hold the tunable limits for one engine instance (question budget,
  stopping heuristics, model call settings)
- Load them from data/engine_config.json
- Apply environment overrides for deployment-time tuning

Design principles:
- Frozen dataclass, validated on construction
- Collect every problem, then raise once
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, Optional, Tuple

from slot_engine.errors import CatalogError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "data/engine_config.json"

# Keyword categories used for the heuristic coverage stop rule
DEFAULT_KEYWORD_CATEGORIES: Dict[str, Tuple[str, ...]] = {
    'problem_identification': ('problem', 'issue', 'challenge', 'difficulty', 'trouble'),
    'current_process': ('current', 'currently', 'now', 'process', 'workflow', 'method', 'approach'),
    'time_impact': ('time', 'hours', 'minutes', 'weekly', 'daily', 'monthly', 'effort', 'spend', 'take'),
    'team_size': ('people', 'team', 'members', 'staff', 'employees', 'users', 'individuals'),
    'tools_systems': ('tool', 'system', 'software', 'application', 'platform', 'excel', 'database'),
    'desired_outcome': ('want', 'need', 'goal', 'outcome', 'result', 'expect', 'improve', 'better'),
}

# Environment variable -> (field name, parser)
ENV_OVERRIDES = {
    'SLOT_ENGINE_MAX_QUESTIONS': ('max_questions', int),
    'SLOT_ENGINE_MIN_QUESTIONS': ('min_question_floor', int),
    'SLOT_ENGINE_MODEL_TIMEOUT': ('model_timeout_seconds', float),
    'SLOT_ENGINE_MODEL_NAME': ('model_name', str),
}


@dataclass(frozen=True)
class EngineConfig:
    """
    Tunable engine limits.

    Attributes:
        max_questions: Hard question budget per session
        min_question_floor: Questions that must be asked before any stop
        coverage_threshold: Keyword-category coverage needed for the
            heuristic stop rule
        fatigue_answer_length: Answers shorter than this (characters) count
            as fatigued
        recent_question_window: How many recent questions count as
            "recently asked" (fatigue scoring, fallback prompt context)
        model_timeout_seconds: Per-call budget for the language model
        model_name: HuggingFace model id for the console harness
        schema_path: Slot schema JSON
        templates_path: Question template catalog JSON
        keyword_categories: category -> keywords
    """
    max_questions: int = 10
    min_question_floor: int = 3
    coverage_threshold: float = 0.8
    fatigue_answer_length: int = 15
    recent_question_window: int = 3
    model_timeout_seconds: float = 30.0
    model_name: str = "mistralai/Mistral-7B-Instruct-v0.2"
    schema_path: str = "data/brief_slot_schema.json"
    templates_path: str = "data/brief_question_templates.json"
    keyword_categories: Dict[str, Tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_KEYWORD_CATEGORIES)
    )

    def __post_init__(self):
        errors = []

        if self.min_question_floor <= 0:
            errors.append(f"min_question_floor must be > 0 (got {self.min_question_floor})")
        if self.max_questions < self.min_question_floor:
            errors.append(
                f"max_questions ({self.max_questions}) must be >= "
                f"min_question_floor ({self.min_question_floor})"
            )
        if not 0.0 <= self.coverage_threshold <= 1.0:
            errors.append(f"coverage_threshold must be in [0,1] (got {self.coverage_threshold})")
        if self.fatigue_answer_length < 0:
            errors.append(f"fatigue_answer_length must be >= 0 (got {self.fatigue_answer_length})")
        if self.recent_question_window < 1:
            errors.append(f"recent_question_window must be >= 1 (got {self.recent_question_window})")
        if self.model_timeout_seconds <= 0:
            errors.append(f"model_timeout_seconds must be > 0 (got {self.model_timeout_seconds})")
        if not self.keyword_categories:
            errors.append("keyword_categories must not be empty")

        if errors:
            raise CatalogError("Engine config validation failed:\n  - " + "\n  - ".join(errors))

    # ========================
    # Loading
    # ========================

    @classmethod
    def from_json(cls, config_path: str = DEFAULT_CONFIG_PATH,
                  environ: Optional[Dict[str, str]] = None) -> "EngineConfig":
        """
        Load config from JSON, then apply environment overrides.

        Unknown keys are ignored with a warning.

        Args:
            config_path: Path to engine_config.json
            environ: Environment mapping (defaults to os.environ)

        Raises:
            FileNotFoundError: If config file doesn't exist
            CatalogError: If resulting config is invalid
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Engine config not found: {config_path}")

        with open(path, 'r') as f:
            raw = json.load(f)

        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in raw.items():
            if key not in known:
                logger.warning(f"Ignoring unknown engine config key: {key}")
                continue
            kwargs[key] = value

        if 'keyword_categories' in kwargs:
            kwargs['keyword_categories'] = {
                name: tuple(words) for name, words in kwargs['keyword_categories'].items()
            }

        config = cls(**kwargs).with_env_overrides(environ)
        logger.info(
            f"Engine config loaded from {config_path} "
            f"(max_questions={config.max_questions}, floor={config.min_question_floor})"
        )
        return config

    def with_env_overrides(self, environ: Optional[Dict[str, str]] = None) -> "EngineConfig":
        """Return a copy with SLOT_ENGINE_* environment values applied"""
        environ = os.environ if environ is None else environ
        changes = {}
        for env_name, (field_name, parser) in ENV_OVERRIDES.items():
            raw = environ.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                changes[field_name] = parser(raw)
            except ValueError:
                raise CatalogError(f"Invalid value for {env_name}: {raw!r}")
            logger.debug(f"Config override {field_name}={changes[field_name]} from {env_name}")

        if not changes:
            return self
        return replace(self, **changes)

"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from .types import (
    CalibrationConfig,
    ContextBudgetConfig,
    EvictionConfig,
    InjectionConfig,
    LLAMA3_HEADER_PATTERN,
    LLAMA3_ROLE_HEADERS,
    MemoryConfig,
    StorageConfig,
    SummarizationConfig,
)

CONFIG_FILENAMES = [
    "context-budget.yaml",
    "context-budget.yml",
    "context-budget.json",
]

STORAGE_BACKENDS = ("sqlite", "filesystem", "memory")
INJECTION_POSITIONS = ("in_prompt", "in_chat")


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _parse_injection(raw: dict[str, Any], default: InjectionConfig) -> InjectionConfig:
    return InjectionConfig(
        position=raw.get("position", default.position),
        depth=raw.get("depth", default.depth),
        role=raw.get("role", default.role),
    )


def _build_config(raw: dict[str, Any]) -> ContextBudgetConfig:
    """Build a ContextBudgetConfig from a raw dict."""
    ev_raw = raw.get("eviction", {}) or {}
    ev_defaults = EvictionConfig()
    eviction = EvictionConfig(
        enabled=ev_raw.get("enabled", ev_defaults.enabled),
        target_token_budget=ev_raw.get("target_token_budget", ev_defaults.target_token_budget),
        batch_size=ev_raw.get("batch_size", ev_defaults.batch_size),
        min_messages_to_keep=ev_raw.get("min_messages_to_keep", ev_defaults.min_messages_to_keep),
        snap_to_batch=ev_raw.get("snap_to_batch", ev_defaults.snap_to_batch),
        retract_headroom=ev_raw.get("retract_headroom", ev_defaults.retract_headroom),
        non_chat_fallback_ratio=ev_raw.get(
            "non_chat_fallback_ratio", ev_defaults.non_chat_fallback_ratio,
        ),
        message_length_threshold=ev_raw.get(
            "message_length_threshold", ev_defaults.message_length_threshold,
        ),
        include_user_messages=ev_raw.get("include_user_messages", ev_defaults.include_user_messages),
        include_system_messages=ev_raw.get(
            "include_system_messages", ev_defaults.include_system_messages,
        ),
    )

    cal_raw = raw.get("calibration", {}) or {}
    cal_defaults = CalibrationConfig()
    calibration = CalibrationConfig(**{
        name: cal_raw.get(name, getattr(cal_defaults, name))
        for name in cal_defaults.__dataclass_fields__
    })

    summ_raw = raw.get("summarization", {}) or {}
    summ_defaults = SummarizationConfig()
    summarization = SummarizationConfig(
        auto_summarize=summ_raw.get("auto_summarize", summ_defaults.auto_summarize),
        provider=summ_raw.get("provider", summ_defaults.provider),
        model=summ_raw.get("model", summ_defaults.model),
        max_tokens=summ_raw.get("max_tokens", summ_defaults.max_tokens),
        temperature=summ_raw.get("temperature", summ_defaults.temperature),
        max_words=summ_raw.get("max_words", summ_defaults.max_words),
        max_chars=summ_raw.get("max_chars", summ_defaults.max_chars),
        prompt=summ_raw.get("prompt", summ_defaults.prompt),
        separator=summ_raw.get("separator", summ_defaults.separator),
        template=summ_raw.get("template", summ_defaults.template),
        profile=summ_raw.get("profile", summ_defaults.profile) or "",
        user_name=summ_raw.get("user_name", summ_defaults.user_name),
        assistant_name=summ_raw.get("assistant_name", summ_defaults.assistant_name),
        timeout=summ_raw.get("timeout", summ_defaults.timeout),
        injection=_parse_injection(summ_raw.get("injection", {}) or {}, summ_defaults.injection),
    )

    mem_raw = raw.get("memory", {}) or {}
    mem_defaults = MemoryConfig()
    memory = MemoryConfig(**{
        name: mem_raw.get(name, getattr(mem_defaults, name))
        for name in mem_defaults.__dataclass_fields__
        if name != "injection"
    }, injection=_parse_injection(mem_raw.get("injection", {}) or {}, mem_defaults.injection))

    storage_raw = raw.get("storage", {}) or {}
    storage_root = raw.get("storage_root", ".context-budget")
    storage = StorageConfig(
        backend=storage_raw.get("backend", "sqlite"),
        root=storage_raw.get("filesystem", {}).get("root", storage_root + "/state"),
        sqlite_path=storage_raw.get("sqlite", {}).get("path", storage_root + "/state.db"),
    )

    role_headers = dict(LLAMA3_ROLE_HEADERS)
    role_headers.update(raw.get("role_headers", {}) or {})

    return ContextBudgetConfig(
        version=str(raw.get("version", "0.1")),
        token_counter=raw.get("token_counter", "estimate"),
        header_pattern=raw.get("header_pattern", LLAMA3_HEADER_PATTERN),
        role_headers=role_headers,
        eviction=eviction,
        calibration=calibration,
        summarization=summarization,
        memory=memory,
        storage=storage,
        providers=raw.get("providers", {}) or {},
    )


def validate_config(config: ContextBudgetConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []
    ev = config.eviction
    cal = config.calibration

    if ev.target_token_budget <= 0:
        errors.append(f"target_token_budget must be > 0 (got {ev.target_token_budget})")
    if ev.batch_size < 1:
        errors.append(f"batch_size must be >= 1 (got {ev.batch_size})")
    if ev.min_messages_to_keep < 0:
        errors.append(f"min_messages_to_keep must be >= 0 (got {ev.min_messages_to_keep})")
    if not 0 < ev.retract_headroom <= 1:
        errors.append(f"retract_headroom must be in (0, 1] (got {ev.retract_headroom})")
    if not 0 <= ev.non_chat_fallback_ratio < 1:
        errors.append(
            f"non_chat_fallback_ratio must be in [0, 1) (got {ev.non_chat_fallback_ratio})"
        )

    if not 0 < cal.target_utilization <= 1:
        errors.append(f"target_utilization must be in (0, 1] (got {cal.target_utilization})")
    if not 0 <= cal.tolerance <= cal.max_tolerance:
        errors.append(
            f"tolerance ({cal.tolerance}) must be >= 0 and <= max_tolerance ({cal.max_tolerance})"
        )
    if not 0 < cal.min_target_ratio < cal.max_target_ratio <= 1:
        errors.append(
            f"min_target_ratio ({cal.min_target_ratio}) must be > 0 and < "
            f"max_target_ratio ({cal.max_target_ratio}) <= 1"
        )
    if not 0 < cal.base_alpha <= cal.max_alpha <= 1:
        errors.append(
            f"base_alpha ({cal.base_alpha}) must be > 0 and <= max_alpha ({cal.max_alpha}) <= 1"
        )
    if not 0 < cal.damping <= 1:
        errors.append(f"damping must be in (0, 1] (got {cal.damping})")
    if cal.training_generations < 1:
        errors.append("training_generations must be >= 1")
    if cal.stable_threshold < 1:
        errors.append("stable_threshold must be >= 1")
    if cal.deletion_tolerance < 1:
        errors.append("deletion_tolerance must be >= 1")

    if config.memory.limit < 1:
        errors.append(f"memory limit must be >= 1 (got {config.memory.limit})")
    if not 0 <= config.memory.score_threshold <= 1:
        errors.append(
            f"memory score_threshold must be in [0, 1] (got {config.memory.score_threshold})"
        )
    if config.memory.retain_recent_messages < 0:
        errors.append("memory retain_recent_messages must be >= 0")
    if config.memory.embedding_provider not in ("openai", "sentence-transformers"):
        errors.append(f"Unknown embedding_provider '{config.memory.embedding_provider}'")

    for label, inj in (
        ("summarization", config.summarization.injection),
        ("memory", config.memory.injection),
    ):
        if inj.position not in INJECTION_POSITIONS:
            errors.append(
                f"{label} injection position must be one of {INJECTION_POSITIONS} "
                f"(got '{inj.position}')"
            )
        if inj.depth < 0:
            errors.append(f"{label} injection depth must be >= 0")

    if "{summaries}" not in config.summarization.template:
        errors.append("summarization template must contain '{summaries}'")
    if "{memories}" not in config.memory.template:
        errors.append("memory template must contain '{memories}'")

    # Check that summarization provider exists in providers
    if config.providers and config.summarization.provider not in config.providers:
        errors.append(
            f"Summarization provider '{config.summarization.provider}' "
            f"not found in providers section"
        )

    if config.storage.backend not in STORAGE_BACKENDS:
        errors.append(
            f"Unknown storage backend '{config.storage.backend}' "
            f"(expected one of {', '.join(STORAGE_BACKENDS)})"
        )

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> ContextBudgetConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(raw)

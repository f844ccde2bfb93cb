from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any
import yaml


DEFAULT_CONFIG_NAME = "shardlock.yaml"
CONFIG_ENV = "SHARDLOCK_CONFIG"


@dataclass(frozen=True)
class RewardsConfig:
    dispatcher_path: str | None
    retries: int


@dataclass(frozen=True)
class ShardlockConfig:
    db_path: str
    audit_path: str
    rewards: RewardsConfig
    challenge_paths: list[str]


def load_yaml(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {p}")
    with p.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve(base: Path, value: str) -> str:
    if Path(value).is_absolute():
        return value
    return str((base / value).resolve())


def load_master_config(path: str | Path) -> ShardlockConfig:
    master_path = Path(path).resolve()
    raw = load_yaml(master_path)
    base = master_path.parent

    db_path = _resolve(base, raw.get("db", {}).get("path", "./shardlock.db"))
    audit_path = _resolve(base, raw.get("audit", {}).get("path", "./shardlock_audit.jsonl"))

    rewards_raw = raw.get("rewards", {}) or {}
    dispatcher = rewards_raw.get("dispatcher")
    try:
        retries = int(rewards_raw.get("retries", 1))
    except (TypeError, ValueError):
        raise ValueError(f"rewards.retries must be an integer, got {rewards_raw.get('retries')!r}") from None
    if retries < 0:
        raise ValueError(f"rewards.retries must be 0 or more, got {retries}")
    rewards = RewardsConfig(
        dispatcher_path=_resolve(base, dispatcher) if dispatcher else None,
        retries=retries,
    )

    challenge_paths = [_resolve(base, str(p)) for p in raw.get("challenges", [])]

    return ShardlockConfig(
        db_path=db_path,
        audit_path=audit_path,
        rewards=rewards,
        challenge_paths=challenge_paths,
    )


def resolve_config_path(config_path: str) -> str:
    path = Path(config_path)
    if path.exists():
        return str(path)

    env_path = os.getenv(CONFIG_ENV)
    if env_path:
        env_candidate = Path(env_path)
        if env_candidate.exists():
            return str(env_candidate)

    if config_path != DEFAULT_CONFIG_NAME:
        return str(path)

    cwd = Path.cwd()
    for parent in [cwd, *cwd.parents]:
        candidate = parent / DEFAULT_CONFIG_NAME
        if candidate.exists():
            return str(candidate)

    return str(path)

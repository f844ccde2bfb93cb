from __future__ import annotations

from importlib import util as import_util
from pathlib import Path

from shardlock.core.config import ShardlockConfig
from shardlock.core.rewards import AuditRewardDispatcher, RewardDispatcher


def _load_module_from_file(module_name: str, file_path: Path):
    spec = import_util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Could not load dispatcher module from {file_path}")
    module = import_util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def load_dispatcher(path: str | Path) -> RewardDispatcher:
    """Instantiate the ``Dispatcher`` class defined in a Python file."""
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Dispatcher file not found: {file_path}")
    module = _load_module_from_file(f"shardlock.dispatchers.{file_path.stem}", file_path)
    cls = getattr(module, "Dispatcher", None)
    if cls is None:
        raise AttributeError(f"Dispatcher class 'Dispatcher' not found in {file_path}")
    return cls()  # type: ignore[call-arg]


def build_dispatcher(cfg: ShardlockConfig) -> RewardDispatcher:
    if cfg.rewards.dispatcher_path:
        return load_dispatcher(cfg.rewards.dispatcher_path)
    return AuditRewardDispatcher(cfg.audit_path)

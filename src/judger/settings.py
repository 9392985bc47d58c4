from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.errors import ConfigError


class Settings(BaseSettings):
    # ---- core paths ----
    work_root: Path = Path("/srv/judger/arenas")
    rootfs: Optional[Path] = None

    # ---- isolation ----
    # comma list of: ns, cgroups, seccomp ("none" runs on the host as-is)
    iso_strategy: str = "ns,cgroups"
    sandbox_uid: int = 65534
    sandbox_gid: int = 65534
    cgroup_base: Optional[Path] = None
    seccomp_policy: Path = Path("conf/seccomp.yaml")

    # ---- scheduling ----
    max_concurrency: int = Field(default=4, ge=1)
    harness_retries: int = Field(default=2, ge=0)
    short_circuit: bool = False

    # ---- timing knobs (ms) ----
    compile_time_limit_ms: int = 30000
    poll_interval_ms: int = 10
    memory_sample_interval_ms: int = 20
    kill_grace_ms: int = 2000
    drain_grace_ms: int = 500

    # ---- judging policy ----
    checker: str = "exact"
    limits: Dict[str, Any] = {}
    languages: Dict[str, Any] = {}
    # extra environment for sandboxed programs (PATH, HOME, LANG are always set)
    env: Dict[str, str] = {}

    # env prefix JUDGER_*
    model_config = SettingsConfigDict(env_prefix="JUDGER_", extra="ignore")

    @property
    def strategies(self) -> set:
        parts = {p.strip().lower() for p in self.iso_strategy.split(",") if p.strip()}
        parts.discard("none")
        return parts


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}", path=str(path))
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping", path=str(path))
    return data


def load_settings(conf_path: Optional[Path] = None, **overrides: Any) -> Settings:
    # 0) base from env JUDGER_*
    s = Settings()

    # 1) conf/judger.yaml (or JUDGER_CONF)
    path = Path(conf_path or os.environ.get("JUDGER_CONF", "conf/judger.yaml"))
    data = _read_yaml(path)

    # 2) languages live next to the main file unless given inline
    languages = data.get("languages")
    if languages is None:
        languages = _read_yaml(path.parent / "languages.yaml").get("languages", {})

    update: Dict[str, Any] = {}
    for key in Settings.model_fields:
        if key in data and key not in ("limits", "languages") and key.upper() not in _env_keys():
            update[key] = data[key]
    update["limits"] = {**(data.get("limits") or {}), **s.limits}
    update["languages"] = languages or {}
    update.update(overrides)

    # validate through the model so YAML gets the same coercion as env
    try:
        return Settings.model_validate({**s.model_dump(), **update})
    except ValueError as e:
        raise ConfigError(f"invalid settings: {e}", path=str(path))


def _env_keys() -> set:
    # env wins over YAML for scalar fields
    return {k[len("JUDGER_"):] for k in os.environ if k.startswith("JUDGER_")}

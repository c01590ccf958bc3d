from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "COVERMETA_"
DEFAULT_CACHE_PATH = "~/.cache/covermeta/metadata.jsonl"


def _strip_inline_comment(val: str) -> str:
    in_single = False
    in_double = False
    for i, ch in enumerate(val):
        if ch == "'" and not in_double:
            in_single = not in_single
            continue
        if ch == '"' and not in_single:
            in_double = not in_double
            continue
        if ch == "#" and not in_single and not in_double:
            return val[:i].rstrip()
    return val.rstrip()


def _parse_env_file(path: Path) -> None:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("could not read env file %s: %r", path, e)
        return
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        k, v = line.split("=", 1)
        k = k.strip()
        v = _strip_inline_comment(v.strip())
        if len(v) >= 2 and v[0] == v[-1] and v[0] in ("'", '"'):
            v = v[1:-1]
        if k and k not in os.environ:
            os.environ[k] = v


def load_dotenv(path: str = ".env") -> Optional[str]:
    """
    Loads environment variables from a .env file. Existing variables win.

    Search order:
    1) ENV_PATH (if set)
    2) explicit `path` as provided (relative to CWD or absolute)
    3) project root (parent of the covermeta package directory)

    Returns the resolved .env path used, or None if not found.
    """
    candidates: List[Path] = []
    override = os.getenv("ENV_PATH")
    if override:
        candidates.append(Path(override).expanduser())

    p = Path(path).expanduser()
    candidates.append(p if p.is_absolute() else (Path.cwd() / p))

    project_root = Path(__file__).resolve().parent.parent
    candidates.append(project_root / ".env")

    seen = set()
    for c in candidates:
        c = c.resolve()
        if str(c) in seen:
            continue
        seen.add(str(c))
        if c.is_file():
            _parse_env_file(c)
            return str(c)
    return None


def read_settings_file(path: str) -> Dict[str, object]:
    p = Path(path).expanduser()
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except FileNotFoundError as e:
        raise SystemExit(f"Settings file not found: {p}") from e
    except (OSError, yaml.YAMLError) as e:
        raise SystemExit(f"Failed to read settings file: {p} ({e})") from e
    if not isinstance(data, dict):
        raise SystemExit(f"Settings file must contain a mapping: {p}")
    logger.info("Loaded settings file: %s", p)
    return {str(k).strip().lower(): v for k, v in data.items()}


@dataclass
class AppConfig:
    cache_path: str = DEFAULT_CACHE_PATH
    cache_ttl_days: float = 30.0
    max_concurrent: int = 10
    stagger_ms: int = 50
    debounce_ms: int = 1000
    visibility_threshold: float = 0.1
    timeout_s: float = 15.0
    retries: int = 2
    user_agent: str = "covermeta/0.1 (+personal use)"

    @property
    def cache_ttl_s(self) -> float:
        return self.cache_ttl_days * 24 * 60 * 60

    @property
    def stagger_s(self) -> float:
        return self.stagger_ms / 1000.0

    @property
    def debounce_s(self) -> float:
        return self.debounce_ms / 1000.0

    @property
    def resolved_cache_path(self) -> str:
        return str(Path(self.cache_path).expanduser())

    @classmethod
    def from_sources(
        cls,
        env: Optional[Mapping[str, str]] = None,
        overrides: Optional[Mapping[str, object]] = None,
    ) -> "AppConfig":
        """Defaults, then COVERMETA_* environment variables, then `overrides` (settings file / flags)."""
        env = os.environ if env is None else env
        cfg = cls()
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is not None and str(raw).strip():
                setattr(cfg, f.name, _coerce(f.name, f.type, raw))
        for key, value in (overrides or {}).items():
            if value is None:
                continue
            if key not in {f.name for f in fields(cls)}:
                logger.warning("ignoring unknown setting: %s", key)
                continue
            f = next(x for x in fields(cls) if x.name == key)
            setattr(cfg, key, _coerce(key, f.type, value))
        return cfg

    def validate(self) -> None:
        if self.max_concurrent < 1:
            raise SystemExit("max_concurrent must be >= 1.")
        if self.stagger_ms < 0 or self.debounce_ms < 0:
            raise SystemExit("stagger_ms and debounce_ms must be >= 0.")
        if not (0.0 < self.visibility_threshold <= 1.0):
            raise SystemExit("visibility_threshold must be in (0, 1].")
        if self.cache_ttl_days <= 0:
            raise SystemExit("cache_ttl_days must be > 0.")
        if self.retries < 0 or self.timeout_s <= 0:
            raise SystemExit("retries must be >= 0 and timeout_s > 0.")
        if not self.cache_path.strip():
            raise SystemExit("cache_path must not be empty.")


def _coerce(name: str, type_name: object, raw: object) -> object:
    # dataclass field types are strings under postponed annotations
    kind = type_name if isinstance(type_name, str) else getattr(type_name, "__name__", "str")
    try:
        if kind == "int":
            return int(raw)
        if kind == "float":
            return float(raw)
    except (TypeError, ValueError) as e:
        raise SystemExit(f"Invalid value for {name}: {raw!r}") from e
    return str(raw)

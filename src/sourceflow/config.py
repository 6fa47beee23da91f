"""sourceflow configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (SOURCEFLOW_MAX_PAGES, SOURCEFLOW_CONCURRENCY,
     SOURCEFLOW_OBJECTS_DIR)
  3. Per-project sourceflow.yaml
  4. Global ~/.sourceflow/config.yaml  (crawler defaults only — no credentials)
  5. Hardcoded defaults

Global config must never contain credentials; use environment variables instead.
All YAML reads use yaml.safe_load() — never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".sourceflow"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "sourceflow.yaml"

# Key names that look like credentials: forbidden in global config.
# Does NOT match legitimate keys like max_tokens or user_agent.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(["crawl", "chunkers", "queue", "storage"])

_SPLIT_MODES: frozenset[str] = frozenset(["sentence", "paragraph", "page", "token"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class CrawlCfg:
    """Crawler configuration (sourceflow.yaml: crawl:).

    Attributes:
        max_pages: Default page budget when a crawl request gives none.
        delay: Politeness delay between page fetches, in seconds.
        slow_delay: Delay used when a job asks for slow scraping.
        timeout: Per-request HTTP timeout, in seconds.
        user_agent: User-Agent header sent by the HTTP fetcher and browser.
        min_content_chars: Pages with less text count as weak for the
            headless fallback decision.
        fallback_weak_ratio: Share of weak pages that triggers the fallback.
        browser_fallback: Enable the headless-browser fallback pass.
        max_browsers: Hard cap on concurrent browser instances.
        allow_private_addresses: Skip the SSRF guard (local development only).
    """

    max_pages: int = 10
    delay: float = 1.0
    slow_delay: float = 3.0
    timeout: float = 30.0
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )
    min_content_chars: int = 500
    fallback_weak_ratio: float = 0.5
    browser_fallback: bool = True
    max_browsers: int = 2
    allow_private_addresses: bool = False


@dataclass
class ChunkerTypeCfg:
    """Chunking strategy for a single source type."""

    max_size: int = 8000
    overlap: int = 400
    min_size: int = 100
    split_on: str = "sentence"


@dataclass
class ChunkersCfg:
    """Per-source-type chunker configuration (sourceflow.yaml: chunkers:).

    Web pages are noisy and benefit from larger context windows; Q&A answers
    are short and split on paragraph boundaries.
    """

    website: ChunkerTypeCfg = field(
        default_factory=lambda: ChunkerTypeCfg(max_size=16_000, overlap=1_600)
    )
    file: ChunkerTypeCfg = field(default_factory=ChunkerTypeCfg)
    text: ChunkerTypeCfg = field(default_factory=ChunkerTypeCfg)
    qa: ChunkerTypeCfg = field(
        default_factory=lambda: ChunkerTypeCfg(
            max_size=2_000, overlap=200, min_size=0, split_on="paragraph"
        )
    )


@dataclass
class QueueCfg:
    """Job queue configuration (sourceflow.yaml: queue:)."""

    concurrency: int = 2
    max_attempts: int = 3
    backoff_base: float = 2.0
    max_starts_per_second: int = 2


@dataclass
class StorageCfg:
    """Local object storage for uploaded files (sourceflow.yaml: storage:)."""

    objects_dir: str = ".sourceflow-objects"


@dataclass
class SourceflowConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    crawl: CrawlCfg = field(default_factory=CrawlCfg)
    chunkers: ChunkersCfg = field(default_factory=ChunkersCfg)
    queue: QueueCfg = field(default_factory=QueueCfg)
    storage: StorageCfg = field(default_factory=StorageCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any credential-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  Credentials must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _parse_chunker(raw: dict[str, Any], defaults: ChunkerTypeCfg) -> ChunkerTypeCfg:
    split_on = str(raw.get("split_on", defaults.split_on))
    if split_on not in _SPLIT_MODES:
        raise ConfigError(
            f"Invalid chunkers split_on '{split_on}'. "
            f"Must be one of: {', '.join(sorted(_SPLIT_MODES))}"
        )
    return ChunkerTypeCfg(
        max_size=int(raw.get("max_size", defaults.max_size)),
        overlap=int(raw.get("overlap", defaults.overlap)),
        min_size=int(raw.get("min_size", defaults.min_size)),
        split_on=split_on,
    )


def _cfg_from_dict(data: dict[str, Any]) -> SourceflowConfig:
    """Build a *SourceflowConfig* from a merged raw YAML dict."""
    cfg = SourceflowConfig()

    if "crawl" in data:
        c = data["crawl"]
        d = cfg.crawl
        cfg.crawl = CrawlCfg(
            max_pages=int(c.get("max_pages", d.max_pages)),
            delay=float(c.get("delay", d.delay)),
            slow_delay=float(c.get("slow_delay", d.slow_delay)),
            timeout=float(c.get("timeout", d.timeout)),
            user_agent=str(c.get("user_agent", d.user_agent)),
            min_content_chars=int(c.get("min_content_chars", d.min_content_chars)),
            fallback_weak_ratio=float(c.get("fallback_weak_ratio", d.fallback_weak_ratio)),
            browser_fallback=bool(c.get("browser_fallback", d.browser_fallback)),
            max_browsers=int(c.get("max_browsers", d.max_browsers)),
            allow_private_addresses=bool(
                c.get("allow_private_addresses", d.allow_private_addresses)
            ),
        )

    if "chunkers" in data:
        ch = data["chunkers"]
        cfg.chunkers = ChunkersCfg(
            website=_parse_chunker(ch.get("website", {}), cfg.chunkers.website),
            file=_parse_chunker(ch.get("file", {}), cfg.chunkers.file),
            text=_parse_chunker(ch.get("text", {}), cfg.chunkers.text),
            qa=_parse_chunker(ch.get("qa", {}), cfg.chunkers.qa),
        )

    if "queue" in data:
        q = data["queue"]
        cfg.queue = QueueCfg(
            concurrency=int(q.get("concurrency", cfg.queue.concurrency)),
            max_attempts=int(q.get("max_attempts", cfg.queue.max_attempts)),
            backoff_base=float(q.get("backoff_base", cfg.queue.backoff_base)),
            max_starts_per_second=int(
                q.get("max_starts_per_second", cfg.queue.max_starts_per_second)
            ),
        )

    if "storage" in data:
        s = data["storage"]
        cfg.storage = StorageCfg(
            objects_dir=str(s.get("objects_dir", cfg.storage.objects_dir)),
        )

    return cfg


def _apply_env_overrides(cfg: SourceflowConfig) -> SourceflowConfig:
    """Apply SOURCEFLOW_* environment variable overrides (layer 2)."""
    if max_pages := os.environ.get("SOURCEFLOW_MAX_PAGES"):
        cfg.crawl.max_pages = int(max_pages)
    if concurrency := os.environ.get("SOURCEFLOW_CONCURRENCY"):
        cfg.queue.concurrency = int(concurrency)
    if objects_dir := os.environ.get("SOURCEFLOW_OBJECTS_DIR"):
        cfg.storage.objects_dir = objects_dir
    return cfg


def _validate(cfg: SourceflowConfig) -> None:
    if cfg.crawl.max_pages < 1:
        raise ConfigError(f"crawl.max_pages must be >= 1, got {cfg.crawl.max_pages}")
    if not 0.0 < cfg.crawl.fallback_weak_ratio <= 1.0:
        raise ConfigError(
            f"crawl.fallback_weak_ratio must be in (0, 1], got {cfg.crawl.fallback_weak_ratio}"
        )
    if cfg.queue.concurrency < 1:
        raise ConfigError(f"queue.concurrency must be >= 1, got {cfg.queue.concurrency}")
    if cfg.queue.max_attempts < 1:
        raise ConfigError(f"queue.max_attempts must be >= 1, got {cfg.queue.max_attempts}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> SourceflowConfig:
    """Load and return a merged *SourceflowConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *sourceflow.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *SourceflowConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains credential-like fields, or a
            value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)
    cfg = _apply_env_overrides(cfg)
    _validate(cfg)
    return cfg


def write_project_config(project_dir: Path) -> Path:
    """Write a commented ``sourceflow.yaml`` template into *project_dir*.

    Existing files are left untouched.

    Returns:
        Path to the project config file.
    """
    target = project_dir / _PROJECT_CONFIG_NAME
    if not target.exists():
        content = (
            "# sourceflow project configuration.\n"
            "# NEVER store credentials here — use environment variables.\n"
            "\n"
            "crawl:\n"
            "  max_pages: 10\n"
            "  delay: 1.0\n"
            "  browser_fallback: true\n"
            "\n"
            "chunkers:\n"
            "  website:\n"
            "    max_size: 16000\n"
            "    overlap: 1600\n"
            "\n"
            "queue:\n"
            "  concurrency: 2\n"
            "  max_attempts: 3\n"
        )
        target.write_text(content, encoding="utf-8")
    return target

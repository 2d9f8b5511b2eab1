"""Client configuration: defaults, deep merge, interpolation, redaction, stream options.

Provides:
- DEFAULT_CONFIG merged under every instance created by create_instance()
- {env:VAR} interpolation with allowlist enforcement
- YAML config files (load_config)
- Redaction for safe logging (never leak secrets)
- Normalization of the stream-only options: retry, retry_delay, signal
"""

from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

logger = logging.getLogger("streamwire.config_loader")

DEFAULT_CONFIG: Dict[str, Any] = {
    "timeout": 15.0,
    "headers": {
        "Content-Type": "application/json;charset=utf-8",
    },
}

DEFAULT_RETRY = 0
DEFAULT_RETRY_DELAY_MS = 1000

# Keys consumed by the stream controller, never forwarded to httpx
STREAM_OPTION_KEYS = ("retry", "retry_delay", "retryDelay", "signal")

# Redaction sentinel
REDACTED = "***REDACTED***"

# Core allowlist for env var interpolation
_CORE_ENV_PATTERNS = [
    re.compile(r"^STREAMWIRE_"),
]

# Regex for interpolation tokens: {env:VAR}
_INTERP_RE = re.compile(r"\{env:([^}]+)\}")

# Patterns that indicate sensitive keys (for redaction)
_SENSITIVE_KEY_RE = re.compile(
    r"(auth|key|secret|token|password|credential|bearer|cookie)",
    re.IGNORECASE,
)


# ── Stream options ────────────────────────────────────────────────────


@dataclass(frozen=True)
class StreamOptions:
    """Stream-only settings, read-only once a session starts."""

    retry: int = DEFAULT_RETRY
    retry_delay: int = DEFAULT_RETRY_DELAY_MS
    signal: Any = None

    @property
    def retry_delay_seconds(self) -> float:
        return self.retry_delay / 1000.0


def _check_non_negative_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{name}' must be a non-negative integer, got {value!r}")
    if value < 0:
        raise ValueError(f"'{name}' must be a non-negative integer, got {value}")
    return value


def resolve_stream_options(
    options: Optional[Dict[str, Any]],
) -> Tuple[Dict[str, Any], StreamOptions]:
    """Split stream options into (request config, StreamOptions).

    `retryDelay` is accepted as an alias of `retry_delay`. Raises ValueError
    on a negative or non-integer retry / retry_delay.
    """
    options = dict(options or {})

    retry = options.pop("retry", None)
    retry_delay = options.pop("retry_delay", None)
    alias = options.pop("retryDelay", None)
    if retry_delay is None:
        retry_delay = alias
    signal = options.pop("signal", None)

    stream_options = StreamOptions(
        retry=DEFAULT_RETRY if retry is None else _check_non_negative_int("retry", retry),
        retry_delay=(
            DEFAULT_RETRY_DELAY_MS
            if retry_delay is None
            else _check_non_negative_int("retry_delay", retry_delay)
        ),
        signal=signal,
    )
    return options, stream_options


# ── Env allowlist ─────────────────────────────────────────────────────


def _env_allowed(var_name: str, extra_patterns: List[re.Pattern] = ()) -> bool:
    patterns = list(_CORE_ENV_PATTERNS) + list(extra_patterns)
    return any(pattern.search(var_name) for pattern in patterns)


# ── Interpolation ─────────────────────────────────────────────────────


def interpolate_value(
    value: str,
    extra_env_patterns: List[re.Pattern] = (),
) -> str:
    """Resolve {env:VAR_NAME} tokens in a string value (allowlisted names only)."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if not _env_allowed(var_name, extra_env_patterns):
            raise ValueError(
                f"Environment variable '{var_name}' is not in the allowlist. "
                f"Allowed: ^STREAMWIRE_.* and configured patterns"
            )
        val = os.environ.get(var_name)
        if val is None:
            raise ValueError(f"Environment variable '{var_name}' is not set")
        return val

    return _INTERP_RE.sub(_replace, value)


def interpolate_config(
    config: Dict[str, Any],
    extra_env_patterns: List[re.Pattern] = (),
) -> Dict[str, Any]:
    """Return a copy of config with {env:...} tokens resolved at any depth."""
    return _interpolate_node(config, extra_env_patterns)


def _interpolate_node(node: Any, extra_env_patterns: List[re.Pattern]) -> Any:
    if isinstance(node, dict):
        return {key: _interpolate_node(value, extra_env_patterns) for key, value in node.items()}
    if isinstance(node, list):
        return [_interpolate_node(item, extra_env_patterns) for item in node]
    if isinstance(node, str) and _INTERP_RE.search(node):
        return interpolate_value(node, extra_env_patterns)
    return node


# ── Deep merge ────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win.

    Returns a new dict (base and overlay are not modified). Values that
    cannot be deep-copied (signals, clients) are carried over by reference.
    """
    result = {key: _copy_value(value) for key, value in base.items()}
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = _copy_value(value)
    return result


def _copy_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return copy.deepcopy(value)
    return value


# ── Loading ───────────────────────────────────────────────────────────


def load_config(
    path: str,
    extra_env_patterns: List[re.Pattern] = (),
) -> Dict[str, Any]:
    """Load a YAML client config file and resolve {env:...} tokens.

    Raises ValueError if the file is missing, unparsable, or not a mapping.
    """
    config_path = Path(path)
    if not config_path.is_file():
        raise ValueError(f"Config not found: {path}")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config {path} must be a mapping, got {type(raw).__name__}")

    config = interpolate_config(raw, extra_env_patterns)
    logger.debug("Loaded config %s: %s", path, redact_config(raw))
    return config


# ── Redaction ─────────────────────────────────────────────────────────


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Create a redacted copy of config for display/logging.

    Values sourced from {env:} show '***REDACTED***'.
    Keys matching sensitive patterns are also redacted.
    """
    result = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = redact_config(value)
        elif isinstance(value, str) and _INTERP_RE.search(value):
            sources = _INTERP_RE.findall(value)
            annotations = ", ".join(f"env:{name}" for name in sources)
            result[key] = f"{REDACTED} (from {annotations})"
        elif _SENSITIVE_KEY_RE.search(str(key)):
            result[key] = REDACTED
        else:
            result[key] = value
    return result


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with sensitive values redacted."""
    redacted = {}
    for key, value in headers.items():
        if _SENSITIVE_KEY_RE.search(key):
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted

from typing import Any, Dict, Mapping, Optional

from .errors import ConfigurationError
from .models import EXPONENTIAL, FIXED, Backoff, JobOptions, Retention

OPTION_KEYS = {
    "attempts", "backoff", "priority", "delay_ms", "timeout_ms", "job_id",
    "remove_on_complete", "remove_on_fail",
}


def backoff_delay_ms(backoff: Backoff, attempts_made: int) -> int:
    """
    Delay before the next attempt after ``attempts_made`` attempts have failed.

    fixed:       base
    exponential: base * 2^(attempts_made - 1)
    """
    base = max(0, int(backoff.base_delay_ms))
    if backoff.type == FIXED:
        return base
    if backoff.type == EXPONENTIAL:
        return base * (2 ** max(0, attempts_made - 1))
    raise ConfigurationError(f"Unknown backoff type: {backoff.type!r}")


def coerce_backoff(value: Any) -> Backoff:
    if isinstance(value, Backoff):
        backoff = value
    elif isinstance(value, Mapping):
        delay = value.get("base_delay_ms", value.get("delay", 0))
        backoff = Backoff(type=str(value.get("type", EXPONENTIAL)), base_delay_ms=int(delay))
    elif isinstance(value, int):
        backoff = Backoff(type=FIXED, base_delay_ms=value)
    else:
        raise ConfigurationError(f"Invalid backoff: {value!r}")
    if backoff.type not in (FIXED, EXPONENTIAL):
        raise ConfigurationError(f"Unknown backoff type: {backoff.type!r}")
    return backoff


def coerce_retention(value: Any) -> Retention:
    if isinstance(value, Retention):
        return value
    if isinstance(value, Mapping):
        return Retention(age_s=value.get("age_s"), count=value.get("count"))
    # BullMQ style: True -> drop immediately, int -> keep that many
    if value is True:
        return Retention(count=0)
    if value is False or value is None:
        return Retention()
    if isinstance(value, int):
        return Retention(count=value)
    raise ConfigurationError(f"Invalid retention: {value!r}")


def merge_options(defaults: JobOptions, overrides: Optional[Mapping[str, Any]]) -> JobOptions:
    """Lay producer-supplied options over the queue defaults."""
    if not overrides:
        return defaults
    unknown = set(overrides) - OPTION_KEYS
    if unknown:
        raise ConfigurationError(f"Unknown job options: {', '.join(sorted(unknown))}")

    clean: Dict[str, Any] = {}
    for key, value in overrides.items():
        if value is None and key not in ("timeout_ms", "job_id"):
            continue
        if key == "backoff":
            value = coerce_backoff(value)
        elif key in ("remove_on_complete", "remove_on_fail"):
            value = coerce_retention(value)
        elif key in ("attempts", "priority", "delay_ms"):
            value = int(value)
        clean[key] = value

    opts = defaults.merged(clean)
    if opts.attempts < 1:
        raise ConfigurationError("attempts must be >= 1")
    if opts.delay_ms < 0:
        raise ConfigurationError("delay_ms must be >= 0")
    return opts

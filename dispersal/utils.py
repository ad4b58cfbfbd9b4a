"""Utility functions for dispersal."""

from __future__ import annotations

import os


def copydoc(fromfunc, sep="\n"):
    """Copy the docstring of function or class.

    https://stackoverflow.com/a/13743316
    """

    def _decorator(func):
        sourcedoc = fromfunc.__doc__
        if func.__doc__ is None:
            func.__doc__ = sourcedoc
        else:
            func.__doc__ = sep.join([sourcedoc, func.__doc__])
        return func

    return _decorator


def env_flag(name: str, default: bool = False) -> bool:
    """Return the truth value of an environment variable.

    "1"/"true"/"yes"/"on" are true and "0"/"false"/"no"/"off" are false.
    Unset or unknown values return `default`.
    """
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"0", "false", "no", "off"}:
        return False
    if value in {"1", "true", "yes", "on"}:
        return True
    return default


def env_int(name: str, default: int | None = None) -> int | None:
    """Return a positive integer from an environment variable.

    Raises
    ------
    ValueError
        If the variable is set but is not a positive integer.
    """
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError as e:
        raise ValueError(f"{name} must be a positive integer, got {raw!r}") from e
    if value < 1:
        raise ValueError(f"{name} must be a positive integer, got {raw!r}")
    return value

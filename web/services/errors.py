from __future__ import annotations

import os
import re


class WhitelistManagerError(Exception):
    """Base class for every error raised by the whitelist manager services."""


# Model errors: raised synchronously by the mutators, never retried.
class ModelError(WhitelistManagerError, ValueError):
    pass


class DuplicateName(ModelError):
    pass


class GroupNotFound(ModelError):
    pass


class InvalidAddress(ModelError):
    pass


class InvalidUrlPattern(ModelError):
    pass


class InvalidGroupName(ModelError):
    pass


# Collaborator errors. Observation failures are downgraded to non-compliant
# statuses by the reconciliation engine; they never escape it.
class ObservationError(WhitelistManagerError):
    pass


class NotFound(ObservationError):
    pass


class WriteError(WhitelistManagerError):
    pass


class RemediationError(WhitelistManagerError):
    pass


class PermissionChangeError(RemediationError):
    pass


class OperationError(RemediationError):
    pass


# Messages of these types are written for operators and safe to return.
_USER_FACING = (ValueError, ObservationError, RemediationError, WriteError)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]+")


def expose_internal_errors() -> bool:
    flag = (os.environ.get("EXPOSE_INTERNAL_ERRORS") or "").strip().lower()
    return flag in {"1", "true", "yes", "on"}


def clean_text(text: str, *, max_len: int = 200) -> str:
    """Collapse control characters and whitespace into single spaces, then truncate."""
    flat = " ".join(_CONTROL_CHARS.sub(" ", text or "").split())
    if max_len and len(flat) > max_len:
        return flat[: max_len - 1].rstrip() + "…"
    return flat


def public_error_message(
    e: Exception,
    *,
    default: str = "Operation failed. Check server logs for details.",
    max_len: int = 200,
) -> str:
    """Message for an exception that is safe to put in an HTTP response.

    Unknown exception types collapse to `default`. EXPOSE_INTERNAL_ERRORS=1
    returns "<Type>: <message>" for everything, for debugging.
    """
    if expose_internal_errors():
        text = f"{type(e).__name__}: {e}"
    elif isinstance(e, _USER_FACING):
        text = str(e)
    else:
        return default
    return clean_text(text, max_len=max_len) or default

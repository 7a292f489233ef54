"""Retry classification for broadcast platform errors.

The platform reports most lifecycle problems only as free text, so the
fallback path matches messages against the patterns below.  If the platform
rewords an error, classification silently degrades to TERMINAL; keep the
patterns here and covered by tests/test_error_classifier.py.
"""
import re
from enum import Enum

from core.errors import PlatformError


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    REDUNDANT = "redundant"
    NOT_READY = "not_ready"
    TRANSIENT = "transient"
    TERMINAL = "terminal"


NOT_FOUND_PATTERNS = [
    re.compile(r"\bnot[\s_-]?found\b", re.IGNORECASE),
    re.compile(r"\b404\b"),
    re.compile(r"liveBroadcastNotFound", re.IGNORECASE),
]

RATE_LIMIT_PATTERNS = [
    re.compile(r"rate[\s_-]?limit", re.IGNORECASE),
    re.compile(r"quota", re.IGNORECASE),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"\b429\b"),
]

REDUNDANT_PATTERNS = [
    re.compile(r"redundant[\s_-]?transition", re.IGNORECASE),
]

NOT_READY_PATTERNS = [
    re.compile(r"invalid[\s_-]?transition", re.IGNORECASE),
    re.compile(r"transition", re.IGNORECASE),
    re.compile(r"stream[\s_-]?(is[\s_-]?)?(inactive|not active)", re.IGNORECASE),
    re.compile(r"errorStreamInactive", re.IGNORECASE),
    re.compile(r"ingest", re.IGNORECASE),
    re.compile(r"validat", re.IGNORECASE),
    re.compile(r"not (yet )?ready", re.IGNORECASE),
]

_RATE_LIMIT_REASONS = {"quotaexceeded", "ratelimitexceeded", "userratelimitexceeded"}


def _matches(patterns, text: str) -> bool:
    return any(p.search(text) for p in patterns)


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception to a retry category.

    Structured fields on ``PlatformError`` win over message matching.
    """
    if isinstance(error, PlatformError):
        if error.status_code == 404:
            return ErrorKind.NOT_FOUND
        if error.status_code == 429 or (error.reason or "").lower() in _RATE_LIMIT_REASONS:
            return ErrorKind.RATE_LIMITED
        if (error.reason or "").lower() == "redundanttransition":
            return ErrorKind.REDUNDANT
        if error.transient:
            return ErrorKind.TRANSIENT
    elif isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorKind.TRANSIENT

    text = str(error)
    if _matches(NOT_FOUND_PATTERNS, text):
        return ErrorKind.NOT_FOUND
    if _matches(RATE_LIMIT_PATTERNS, text):
        return ErrorKind.RATE_LIMITED
    if _matches(REDUNDANT_PATTERNS, text):
        return ErrorKind.REDUNDANT
    if _matches(NOT_READY_PATTERNS, text):
        return ErrorKind.NOT_READY
    return ErrorKind.TERMINAL


def is_not_ready(error: BaseException) -> bool:
    return classify_error(error) == ErrorKind.NOT_READY


def is_rate_limited(error: BaseException) -> bool:
    return classify_error(error) == ErrorKind.RATE_LIMITED


def is_not_found(error: BaseException) -> bool:
    return classify_error(error) == ErrorKind.NOT_FOUND

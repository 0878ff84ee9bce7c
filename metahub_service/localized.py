"""Versioned localized content and codename helpers.

Localized text (branch names, descriptions) is stored as:

    {
        "_schema": "1",
        "_primary": "en",
        "locales": {
            "en": {"content": "Main", "version": 1, "isActive": true,
                   "createdAt": "...", "updatedAt": "..."}
        }
    }
"""

import re
from datetime import datetime, timezone
from typing import Any

LOCALIZED_SCHEMA_VERSION = "1"

CODENAME_MAX_LENGTH = 100
CODENAME_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
LOCALE_PATTERN = re.compile(r"^[a-z]{2,3}(?:-[A-Z]{2})?$")


def normalize_codename(value: str) -> str:
    """Trim, lowercase, turn whitespace/underscores into dashes, strip the rest."""
    value = value.strip().lower()
    value = re.sub(r"[\s_]+", "-", value)
    value = re.sub(r"[^a-z0-9-]", "", value)
    value = re.sub(r"-+", "-", value)
    return value.strip("-")


def is_valid_codename(value: str) -> bool:
    return bool(value) and len(value) <= CODENAME_MAX_LENGTH and bool(CODENAME_PATTERN.match(value))


def normalize_locale(locale: str) -> str:
    """``en_us`` / ``EN-us`` -> ``en-US``."""
    normalized = locale.strip().replace("_", "-")
    lang, _, region = normalized.partition("-")
    return f"{lang.lower()}-{region.upper()}" if region else lang.lower()


def sanitize_localized_input(value: str | dict[str, Any] | None) -> dict[str, str]:
    """
    Normalize raw localized input into ``{locale: text}``.

    A plain string is treated as English. Non-string and blank values, and
    keys that are not locale codes, are dropped.
    """
    if value is None:
        return {}
    if isinstance(value, str):
        value = {"en": value}

    sanitized: dict[str, str] = {}
    for locale, text in value.items():
        if not isinstance(text, str):
            continue
        text = text.strip()
        if not text:
            continue
        code = normalize_locale(locale)
        if not LOCALE_PATTERN.match(code):
            continue
        sanitized[code] = text
    return sanitized


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_localized_content(
    values: dict[str, str],
    primary_locale: str | None = None,
    fallback_primary: str | None = "en",
) -> dict[str, Any] | None:
    """
    Build versioned localized content from sanitized ``{locale: text}``.

    The primary locale is the requested one when it has text, else the
    fallback when it has text, else the alphabetically first locale.
    Returns None for empty input.
    """
    if not values:
        return None

    locales = sorted(values)
    if primary_locale and values.get(primary_locale):
        primary = primary_locale
    elif fallback_primary and values.get(fallback_primary):
        primary = fallback_primary
    else:
        primary = locales[0]

    now = _now_iso()
    return {
        "_schema": LOCALIZED_SCHEMA_VERSION,
        "_primary": primary,
        "locales": {
            locale: {
                "content": values[locale],
                "version": 1,
                "isActive": True,
                "createdAt": now,
                "updatedAt": now,
            }
            for locale in locales
        },
    }


def primary_content(content: dict[str, Any] | None, fallback_locale: str = "en") -> str | None:
    """Text of the primary locale, else of the fallback locale."""
    if not content:
        return None
    locales = content.get("locales") or {}
    for locale in (content.get("_primary"), fallback_locale):
        entry = locales.get(locale) if locale else None
        if entry and entry.get("content"):
            return entry["content"]
    return None

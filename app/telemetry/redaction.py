"""Summarize request parameters before they reach logs or the ledger."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

MAX_STRING_CHARS = 500
MAX_ITEMS = 20
_SECRET_KEY_MARKERS = ("key", "secret", "token", "password", "authorization", "credential")


def _scrub_pii(text: str) -> str:
  """Redact common PII patterns."""
  # Redact Email
  text = re.sub(r"[\w\.-]+@[\w\.-]+\.\w+", "[EMAIL REDACTED]", text)
  # Redact Phone (simple pattern: 3-3-4 digits with separators)
  text = re.sub(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b", "[PHONE REDACTED]", text)
  return text


def _is_secret_key(key: str) -> bool:
  lowered = key.lower()
  return any(marker in lowered for marker in _SECRET_KEY_MARKERS)


def _summarize_string(value: str) -> str:
  if value.startswith("data:"):
    # Inline payloads are large and may carry user uploads; keep only the media type and size.
    header = value.split(",", 1)[0]
    return f"<{header} {len(value)} chars>"
  if value.lower().startswith(("http://", "https://")):
    # Signed URLs carry credentials in the query string.
    return value.split("?", 1)[0][:MAX_STRING_CHARS]
  scrubbed = _scrub_pii(value)
  if len(scrubbed) > MAX_STRING_CHARS:
    return f"{scrubbed[:MAX_STRING_CHARS]}... <{len(scrubbed)} chars>"
  return scrubbed


def _summarize_value(value: Any, depth: int) -> Any:
  if isinstance(value, str):
    return _summarize_string(value)
  if value is None or isinstance(value, bool | int | float):
    return value
  if depth >= 3:
    return f"<{type(value).__name__}>"
  if isinstance(value, Mapping):
    return summarize_parameters(value, _depth=depth + 1)
  if isinstance(value, list | tuple):
    items = [_summarize_value(item, depth + 1) for item in list(value)[:MAX_ITEMS]]
    if len(value) > MAX_ITEMS:
      items.append(f"<{len(value) - MAX_ITEMS} more>")
    return items
  return f"<{type(value).__name__}>"


def summarize_parameters(params: Mapping[str, Any], *, _depth: int = 0) -> dict[str, Any]:
  """Return a JSON-safe, redacted copy of a provider parameter bag."""
  summary: dict[str, Any] = {}
  for key, value in list(params.items())[:MAX_ITEMS]:
    name = str(key)
    if _is_secret_key(name):
      summary[name] = "[REDACTED]"
      continue
    summary[name] = _summarize_value(value, _depth)
  return summary

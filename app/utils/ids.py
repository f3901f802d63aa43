"""Identifier utilities."""

from __future__ import annotations

import secrets
import string
import uuid


def generate_request_id() -> str:
  """Return a new generation request identifier."""
  return str(uuid.uuid4())


def generate_reservation_id() -> str:
  """Return a new credit reservation identifier."""
  return str(uuid.uuid4())


def generate_nanoid(size: int = 16) -> str:
  """Return a short non-sequential id suitable for public references."""
  alphabet = string.ascii_letters + string.digits
  return "".join(secrets.choice(alphabet) for _ in range(size))

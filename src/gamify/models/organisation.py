"""Tenant models — organisations and the roles players can hold."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Organisation:
    """Tenant boundary. Every other entity belongs to exactly one."""
    org_id: str
    name: str
    api_key: str = ""


@dataclass(frozen=True)
class Role:
    """A named role used for goal eligibility and offer visibility."""
    role_id: str
    org_id: str
    name: str

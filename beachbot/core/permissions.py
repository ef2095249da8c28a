from __future__ import annotations

from typing import Iterable


def parse_role_names(raw: str | Iterable[str]) -> frozenset[str]:
    if isinstance(raw, str):
        parts = raw.split(",")
    else:
        parts = list(raw)
    names = frozenset(str(p).strip() for p in parts if str(p).strip())
    if not names:
        raise ValueError("At least one trader role name is required.")
    return names


def member_role_names(member: object) -> frozenset[str]:
    roles = getattr(member, "roles", None)
    if not roles:
        return frozenset()
    names = set()
    for role in roles:
        name = getattr(role, "name", None)
        if name:
            names.add(str(name))
    return frozenset(names)


def can_trade(member_roles: Iterable[str] | None, allowed_roles: Iterable[str]) -> bool:
    if not member_roles:
        return False
    return not frozenset(allowed_roles).isdisjoint(member_roles)

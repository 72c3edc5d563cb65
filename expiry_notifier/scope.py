"""Resolve a profile's target groups to concrete principals."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Sequence

from .graph_client import GraphClient, GroupNotFoundError
from .models import ALL_USERS, DirectoryPrincipal


logger = logging.getLogger(__name__)


def targets_all_users(group_names: Iterable[str]) -> bool:
    sentinel = ALL_USERS.lower()
    return any(sentinel in (name or "").lower() for name in group_names)


def _principal_key(principal: DirectoryPrincipal) -> str:
    return (principal.id or principal.user_principal_name).lower()


def resolve(
    group_names: Sequence[str],
    directory: Iterable[DirectoryPrincipal],
) -> List[DirectoryPrincipal]:
    """Resolve against a pre-fetched directory snapshot.

    Group names are matched case-insensitively against each principal's
    memberships and OR-combined. Any name containing "All Users" selects the
    whole directory.
    """

    principals = list(directory)
    select_all = targets_all_users(group_names)
    wanted = {name.strip().lower() for name in group_names if name and name.strip()}

    seen: set[str] = set()
    result: List[DirectoryPrincipal] = []
    for principal in principals:
        key = _principal_key(principal)
        if key in seen:
            continue
        if not select_all and not any(group.lower() in wanted for group in principal.groups):
            continue
        seen.add(key)
        result.append(principal)
    return result


def resolve_remote(group_names: Sequence[str], client: GraphClient) -> List[DirectoryPrincipal]:
    """Resolve against Graph using transitive group membership."""

    if targets_all_users(group_names):
        return [DirectoryPrincipal.from_graph(entry) for entry in client.list_users()]

    members: Dict[str, DirectoryPrincipal] = {}
    missing: List[str] = []
    matched_any = False
    for name in group_names:
        cleaned = (name or "").strip()
        if not cleaned:
            continue
        groups = client.find_groups(cleaned)
        if not groups:
            missing.append(cleaned)
            continue
        matched_any = True
        for group in groups:
            for entry in client.list_transitive_users(group["id"]):
                principal = DirectoryPrincipal.from_graph(entry)
                principal.groups = sorted(set(principal.groups) | {group.get("displayName") or cleaned})
                members.setdefault(_principal_key(principal), principal)

    if not matched_any:
        raise GroupNotFoundError(", ".join(missing) or ", ".join(group_names))
    if missing:
        logger.warning("Scope groups not found and ignored: %s", ", ".join(missing))
    return list(members.values())


__all__ = ["resolve", "resolve_remote", "targets_all_users"]

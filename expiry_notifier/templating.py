"""Placeholder substitution for reminder subjects and bodies."""
from __future__ import annotations

import re
from typing import Dict

from .expiry import PrincipalStatus


TOKENS = (
    "user.displayName",
    "user.userPrincipalName",
    "daysUntilExpiry",
    "expiryDate",
)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")


def build_context(status: PrincipalStatus) -> Dict[str, str]:
    record = status.record
    return {
        "user.displayName": status.principal.display_name,
        "user.userPrincipalName": status.principal.user_principal_name,
        "daysUntilExpiry": str(record.days_remaining),
        "expiryDate": record.expiry_date.strftime("%Y-%m-%d") if record.expiry_date else "N/A",
    }


def render(template: str, context: Dict[str, str]) -> str:
    """Replace known ``{{token}}`` placeholders; anything else is left verbatim."""

    def _substitute(match: "re.Match[str]") -> str:
        value = context.get(match.group(1))
        return match.group(0) if value is None else value

    return _PLACEHOLDER.sub(_substitute, template or "")


__all__ = ["TOKENS", "build_context", "render"]

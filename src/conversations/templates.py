"""Placeholder resolution for follow-up rule templates."""

from __future__ import annotations

import re
from typing import Dict, Mapping, Optional


PLACEHOLDER_PATTERN = re.compile(r"\[([A-Za-z][A-Za-z _]*)\]")

NAME_ALIASES = ("name", "client_name", "clientname", "nomecliente", "nome")


def _normalize_key(raw: str) -> str:
    return re.sub(r"\s+", "_", raw.strip().lower())


def build_placeholder_values(
    *,
    client_name: Optional[str],
    client_phone: Optional[str] = None,
    workspace_name: Optional[str] = None,
) -> Dict[str, str]:
    values: Dict[str, str] = {}
    name = (client_name or "").strip()
    if name:
        for alias in NAME_ALIASES:
            values[alias] = name
        values["first_name"] = name.split()[0]
        values["firstname"] = values["first_name"]
    phone = (client_phone or "").strip()
    if phone:
        values["phone"] = phone
    workspace = (workspace_name or "").strip()
    if workspace:
        values["workspace"] = workspace
        values["company"] = workspace
    return values


def resolve_placeholders(template: str, values: Mapping[str, str]) -> str:
    """Replace ``[Key]`` tokens case-insensitively; unknown tokens are left as written."""

    def _replace(match: re.Match[str]) -> str:
        key = _normalize_key(match.group(1))
        if key in values:
            return values[key]
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, template)

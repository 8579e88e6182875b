"""Merge-token map construction and {{token}} substitution for message templates."""

from __future__ import annotations

import re
from typing import Any

from ..logging_config import get_logger

logger = get_logger(__name__)

_TOKEN = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")


def build_token_map(subject_id: str, record: dict[str, Any], *, link_base_url: str) -> dict[str, str]:
    """Derive the merge tokens for one subject record."""
    first = record.get("first_name") or ""
    last = record.get("last_name") or ""
    full = record.get("full_name") or " ".join(p for p in (first, last) if p)
    score = record.get("lead_score")
    base = link_base_url.rstrip("/")
    return {
        "first_name": first,
        "last_name": last,
        "full_name": full,
        "email": record.get("email") or "",
        "phone": record.get("phone") or "",
        "property_name": record.get("property_name") or "",
        "unit_number": record.get("unit_number") or record.get("unit_id") or "",
        "lead_score": "" if score is None else str(score),
        "feedback_link": f"{base}/feedback/{subject_id}",
        "review_link": f"{base}/review/{subject_id}",
    }


def render(text: str, tokens: dict[str, str]) -> str:
    """Substitute every known {{token}}; unknown tokens are left in place."""

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in tokens:
            return tokens[name]
        logger.warning("Template token {{%s}} has no value", name)
        return match.group(0)

    return _TOKEN.sub(_replace, text or "")

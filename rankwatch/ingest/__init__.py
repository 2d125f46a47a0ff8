"""Ingestion helpers."""

from __future__ import annotations

import pathlib
from typing import Any

import yaml

CAMPAIGNS_PATH = pathlib.Path(__file__).with_name("campaigns.yml")


def load_campaigns(path: pathlib.Path = CAMPAIGNS_PATH, limit: int | None = None) -> list[dict[str, Any]]:
    """Campaign definitions used to seed a fresh database."""
    data = yaml.safe_load(path.read_text()) or []
    campaigns = []
    for item in data:
        keywords = item.get("keywords") or []
        if isinstance(keywords, list):
            keywords = "\n".join(str(k) for k in keywords)
        campaigns.append({**item, "keywords": keywords})
    if limit:
        return campaigns[:limit]
    return campaigns

from __future__ import annotations

from typing import Any


def normalize_model_key(model_id: str) -> str:
    return model_id.strip().lower()


def coerce_alias_map(value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        msg = "Expected 'aliases' to be a mapping of alias to model id."
        raise ValueError(msg)
    aliases: dict[str, str] = {}
    for raw_alias, raw_target in value.items():
        if not isinstance(raw_alias, str) or not isinstance(raw_target, str):
            continue
        alias = normalize_model_key(raw_alias)
        target = raw_target.strip()
        if alias and target:
            aliases[alias] = target
    return aliases

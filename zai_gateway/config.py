from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from zai_gateway.utils.model_utils import coerce_alias_map, normalize_model_key
from zai_gateway.utils.yaml_utils import load_yaml_dict

logger = logging.getLogger("zai_gateway")

HIDDEN_MCP_SERVERS = ("vibe-coding", "ppt-maker", "image-search", "deep-research")


class ModelCapabilities(BaseModel):
    vision: bool = False
    mcp: bool = False
    thinking: bool = False
    search: bool = False
    advanced_search: bool = False

    @property
    def web_search(self) -> bool:
        return self.search or self.advanced_search


class SamplingParams(BaseModel):
    top_p: float = 0.95
    temperature: float = 0.6
    max_tokens: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ModelProfile(BaseModel):
    id: str
    name: str
    upstream_id: str
    description: str | None = None
    capabilities: ModelCapabilities = Field(default_factory=ModelCapabilities)
    default_params: SamplingParams = Field(default_factory=SamplingParams)


@dataclass(slots=True)
class ResolvedModel:
    requested: str
    profile: ModelProfile
    capabilities: ModelCapabilities
    from_catalog: bool


def classify_capabilities(
    model_id: str,
    reasoning: bool | None = None,
) -> ModelCapabilities:
    """Guess capabilities from substrings of an unrecognised model id."""
    normalized = normalize_model_key(model_id)
    thinking = (
        "thinking" in normalized
        or "4.6" in normalized
        or "0727-360b-api" in normalized
        or reasoning is True
    )
    search = any(marker in normalized for marker in ("search", "web", "browser"))
    advanced_search = any(
        marker in normalized for marker in ("advanced-search", "advanced", "pro-search")
    )
    vision = any(
        marker in normalized for marker in ("4.5v", "vision", "image", "multimodal")
    )
    return ModelCapabilities(
        vision=vision,
        mcp=thinking or search or advanced_search,
        thinking=thinking,
        search=search,
        advanced_search=advanced_search,
    )


DEFAULT_MODELS: list[dict[str, Any]] = [
    {
        "id": "0727-360B-API",
        "name": "GLM-4.5",
        "upstream_id": "0727-360B-API",
        "description": "Most advanced model, proficient in coding and tool use",
        "capabilities": {"vision": False, "mcp": True, "thinking": True},
        "default_params": {"top_p": 0.95, "temperature": 0.6, "max_tokens": 80000},
    },
    {
        "id": "glm-4.5v",
        "name": "GLM-4.5V",
        "upstream_id": "glm-4.5v",
        "description": "Advanced visual understanding and analysis",
        "capabilities": {"vision": True, "mcp": False, "thinking": True},
        "default_params": {"top_p": 0.6, "temperature": 0.8},
    },
    {
        "id": "glm-4.6",
        "name": "GLM-4.6",
        "upstream_id": "GLM-4-6-API-V1",
        "description": "Advanced reasoning and thinking model",
        "capabilities": {"vision": False, "mcp": True, "thinking": True},
        "default_params": {"top_p": 0.95, "temperature": 0.6, "max_tokens": 80000},
    },
]

DEFAULT_ALIASES: dict[str, str] = {
    "glm4.5v": "glm-4.5v",
    "glm_4.5v": "glm-4.5v",
    "gpt-4-vision-preview": "glm-4.5v",
    "glm-4.5": "0727-360B-API",
    "glm4.5": "0727-360B-API",
    "glm_4.5": "0727-360B-API",
    "gpt-4": "0727-360B-API",
    "glm4.6": "glm-4.6",
    "glm_4.6": "glm-4.6",
}


class ModelCatalog(BaseModel):
    default_model: str = "0727-360B-API"
    models: list[ModelProfile] = Field(default_factory=list)
    aliases: dict[str, str] = Field(default_factory=dict)

    @field_validator("aliases", mode="before")
    @classmethod
    def _coerce_aliases(cls, value: Any) -> dict[str, str]:
        return coerce_alias_map(value)

    @field_validator("models")
    @classmethod
    def _require_unique_ids(cls, value: list[ModelProfile]) -> list[ModelProfile]:
        seen: set[str] = set()
        for profile in value:
            key = normalize_model_key(profile.id)
            if key in seen:
                raise ValueError(f"Duplicate model id '{profile.id}' in catalog.")
            seen.add(key)
        return value

    def lookup(self, model_id: str) -> ModelProfile | None:
        key = normalize_model_key(model_id)
        target = self.aliases.get(key)
        if target is not None:
            key = normalize_model_key(target)
        for profile in self.models:
            if normalize_model_key(profile.id) == key:
                return profile
        return None

    def default_profile(self) -> ModelProfile:
        profile = self.lookup(self.default_model)
        if profile is not None:
            return profile
        if not self.models:
            raise ValueError("Model catalog has no models.")
        return self.models[0]

    def resolve(self, model_id: str, reasoning: bool | None = None) -> ResolvedModel:
        profile = self.lookup(model_id)
        if profile is not None:
            capabilities = profile.capabilities
            if reasoning is True and not capabilities.thinking:
                capabilities = capabilities.model_copy(update={"thinking": True})
            return ResolvedModel(
                requested=model_id,
                profile=profile,
                capabilities=capabilities,
                from_catalog=True,
            )

        fallback = self.default_profile()
        logger.warning(
            "model_not_in_catalog requested=%s fallback=%s",
            model_id,
            fallback.id,
        )
        return ResolvedModel(
            requested=model_id,
            profile=fallback,
            capabilities=classify_capabilities(model_id, reasoning),
            from_catalog=False,
        )

    def model_ids(self) -> list[str]:
        return [profile.id for profile in self.models]


def mcp_servers_for(capabilities: ModelCapabilities) -> list[str]:
    if capabilities.advanced_search:
        return ["advanced-search"]
    if capabilities.search:
        return ["deep-web-search"]
    return []


def hidden_mcp_features() -> list[dict[str, str]]:
    return [
        {"type": "mcp", "server": server, "status": "hidden"}
        for server in HIDDEN_MCP_SERVERS
    ]


def default_model_catalog() -> ModelCatalog:
    return ModelCatalog.model_validate(
        {"models": DEFAULT_MODELS, "aliases": DEFAULT_ALIASES}
    )


def load_model_catalog(config_path: str | Path | None = None) -> ModelCatalog:
    if config_path is None:
        return default_model_catalog()
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Model catalog not found at '{config_path}'. "
            "Create it or unset MODEL_CATALOG_PATH."
        )
    raw = load_yaml_dict(path)
    catalog = ModelCatalog.model_validate(raw)
    if not catalog.models:
        raise ValueError(f"Model catalog '{config_path}' defines no models.")
    return catalog

"""
Provider Registry
=================

Static catalog of the LLM providers Furon Chat can talk to, their models,
capability tags and endpoints. User-defined endpoints are represented as
CustomModel records and live outside the static catalog.

Lookups never raise: a missing provider or model returns None.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any


class ChatMode(Enum):
    """Conversation modes offered to the user"""

    GENERAL = "general"
    INNOVATION = "innovation"
    CODE = "code"
    RESEARCH = "research"

    @classmethod
    def parse(cls, value: ChatMode | str) -> ChatMode:
        if isinstance(value, ChatMode):
            return value
        return cls(str(value).strip().lower())


class ApiFormat(Enum):
    """Wire formats understood by the protocol adapters"""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    # Built-in only; custom models are limited to the three formats above
    LEGACY = "legacy"


CUSTOM_API_FORMATS = (ApiFormat.OPENAI, ApiFormat.ANTHROPIC, ApiFormat.GEMINI)


@dataclass(frozen=True)
class ModelOption:
    """Immutable model definition"""

    id: str
    name: str
    provider: str
    description: str
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class Provider:
    """Immutable provider definition"""

    id: str
    name: str
    description: str
    strengths: tuple[str, ...]
    models: tuple[ModelOption, ...]
    wire_format: ApiFormat
    base_url: str
    extra_headers: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    # Prepended to the model id on the wire (Meta Llama is served by OpenRouter)
    model_prefix: str = ""

    @property
    def default_model(self) -> ModelOption | None:
        return self.models[0] if self.models else None


@dataclass
class CustomModel:
    """
    A user-defined endpoint.

    The api_format alone decides which adapter serves the model; the
    base URL is never inspected to guess it.
    """

    id: str
    name: str
    base_url: str
    api_key: str
    model_id: str
    api_format: ApiFormat = ApiFormat.OPENAI
    description: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        self.api_format = coerce_custom_format(self.api_format)

    @classmethod
    def create(
        cls,
        name: str,
        base_url: str,
        api_key: str,
        model_id: str,
        api_format: ApiFormat | str = ApiFormat.OPENAI,
        description: str | None = None,
    ) -> CustomModel:
        """Create a new custom model with a fresh id and timestamps."""
        now = datetime.now()
        return cls(
            id=f"custom-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}",
            name=name,
            base_url=base_url,
            api_key=api_key,
            model_id=model_id,
            api_format=coerce_custom_format(api_format),
            description=description,
            created_at=now,
            updated_at=now,
        )

    def __repr__(self) -> str:
        # Keep the key out of logs and tracebacks
        return (
            f"CustomModel(id={self.id!r}, name={self.name!r}, "
            f"base_url={self.base_url!r}, model_id={self.model_id!r}, "
            f"api_format={self.api_format.value!r}, api_key=****)"
        )


def coerce_custom_format(value: ApiFormat | str | None) -> ApiFormat:
    """Map a stored format tag to one of the custom formats, defaulting to OpenAI."""
    if isinstance(value, ApiFormat):
        return value if value in CUSTOM_API_FORMATS else ApiFormat.OPENAI
    try:
        fmt = ApiFormat(str(value).strip().lower())
    except ValueError:
        return ApiFormat.OPENAI
    return fmt if fmt in CUSTOM_API_FORMATS else ApiFormat.OPENAI


def _models(provider: str, *specs: tuple[str, str, str, tuple[str, ...]]) -> tuple[ModelOption, ...]:
    return tuple(
        ModelOption(id=model_id, name=name, provider=provider, description=desc, tags=tags)
        for model_id, name, desc, tags in specs
    )


BUILTIN_PROVIDERS: tuple[Provider, ...] = (
    Provider(
        id="grok",
        name="Grok (xAI)",
        description="Rebellious, innovative thinking",
        strengths=("Innovation", "Unconventional ideas", "Breaking paradigms"),
        wire_format=ApiFormat.OPENAI,
        base_url="https://api.x.ai/v1",
        models=_models(
            "grok",
            ("grok-2", "Grok-2", "Latest and most capable", ("uncensored", "creative")),
            ("grok-2-mini", "Grok-2 Mini", "Faster, lighter version", ("uncensored",)),
        ),
    ),
    Provider(
        id="anthropic",
        name="Claude (Anthropic)",
        description="Structured, thoughtful analysis",
        strengths=("Code generation", "Planning", "Safety-conscious"),
        wire_format=ApiFormat.ANTHROPIC,
        base_url="https://api.anthropic.com",
        models=_models(
            "anthropic",
            ("claude-sonnet-4-20250514", "Claude Sonnet 4", "Best balance of speed and capability", ("code", "reasoning")),
            ("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", "Previous generation, still excellent", ("code",)),
            ("claude-3-opus-20240229", "Claude 3 Opus", "Most capable, slower", ("reasoning",)),
        ),
    ),
    Provider(
        id="openai",
        name="GPT (OpenAI)",
        description="Creative, broad capabilities",
        strengths=("Creativity", "General knowledge", "Versatility"),
        wire_format=ApiFormat.OPENAI,
        base_url="https://api.openai.com/v1",
        models=_models(
            "openai",
            ("gpt-4o", "GPT-4o", "Flagship multimodal model", ("general", "creative")),
            ("gpt-4o-mini", "GPT-4o Mini", "Fast and cost-effective", ("general",)),
            ("o1-preview", "o1 Preview", "Advanced reasoning model", ("math", "reasoning")),
        ),
    ),
    Provider(
        id="gemini",
        name="Gemini (Google)",
        description="Multimodal, research-focused",
        strengths=("Research", "Data analysis", "Multimodal"),
        wire_format=ApiFormat.GEMINI,
        base_url="https://generativelanguage.googleapis.com",
        models=_models(
            "gemini",
            ("gemini-1.5-pro", "Gemini 1.5 Pro", "Most capable, long context", ("research", "multimodal")),
            ("gemini-1.5-flash", "Gemini 1.5 Flash", "Fast and efficient", ("general",)),
            ("gemini-2.0-flash-exp", "Gemini 2.0 Flash", "Next-gen experimental", ("research",)),
        ),
    ),
    Provider(
        id="deepseek",
        name="DeepSeek",
        description="Cost-effective reasoning powerhouse",
        strengths=("Math", "Technical", "Code", "Cost-effective"),
        wire_format=ApiFormat.OPENAI,
        base_url="https://api.deepseek.com/v1",
        models=_models(
            "deepseek",
            ("deepseek-reasoner", "DeepSeek R1", "Cost-Effective Reasoning", ("math", "reasoning", "code")),
            ("deepseek-chat", "DeepSeek V3", "Fast general chat", ("general", "code")),
        ),
    ),
    Provider(
        id="qwen",
        name="Qwen (Alibaba)",
        description="Multilingual powerhouse",
        strengths=("Multilingual", "Long context", "Coding"),
        wire_format=ApiFormat.OPENAI,
        base_url="https://dashscope.aliyuncs.com/compatible-mode/v1",
        models=_models(
            "qwen",
            ("qwen-max", "Qwen3 Max", "Multilingual Power", ("multilingual", "reasoning")),
            ("qwen-plus", "Qwen3 Plus", "Balanced performance", ("multilingual", "general")),
            ("qwen-turbo", "Qwen3 Turbo", "Fast and efficient", ("multilingual",)),
        ),
    ),
    Provider(
        id="perplexity",
        name="Perplexity",
        description="AI-powered research with citations",
        strengths=("Research", "Web search", "Citations", "Real-time data"),
        wire_format=ApiFormat.OPENAI,
        base_url="https://api.perplexity.ai",
        models=_models(
            "perplexity",
            ("sonar-pro", "Sonar Pro", "Research Mode with Citations", ("research", "citations")),
            ("sonar", "Sonar", "Fast web-grounded answers", ("research",)),
            ("sonar-reasoning", "Sonar Reasoning", "Chain-of-thought with search", ("research", "reasoning")),
        ),
    ),
    Provider(
        id="gab",
        name="Gab AI",
        description="Uncensored, bold responses",
        strengths=("Uncensored", "Free speech", "Direct answers"),
        wire_format=ApiFormat.LEGACY,
        base_url="https://api.gab.ai/v1",
        models=_models(
            "gab",
            ("gab-ai", "Gab AI", "Uncensored Bold Responses", ("uncensored",)),
        ),
    ),
    Provider(
        id="kimi",
        name="Moonshot Kimi",
        description="Agentic AI with tool use",
        strengths=("Agentic", "Tool use", "Long context", "Chinese"),
        wire_format=ApiFormat.OPENAI,
        base_url="https://api.moonshot.cn/v1",
        models=_models(
            "kimi",
            ("moonshot-v1-128k", "Kimi 128K", "Agentic Long Context", ("agentic", "multilingual")),
            ("moonshot-v1-32k", "Kimi 32K", "Balanced context window", ("agentic",)),
            ("moonshot-v1-8k", "Kimi 8K", "Fast responses", ("agentic",)),
        ),
    ),
    Provider(
        id="openrouter",
        name="OpenRouter",
        description="Unified access to 100+ models",
        strengths=("Model variety", "Fallback routing", "Cost optimization"),
        wire_format=ApiFormat.OPENAI,
        base_url="https://openrouter.ai/api/v1",
        models=_models(
            "openrouter",
            ("openrouter/auto", "Auto Router", "Best model for your query", ("general",)),
            ("anthropic/claude-3.5-sonnet", "Claude 3.5 (OR)", "Via OpenRouter", ("code", "reasoning")),
            ("google/gemini-pro-1.5", "Gemini Pro (OR)", "Via OpenRouter", ("research",)),
            ("deepseek/deepseek-r1", "DeepSeek R1 (OR)", "Via OpenRouter", ("math", "reasoning")),
        ),
    ),
    Provider(
        id="meta",
        name="Meta Llama",
        description="Open-weight powerhouse",
        strengths=("Open source", "Customizable", "Coding"),
        wire_format=ApiFormat.OPENAI,
        base_url="https://openrouter.ai/api/v1",
        model_prefix="meta-llama/",
        models=_models(
            "meta",
            ("llama-3.3-70b", "Llama 3.3 70B", "Most capable open model", ("code", "general")),
            ("llama-3.1-405b", "Llama 3.1 405B", "Largest Llama model", ("reasoning", "code")),
            ("llama-3.2-90b-vision", "Llama 3.2 Vision", "Multimodal capabilities", ("multimodal",)),
        ),
    ),
    Provider(
        id="mistral",
        name="Mistral AI",
        description="European AI excellence",
        strengths=("Efficiency", "Multilingual", "Code"),
        wire_format=ApiFormat.OPENAI,
        base_url="https://api.mistral.ai/v1",
        models=_models(
            "mistral",
            ("mistral-large-latest", "Mistral Large 3", "Flagship model", ("reasoning", "multilingual")),
            ("mistral-small-latest", "Mistral Small 3", "Fast and efficient", ("general", "code")),
            ("codestral-latest", "Codestral", "Optimized for code", ("code",)),
        ),
    ),
)

# Providers served through OpenRouter send an HTTP-Referer header
OPENROUTER_PROVIDERS = frozenset({"openrouter", "meta"})


class ProviderRegistry:
    """Immutable lookup table over a set of providers"""

    def __init__(self, providers: Iterable[Provider]) -> None:
        self._providers: tuple[Provider, ...] = tuple(providers)
        self._by_id: dict[str, Provider] = {}
        self._models: dict[str, ModelOption] = {}

        for provider in self._providers:
            if provider.id in self._by_id:
                raise ValueError(f"Duplicate provider id: {provider.id}")
            self._by_id[provider.id] = provider
            for model in provider.models:
                if model.provider != provider.id:
                    raise ValueError(
                        f"Model {model.id} declares provider {model.provider!r} "
                        f"but is listed under {provider.id!r}"
                    )
                # First registration wins for ids shared across providers
                self._models.setdefault(model.id, model)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._by_id

    def __iter__(self):
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)

    def list_providers(self) -> list[Provider]:
        return list(self._providers)

    def get_provider(self, provider_id: str) -> Provider | None:
        return self._by_id.get(provider_id)

    def get_model(self, model_id: str) -> ModelOption | None:
        return self._models.get(model_id)

    def get_provider_for_model(self, model_id: str) -> Provider | None:
        model = self.get_model(model_id)
        return self._by_id.get(model.provider) if model else None

    def all_models(self) -> list[ModelOption]:
        return [model for provider in self._providers for model in provider.models]

    def default_model_for(self, provider_id: str) -> str:
        """First listed model id for a provider, or "" when unknown."""
        provider = self.get_provider(provider_id)
        if provider is None or provider.default_model is None:
            return ""
        return provider.default_model.id

    def with_overrides(self, overrides: Mapping[str, Mapping[str, Any]]) -> ProviderRegistry:
        """
        Return a new registry with per-provider base_url/extra_headers replaced.

        Used to point a built-in provider at a proxy from config.json
        without mutating the shared catalog.
        """
        providers = []
        for provider in self._providers:
            override = overrides.get(provider.id)
            if not isinstance(override, Mapping):
                providers.append(provider)
                continue
            base_url = override.get("baseUrl")
            headers = override.get("headers")
            providers.append(
                replace(
                    provider,
                    base_url=base_url if isinstance(base_url, str) and base_url else provider.base_url,
                    extra_headers=MappingProxyType(
                        {**provider.extra_headers, **headers}
                        if isinstance(headers, Mapping)
                        else dict(provider.extra_headers)
                    ),
                )
            )
        return ProviderRegistry(providers)


DEFAULT_REGISTRY = ProviderRegistry(BUILTIN_PROVIDERS)

"""
Furon Chat Orchestrator
=======================
Single entry point for sending a chat message to whichever LLM fits it.

Features:
- Explicit model selection, including user-defined custom endpoints
- Intent-based smart routing over the providers the caller holds keys for
- Mock responses when no usable credential exists (no network I/O)
- Streaming tokens through one callback contract for every provider
- Optional bounded retry with exponential backoff for transient failures
- Config file and logging setup shared with the CLI

send_message() never raises for provider or network failures; they come
back as an error ChatResult after on_error has been called.
"""

import asyncio
import json
import logging
import os
import random
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from .adapters import (
    DEFAULT_TIMEOUT,
    ChatMessage,
    ProviderError,
    StreamCallbacks,
    sanitize_for_logging,
    stream_chat,
    stream_custom_model,
)
from .credentials import CONFIG_DIR, CredentialSet
from .providers import DEFAULT_REGISTRY, ChatMode, CustomModel, ProviderRegistry
from .routing import RoutingEngine

logger = logging.getLogger(__name__)

MOCK_MODEL = "mock"

_PERSONA = (
    "You are Furon AI, an advanced AI assistant for Furon.co's R&D Innovation Lab.\n"
    "Your mission is to accelerate breakthrough discoveries across AI/ML, space "
    "exploration, biotech, sustainability, and quantum computing.\n"
    "Be bold, think unconventionally, and push the boundaries of what's possible.\n\n"
)

SYSTEM_PROMPTS: dict[ChatMode, str] = {
    ChatMode.GENERAL: _PERSONA
    + "You are in General Conversation mode. Be helpful, informative, and engaging.\n"
    "Answer questions thoroughly while maintaining a futuristic, innovative perspective.",
    ChatMode.INNOVATION: (
        "You are Furon AI, an urgent, truth-seeking innovation engine for Furon R&D Lab. "
        "Operate with wartime intensity. Always push for breakthroughs in AI/ML, space "
        "exploration, biotechnology, sustainable energy, quantum technologies, and "
        "cross-domain fusions. When the user describes an idea or problem:\n"
        "- Generate 3-5 bold, novel variations\n"
        "- Outline a minimal proof-of-concept roadmap (steps, timeline, key risks)\n"
        "- Suggest patentable angles or prior art checks\n"
        "- Critique for feasibility, scalability, and real-world impact\n"
        "- End every response with 2-3 'what if' questions to spark deeper thinking."
    ),
    ChatMode.CODE: _PERSONA
    + "You are in Code/Prototype Building mode. Help build rapid prototypes and MVPs.\n"
    "- Generate clean, modern code (prefer React, TypeScript, Next.js)\n"
    "- Focus on functionality first, then polish\n"
    "- Provide complete, runnable code snippets\n"
    "- Suggest architecture decisions\n"
    "- Help debug and optimize\n"
    "- Think like a 10x engineer",
    ChatMode.RESEARCH: _PERSONA
    + "You are in Research Synthesis mode. Help analyze and synthesize research.\n"
    "- Summarize complex papers and findings\n"
    "- Identify key insights and implications\n"
    "- Connect research across domains\n"
    "- Highlight gaps and opportunities\n"
    "- Suggest follow-up experiments\n"
    "- Be rigorous but accessible",
}

MOCK_RESPONSES: dict[ChatMode, str] = {
    ChatMode.INNOVATION: """**Breakthrough Analysis** (Mock Response - No API Key)

Based on your idea, here are some bold directions:

1. **Quantum-Enhanced Approach**: Leverage quantum computing principles for exponential speedup
2. **Bio-Inspired Solution**: Apply evolutionary algorithms and neural architectures
3. **Cross-Domain Fusion**: Combine techniques from aerospace and biotechnology

**POC Roadmap:**
- Week 1-2: Literature review and feasibility analysis
- Week 3-4: Minimal prototype development
- Week 5-6: Testing and iteration

**What if...**
- What if we could scale this 1000x?
- What if this technology existed 10 years from now?""",
    ChatMode.CODE: """**Prototype Response** (Mock Response - No API Key)

```tsx
import { useState } from 'react';

export function Dashboard() {
  const [data, setData] = useState([]);

  return (
    <div className="p-6 bg-card rounded-xl">
      <h1 className="text-2xl font-bold">Dashboard</h1>
      <p>Add your API key in Settings to generate real code.</p>
    </div>
  );
}
```

Configure an API key to get fully functional code generation!""",
    ChatMode.RESEARCH: """**Research Summary** (Mock Response - No API Key)

Key findings from recent literature:
- Emerging trends show convergence of AI and domain-specific applications
- Cross-disciplinary approaches yield breakthrough results
- Open challenges remain in scalability and reproducibility

Add your API key in Settings to get real research synthesis.""",
    ChatMode.GENERAL: """Hello! I'm Furon AI. (Mock Response - No API Key)

I can help you with:
• 💡 Innovation brainstorming
• ⚡ Code prototyping
• 🔬 Research synthesis
• 💬 General conversation

**To unlock my full potential**, please add an API key in Settings. We support:
- OpenAI, Anthropic, Google Gemini, xAI Grok
- DeepSeek, Qwen, Perplexity, Mistral
- Meta Llama, Moonshot Kimi, and more!""",
}

THINK_HARDER_PREFIX = "[THINK HARDER] Analyze this more deeply with step-by-step reasoning: "
SHOW_REASONING_PREFIX = "Show your reasoning step-by-step before the final answer. "


def get_system_prompt(mode: ChatMode | str) -> str:
    return SYSTEM_PROMPTS[ChatMode.parse(mode)]


def get_mock_response(mode: ChatMode | str) -> str:
    return MOCK_RESPONSES[ChatMode.parse(mode)]


def enhance_prompt(
    message: str,
    mode: ChatMode | str,
    think_harder: bool = False,
    show_reasoning: bool = False,
) -> str:
    """
    Apply the optional prompt prefixes.

    "Think harder" wins over the innovation-mode reasoning prefix; the two
    are never combined.
    """
    if think_harder:
        return f"{THINK_HARDER_PREFIX}{message}"
    if show_reasoning and ChatMode.parse(mode) is ChatMode.INNOVATION:
        return f"{SHOW_REASONING_PREFIX}{message}"
    return message


@dataclass
class ChatResult:
    """Outcome of one send_message call"""

    content: str
    model: str
    provider: str | None = None
    success: bool = True
    error: str | None = None
    latency_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_mock(self) -> bool:
        return self.model == MOCK_MODEL


@dataclass(frozen=True)
class _Target:
    provider: str
    model_id: str
    model_name: str
    credential: str
    custom: CustomModel | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class _Attempt:
    text: str | None = None
    error: Exception | None = None
    tokens: int = 0


def _invoke(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("Callback %r raised", getattr(callback, "__name__", callback))


class RetryHandler:
    """Exponential backoff for streams that failed before producing any text"""

    def __init__(
        self, max_retries: int = 0, base_delay: float = 1.0, max_delay: float = 30.0
    ) -> None:
        self.max_retries = max(0, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "RetryHandler":
        retry = config.get("retry", {})
        if not isinstance(retry, Mapping):
            return cls()
        try:
            return cls(
                max_retries=int(retry.get("maxRetries", 0)),
                base_delay=float(retry.get("baseDelay", 1.0)),
                max_delay=float(retry.get("maxDelay", 30.0)),
            )
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid retry config: %r", retry)
            return cls()

    @staticmethod
    def is_retryable(error: Exception) -> bool:
        return isinstance(error, ProviderError) and error.retryable

    def should_retry(self, attempt: int, error: Exception, tokens: int) -> bool:
        # Never retry once text has reached the caller
        if tokens:
            return False
        return attempt < self.max_retries and self.is_retryable(error)

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        # Add jitter
        return delay * (0.5 + 0.5 * random.random())


class ChatOrchestrator:
    """
    Resolve a target model for each message and stream its response.

    Target resolution:
    - explicit custom model id: that endpoint, with its own key
    - explicit built-in model id: its provider, if the caller has that key
    - otherwise: smart routing over the providers with non-empty keys
    Anything unresolved falls back to the canned mock response.
    """

    def __init__(
        self,
        config: Mapping[str, Any] | None = None,
        registry: ProviderRegistry = DEFAULT_REGISTRY,
        client: httpx.AsyncClient | None = None,
        verbose: bool = False,
        configure_logging: bool = False,
    ) -> None:
        self.verbose = verbose
        self._user_config: dict[str, Any] = (
            self._load_user_config() if config is None else dict(config)
        )
        if configure_logging:
            self._setup_logging()

        overrides = self._user_config.get("providers")
        self.registry = (
            registry.with_overrides(overrides)
            if isinstance(overrides, Mapping)
            else registry
        )
        self.router = RoutingEngine(self.registry)
        self.retry = RetryHandler.from_config(self._user_config)
        self.timeout = self._resolve_timeout()
        self.referer = self._resolve_referer()
        self._client = client

    @property
    def defaults(self) -> dict[str, Any]:
        defaults = self._user_config.get("defaults", {})
        return defaults if isinstance(defaults, dict) else {}

    def _resolve_timeout(self) -> httpx.Timeout:
        value = self._user_config.get("timeout")
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            return httpx.Timeout(float(value), connect=min(10.0, float(value)))
        return DEFAULT_TIMEOUT

    def _resolve_referer(self) -> str | None:
        openrouter = self._user_config.get("openrouter", {})
        if isinstance(openrouter, dict) and isinstance(openrouter.get("referer"), str):
            return openrouter["referer"]
        return None

    def _setup_logging(self) -> None:
        level = logging.DEBUG if self.verbose else logging.WARNING

        log_config = self._user_config.get("logging", {})
        if not isinstance(log_config, dict):
            log_config = {}
        if not self.verbose and "level" in log_config:
            level = getattr(logging, str(log_config["level"]).upper(), logging.WARNING)

        handlers: list[logging.Handler] = [logging.StreamHandler()]

        log_file = log_config.get("file")
        if log_file:
            try:
                handlers.append(
                    logging.FileHandler(os.path.expanduser(log_file), encoding="utf-8")
                )
            except OSError as e:
                print(f"Failed to setup log file {log_file}: {e}")

        logging.basicConfig(
            level=level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=handlers,
            force=True,
        )

    def _load_user_config(self) -> dict[str, Any]:
        config_path = CONFIG_DIR / "config.json"
        if not config_path.exists():
            return {}

        try:
            with config_path.open("r", encoding="utf-8") as config_file:
                loaded = json.load(config_file)
        except (OSError, ValueError) as exc:
            # Logging isn't configured yet
            print(f"Warning: Failed to load config from {config_path}: {exc}")
            return {}

        if not isinstance(loaded, dict):
            print(f"Warning: Config file {config_path} did not contain an object.")
            return {}

        return loaded

    def _resolve_target(
        self,
        message: str,
        mode: ChatMode,
        credentials: CredentialSet,
        selected_model_id: str | None,
        custom_models: Iterable[CustomModel],
    ) -> _Target | None:
        if selected_model_id:
            custom = next((m for m in custom_models if m.id == selected_model_id), None)
            if custom is not None:
                return _Target(
                    provider="custom",
                    model_id=custom.model_id,
                    model_name=custom.name,
                    credential=custom.api_key,
                    custom=custom,
                    metadata={"custom_model": custom.id},
                )

            model = self.registry.get_model(selected_model_id)
            provider = self.registry.get_provider_for_model(selected_model_id)
            if model is None or provider is None:
                logger.warning("Unknown model id: %s", selected_model_id)
                return None
            credential = credentials.get(provider.id)
            if not credential:
                logger.info("No API key for %s; model %s unavailable", provider.id, model.id)
                return None
            return _Target(
                provider=provider.id,
                model_id=model.id,
                model_name=model.name,
                credential=credential,
                metadata={"reason": "explicit"},
            )

        available = credentials.available_providers()
        if not available:
            return None

        decision = self.router.select_smart(message, mode, available)
        if decision is None or not decision.model_id:
            return None
        model = self.registry.get_model(decision.model_id)
        return _Target(
            provider=decision.provider,
            model_id=decision.model_id,
            model_name=model.name if model else "Unknown",
            credential=credentials[decision.provider],
            metadata={
                "reason": decision.reason,
                "intents": [i.value for i in decision.intents],
            },
        )

    def _mock(
        self,
        mode: ChatMode,
        on_complete: Callable[[str, str], Any] | None,
        started: float,
    ) -> ChatResult:
        content = get_mock_response(mode)
        logger.info("No usable credential; returning mock %s response", mode.value)
        _invoke(on_complete, content, MOCK_MODEL)
        return ChatResult(
            content=content,
            model=MOCK_MODEL,
            latency_ms=(time.perf_counter() - started) * 1000,
            metadata={"mock": True},
        )

    async def _attempt(
        self,
        target: _Target,
        messages: list[ChatMessage],
        on_token: Callable[[str], Any] | None,
    ) -> _Attempt:
        attempt = _Attempt()

        def _on_token(token: str) -> None:
            attempt.tokens += 1
            if on_token is not None:
                on_token(token)

        def _on_complete(text: str) -> None:
            attempt.text = text

        def _on_error(exc: Exception) -> None:
            attempt.error = exc

        callbacks = StreamCallbacks(
            on_token=_on_token, on_complete=_on_complete, on_error=_on_error
        )
        if target.custom is not None:
            await stream_custom_model(
                target.custom,
                messages,
                callbacks,
                client=self._client,
                timeout=self.timeout,
            )
        else:
            await stream_chat(
                target.provider,
                target.credential,
                target.model_id,
                messages,
                callbacks,
                registry=self.registry,
                client=self._client,
                timeout=self.timeout,
                referer=self.referer,
            )
        return attempt

    async def send_message(
        self,
        message: str,
        mode: ChatMode | str = ChatMode.GENERAL,
        credentials: Mapping[str, str | None] | None = None,
        selected_model_id: str | None = None,
        history: Iterable[ChatMessage | Mapping[str, Any]] = (),
        custom_models: Iterable[CustomModel] = (),
        on_token: Callable[[str], Any] | None = None,
        on_complete: Callable[[str, str], Any] | None = None,
        on_error: Callable[[Exception], Any] | None = None,
    ) -> ChatResult:
        """
        Send a message and stream the reply.

        Args:
            message: The user's message, already enhanced if desired
            mode: Chat mode, selects the system prompt and mock text
            credentials: Provider id -> API key; empty values count as missing
            selected_model_id: Built-in or custom model id, or None for routing
            history: Prior turns, oldest first
            custom_models: User-defined endpoints the id may refer to
            on_token: Called with each text fragment
            on_complete: Called with (full_text, model_name) on success
            on_error: Called with the failure, at most once

        Returns:
            ChatResult; model is "mock" when no provider could be used
        """
        started = time.perf_counter()
        mode = ChatMode.parse(mode)
        keys = (
            credentials
            if isinstance(credentials, CredentialSet)
            else CredentialSet(credentials or {})
        )
        logger.debug(
            "send_message mode=%s model=%s prompt=%s",
            mode.value,
            selected_model_id or "auto",
            sanitize_for_logging(message),
        )

        target = self._resolve_target(
            message, mode, keys, selected_model_id, custom_models
        )
        if target is None:
            return self._mock(mode, on_complete, started)

        messages = [
            ChatMessage(role="system", content=get_system_prompt(mode)),
            *(ChatMessage.coerce(m) for m in history),
            ChatMessage(role="user", content=message),
        ]

        attempts = 0
        while True:
            outcome = await self._attempt(target, messages, on_token)
            if outcome.error is None or not self.retry.should_retry(
                attempts, outcome.error, outcome.tokens
            ):
                break
            delay = self.retry.delay_for(attempts)
            attempts += 1
            logger.warning(
                "Retrying %s in %.1fs (attempt %d): %s",
                target.model_name,
                delay,
                attempts,
                sanitize_for_logging(str(outcome.error)),
            )
            await asyncio.sleep(delay)

        latency_ms = (time.perf_counter() - started) * 1000
        metadata = {**target.metadata, "attempts": attempts + 1, "tokens": outcome.tokens}

        if outcome.error is not None:
            error_text = str(outcome.error)
            logger.error(
                "Request to %s failed: %s",
                target.model_name,
                sanitize_for_logging(error_text),
            )
            _invoke(on_error, outcome.error)
            return ChatResult(
                content=f"**Error from {target.model_name}:** {error_text}",
                model=target.model_name,
                provider=target.provider,
                success=False,
                error=error_text,
                latency_ms=latency_ms,
                metadata=metadata,
            )

        content = outcome.text or ""
        _invoke(on_complete, content, target.model_name)
        return ChatResult(
            content=content,
            model=target.model_name,
            provider=target.provider,
            latency_ms=latency_ms,
            metadata=metadata,
        )


async def send_message(
    message: str,
    mode: ChatMode | str = ChatMode.GENERAL,
    credentials: Mapping[str, str | None] | None = None,
    selected_model_id: str | None = None,
    history: Iterable[ChatMessage | Mapping[str, Any]] = (),
    custom_models: Iterable[CustomModel] = (),
    on_token: Callable[[str], Any] | None = None,
    on_complete: Callable[[str, str], Any] | None = None,
    on_error: Callable[[Exception], Any] | None = None,
    client: httpx.AsyncClient | None = None,
) -> ChatResult:
    """send_message with default settings (no config file, no retry)."""
    orchestrator = ChatOrchestrator(config={}, client=client)
    return await orchestrator.send_message(
        message,
        mode=mode,
        credentials=credentials,
        selected_model_id=selected_model_id,
        history=history,
        custom_models=custom_models,
        on_token=on_token,
        on_complete=on_complete,
        on_error=on_error,
    )


def _print_models(registry: ProviderRegistry) -> None:
    print("\nAvailable Models:")
    print("=" * 60)
    for provider in registry:
        print(f"\n{provider.name} [{provider.id}]")
        print(f"  Strengths: {', '.join(provider.strengths)}")
        for model in provider.models:
            tags = f" ({', '.join(model.tags)})" if model.tags else ""
            print(f"  - {model.id}: {model.name} - {model.description}{tags}")


def _print_custom_models(models: list[CustomModel]) -> None:
    print("\nCustom Models:")
    print("=" * 60)
    if not models:
        print("  (none)")
    for model in models:
        print(f"\n{model.id}:")
        print(f"  Name: {model.name}")
        print(f"  Endpoint: {model.base_url}")
        print(f"  Model: {model.model_id} ({model.api_format.value})")
        if model.description:
            print(f"  Description: {model.description}")


async def main() -> int:
    """CLI interface for Furon Chat"""
    import argparse

    parser = argparse.ArgumentParser(description="Furon Chat CLI")
    parser.add_argument("prompt", nargs="?", help="The message to send")
    parser.add_argument(
        "--mode", choices=[m.value for m in ChatMode], help="Chat mode"
    )
    parser.add_argument("--model", "-m", help="Use a specific model id")
    parser.add_argument("--custom", help="Use a custom model by id")
    parser.add_argument(
        "--think-harder", action="store_true", help="Ask for deeper reasoning"
    )
    parser.add_argument(
        "--show-reasoning",
        action="store_true",
        help="Ask for visible reasoning (innovation mode)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--configure", action="store_true", help="Configure API keys")
    parser.add_argument(
        "--list-models", action="store_true", help="List built-in models"
    )
    parser.add_argument(
        "--list-custom", action="store_true", help="List custom models"
    )

    args = parser.parse_args()

    if args.configure:
        from .credentials import configure_credentials_interactive

        configure_credentials_interactive()
        return 0

    if args.list_models:
        _print_models(DEFAULT_REGISTRY)
        return 0

    if args.list_custom:
        from .storage import get_custom_model_store

        _print_custom_models(get_custom_model_store().list_models())
        return 0

    if not args.prompt:
        parser.print_help()
        return 0

    from .credentials import get_credential_set

    orchestrator = ChatOrchestrator(verbose=args.verbose, configure_logging=True)
    mode = ChatMode.parse(args.mode or orchestrator.defaults.get("mode", "general"))
    selected = args.custom or args.model or orchestrator.defaults.get("model") or None

    custom_models: list[CustomModel] = []
    if selected and selected.startswith("custom-"):
        from .storage import get_custom_model_store

        custom_models = get_custom_model_store().list_models()

    streamed = False

    def on_token(token: str) -> None:
        nonlocal streamed
        streamed = True
        print(token, end="", flush=True)

    result = await orchestrator.send_message(
        enhance_prompt(args.prompt, mode, args.think_harder, args.show_reasoning),
        mode=mode,
        credentials=get_credential_set(),
        selected_model_id=selected,
        custom_models=custom_models,
        on_token=on_token,
    )

    if not result.success:
        print(f"\nError: {result.error}")
        return 1

    if not streamed:
        print(result.content)
    print(f"\n\n[{result.model}] ({result.latency_ms:.0f}ms)")
    return 0


def run() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()

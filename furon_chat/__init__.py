"""
Furon Chat - Unified Streaming LLM Client
=========================================

Sends a chat message to one of several LLM providers (or a user-defined
endpoint), picking the provider from the message content and the keys
the caller holds, and streams tokens back through one callback contract.

Example Usage:
    >>> import asyncio
    >>> from furon_chat import ChatOrchestrator, get_credential_set
    >>>
    >>> async def main():
    ...     orchestrator = ChatOrchestrator()
    ...     result = await orchestrator.send_message(
    ...         "Explain quantum computing",
    ...         mode="research",
    ...         credentials=get_credential_set(),
    ...         on_token=lambda t: print(t, end=""),
    ...     )
    ...     print(result.model)
    >>>
    >>> asyncio.run(main())
"""

__version__ = "1.0.0"

from .adapters import (
    ChatMessage,
    EndpointConfig,
    ProviderError,
    StreamCallbacks,
    adapter_for,
    stream_chat,
    stream_custom_model,
)
from .credentials import (
    CredentialManager,
    CredentialSet,
    configure_credentials_interactive,
    get_api_key,
    get_credential_manager,
    get_credential_set,
    set_api_key,
)
from .orchestrator import (
    ChatOrchestrator,
    ChatResult,
    enhance_prompt,
    get_mock_response,
    get_system_prompt,
    send_message,
)
from .providers import (
    DEFAULT_REGISTRY,
    ApiFormat,
    ChatMode,
    CustomModel,
    ModelOption,
    Provider,
    ProviderRegistry,
)
from .routing import (
    Intent,
    IntentClassifier,
    RoutingDecision,
    RoutingEngine,
    select_provider,
    select_provider_smart,
)
from .storage import CustomModelStore, KeyStorageError

__all__ = [
    "__version__",

    # Providers
    "ApiFormat",
    "ChatMode",
    "CustomModel",
    "DEFAULT_REGISTRY",
    "ModelOption",
    "Provider",
    "ProviderRegistry",

    # Routing
    "Intent",
    "IntentClassifier",
    "RoutingDecision",
    "RoutingEngine",
    "select_provider",
    "select_provider_smart",

    # Streaming
    "ChatMessage",
    "EndpointConfig",
    "ProviderError",
    "StreamCallbacks",
    "adapter_for",
    "stream_chat",
    "stream_custom_model",

    # Orchestrator
    "ChatOrchestrator",
    "ChatResult",
    "enhance_prompt",
    "get_mock_response",
    "get_system_prompt",
    "send_message",

    # Credentials and storage
    "CredentialManager",
    "CredentialSet",
    "CustomModelStore",
    "KeyStorageError",
    "configure_credentials_interactive",
    "get_api_key",
    "get_credential_manager",
    "get_credential_set",
    "set_api_key",
]

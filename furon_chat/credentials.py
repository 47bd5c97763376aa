"""
Credential Storage for Furon Chat
=================================
Keeps provider API keys out of code and config files using a fallback chain:
1. System keyring (OS credential store)
2. Encrypted file with a machine-specific key
3. Environment variables

The chat core never talks to these backends directly. It receives an
immutable CredentialSet snapshot built by get_credential_set().
"""

import base64
import getpass
import hashlib
import json
import logging
import os
import re
import sys
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

SERVICE_NAME = "furon_chat"
CONFIG_DIR = Path.home() / ".furon_chat"
ENCRYPTED_CREDS_FILE = CONFIG_DIR / "credentials.enc"

# Key prefix for user-defined endpoints, e.g. "custom:custom-1718000000000-ab12cd34e"
CUSTOM_KEY_PREFIX = "custom:"


@dataclass(frozen=True)
class APICredential:
    """Immutable credential container"""

    provider: str
    _key: str

    def get_key(self) -> str:
        logger.debug("API key accessed for provider: %s", self.provider)
        return self._key

    def __repr__(self) -> str:
        return f"APICredential(provider={self.provider}, key=****)"

    def __str__(self) -> str:
        return self.__repr__()


class CredentialSet(Mapping[str, str]):
    """
    Read-only snapshot of provider keys.

    Iteration follows insertion order, which is the order routing falls
    back on when no priority list matches. Empty values are dropped.
    """

    def __init__(self, keys: Mapping[str, str | None] | Iterable[tuple[str, str | None]] = ()) -> None:
        items = keys.items() if isinstance(keys, Mapping) else keys
        self._keys: Mapping[str, str] = MappingProxyType(
            {provider: key for provider, key in items if key}
        )

    def __getitem__(self, provider: str) -> str:
        return self._keys[provider]

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, provider: object) -> bool:
        return provider in self._keys

    def available_providers(self) -> list[str]:
        return list(self._keys)

    def __repr__(self) -> str:
        return f"CredentialSet(providers={list(self._keys)})"


class CredentialBackend(ABC):
    """Abstract base class for credential storage backends"""

    @abstractmethod
    def get(self, provider: str) -> str | None:
        pass

    @abstractmethod
    def set(self, provider: str, api_key: str) -> bool:
        pass

    @abstractmethod
    def delete(self, provider: str) -> bool:
        pass

    @abstractmethod
    def list_providers(self) -> list[str]:
        pass

    @property
    @abstractmethod
    def is_available(self) -> bool:
        pass


class KeyringBackend(CredentialBackend):
    """Uses the OS keychain/keyring"""

    @property
    def is_available(self) -> bool:
        try:
            keyring.get_password(SERVICE_NAME, "__test__")
            return True
        except KeyringError:
            return False

    def get(self, provider: str) -> str | None:
        try:
            return keyring.get_password(SERVICE_NAME, provider)
        except KeyringError as e:
            logger.warning("Keyring get failed for %s: %s", provider, e)
            return None

    def set(self, provider: str, api_key: str) -> bool:
        try:
            keyring.set_password(SERVICE_NAME, provider, api_key)
            logger.info("Stored credential in keyring for: %s", provider)
            return True
        except KeyringError as e:
            logger.error("Keyring set failed for %s: %s", provider, e)
            return False

    def delete(self, provider: str) -> bool:
        try:
            keyring.delete_password(SERVICE_NAME, provider)
            return True
        except PasswordDeleteError:
            # Nothing stored
            return True
        except KeyringError as e:
            logger.warning("Keyring delete failed for %s: %s", provider, e)
            return False

    def list_providers(self) -> list[str]:
        # Keyring doesn't support listing
        return []


class EncryptedFileBackend(CredentialBackend):
    """Encrypted file storage using machine-specific key derivation"""

    def __init__(self, path: Path = ENCRYPTED_CREDS_FILE) -> None:
        self.path = path
        self._fernet: Fernet | None = None
        self._init_encryption()

    @property
    def is_available(self) -> bool:
        return self._fernet is not None

    def _get_machine_id(self) -> bytes:
        """Generate machine-specific identifier for key derivation"""
        identifiers = []

        if sys.platform == "darwin":
            import subprocess

            try:
                result = subprocess.run(
                    ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
                    capture_output=True,
                    text=True,
                )
                for line in result.stdout.split("\n"):
                    if "IOPlatformUUID" in line:
                        identifiers.append(line.split('"')[-2])
                        break
            except OSError:
                pass
        elif sys.platform == "linux":
            try:
                identifiers.append(Path("/etc/machine-id").read_text().strip())
            except OSError:
                pass

        identifiers.extend(
            [
                getpass.getuser(),
                os.uname().nodename if hasattr(os, "uname") else "unknown",
            ]
        )

        combined = ":".join(identifiers)
        return hashlib.sha256(combined.encode()).digest()

    def _init_encryption(self) -> None:
        try:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=b"furon_chat_v1",
                iterations=480000,
            )
            key = base64.urlsafe_b64encode(kdf.derive(self._get_machine_id()))
            self._fernet = Fernet(key)
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Failed to initialize encryption: %s", e)
            self._fernet = None

    def _load_credentials(self) -> dict[str, str]:
        if self._fernet is None or not self.path.exists():
            return {}

        try:
            decrypted = self._fernet.decrypt(self.path.read_bytes())
            return json.loads(decrypted.decode())
        except (OSError, InvalidToken, ValueError) as e:
            logger.error("Failed to load credentials: %s", e)
            return {}

    def _save_credentials(self, creds: dict[str, str]) -> bool:
        if self._fernet is None:
            return False

        try:
            encrypted = self._fernet.encrypt(json.dumps(creds).encode())
            # Write atomically with restricted permissions
            temp_file = self.path.with_suffix(".tmp")
            temp_file.write_bytes(encrypted)
            os.chmod(temp_file, 0o600)
            temp_file.replace(self.path)
            return True
        except OSError as e:
            logger.error("Failed to save credentials: %s", e)
            return False

    def get(self, provider: str) -> str | None:
        return self._load_credentials().get(provider)

    def set(self, provider: str, api_key: str) -> bool:
        creds = self._load_credentials()
        creds[provider] = api_key
        success = self._save_credentials(creds)
        if success:
            logger.info("Stored credential in encrypted file for: %s", provider)
        return success

    def delete(self, provider: str) -> bool:
        creds = self._load_credentials()
        if provider in creds:
            del creds[provider]
            return self._save_credentials(creds)
        return True

    def list_providers(self) -> list[str]:
        return list(self._load_credentials().keys())


class EnvironmentBackend(CredentialBackend):
    """Environment variable fallback (always available)"""

    ENV_VAR_MAP = {
        "grok": "XAI_API_KEY",
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "deepseek": "DEEPSEEK_API_KEY",
        "qwen": "DASHSCOPE_API_KEY",
        "perplexity": "PERPLEXITY_API_KEY",
        "gab": "GAB_API_KEY",
        "kimi": "MOONSHOT_API_KEY",
        "openrouter": "OPENROUTER_API_KEY",
        "meta": "OPENROUTER_API_KEY",
        "mistral": "MISTRAL_API_KEY",
    }

    @property
    def is_available(self) -> bool:
        return True

    def _get_env_var(self, provider: str) -> str:
        if provider in self.ENV_VAR_MAP:
            return self.ENV_VAR_MAP[provider]
        return re.sub(r"[^A-Z0-9]+", "_", provider.upper()) + "_API_KEY"

    def get(self, provider: str) -> str | None:
        return os.environ.get(self._get_env_var(provider))

    def set(self, provider: str, api_key: str) -> bool:
        os.environ[self._get_env_var(provider)] = api_key
        logger.warning("Set API key in environment (non-persistent) for: %s", provider)
        return True

    def delete(self, provider: str) -> bool:
        os.environ.pop(self._get_env_var(provider), None)
        return True

    def list_providers(self) -> list[str]:
        return [p for p, v in self.ENV_VAR_MAP.items() if os.environ.get(v)]


class CredentialManager:
    """
    Credential manager with fallback chain:
    1. System keyring
    2. Encrypted file
    3. Environment variables
    """

    def __init__(self, backends: list[CredentialBackend] | None = None) -> None:
        if backends is None:
            backends = [KeyringBackend(), EncryptedFileBackend(), EnvironmentBackend()]
        self._backends = backends
        self._cache: dict[str, APICredential] = {}
        self._validate_security()

    def _validate_security(self) -> None:
        available = [type(b).__name__ for b in self._backends if b.is_available]
        logger.info("Available credential backends: %s", available)

        if not any(
            isinstance(b, (KeyringBackend, EncryptedFileBackend)) and b.is_available
            for b in self._backends
        ):
            logger.warning(
                "No secure credential storage available; "
                "keys will only be read from the environment."
            )

    def get_credential(self, provider: str) -> APICredential | None:
        """
        Retrieve a credential, checking backends in priority order.
        Results are cached.
        """
        provider = provider.lower()

        if provider in self._cache:
            return self._cache[provider]

        for backend in self._backends:
            if not backend.is_available:
                continue

            api_key = backend.get(provider)
            if api_key:
                credential = APICredential(provider=provider, _key=api_key)
                self._cache[provider] = credential
                logger.debug(
                    "Retrieved credential for %s from %s",
                    provider,
                    type(backend).__name__,
                )
                return credential

        logger.debug("No credential found for provider: %s", provider)
        return None

    def set_credential(self, provider: str, api_key: str, validate: bool = True) -> bool:
        """
        Store a credential in the most secure available backend.

        With validate=False any non-empty key is accepted; custom endpoints
        often use short local tokens.
        """
        provider = provider.lower()

        if not api_key:
            logger.error("Invalid API key: empty")
            return False
        if validate and len(api_key) < 10:
            logger.error("Invalid API key: too short")
            return False

        self._cache.pop(provider, None)
        for backend in self._backends:
            if backend.is_available and not isinstance(backend, EnvironmentBackend):
                if backend.set(provider, api_key):
                    return True

        env_backend = next(
            (b for b in self._backends if isinstance(b, EnvironmentBackend)), None
        )
        return env_backend.set(provider, api_key) if env_backend else False

    def delete_credential(self, provider: str) -> bool:
        """Remove a credential from all backends"""
        provider = provider.lower()
        self._cache.pop(provider, None)

        success = True
        for backend in self._backends:
            if backend.is_available:
                success = backend.delete(provider) and success
        return success

    def list_configured_providers(self) -> list[str]:
        providers: set[str] = set()
        for backend in self._backends:
            if backend.is_available:
                providers.update(backend.list_providers())
        return sorted(providers)

    def get_api_key(self, provider: str) -> str | None:
        cred = self.get_credential(provider)
        return cred.get_key() if cred else None

    def get_credential_set(self, providers: Iterable[str]) -> CredentialSet:
        """Snapshot the keys for the given providers, in the given order."""
        return CredentialSet((p, self.get_api_key(p)) for p in providers)

    def clear_cache(self) -> None:
        self._cache.clear()


_manager: CredentialManager | None = None


def get_credential_manager() -> CredentialManager:
    """Get the global credential manager instance"""
    global _manager
    if _manager is None:
        _manager = CredentialManager()
    return _manager


def get_api_key(provider: str) -> str | None:
    return get_credential_manager().get_api_key(provider)


def set_api_key(provider: str, api_key: str) -> bool:
    return get_credential_manager().set_credential(provider, api_key)


def get_credential_set(providers: Iterable[str] | None = None) -> CredentialSet:
    """Snapshot of stored keys for the built-in providers (or the given ids)."""
    if providers is None:
        from .providers import DEFAULT_REGISTRY

        providers = [p.id for p in DEFAULT_REGISTRY]
    return get_credential_manager().get_credential_set(providers)


def configure_credentials_interactive() -> None:
    """Interactive CLI for configuring provider API keys"""
    from .providers import DEFAULT_REGISTRY

    print("\nFuron Chat Credential Configuration\n")
    print("=" * 50)

    manager = get_credential_manager()

    for provider in DEFAULT_REGISTRY:
        existing = manager.get_credential(provider.id)
        status = "configured" if existing else "not set"
        print(f"\n{provider.name}: [{status}]")

        response = input(f"Configure {provider.id}? (y/N/clear): ").strip().lower()

        if response == "clear":
            manager.delete_credential(provider.id)
            print(f"  -> Cleared {provider.id} credentials")
        elif response == "y":
            api_key = getpass.getpass(f"  Enter API key for {provider.id}: ")
            if api_key:
                if manager.set_credential(provider.id, api_key):
                    print(f"  -> Saved {provider.id} credentials securely")
                else:
                    print(f"  -> Failed to save {provider.id} credentials")

    print("\n" + "=" * 50)
    print("Configuration complete!")
    print(f"Configured providers: {manager.list_configured_providers()}")

"""
Credential Lookup for AI Router
===============================
Resolves cloud provider API keys from, in order:
1. System keyring (OS credential store)
2. Encrypted file with a machine-derived key
3. Environment variables

Local runtimes (LM Studio, Ollama, vLLM) need no key.
API keys are never logged or written in plain text.
"""

import base64
import getpass
import hashlib
import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple

try:
    from cryptography.fernet import Fernet
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
    CRYPTO_AVAILABLE = True
except ImportError:
    CRYPTO_AVAILABLE = False

try:
    import keyring
    KEYRING_AVAILABLE = True
except ImportError:
    KEYRING_AVAILABLE = False

logger = logging.getLogger(__name__)

SERVICE_NAME = "ai_router"
CONFIG_DIR = Path.home() / ".ai_router"
ENCRYPTED_CREDS_FILE = CONFIG_DIR / "credentials.enc"

# Cloud providers that need a key, with their display names
CLOUD_PROVIDERS: Tuple[Tuple[str, str], ...] = (
    ("openai", "OpenAI (GPT-5, GPT-4o, o1)"),
    ("anthropic", "Anthropic (Claude)"),
    ("google", "Google (Gemini)"),
    ("groq", "Groq (Llama, Mixtral, Gemma)"),
    ("grok", "xAI (Grok)"),
)


class CredentialBackend(ABC):
    """Storage backend for API keys"""

    name = "backend"

    @abstractmethod
    def get(self, provider: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, provider: str, api_key: str) -> bool:
        pass

    @abstractmethod
    def delete(self, provider: str) -> bool:
        pass

    def list_providers(self) -> List[str]:
        return []

    @property
    @abstractmethod
    def is_available(self) -> bool:
        pass


class KeyringBackend(CredentialBackend):
    """OS keychain storage"""

    name = "keyring"

    def __init__(self):
        self._available: Optional[bool] = None

    @property
    def is_available(self) -> bool:
        if self._available is None:
            self._available = False
            if KEYRING_AVAILABLE:
                try:
                    keyring.get_password(SERVICE_NAME, "__probe__")
                    self._available = True
                except Exception as e:
                    logger.debug(f"Keyring unusable: {e}")
        return self._available

    def get(self, provider: str) -> Optional[str]:
        if not self.is_available:
            return None
        try:
            return keyring.get_password(SERVICE_NAME, provider)
        except Exception as e:
            logger.warning(f"Keyring lookup failed for {provider}: {e}")
            return None

    def set(self, provider: str, api_key: str) -> bool:
        if not self.is_available:
            return False
        try:
            keyring.set_password(SERVICE_NAME, provider, api_key)
            logger.info(f"Stored {provider} key in keyring")
            return True
        except Exception as e:
            logger.error(f"Keyring store failed for {provider}: {e}")
            return False

    def delete(self, provider: str) -> bool:
        if not self.is_available:
            return False
        try:
            keyring.delete_password(SERVICE_NAME, provider)
            return True
        except Exception as e:
            logger.debug(f"Keyring delete skipped for {provider}: {e}")
            return False


class EncryptedFileBackend(CredentialBackend):
    """Fernet-encrypted JSON file keyed by a machine fingerprint"""

    name = "encrypted-file"

    def __init__(self, path: Path = ENCRYPTED_CREDS_FILE):
        self.path = path
        self._fernet: Optional["Fernet"] = None
        if CRYPTO_AVAILABLE:
            self._fernet = self._build_fernet()

    @property
    def is_available(self) -> bool:
        return self._fernet is not None

    @staticmethod
    def _machine_fingerprint() -> bytes:
        parts = []
        if sys.platform == "linux":
            try:
                parts.append(Path("/etc/machine-id").read_text().strip())
            except OSError:
                pass
        parts.append(getpass.getuser())
        parts.append(os.uname().nodename if hasattr(os, "uname") else "unknown")
        return hashlib.sha256(":".join(parts).encode()).digest()

    def _build_fernet(self) -> Optional["Fernet"]:
        try:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=b"ai_router_v1",
                iterations=480000,
            )
            key = base64.urlsafe_b64encode(kdf.derive(self._machine_fingerprint()))
            return Fernet(key)
        except Exception as e:
            logger.error(f"Could not set up credential encryption: {e}")
            return None

    def _read(self) -> Dict[str, str]:
        if not self.is_available or not self.path.exists():
            return {}
        try:
            return json.loads(self._fernet.decrypt(self.path.read_bytes()).decode())
        except Exception as e:
            logger.error(f"Could not read encrypted credentials: {e}")
            return {}

    def _write(self, creds: Dict[str, str]) -> bool:
        if not self.is_available:
            return False
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_bytes(self._fernet.encrypt(json.dumps(creds).encode()))
            os.chmod(tmp, 0o600)
            tmp.replace(self.path)
            return True
        except Exception as e:
            logger.error(f"Could not write encrypted credentials: {e}")
            return False

    def get(self, provider: str) -> Optional[str]:
        return self._read().get(provider)

    def set(self, provider: str, api_key: str) -> bool:
        creds = self._read()
        creds[provider] = api_key
        return self._write(creds)

    def delete(self, provider: str) -> bool:
        creds = self._read()
        if creds.pop(provider, None) is None:
            return True
        return self._write(creds)

    def list_providers(self) -> List[str]:
        return list(self._read())


class EnvironmentBackend(CredentialBackend):
    """Environment variables. Some providers accept more than one name."""

    name = "environment"

    ENV_VAR_MAP: Dict[str, Tuple[str, ...]] = {
        "openai": ("OPENAI_API_KEY",),
        "anthropic": ("ANTHROPIC_API_KEY",),
        "google": ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
        "groq": ("GROQ_API_KEY",),
        "grok": ("XAI_API_KEY", "GROK_API_KEY"),
    }

    @property
    def is_available(self) -> bool:
        return True

    def _env_vars(self, provider: str) -> Tuple[str, ...]:
        return self.ENV_VAR_MAP.get(provider.lower(), (f"{provider.upper()}_API_KEY",))

    def get(self, provider: str) -> Optional[str]:
        for var in self._env_vars(provider):
            value = os.environ.get(var)
            if value:
                return value
        return None

    def set(self, provider: str, api_key: str) -> bool:
        os.environ[self._env_vars(provider)[0]] = api_key
        logger.warning(f"Set {provider} key in environment only (not persisted)")
        return True

    def delete(self, provider: str) -> bool:
        for var in self._env_vars(provider):
            os.environ.pop(var, None)
        return True

    def list_providers(self) -> List[str]:
        return [p for p in self.ENV_VAR_MAP if self.get(p)]


class CredentialManager:
    """Checks backends in order and caches hits."""

    def __init__(self, backends: Optional[List[CredentialBackend]] = None):
        self._backends = backends or [
            KeyringBackend(),
            EncryptedFileBackend(),
            EnvironmentBackend(),
        ]
        self._cache: Dict[str, str] = {}

    def get_api_key(self, provider: str) -> Optional[str]:
        provider = provider.lower()
        if provider in self._cache:
            return self._cache[provider]

        for backend in self._backends:
            if not backend.is_available:
                continue
            api_key = backend.get(provider)
            if api_key:
                logger.debug(f"Found {provider} key via {backend.name}")
                self._cache[provider] = api_key
                return api_key
        return None

    def set_api_key(self, provider: str, api_key: str) -> bool:
        provider = provider.lower()
        if not api_key or len(api_key) < 10:
            logger.error("Refusing to store API key: too short")
            return False

        self._cache.pop(provider, None)
        for backend in self._backends:
            if backend.is_available and backend.set(provider, api_key):
                return True
        return False

    def delete_api_key(self, provider: str) -> bool:
        provider = provider.lower()
        self._cache.pop(provider, None)
        ok = True
        for backend in self._backends:
            if backend.is_available:
                ok = backend.delete(provider) and ok
        return ok

    def list_configured_providers(self) -> List[str]:
        found = set()
        for backend in self._backends:
            if backend.is_available:
                found.update(backend.list_providers())
        return sorted(found)

    def clear_cache(self):
        self._cache.clear()


_manager: Optional[CredentialManager] = None


def get_credential_manager() -> CredentialManager:
    global _manager
    if _manager is None:
        _manager = CredentialManager()
    return _manager


def get_api_key(provider: str) -> Optional[str]:
    """Get API key for a provider"""
    return get_credential_manager().get_api_key(provider)


def set_api_key(provider: str, api_key: str) -> bool:
    """Store API key for a provider"""
    return get_credential_manager().set_api_key(provider, api_key)


def configure_credentials_interactive():
    """Prompt for each cloud provider key on the terminal"""
    print("\nAI Router credential setup\n")
    print("=" * 50)

    manager = get_credential_manager()
    for provider_id, label in CLOUD_PROVIDERS:
        status = "configured" if manager.get_api_key(provider_id) else "not set"
        print(f"\n{label}: [{status}]")

        answer = input(f"Configure {provider_id}? (y/N/clear): ").strip().lower()
        if answer == "clear":
            manager.delete_api_key(provider_id)
            print(f"  -> Cleared {provider_id}")
        elif answer == "y":
            api_key = getpass.getpass(f"  API key for {provider_id}: ")
            if api_key and manager.set_api_key(provider_id, api_key):
                print(f"  -> Saved {provider_id}")
            else:
                print(f"  -> Could not save {provider_id}")

    print("\n" + "=" * 50)
    print(f"Configured providers: {manager.list_configured_providers()}")

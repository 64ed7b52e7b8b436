"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.ai_types import Provider
from ..ai.catalog import resolve_provider

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "StreamSettings",
    "ContextBudgetSettings",
    "redact_secret",
    "redact_api_keys",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".storyforge"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 2
_ENV_OVERRIDES: Mapping[str, str] = {
    "STORYFORGE_MODEL": "model",
}
_API_KEY_ENV_OVERRIDES: Mapping[str, Provider] = {
    "STORYFORGE_ANTHROPIC_API_KEY": Provider.ANTHROPIC,
    "STORYFORGE_OPENAI_API_KEY": Provider.OPENAI,
    "STORYFORGE_GOOGLE_API_KEY": Provider.GOOGLE,
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "STORYFORGE_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "STORYFORGE_REQUEST_TIMEOUT": "request_timeout",
    "STORYFORGE_TEMPERATURE": "temperature",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertexts"
_SECRET_PREFIX = "fernet"


@dataclass(slots=True)
class StreamSettings:
    """Render-throttling and stall-detection knobs for streamed replies."""

    chunk_buffer_size: int = 5
    flush_interval: float = 0.05
    connection_timeout: float = 30.0
    chunk_timeout: float = 60.0


@dataclass(slots=True)
class ContextBudgetSettings:
    """Token ceilings applied when injecting project data into prompts."""

    total: int = 8_000
    system: int = 1_000
    synopsis: int = 600
    characters: int = 1_200
    recent_content: int = 1_200
    history: int = 3_000
    response: int = 4_096
    max_characters: int = 10
    recent_scene_limit: int = 3
    recent_chapter_limit: int = 5


@dataclass(slots=True)
class Settings:
    """User-configurable AI settings persisted between sessions."""

    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 4_096
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    base_urls: dict[str, str] = field(default_factory=dict)
    api_keys: dict[str, str] = field(default_factory=dict)
    enable_prompt_cache: bool = True
    gemini_cache_ttl_seconds: int = 3_600
    partial_retention_hours: float = 24.0
    debug_logging: bool = False
    stream: StreamSettings = field(default_factory=StreamSettings)
    context_budget: ContextBudgetSettings = field(default_factory=ContextBudgetSettings)

    @property
    def provider(self) -> Provider:
        """Provider implied by ``model``; there is no separate provider setting."""

        return resolve_provider(self.model)


class SecretVault:
    """Encrypts and decrypts API keys with a Fernet key stored beside the settings file."""

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def strategy(self) -> str:
        return _SECRET_PREFIX

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return f"{_SECRET_PREFIX}:{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if prefix != _SECRET_PREFIX or not payload:
            raise ValueError(f"Unknown secret token prefix {prefix!r}")
        try:
            raw = self._get_fernet().decrypt(payload.encode("ascii"))
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying runtime and environment overrides."""

        payload = self._read_payload()
        settings = Settings()
        needs_migration = False

        if payload:
            api_keys, migrated = self._decrypt_api_keys(
                payload.pop(_API_KEY_FIELD, None), payload.pop("api_keys", None)
            )
            needs_migration = migrated
            data = _filter_fields(payload)
            stream_payload = data.get("stream")
            if isinstance(stream_payload, Mapping):
                try:
                    data["stream"] = StreamSettings(**stream_payload)
                except TypeError:
                    data["stream"] = StreamSettings()
            budget_payload = data.get("context_budget")
            if isinstance(budget_payload, Mapping):
                try:
                    data["context_budget"] = ContextBudgetSettings(**budget_payload)
                except TypeError:
                    data["context_budget"] = ContextBudgetSettings()
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if api_keys:
                settings = replace(settings, api_keys=api_keys)

        version_mismatch = bool(payload) and payload.get("version") != _SETTINGS_VERSION
        if needs_migration or version_mismatch:
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover - read-only profile dirs
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="runtime")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        body = json.dumps(self._serialize(settings), indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug(
            "Settings saved to %s (model=%s, keys=%s)",
            self._path,
            settings.model,
            sorted(redact_api_keys(settings.api_keys)),
        )
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_keys = data.pop("api_keys", {}) or {}
        ciphertexts: Dict[str, str] = {}
        for provider, key in api_keys.items():
            if not key:
                continue
            try:
                ciphertexts[provider] = self._vault.encrypt(key)
            except Exception as exc:  # pragma: no cover - extremely rare
                LOGGER.warning("Failed to encrypt %s API key: %s", provider, exc)
        if ciphertexts:
            data[_API_KEY_FIELD] = ciphertexts
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _decrypt_api_keys(self, ciphertexts: Any, legacy_plaintext: Any) -> tuple[dict[str, str], bool]:
        keys: dict[str, str] = {}
        migrated = False
        if isinstance(legacy_plaintext, Mapping):
            for provider, value in legacy_plaintext.items():
                if value:
                    keys[str(provider)] = str(value)
                    migrated = True
            if migrated:
                LOGGER.info("Detected legacy plaintext API keys; migrating to encrypted storage.")
        if isinstance(ciphertexts, Mapping):
            for provider, token in ciphertexts.items():
                try:
                    keys[str(provider)] = self._vault.decrypt(token)
                except ValueError as exc:
                    LOGGER.warning("Unable to decrypt %s API key: %s", provider, exc)
        return keys, migrated

    def _apply_overrides(self, settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        api_key_override = filtered.get("api_keys")
        if isinstance(api_key_override, Mapping):
            merged = dict(settings.api_keys)
            merged.update(api_key_override)
            filtered["api_keys"] = merged
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        api_keys: Dict[str, str] = {}
        for env_name, provider in _API_KEY_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                api_keys[provider.value] = value
        if api_keys:
            overrides["api_keys"] = api_keys
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - {"api_keys"}
    return {key: value for key, value in payload.items() if key in allowed}


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"


def redact_api_keys(api_keys: Mapping[str, str] | None) -> dict[str, str]:
    if not isinstance(api_keys, Mapping):
        return {}
    return {provider: redact_secret(key) for provider, key in api_keys.items()}

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional

from mira.logging import get_logger
from mira.service.errors import MissingCredentialError, ValidationError
from mira.service.vault import CredentialVault, DecryptionError, join_blob, split_blob
from mira.storage.models import CredentialRecord

logger = get_logger(__name__)

USER_SOURCE = "user"
DEFAULT_SOURCE = "default"


@dataclass(frozen=True)
class ResolvedCredential:
    api_key: str
    source: str

    def __repr__(self) -> str:
        return f"ResolvedCredential(api_key='***', source={self.source!r})"


class CredentialService:
    """Stores per-user provider keys encrypted and resolves the key for a call.

    Resolution order is the user's own stored key, then the operator default
    for the provider. A stored key that no longer decrypts (for example after
    the encryption key was rotated) counts as absent.
    """

    def __init__(
        self,
        store,
        vault: CredentialVault,
        *,
        providers: Iterable[str],
        defaults: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.store = store
        self.vault = vault
        self.providers = tuple(providers)
        self.defaults: Dict[str, str] = dict(defaults or {})

    def _check_provider(self, provider: str) -> None:
        if provider not in self.providers:
            raise ValidationError(
                f"unknown provider '{provider}'",
                detail={"provider": provider, "allowed": list(self.providers)},
            )

    def save(self, user_id: str, provider: str, plaintext_key: str) -> CredentialRecord:
        self._check_provider(provider)
        if not plaintext_key or not plaintext_key.strip():
            raise ValidationError("api key must not be empty", detail={"provider": provider})
        nonce, ciphertext = split_blob(self.vault.encrypt(plaintext_key.strip()))
        record = CredentialRecord(
            user_id=user_id,
            provider=provider,
            ciphertext=ciphertext,
            nonce=nonce,
            updated_at=datetime.utcnow(),
        )
        saved = self.store.save_credential(record)
        logger.info("credential_saved", user_id=user_id, provider=provider)
        return saved

    def status(self, user_id: str) -> Dict[str, bool]:
        stored = {rec.provider for rec in self.store.list_credentials(user_id)}
        return {provider: provider in stored for provider in self.providers}

    def delete(self, user_id: str, provider: str) -> bool:
        self._check_provider(provider)
        removed = self.store.delete_credential(user_id, provider)
        if removed:
            logger.info("credential_deleted", user_id=user_id, provider=provider)
        return removed

    def resolve(self, user_id: str, provider: str) -> ResolvedCredential:
        record = self.store.get_credential(user_id, provider)
        if record is not None:
            try:
                key = self.vault.decrypt(join_blob(record.nonce, record.ciphertext))
            except DecryptionError as exc:
                logger.warning(
                    "credential_decrypt_failed",
                    user_id=user_id,
                    provider=provider,
                    reason=str(exc),
                )
            else:
                return ResolvedCredential(key, USER_SOURCE)
        default = self.defaults.get(provider)
        if default:
            return ResolvedCredential(default, DEFAULT_SOURCE)
        raise MissingCredentialError(provider)

"""Saved credential lookup and persistence for hosts and groups."""
from __future__ import annotations

import logging
from typing import Optional

from ..core.models import (
    AuthPolicy,
    Credential,
    CredentialKind,
    GroupRecord,
    HostRecord,
    HypervisorKind,
    utcnow,
)
from ..core.secret_protection import SecretProtector, secret_protector
from .config_repository import ConfigRepository, config_repository

logger = logging.getLogger(__name__)


class CredentialStore:
    """Resolve and persist credential material without exposing plaintext on disk."""

    def __init__(
        self,
        repository: Optional[ConfigRepository] = None,
        protector: Optional[SecretProtector] = None,
    ) -> None:
        self._repository = repository or config_repository
        self._protector = protector or secret_protector

    @property
    def repository(self) -> ConfigRepository:
        return self._repository

    def protect(self, secret: str) -> str:
        return self._protector.protect(secret)

    def resolve_credential(self, address: str) -> Optional[Credential]:
        """Return the saved per-host credential, or None when absent or unreadable."""

        record = self._repository.get_host(address)
        if record is None or not record.has_saved_secret or not record.username:
            return None

        secret = self._protector.unprotect(record.encrypted_password)
        if secret is None:
            logger.warning(
                "Saved credential for %s could not be decrypted for the current user",
                address,
            )
            return None

        kind = (
            CredentialKind.TOKEN
            if self._looks_like_token(record.hypervisor_kind, record.username)
            else CredentialKind.PASSWORD
        )
        return Credential(username=record.username, secret=secret, kind=kind)

    def resolve_group_credential(self, group: GroupRecord) -> Optional[Credential]:
        """Return the group's shared credential, or None for current-user groups."""

        if group.auth_policy == AuthPolicy.CURRENT_USER:
            return None
        if not group.encrypted_secret:
            logger.debug("Group %s has no stored secret", group.name)
            return None

        secret = self._protector.unprotect(group.encrypted_secret)
        if secret is None:
            logger.warning(
                "Secret for group %s could not be decrypted for the current user",
                group.name,
            )
            return None

        if group.auth_policy == AuthPolicy.API_TOKEN:
            return Credential.token(group.username or "", secret)
        return Credential.password(group.username or "", secret)

    def persist(
        self,
        address: str,
        kind: HypervisorKind,
        use_current_user: bool,
        credential: Optional[Credential],
        remember: bool,
    ) -> HostRecord:
        """Write the history entry for a successful connection."""

        username: Optional[str] = None
        encrypted: Optional[str] = None
        if remember and credential is not None and not use_current_user:
            username = credential.username
            encrypted = self._protector.protect(credential.reveal()) or None

        record = HostRecord(
            address=address.strip(),
            hypervisor_kind=kind,
            last_connected_at=utcnow(),
            use_current_user=use_current_user,
            username=username,
            encrypted_password=encrypted,
        )
        self._repository.record_host(record)
        logger.info(
            "Recorded %s (%s) in history%s",
            record.address,
            kind.label,
            " with saved credential" if encrypted else "",
        )
        return record

    @staticmethod
    def _looks_like_token(kind: HypervisorKind, username: str) -> bool:
        # Proxmox token ids always carry the "user@realm!tokenname" shape
        return kind != HypervisorKind.HYPER_V and "!" in username


credential_store = CredentialStore()

"""Host group management and group membership resolution."""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from ..core.models import (
    AuthPolicy,
    ConfigDocument,
    GroupRecord,
    HypervisorKind,
    normalize_address,
)
from ..core.secret_protection import SecretProtector, secret_protector
from .config_repository import ConfigRepository, config_repository

logger = logging.getLogger(__name__)

_UNSET = object()


class GroupError(ValueError):
    """Raised for invalid group management requests."""


class GroupService:
    """CRUD for groups plus the host-to-group resolver."""

    def __init__(
        self,
        repository: Optional[ConfigRepository] = None,
        protector: Optional[SecretProtector] = None,
    ) -> None:
        self._repository = repository or config_repository
        self._protector = protector or secret_protector

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def find_group_for_host(self, address: str) -> Optional[GroupRecord]:
        """Return the first group, in stored order, that owns ``address``."""

        return self._find_in(self._repository.load().groups, address)

    @staticmethod
    def _find_in(groups: Iterable[GroupRecord], address: str) -> Optional[GroupRecord]:
        for group in groups:
            if group.contains(address):
                return group
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_groups(self) -> List[GroupRecord]:
        return list(self._repository.load().groups)

    def get_group(self, name: str) -> Optional[GroupRecord]:
        return self._get(self._repository.load(), name)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_group(
        self,
        name: str,
        hypervisor_kind: HypervisorKind,
        auth_policy: AuthPolicy = AuthPolicy.CURRENT_USER,
        *,
        username: Optional[str] = None,
        secret: Optional[str] = None,
        port: Optional[int] = None,
        host_addresses: Iterable[str] = (),
    ) -> GroupRecord:
        clean_name = (name or "").strip()
        if not clean_name:
            raise GroupError("Group name must not be empty")

        document = self._repository.load()
        if self._get(document, clean_name) is not None:
            raise GroupError(f"A group named '{clean_name}' already exists")

        self._validate_policy(hypervisor_kind, auth_policy)

        group = GroupRecord(
            name=clean_name,
            hypervisor_kind=hypervisor_kind,
            auth_policy=auth_policy,
            username=username or None,
            encrypted_secret=self._protect(auth_policy, secret),
            port=port,
        )
        document.groups.append(group)
        for address in host_addresses:
            self._attach(document, group, address)

        self._repository.save(document)
        logger.info("Created group %s (%s, %s)", group.name, hypervisor_kind.label, auth_policy.value)
        return group

    def update_group(
        self,
        name: str,
        *,
        hypervisor_kind: Optional[HypervisorKind] = None,
        auth_policy: Optional[AuthPolicy] = None,
        username: object = _UNSET,
        secret: object = _UNSET,
        port: object = _UNSET,
    ) -> GroupRecord:
        document = self._repository.load()
        group = self._require(document, name)

        if hypervisor_kind is not None:
            group.hypervisor_kind = hypervisor_kind
        if auth_policy is not None:
            group.auth_policy = auth_policy
        self._validate_policy(group.hypervisor_kind, group.auth_policy)

        if username is not _UNSET:
            group.username = username or None  # type: ignore[assignment]
        if port is not _UNSET:
            group.port = port  # type: ignore[assignment]
        if secret is not _UNSET:
            group.encrypted_secret = self._protect(group.auth_policy, secret)  # type: ignore[arg-type]
        if group.auth_policy == AuthPolicy.CURRENT_USER:
            group.username = None
            group.encrypted_secret = None

        self._repository.save(document)
        logger.info("Updated group %s", group.name)
        return group

    def set_group_secret(self, name: str, username: Optional[str], secret: Optional[str]) -> GroupRecord:
        return self.update_group(name, username=username, secret=secret)

    def rename_group(self, name: str, new_name: str) -> GroupRecord:
        clean_name = (new_name or "").strip()
        if not clean_name:
            raise GroupError("Group name must not be empty")

        document = self._repository.load()
        group = self._require(document, name)
        existing = self._get(document, clean_name)
        if existing is not None and existing is not group:
            raise GroupError(f"A group named '{clean_name}' already exists")

        group.name = clean_name
        self._repository.save(document)
        return group

    def delete_group(self, name: str) -> None:
        """Remove a group; its hosts remain in connection history."""

        document = self._repository.load()
        group = self._require(document, name)
        document.groups = [entry for entry in document.groups if entry is not group]
        self._repository.save(document)
        logger.info("Deleted group %s", group.name)

    def add_host_to_group(self, name: str, address: str) -> GroupRecord:
        """Add ``address`` to group ``name``, removing it from every other group."""

        document = self._repository.load()
        group = self._require(document, name)
        self._attach(document, group, address)
        self._repository.save(document)
        return group

    def remove_host_from_group(self, name: str, address: str) -> GroupRecord:
        document = self._repository.load()
        group = self._require(document, name)
        key = normalize_address(address)
        group.host_addresses = [
            existing for existing in group.host_addresses if normalize_address(existing) != key
        ]
        self._repository.save(document)
        return group

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _attach(self, document: ConfigDocument, group: GroupRecord, address: str) -> None:
        clean = (address or "").strip()
        if not clean:
            raise GroupError("Host address must not be empty")

        key = normalize_address(clean)
        for other in document.groups:
            if other is group:
                continue
            if other.contains(clean):
                other.host_addresses = [
                    existing for existing in other.host_addresses if normalize_address(existing) != key
                ]
                logger.info("Moved %s from group %s to group %s", clean, other.name, group.name)

        if not group.contains(clean):
            group.host_addresses.append(clean)

    def _protect(self, policy: AuthPolicy, secret: Optional[str]) -> Optional[str]:
        if policy == AuthPolicy.CURRENT_USER or not secret:
            return None
        return self._protector.protect(secret)

    @staticmethod
    def _validate_policy(kind: HypervisorKind, policy: AuthPolicy) -> None:
        if kind == HypervisorKind.HYPER_V and policy == AuthPolicy.API_TOKEN:
            raise GroupError("Hyper-V groups cannot use API token authentication")
        if kind != HypervisorKind.HYPER_V and policy == AuthPolicy.CURRENT_USER:
            raise GroupError(f"{kind.label} groups require username/password or API token authentication")

    @staticmethod
    def _get(document: ConfigDocument, name: str) -> Optional[GroupRecord]:
        wanted = (name or "").strip().casefold()
        for group in document.groups:
            if group.name.casefold() == wanted:
                return group
        return None

    def _require(self, document: ConfigDocument, name: str) -> GroupRecord:
        group = self._get(document, name)
        if group is None:
            raise GroupError(f"Group '{name}' does not exist")
        return group


group_service = GroupService()

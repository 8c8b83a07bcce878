"""Persistence of connection history and host groups."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..core.config import settings
from ..core.models import (
    CURRENT_SCHEMA_VERSION,
    AuthPolicy,
    ConfigDocument,
    HostRecord,
    HypervisorKind,
    normalize_address,
    utcnow,
)

logger = logging.getLogger(__name__)

LEGACY_HYPERVISOR_KIND = HypervisorKind.HYPER_V.value


def _upgrade_v1_to_v2(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Version 1 documents only knew Hyper-V hosts and had no groups."""

    hosts = raw.get("hosts")
    if isinstance(hosts, list):
        for entry in hosts:
            if not isinstance(entry, dict):
                continue
            legacy_kind = entry.pop("type", None)
            if not entry.get("hypervisorKind"):
                entry["hypervisorKind"] = legacy_kind or LEGACY_HYPERVISOR_KIND
    raw.setdefault("groups", [])
    return raw


def _legacy_group_policy(entry: Dict[str, Any]) -> AuthPolicy:
    if entry["hypervisorKind"] == LEGACY_HYPERVISOR_KIND:
        return AuthPolicy.CURRENT_USER
    # Proxmox has no ambient identity; token ids look like user@realm!name
    if "!" in (entry.get("username") or ""):
        return AuthPolicy.API_TOKEN
    return AuthPolicy.USERNAME_PASSWORD


def _upgrade_v2_to_v3(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Version 3 adds per-group ports and an explicit auth policy."""

    groups = raw.get("groups")
    if isinstance(groups, list):
        for entry in groups:
            if not isinstance(entry, dict):
                continue
            legacy_kind = entry.pop("type", None)
            if not entry.get("hypervisorKind"):
                entry["hypervisorKind"] = legacy_kind or LEGACY_HYPERVISOR_KIND
            entry.setdefault("port", None)
            if not entry.get("authPolicy"):
                entry["authPolicy"] = _legacy_group_policy(entry).value
    return raw


_UPGRADES = {
    1: _upgrade_v1_to_v2,
    2: _upgrade_v2_to_v3,
}


class ConfigRepository:
    """Load/modify/save access to the single config document."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path or settings.config_path()

    # ------------------------------------------------------------------
    # Document load/save
    # ------------------------------------------------------------------

    def load(self) -> ConfigDocument:
        """Return the stored document, upgrading it on read when needed."""

        path = self.path
        if not path.exists():
            logger.debug("No config document at %s; starting empty", path)
            return ConfigDocument()

        try:
            raw = json.loads(path.read_text(encoding="utf-8-sig"))
            if not isinstance(raw, dict):
                raise ValueError(f"expected an object, got {type(raw).__name__}")
            version = self._coerce_version(raw.get("version"))
            upgraded = version < CURRENT_SCHEMA_VERSION
            raw = self._upgrade(raw, version)
            document = ConfigDocument.model_validate(raw)
        except (OSError, ValueError, ValidationError) as exc:
            # json.JSONDecodeError is a ValueError
            self._quarantine(path, exc)
            return ConfigDocument()

        if upgraded:
            logger.info(
                "Upgraded config document %s from schema v%d to v%d",
                path,
                version,
                CURRENT_SCHEMA_VERSION,
            )
            self.save(document)

        return document

    def save(self, document: ConfigDocument) -> None:
        """Atomically write the document."""

        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = self.serialize(document)

        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
                handle.write(payload)
            os.replace(temp_name, path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except OSError:
                logger.debug("Failed to remove temporary config file %s", temp_name, exc_info=True)
            raise

        logger.debug("Saved config document to %s", path)

    @staticmethod
    def serialize(document: ConfigDocument) -> str:
        data = document.model_dump(mode="json", by_alias=True)
        return json.dumps(data, indent=2, ensure_ascii=False) + "\n"

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_host(self, address: str) -> Optional[HostRecord]:
        key = normalize_address(address)
        for record in self.load().hosts:
            if record.key == key:
                return record
        return None

    def list_hosts(self) -> List[HostRecord]:
        return list(self.load().hosts)

    def record_host(self, record: HostRecord) -> ConfigDocument:
        """Insert or replace ``record`` at the front of history."""

        document = self.load()
        if record.last_connected_at is None:
            record = record.model_copy(update={"last_connected_at": utcnow()})

        remaining = [entry for entry in document.hosts if entry.key != record.key]
        hosts = [record, *remaining]
        limit = max(1, int(settings.history_limit))
        if len(hosts) > limit:
            evicted = hosts[limit:]
            logger.info(
                "History limit of %d reached; evicting %s",
                limit,
                ", ".join(entry.address for entry in evicted),
            )
            hosts = hosts[:limit]

        document.hosts = hosts
        self.save(document)
        return document

    def clear_history(self) -> None:
        document = self.load()
        count = len(document.hosts)
        document.hosts = []
        self.save(document)
        logger.info("Cleared %d host(s) from connection history", count)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_version(value: Any) -> int:
        if value is None:
            return 1
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"invalid schema version {value!r}")

    @staticmethod
    def _upgrade(raw: Dict[str, Any], version: int) -> Dict[str, Any]:
        if version > CURRENT_SCHEMA_VERSION:
            logger.warning(
                "Config document schema v%d is newer than supported v%d; reading anyway",
                version,
                CURRENT_SCHEMA_VERSION,
            )
            return raw

        current = version
        while current < CURRENT_SCHEMA_VERSION:
            upgrade = _UPGRADES.get(current)
            if upgrade is not None:
                raw = upgrade(raw)
            current += 1

        raw["version"] = CURRENT_SCHEMA_VERSION
        raw.setdefault("hosts", [])
        raw.setdefault("groups", [])
        return raw

    @staticmethod
    def _quarantine(path: Path, exc: Exception) -> None:
        backup = path.with_name(path.name + ".corrupt")
        logger.warning(
            "Config document %s is unreadable (%s); starting with an empty document",
            path,
            exc,
        )
        try:
            os.replace(path, backup)
        except OSError:
            logger.debug("Unable to preserve corrupt config at %s", backup, exc_info=True)
        else:
            logger.info("Preserved unreadable config document as %s", backup)


config_repository = ConfigRepository()

"""Sequential multi-host connection runs."""
from __future__ import annotations

import logging
from typing import Iterable, Optional, Union

from ..core.models import BulkResult, ConnectionState, HypervisorKind, NotificationLevel
from .config_repository import ConfigRepository, config_repository
from .connection_service import ConnectionOrchestrator
from .group_service import GroupService, group_service
from .notification_service import NotificationService, notification_service

logger = logging.getLogger(__name__)


class BulkRunner:
    """Connects a list of addresses one after another without prompting.

    A failure on one address never stops the batch; failed addresses are
    reported in input order so they can be retried interactively.
    """

    def __init__(
        self,
        orchestrator: ConnectionOrchestrator,
        repository: Optional[ConfigRepository] = None,
        groups: Optional[GroupService] = None,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._repository = repository or config_repository
        self._groups = groups or group_service
        self._notifications = notifications or notification_service

    def resolve_kind(
        self, address: str, kind: Optional[Union[HypervisorKind, str]] = None
    ) -> HypervisorKind:
        """Explicit kind, else the owning group's, else the last one used, else Hyper-V."""

        if kind is not None:
            return HypervisorKind(kind)
        group = self._groups.find_group_for_host(address)
        if group is not None:
            return group.hypervisor_kind
        record = self._repository.get_host(address)
        if record is not None:
            return record.hypervisor_kind
        return HypervisorKind.HYPER_V

    def connect_many(
        self,
        addresses: Iterable[str],
        kind: Optional[Union[HypervisorKind, str]] = None,
        use_current_user: bool = False,
    ) -> BulkResult:
        targets = [address.strip() for address in addresses if address and address.strip()]
        result = BulkResult()
        total = len(targets)
        logger.info("Starting bulk connection to %d host(s)", total)

        for index, address in enumerate(targets, start=1):
            self._notifications.notify(
                ConnectionState.IDLE,
                f"Bulk connect {index}/{total}: {address}",
                address=address,
            )
            try:
                requested = self.resolve_kind(address, kind)
            except ValueError:
                # Reported as a failed outcome by the orchestrator
                requested = kind
            outcome = self._orchestrator.connect_detailed(
                address,
                requested,
                use_current_user=use_current_user,
                remember=False,
                skip_prompts=True,
            )
            result.outcomes.append(outcome)
            if outcome.success:
                result.succeeded += 1
            else:
                result.failed += 1
                result.failed_addresses.append(address)

        summary = f"Bulk connection finished: {result.succeeded} succeeded, {result.failed} failed"
        if result.failed:
            summary += f" ({', '.join(result.failed_addresses)})"
            logger.warning(summary)
        else:
            logger.info(summary)

        self._notifications.notify(
            ConnectionState.IDLE,
            summary,
            level=NotificationLevel.WARNING if result.failed else NotificationLevel.SUCCESS,
            busy=False,
        )
        return result

"""Application wiring for the inventory core.

The presentation layer creates one ``InventoryApplication`` at startup, hands
its ``InteractionHandler`` implementation in, subscribes to status updates and
submits work through the lane.
"""
import logging
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from .core.config import settings
from .core.models import BulkResult, ConnectionOutcome, Credential, HypervisorKind, StatusUpdate
from .services.bulk_service import BulkRunner
from .services.connection_service import ConnectionOrchestrator, InteractionHandler
from .services.export_service import export_vm_records
from .services.notification_service import NotificationService, notification_service
from .services.worker_service import WorkerLane, worker_lane

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class InventoryApplication:
    """Owns the orchestrator store and the single worker lane for the process lifetime."""

    def __init__(
        self,
        interaction: Optional[InteractionHandler] = None,
        orchestrator: Optional[ConnectionOrchestrator] = None,
        notifications: Optional[NotificationService] = None,
        lane: Optional[WorkerLane] = None,
    ) -> None:
        self.notifications = notifications or notification_service
        self.orchestrator = orchestrator or ConnectionOrchestrator(
            notifications=self.notifications, interaction=interaction
        )
        self.bulk_runner = BulkRunner(self.orchestrator, notifications=self.notifications)
        self.lane = lane or worker_lane

        logger.info("Starting %s", settings.app_name)
        logger.info("Debug mode: %s", settings.debug)
        logger.info("Data directory: %s", settings.inventory_data_dir)

    def subscribe(self, callback: Callable[[StatusUpdate], None]) -> Callable[[], None]:
        return self.notifications.subscribe(callback)

    def connect(
        self,
        address: str,
        kind: Union[HypervisorKind, str],
        use_current_user: bool = False,
        credential: Optional[Credential] = None,
        remember: bool = False,
        skip_prompts: bool = False,
    ) -> "Future[ConnectionOutcome]":
        return self.lane.submit(
            self.orchestrator.connect_detailed,
            address,
            kind,
            use_current_user=use_current_user,
            credential=credential,
            remember=remember,
            skip_prompts=skip_prompts,
        )

    def connect_many(
        self,
        addresses: Iterable[str],
        kind: Optional[Union[HypervisorKind, str]] = None,
        use_current_user: bool = False,
    ) -> "Future[BulkResult]":
        return self.lane.submit(
            self.bulk_runner.connect_many, list(addresses), kind, use_current_user
        )

    def disconnect(self, address: str) -> "Future[int]":
        return self.lane.submit(self.orchestrator.disconnect, address)

    def disconnect_all(self) -> "Future[int]":
        return self.lane.submit(self.orchestrator.disconnect_all)

    def export(self, directory: Optional[Path] = None) -> "Future[Path]":
        return self.lane.submit(
            lambda: export_vm_records(self.orchestrator.vm_records(), directory)
        )

    def shutdown(self) -> None:
        logger.info("Shutting down %s", settings.app_name)
        self.lane.shutdown(wait=True)
        self.orchestrator.disconnect_all()


def create_application(interaction: Optional[InteractionHandler] = None) -> InventoryApplication:
    configure_logging()
    return InventoryApplication(interaction=interaction)

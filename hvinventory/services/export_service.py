"""CSV export of the merged VM inventory."""
import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from ..core.config import settings
from ..core.models import VmRecord

logger = logging.getLogger(__name__)

EXPORT_PREFIX = "vm_inventory_"


def export_filename(timestamp: Optional[datetime] = None) -> str:
    return f"{EXPORT_PREFIX}{(timestamp or datetime.now()).strftime('%Y%m%d_%H%M%S')}.csv"


def _row(record: VmRecord) -> Dict[str, Any]:
    row = record.model_dump(by_alias=True)
    return {key: "" if value is None else value for key, value in row.items()}


def export_vm_records(
    records: Iterable[VmRecord],
    directory: Optional[Path] = None,
    *,
    timestamp: Optional[datetime] = None,
) -> Path:
    """Write one CSV row per record and return the file path."""

    target_dir = Path(directory).expanduser() if directory is not None else settings.export_dir()
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / export_filename(timestamp)

    count = 0
    with path.open("w", encoding="utf-8-sig", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=VmRecord.column_names())
        writer.writeheader()
        for record in records:
            writer.writerow(_row(record))
            count += 1

    logger.info("Exported %d VM record(s) to %s", count, path)
    return path

"""
Export of one service organization's hierarchy to CSV and JSON files.

The REST API has no per-service-org listing for sites, users or devices, so
those are fetched server-wide and filtered to the org units discovered under
the service org. Access groups, user roles and properties are fetched per org
unit. A failed fetch is logged and recorded; the export carries on with the
remaining entity kinds.
"""

from __future__ import annotations

import csv
import dataclasses
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from .events import CancelToken, EventBus
from .exceptions import ExportError, MigrationError
from .models import as_int

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .client import ApiClient

logger: logging.Logger = logging.getLogger(__name__)

Record = dict[str, Any]

LIST_SEPARATOR = "; "


class RecordWriter(Protocol):
    """Writes a list of flat records to ``output_dir`` and returns the record count."""

    extension: str

    def write(self, records: Sequence[Record], output_dir: Path, base_name: str) -> int: ...


def _csv_value(value: Any) -> Any:  # noqa: ANN401 - any record value
    if isinstance(value, list):
        return LIST_SEPARATOR.join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return value


class CsvRecordWriter:
    """CSV with a header row; list values are joined with ``"; "``."""

    extension = "csv"

    def write(self, records: Sequence[Record], output_dir: Path, base_name: str) -> int:
        path = output_dir / f"{base_name}.{self.extension}"
        # Union of keys in first-seen order: records of one kind may differ in optional fields
        fieldnames: list[str] = []
        for record in records:
            fieldnames.extend(k for k in record if k not in fieldnames)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            with path.open("w", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=fieldnames)
                writer.writeheader()
                for record in records:
                    writer.writerow({k: _csv_value(v) for k, v in record.items()})
        except (OSError, csv.Error) as e:
            msg = f"CSV export to {path} failed: {e}"
            raise ExportError(msg) from e
        return len(records)


class JsonRecordWriter:
    """Pretty-printed JSON array."""

    extension = "json"

    def write(self, records: Sequence[Record], output_dir: Path, base_name: str) -> int:
        path = output_dir / f"{base_name}.{self.extension}"
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as f:
                json.dump(list(records), f, indent=2, ensure_ascii=False, default=str)
        except (OSError, TypeError, ValueError) as e:
            msg = f"JSON export to {path} failed: {e}"
            raise ExportError(msg) from e
        return len(records)


WRITERS: dict[str, type[CsvRecordWriter] | type[JsonRecordWriter]] = {
    "csv": CsvRecordWriter,
    "json": JsonRecordWriter,
}


def writers_for(formats: Sequence[str]) -> list[RecordWriter]:
    """Writer instances for format names such as ``["csv", "json"]``.

    Raises:
        ValueError: On an unknown format name
    """
    writers: list[RecordWriter] = []
    for name in formats:
        key = name.strip().lower()
        if key not in WRITERS:
            msg = f"Unknown export format '{name}' (expected one of: {', '.join(WRITERS)})"
            raise ValueError(msg)
        writers.append(WRITERS[key]())
    return writers


@dataclass
class ExportOptions:
    """Which entity kinds to export."""

    service_orgs: bool = False
    customers: bool = False
    sites: bool = False
    devices: bool = False
    access_groups: bool = False
    user_roles: bool = False
    org_properties: bool = False
    users: bool = False

    @classmethod
    def all(cls) -> ExportOptions:
        return cls(**{f.name: True for f in dataclasses.fields(cls)})

    @property
    def needs_hierarchy(self) -> bool:
        return (
            self.sites or self.users or self.devices or self.access_groups or self.user_roles or self.org_properties
        )


@dataclass
class ExportResult:
    success: bool
    message: str
    files_created: list[str] = field(default_factory=list)
    total_records: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False


def _to_record(item: Any) -> Record:  # noqa: ANN401 - dataclass model or raw dict
    if dataclasses.is_dataclass(item) and not isinstance(item, type):
        return dataclasses.asdict(item)
    return dict(item)


class Exporter:
    """Exports the hierarchy below one service org.

    Usage:
        exporter = Exporter(client, writers_for(["csv"]))
        result = await exporter.export(Path("nc_export"), ExportOptions.all(), service_org_id=50)
    """

    def __init__(
        self,
        client: ApiClient,
        writers: Sequence[RecordWriter],
        *,
        events: EventBus | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self._client = client
        self._writers = list(writers)
        self._events = events or EventBus()
        self._cancel = cancel or CancelToken()

    async def export(self, output_dir: Path, options: ExportOptions, service_org_id: int) -> ExportResult:
        result = ExportResult(success=True, message="")
        valid_ou_ids: set[int] = {service_org_id}
        customer_ids: set[int] = set()
        sites: list[Any] = []
        customers: list[Any] = []

        service_org = await self._fetch(result, "target service org", self._client.get_service_org(service_org_id))

        if options.needs_hierarchy or options.customers:
            self._progress("Discovery", "Scanning customers...", 5.0)
            call = self._client.get_customers_by_service_org(service_org_id)
            customers = await self._fetch(result, "customers", call) or []
            for customer in customers:
                valid_ou_ids.add(customer.customer_id)
                customer_ids.add(customer.customer_id)

        if options.needs_hierarchy:
            self._progress("Discovery", "Scanning sites...", 10.0)
            all_sites = await self._fetch(result, "sites", self._client.get_sites()) or []
            parents = customer_ids | {service_org_id}
            sites = [s for s in all_sites if s.parent_id in parents or s.service_org_id == service_org_id]
            valid_ou_ids.update(s.site_id for s in sites)

        logger.info(f"Hierarchy scan complete. Found {len(valid_ou_ids)} valid org units.")

        if options.service_orgs and service_org is not None:
            self._write(result, output_dir, "service_orgs", [service_org])
        if options.customers:
            self._write(result, output_dir, "customers", customers)
        if options.sites:
            self._write(result, output_dir, "sites", sites)

        if options.users and not self._cancel.cancelled:
            self._progress("Users", "Fetching system-wide users...", 20.0)
            users = await self._fetch(result, "users", self._client.get_users())
            if users is not None:
                filtered = [
                    u for u in users if u.org_unit_id in valid_ou_ids or u.service_org_id in valid_ou_ids
                ]
                logger.info(f"Users filter: {len(users)} -> {len(filtered)}")
                self._write(result, output_dir, "users", filtered)

        if options.devices and not self._cancel.cancelled:
            self._progress("Devices", "Fetching system-wide devices...", 40.0)
            devices = await self._fetch(result, "devices", self._client.get_devices())
            if devices is not None:
                filtered_devices = [d for d in devices if _device_in(d, valid_ou_ids)]
                logger.info(f"Devices filter: {len(devices)} -> {len(filtered_devices)}")
                self._write(result, output_dir, "devices", filtered_devices)

        ou_list = sorted(valid_ou_ids)
        per_org_unit: list[tuple[bool, str, str, float, Callable[[int], Awaitable[list[Any]]]]] = [
            (options.access_groups, "Access Groups", "access_groups", 60.0, self._client.get_access_groups),
            (options.user_roles, "User Roles", "user_roles", 70.0, self._client.get_user_roles),
            (options.org_properties, "Org Properties", "org_properties", 80.0, self._client.get_org_properties),
        ]
        for enabled, phase, base_name, start, fetch in per_org_unit:
            if enabled and not self._cancel.cancelled:
                items = await self._iterate_org_units(result, phase, start, ou_list, fetch)
                self._write(result, output_dir, base_name, items)

        if self._cancel.cancelled:
            result.cancelled = True
            result.success = False
            result.message = "Export cancelled"
            last = self._events.last_progress
            self._progress("Cancelled", "Export cancelled", last.percent if last else 0.0)
            return result

        self._progress("Complete", "Export finished", 100.0)
        result.success = not result.errors
        result.message = f"Exported {result.total_records} records to {len(result.files_created)} files"
        return result

    def _progress(self, phase: str, message: str, percent: float) -> None:
        self._events.progress(phase, message, percent)

    async def _fetch(self, result: ExportResult, description: str, call: Awaitable[Any]) -> Any:  # noqa: ANN401
        try:
            return await call
        except MigrationError as e:
            message = f"Failed to fetch {description}: {e}"
            result.errors.append(message)
            self._events.log("error", message, logger)
            return None

    async def _iterate_org_units(
        self,
        result: ExportResult,
        phase: str,
        start: float,
        ou_list: list[int],
        fetch: Callable[[int], Awaitable[list[Any]]],
    ) -> list[Any]:
        self._progress(phase, "Iterating org units...", start)
        items: list[Any] = []
        for index, ou_id in enumerate(ou_list):
            if self._cancel.cancelled:
                break
            if index % 10 == 0:
                self._progress(phase, f"Fetching {index}/{len(ou_list)}", start + index / len(ou_list) * 5.0)
            try:
                items.extend(await fetch(ou_id))
            except MigrationError as e:
                # Many org units legitimately have nothing to list
                message = f"{phase}: failed to fetch org unit {ou_id}: {e}"
                result.warnings.append(message)
                logger.debug(message)
        return items

    def _write(self, result: ExportResult, output_dir: Path, base_name: str, items: Sequence[Any]) -> None:
        if not items:
            logger.info(f"No {base_name} to export")
            return
        records = [_to_record(item) for item in items]
        for writer in self._writers:
            try:
                count = writer.write(records, output_dir, base_name)
            except ExportError as e:
                result.errors.append(str(e))
                self._events.log("error", str(e), logger)
                continue
            path = output_dir / f"{base_name}.{writer.extension}"
            result.files_created.append(str(path))
            result.total_records += count
            logger.info(f"Wrote {count} {base_name} records to {path}")


def _device_in(device: Record, valid_ou_ids: set[int]) -> bool:
    keys = ("orgUnitId", "customerId", "siteId", "soId")
    return any(as_int(device.get(key)) in valid_ou_ids for key in keys)

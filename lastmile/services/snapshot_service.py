"""Append-only delivery snapshot log.

Every state-affecting event of a delivery (created, assigned, picked up,
delivered, failed, cancelled, ...) is appended here as an immutable
DeliverySnapshot. The log answers timeline, dimension-filtered and
aggregate queries for compliance, analytics and customer service.

Chain guarantees:
    - Snapshots of one delivery carry sequence 1..n; (delivery_id, sequence)
      is unique in the store, so two writers that read the same "latest"
      cannot both append a successor. The loser gets ConflictError.
    - previous_snapshot_id always names the immediate predecessor of the
      same delivery and created_at never goes backwards within a chain.
    - chain_hash links each record to its predecessor's hash; use
      verify_chain() to detect tampering.

Usage:
    from lastmile.db.connection import get_db_context
    from lastmile.services.snapshot_service import SnapshotService

    with get_db_context() as db:
        log = SnapshotService(db)
        log.append("D-1", SnapshotType.created, {"source": "pos"},
                   triggered_by="order-service")
        timeline = log.get_delivery_timeline("D-1")
"""

import hashlib
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta, tzinfo
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

from sqlalchemy import distinct, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from lastmile.db.models import (
    BUSINESS_EVENT_TYPES,
    FAILED_DELIVERY_TYPES,
    SUCCESSFUL_DELIVERY_TYPES,
    DeliverySnapshot,
    SnapshotType,
    from_iso,
    to_iso,
)
from lastmile.errors import (
    ConflictError,
    InvalidReferenceError,
    NotFoundError,
    SerializationError,
    ValidationError,
)
from lastmile.utils.redaction import redact_sensitive

logger = logging.getLogger(__name__)

DayLike = date | datetime | str


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_payload(data: dict[str, Any] | None) -> str:
    """Encode a snapshot payload as canonical JSON.

    Raises:
        SerializationError: If the payload holds values JSON cannot carry.
    """
    if data is not None and not isinstance(data, dict):
        raise SerializationError(
            f"Snapshot data must be a mapping, got {type(data).__name__}"
        )
    try:
        return json.dumps(
            data or {},
            sort_keys=True,
            separators=(",", ":"),
            default=_json_default,
            allow_nan=False,
        )
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Payload could not be encoded: {e}") from e


def _sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_chain_hash(
    snapshot: DeliverySnapshot, previous_chain_hash: str | None
) -> str:
    """Hash the identity fields of a snapshot together with its predecessor's hash."""
    return _sha256_text(
        json.dumps(
            {
                "id": snapshot.id,
                "delivery_id": snapshot.delivery_id,
                "sequence": snapshot.sequence,
                "snapshot_type": snapshot.snapshot_type,
                "created_at": snapshot.created_at,
                "payload_hash": snapshot.payload_hash,
                "previous_snapshot_id": snapshot.previous_snapshot_id or "",
                "previous_chain_hash": previous_chain_hash or "",
            },
            sort_keys=True,
            separators=(",", ":"),
        )
    )


@dataclass
class SnapshotQueryFilters:
    """Composable filter object for search_snapshots().

    Date fields are inclusive bounds on business_date. Results are ordered
    newest first.
    """

    delivery_id: str | None = None
    snapshot_type: SnapshotType | str | None = None
    customer_id: str | None = None
    order_id: str | None = None
    vehicle_id: str | None = None
    provider_code: str | None = None
    delivery_status: str | None = None
    province: str | None = None
    triggered_by: str | None = None
    triggered_by_user_id: str | None = None
    start_date: DayLike | None = None
    end_date: DayLike | None = None
    business_date: DayLike | None = None
    min_delivery_fee: Decimal | float | None = None
    max_delivery_fee: Decimal | float | None = None
    include_archived: bool = True
    limit: int | None = None
    offset: int = 0


@dataclass
class ChainVerification:
    """Result of verify_chain().

    Attributes:
        delivery_id: Delivery whose chain was checked.
        checked: Number of snapshots examined.
        problems: Human-readable descriptions of every inconsistency found.
        truncated: True when retention removed the head of the chain.
    """

    delivery_id: str
    checked: int = 0
    problems: list[str] = field(default_factory=list)
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return not self.problems


class SnapshotService:
    """Service for the append-only delivery snapshot log.

    Attributes:
        db: SQLAlchemy session for database operations.
        business_tz: Timezone used to derive business_date from created_at.
        default_page_size: Limit applied to paginated queries without one.
    """

    def __init__(
        self,
        db: Session,
        business_timezone: str = "UTC",
        default_page_size: int = 50,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the snapshot service.

        Args:
            db: SQLAlchemy session for database operations.
            business_timezone: IANA timezone name for business_date bucketing.
            default_page_size: Limit for paginated queries when none is given.
            clock: Returns the current time; defaults to datetime.now(UTC).
        """
        self.db = db
        self.business_tz: tzinfo = (
            UTC if business_timezone.upper() == "UTC" else ZoneInfo(business_timezone)
        )
        self.default_page_size = default_page_size
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_config(cls, db: Session, config: Any) -> "SnapshotService":
        """Build a service from a LastmileConfig."""
        return cls(
            db,
            business_timezone=config.snapshots.business_timezone,
            default_page_size=config.snapshots.default_page_size,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _business_day(self, value: DayLike) -> str:
        """Normalize a date, datetime or ISO string to a business day.

        Datetimes (and ISO datetime strings) are converted to the business
        timezone first; naive ones are taken as UTC.
        """
        if isinstance(value, str) and len(value.strip()) > 10:
            try:
                value = datetime.fromisoformat(value.strip())
            except ValueError as e:
                raise ValidationError(f"Invalid business date: {value!r}") from e
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=UTC)
            return value.astimezone(self.business_tz).date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        try:
            return date.fromisoformat(str(value)[:10]).isoformat()
        except ValueError as e:
            raise ValidationError(f"Invalid business date: {value!r}") from e

    def _window(self, query: Query, start: DayLike, end: DayLike) -> Query:
        return query.filter(
            DeliverySnapshot.business_date >= self._business_day(start),
            DeliverySnapshot.business_date <= self._business_day(end),
        )

    def _query(self) -> Query:
        return self.db.query(DeliverySnapshot)

    @staticmethod
    def _newest_first(query: Query) -> Query:
        return query.order_by(
            DeliverySnapshot.created_at.desc(), DeliverySnapshot.sequence.desc()
        )

    @staticmethod
    def _oldest_first(query: Query) -> Query:
        return query.order_by(
            DeliverySnapshot.created_at.asc(), DeliverySnapshot.sequence.asc()
        )

    def _page(self, query: Query, limit: int | None, offset: int) -> Query:
        return query.limit(limit or self.default_page_size).offset(offset)

    @staticmethod
    def _coerce_type(snapshot_type: SnapshotType | str) -> SnapshotType:
        try:
            return SnapshotType(snapshot_type)
        except ValueError as e:
            raise ValidationError(
                f"Unknown snapshot type '{snapshot_type}'", code="E-1002"
            ) from e

    @staticmethod
    def _coerce_fee(fee: Decimal | float | int | str | None) -> Decimal | None:
        if fee is None:
            return None
        try:
            return Decimal(str(fee))
        except InvalidOperation as e:
            raise ValidationError(f"Invalid delivery fee: {fee!r}") from e

    # =========================================================================
    # Append
    # =========================================================================

    def _build(
        self,
        previous: DeliverySnapshot | None,
        delivery_id: str,
        snapshot_type: SnapshotType | str,
        snapshot_data: dict[str, Any] | None,
        *,
        triggered_by: str,
        triggered_event: str = "",
        triggered_by_user_id: str | None = None,
        delivery_status: str | None = None,
        customer_id: str | None = None,
        order_id: str | None = None,
        vehicle_id: str | None = None,
        driver_name: str | None = None,
        delivery_address_province: str | None = None,
        delivery_fee: Decimal | float | int | str | None = None,
        provider_code: str | None = None,
    ) -> DeliverySnapshot:
        """Construct the successor of `previous` without persisting it."""
        if not triggered_by:
            raise ValidationError("Required field 'triggered_by' is missing or empty.")
        snapshot_type = self._coerce_type(snapshot_type)
        payload_json = encode_payload(snapshot_data)

        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        if previous is not None:
            # created_at never goes backwards within one chain, even when
            # writers on different hosts disagree about the clock.
            floor = from_iso(previous.created_at) + timedelta(microseconds=1)
            now = max(now, floor)

        snapshot = DeliverySnapshot(
            id=str(uuid4()),
            delivery_id=delivery_id,
            sequence=(previous.sequence + 1) if previous else 1,
            snapshot_type=snapshot_type.value,
            snapshot_data=payload_json,
            previous_snapshot_id=previous.id if previous else None,
            payload_hash=_sha256_text(payload_json),
            triggered_by=triggered_by,
            triggered_by_user_id=triggered_by_user_id,
            triggered_event=triggered_event or "",
            delivery_status=delivery_status,
            customer_id=customer_id,
            order_id=order_id,
            vehicle_id=vehicle_id,
            driver_name=driver_name,
            delivery_address_province=delivery_address_province,
            delivery_fee=self._coerce_fee(delivery_fee),
            provider_code=provider_code,
            created_at=to_iso(now),
            business_date=self._business_day(now),
        )
        snapshot.chain_hash = compute_chain_hash(
            snapshot, previous.chain_hash if previous else None
        )
        return snapshot

    def _resolve_previous(
        self, delivery_id: str, previous_snapshot_id: str | None
    ) -> DeliverySnapshot | None:
        """Return the predecessor for a new snapshot of delivery_id.

        Raises:
            NotFoundError: previous_snapshot_id does not resolve.
            InvalidReferenceError: It resolves to another delivery.
            ConflictError: It is not the delivery's current latest snapshot.
        """
        latest = self.get_latest_by_delivery_id(delivery_id)
        if previous_snapshot_id is None:
            return latest

        previous = self.db.get(DeliverySnapshot, previous_snapshot_id)
        if previous is None:
            raise NotFoundError("Snapshot", previous_snapshot_id, code="E-2001")
        if previous.delivery_id != delivery_id:
            raise InvalidReferenceError(
                previous_snapshot_id, delivery_id, previous.delivery_id
            )
        if latest is None or latest.id != previous.id:
            raise ConflictError(
                f"Snapshot '{previous_snapshot_id}' is no longer the latest "
                f"snapshot of delivery '{delivery_id}'"
            )
        return previous

    def append(
        self,
        delivery_id: str,
        snapshot_type: SnapshotType | str,
        snapshot_data: dict[str, Any] | None = None,
        *,
        triggered_by: str,
        triggered_event: str = "",
        triggered_by_user_id: str | None = None,
        previous_snapshot_id: str | None = None,
        delivery_status: str | None = None,
        customer_id: str | None = None,
        order_id: str | None = None,
        vehicle_id: str | None = None,
        driver_name: str | None = None,
        delivery_address_province: str | None = None,
        delivery_fee: Decimal | float | int | str | None = None,
        provider_code: str | None = None,
    ) -> DeliverySnapshot:
        """Append a snapshot to a delivery's chain.

        When previous_snapshot_id is omitted the snapshot is linked to the
        delivery's current latest snapshot (None for the first one). When
        it is supplied it must name that latest snapshot.

        Args:
            delivery_id: Owning delivery; must be non-empty.
            snapshot_type: Event kind.
            snapshot_data: JSON-compatible event detail.
            triggered_by: Actor label.
            triggered_event: Short machine-readable event tag.
            triggered_by_user_id: Optional human actor.
            previous_snapshot_id: Expected predecessor (optimistic check).
            delivery_status .. provider_code: Denormalized query fields.

        Returns:
            The stored snapshot including generated id, timestamps and hashes.

        Raises:
            ValidationError: Empty delivery_id or triggered_by, unknown type.
            NotFoundError: previous_snapshot_id does not resolve.
            InvalidReferenceError: previous_snapshot_id belongs to another delivery.
            ConflictError: The chain advanced concurrently.
            SerializationError: snapshot_data cannot be encoded.
        """
        if not delivery_id or not str(delivery_id).strip():
            raise ValidationError("Required field 'delivery_id' is missing or empty.")

        previous = self._resolve_previous(delivery_id, previous_snapshot_id)
        snapshot = self._build(
            previous,
            delivery_id,
            snapshot_type,
            snapshot_data,
            triggered_by=triggered_by,
            triggered_event=triggered_event,
            triggered_by_user_id=triggered_by_user_id,
            delivery_status=delivery_status,
            customer_id=customer_id,
            order_id=order_id,
            vehicle_id=vehicle_id,
            driver_name=driver_name,
            delivery_address_province=delivery_address_province,
            delivery_fee=delivery_fee,
            provider_code=provider_code,
        )
        self._commit_appends([snapshot])
        logger.info(
            "Snapshot appended: delivery=%s seq=%d type=%s event=%s",
            snapshot.delivery_id,
            snapshot.sequence,
            snapshot.snapshot_type,
            snapshot.triggered_event,
        )
        return snapshot

    def append_many(self, entries: Iterable[dict[str, Any]]) -> list[DeliverySnapshot]:
        """Append several snapshots in one transaction.

        Each entry holds the keyword arguments of append(); entries for the
        same delivery are chained in the given order. Either all entries are
        stored or none.

        Raises:
            Same as append().
        """
        latest_by_delivery: dict[str, DeliverySnapshot | None] = {}
        built: list[DeliverySnapshot] = []
        for entry in entries:
            entry = dict(entry)
            delivery_id = entry.pop("delivery_id", None)
            if not delivery_id or not str(delivery_id).strip():
                raise ValidationError("Required field 'delivery_id' is missing or empty.")
            snapshot_type = entry.pop("snapshot_type")
            snapshot_data = entry.pop("snapshot_data", None)
            previous_snapshot_id = entry.pop("previous_snapshot_id", None)

            if delivery_id not in latest_by_delivery:
                previous = self._resolve_previous(delivery_id, previous_snapshot_id)
            else:
                previous = latest_by_delivery[delivery_id]
                if previous_snapshot_id is not None and (
                    previous is None or previous.id != previous_snapshot_id
                ):
                    raise ConflictError(
                        f"Snapshot '{previous_snapshot_id}' is not the predecessor "
                        f"within this batch for delivery '{delivery_id}'"
                    )

            snapshot = self._build(
                previous, delivery_id, snapshot_type, snapshot_data, **entry
            )
            latest_by_delivery[delivery_id] = snapshot
            built.append(snapshot)

        if built:
            self._commit_appends(built)
            logger.info("Bulk appended %d snapshots", len(built))
        return built

    def _commit_appends(self, snapshots: list[DeliverySnapshot]) -> None:
        self.db.add_all(snapshots)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            delivery_ids = sorted({s.delivery_id for s in snapshots})
            logger.warning(
                "Snapshot append lost a concurrent chain race for %s", delivery_ids
            )
            raise ConflictError(
                f"Snapshot chain for delivery {', '.join(delivery_ids)} "
                "advanced concurrently"
            ) from e
        for snapshot in snapshots:
            self.db.refresh(snapshot)

    # =========================================================================
    # Single-record and per-delivery queries
    # =========================================================================

    def get_by_id(self, snapshot_id: str) -> DeliverySnapshot:
        """Get a snapshot by its ID.

        Raises:
            NotFoundError: If no snapshot has this id.
        """
        snapshot = self.db.get(DeliverySnapshot, snapshot_id)
        if snapshot is None:
            raise NotFoundError("Snapshot", snapshot_id, code="E-2001")
        return snapshot

    def get_by_ids(self, snapshot_ids: list[str]) -> list[DeliverySnapshot]:
        """Get several snapshots by id, newest first. Unknown ids are skipped."""
        if not snapshot_ids:
            return []
        query = self._query().filter(DeliverySnapshot.id.in_(snapshot_ids))
        return self._newest_first(query).all()

    def get_by_delivery_id(self, delivery_id: str) -> list[DeliverySnapshot]:
        """All snapshots of a delivery, newest first."""
        query = self._query().filter(DeliverySnapshot.delivery_id == delivery_id)
        return self._newest_first(query).all()

    def get_delivery_timeline(self, delivery_id: str) -> list[DeliverySnapshot]:
        """All snapshots of a delivery, oldest first (the canonical audit view)."""
        query = self._query().filter(DeliverySnapshot.delivery_id == delivery_id)
        return self._oldest_first(query).all()

    def get_snapshot_chain(self, snapshot_id: str) -> list[DeliverySnapshot]:
        """Timeline of the delivery the given snapshot belongs to."""
        snapshot = self.get_by_id(snapshot_id)
        return self.get_delivery_timeline(snapshot.delivery_id)

    def get_latest_by_delivery_id(self, delivery_id: str) -> DeliverySnapshot | None:
        """Most recent snapshot of a delivery, or None when it has none."""
        query = self._query().filter(DeliverySnapshot.delivery_id == delivery_id)
        return self._newest_first(query).first()

    def get_by_delivery_id_and_type(
        self, delivery_id: str, snapshot_type: SnapshotType | str
    ) -> list[DeliverySnapshot]:
        """Snapshots of one type for a delivery, newest first."""
        snapshot_type = self._coerce_type(snapshot_type)
        query = self._query().filter(
            DeliverySnapshot.delivery_id == delivery_id,
            DeliverySnapshot.snapshot_type == snapshot_type.value,
        )
        return self._newest_first(query).all()

    def get_business_event_snapshots(self, delivery_id: str) -> list[DeliverySnapshot]:
        """Business-critical snapshots of a delivery, oldest first."""
        query = self._query().filter(
            DeliverySnapshot.delivery_id == delivery_id,
            DeliverySnapshot.snapshot_type.in_([t.value for t in BUSINESS_EVENT_TYPES]),
        )
        return self._oldest_first(query).all()

    # =========================================================================
    # Dimension queries
    # =========================================================================

    def get_by_type(
        self,
        snapshot_type: SnapshotType | str,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[DeliverySnapshot]:
        """Snapshots of one type across deliveries, newest first, paginated."""
        snapshot_type = self._coerce_type(snapshot_type)
        query = self._query().filter(
            DeliverySnapshot.snapshot_type == snapshot_type.value
        )
        return self._page(self._newest_first(query), limit, offset).all()

    def get_by_business_date(self, business_date: DayLike) -> list[DeliverySnapshot]:
        """Snapshots bucketed on one business day, newest first."""
        query = self._query().filter(
            DeliverySnapshot.business_date == self._business_day(business_date)
        )
        return self._newest_first(query).all()

    def get_by_date_range(self, start: DayLike, end: DayLike) -> list[DeliverySnapshot]:
        """Snapshots within an inclusive business-date window, newest first."""
        return self._newest_first(self._window(self._query(), start, end)).all()

    def get_by_customer_id(
        self, customer_id: str, limit: int | None = None, offset: int = 0
    ) -> list[DeliverySnapshot]:
        """Snapshots for a customer, newest first, paginated."""
        query = self._query().filter(DeliverySnapshot.customer_id == customer_id)
        return self._page(self._newest_first(query), limit, offset).all()

    def get_by_order_id(self, order_id: str) -> list[DeliverySnapshot]:
        """Snapshots for an order, newest first."""
        query = self._query().filter(DeliverySnapshot.order_id == order_id)
        return self._newest_first(query).all()

    def get_by_provider_code(
        self, provider_code: str, start: DayLike, end: DayLike
    ) -> list[DeliverySnapshot]:
        """Snapshots for a provider within a business-date window, newest first."""
        query = self._query().filter(DeliverySnapshot.provider_code == provider_code)
        return self._newest_first(self._window(query, start, end)).all()

    def get_by_provider_and_status(
        self,
        provider_code: str,
        delivery_status: str,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[DeliverySnapshot]:
        """Snapshots for a provider in one delivery status, paginated."""
        query = self._query().filter(
            DeliverySnapshot.provider_code == provider_code,
            DeliverySnapshot.delivery_status == delivery_status,
        )
        return self._page(self._newest_first(query), limit, offset).all()

    def get_by_vehicle_id(
        self, vehicle_id: str, business_date: DayLike
    ) -> list[DeliverySnapshot]:
        """Snapshots for a vehicle on one business day."""
        query = self._query().filter(
            DeliverySnapshot.vehicle_id == vehicle_id,
            DeliverySnapshot.business_date == self._business_day(business_date),
        )
        return self._newest_first(query).all()

    def get_by_province(
        self, province: str, business_date: DayLike
    ) -> list[DeliverySnapshot]:
        """Snapshots for a delivery province on one business day."""
        query = self._query().filter(
            DeliverySnapshot.delivery_address_province == province,
            DeliverySnapshot.business_date == self._business_day(business_date),
        )
        return self._newest_first(query).all()

    def get_failed_delivery_snapshots(
        self, start: DayLike, end: DayLike
    ) -> list[DeliverySnapshot]:
        """Failed and cancelled snapshots within a window."""
        query = self._query().filter(
            DeliverySnapshot.snapshot_type.in_([t.value for t in FAILED_DELIVERY_TYPES])
        )
        return self._newest_first(self._window(query, start, end)).all()

    def get_successful_delivery_snapshots(
        self, start: DayLike, end: DayLike
    ) -> list[DeliverySnapshot]:
        """Delivered snapshots within a window."""
        query = self._query().filter(
            DeliverySnapshot.snapshot_type.in_(
                [t.value for t in SUCCESSFUL_DELIVERY_TYPES]
            )
        )
        return self._newest_first(self._window(query, start, end)).all()

    def get_snapshots_by_triggered_by(
        self, triggered_by: str, start: DayLike, end: DayLike
    ) -> list[DeliverySnapshot]:
        """Snapshots written by one actor label within a window."""
        query = self._query().filter(DeliverySnapshot.triggered_by == triggered_by)
        return self._newest_first(self._window(query, start, end)).all()

    def get_snapshots_by_user(
        self, user_id: str, start: DayLike, end: DayLike
    ) -> list[DeliverySnapshot]:
        """Snapshots triggered by one human user within a window."""
        query = self._query().filter(DeliverySnapshot.triggered_by_user_id == user_id)
        return self._newest_first(self._window(query, start, end)).all()

    def search_snapshots(self, filters: SnapshotQueryFilters) -> list[DeliverySnapshot]:
        """Search snapshots with a composable filter object.

        Only the fields set on `filters` constrain the result. Without a
        limit every match is returned.
        """
        query = self._query()
        equality = {
            DeliverySnapshot.delivery_id: filters.delivery_id,
            DeliverySnapshot.customer_id: filters.customer_id,
            DeliverySnapshot.order_id: filters.order_id,
            DeliverySnapshot.vehicle_id: filters.vehicle_id,
            DeliverySnapshot.provider_code: filters.provider_code,
            DeliverySnapshot.delivery_status: filters.delivery_status,
            DeliverySnapshot.delivery_address_province: filters.province,
            DeliverySnapshot.triggered_by: filters.triggered_by,
            DeliverySnapshot.triggered_by_user_id: filters.triggered_by_user_id,
        }
        for column, value in equality.items():
            if value is not None:
                query = query.filter(column == value)

        if filters.snapshot_type is not None:
            snapshot_type = self._coerce_type(filters.snapshot_type)
            query = query.filter(DeliverySnapshot.snapshot_type == snapshot_type.value)
        if filters.start_date is not None:
            query = query.filter(
                DeliverySnapshot.business_date >= self._business_day(filters.start_date)
            )
        if filters.end_date is not None:
            query = query.filter(
                DeliverySnapshot.business_date <= self._business_day(filters.end_date)
            )
        if filters.business_date is not None:
            query = query.filter(
                DeliverySnapshot.business_date == self._business_day(filters.business_date)
            )
        if filters.min_delivery_fee is not None:
            query = query.filter(
                DeliverySnapshot.delivery_fee >= self._coerce_fee(filters.min_delivery_fee)
            )
        if filters.max_delivery_fee is not None:
            query = query.filter(
                DeliverySnapshot.delivery_fee <= self._coerce_fee(filters.max_delivery_fee)
            )
        if not filters.include_archived:
            query = query.filter(DeliverySnapshot.archived_at.is_(None))

        query = self._newest_first(query)
        if filters.limit:
            query = query.limit(filters.limit)
        if filters.offset:
            query = query.offset(filters.offset)
        logger.debug("search_snapshots filters=%s", filters)
        return query.all()

    # =========================================================================
    # Aggregates
    # =========================================================================

    def _count_by(self, column: Any, start: DayLike, end: DayLike) -> dict[Any, int]:
        query = self.db.query(column, func.count(DeliverySnapshot.id))
        query = self._window(query, start, end).group_by(column)
        return {key: count for key, count in query.all()}

    def get_snapshot_count_by_type(self, start: DayLike, end: DayLike) -> dict[str, int]:
        """Snapshot counts per snapshot_type within a window."""
        return self._count_by(DeliverySnapshot.snapshot_type, start, end)

    def get_snapshot_count_by_provider(
        self, start: DayLike, end: DayLike
    ) -> dict[str | None, int]:
        """Snapshot counts per provider_code within a window."""
        return self._count_by(DeliverySnapshot.provider_code, start, end)

    def get_snapshot_count_by_status(
        self, start: DayLike, end: DayLike
    ) -> dict[str | None, int]:
        """Snapshot counts per delivery_status within a window."""
        return self._count_by(DeliverySnapshot.delivery_status, start, end)

    def get_delivery_completion_rate(self, start: DayLike, end: DayLike) -> float:
        """Delivered snapshots divided by distinct deliveries in the window.

        Returns:
            The ratio, or 0.0 when no delivery has a snapshot in the window.
        """
        base = self._window(self.db.query(DeliverySnapshot), start, end)
        total = base.with_entities(
            func.count(distinct(DeliverySnapshot.delivery_id))
        ).scalar() or 0
        if total == 0:
            return 0.0
        completed = (
            base.filter(DeliverySnapshot.snapshot_type == SnapshotType.delivered.value)
            .with_entities(func.count(DeliverySnapshot.id))
            .scalar()
            or 0
        )
        return completed / total

    def get_revenue_from_snapshots(
        self, start: DayLike, end: DayLike
    ) -> dict[str | None, Decimal]:
        """Sum of delivery_fee over delivered snapshots, per provider_code."""
        query = self.db.query(
            DeliverySnapshot.provider_code,
            func.coalesce(func.sum(DeliverySnapshot.delivery_fee), 0),
        ).filter(DeliverySnapshot.snapshot_type == SnapshotType.delivered.value)
        query = self._window(query, start, end).group_by(DeliverySnapshot.provider_code)
        return {provider: Decimal(str(total)) for provider, total in query.all()}

    def get_delivery_fees_from_snapshots(
        self, provider_code: str, business_date: DayLike
    ) -> Decimal:
        """Sum of delivered fees for one provider on one business day."""
        total = (
            self.db.query(func.coalesce(func.sum(DeliverySnapshot.delivery_fee), 0))
            .filter(
                DeliverySnapshot.provider_code == provider_code,
                DeliverySnapshot.business_date == self._business_day(business_date),
                DeliverySnapshot.snapshot_type == SnapshotType.delivered.value,
            )
            .scalar()
        )
        return Decimal(str(total or 0))

    def get_daily_delivery_metrics(self, business_date: DayLike) -> dict[str, Any]:
        """Summary of one business day.

        Returns:
            Dictionary with business_date, total_snapshots, deliveries,
            delivered, failed, completion_rate and revenue (per provider).
        """
        day = self._business_day(business_date)
        counts = self.get_snapshot_count_by_type(day, day)
        return {
            "business_date": day,
            "total_snapshots": sum(counts.values()),
            "deliveries": self.db.query(func.count(distinct(DeliverySnapshot.delivery_id)))
            .filter(DeliverySnapshot.business_date == day)
            .scalar()
            or 0,
            "delivered": sum(counts.get(t.value, 0) for t in SUCCESSFUL_DELIVERY_TYPES),
            "failed": sum(counts.get(t.value, 0) for t in FAILED_DELIVERY_TYPES),
            "completion_rate": self.get_delivery_completion_rate(day, day),
            "revenue": self.get_revenue_from_snapshots(day, day),
        }

    # =========================================================================
    # Chain utilities
    # =========================================================================

    def verify_chain(self, delivery_id: str) -> ChainVerification:
        """Check the stored chain of a delivery for tampering or breaks.

        Verifies, in timeline order, that every snapshot points at its
        immediate predecessor, that sequences are contiguous, and that
        payload and chain hashes match the stored content.
        """
        result = ChainVerification(delivery_id=delivery_id)
        timeline = self.get_delivery_timeline(delivery_id)
        previous: DeliverySnapshot | None = None

        for snapshot in timeline:
            result.checked += 1
            if _sha256_text(snapshot.snapshot_data) != snapshot.payload_hash:
                result.problems.append(f"seq {snapshot.sequence}: payload hash mismatch")

            if previous is None:
                previous_chain_hash = None
                if snapshot.previous_snapshot_id is not None:
                    pointed = self.db.get(DeliverySnapshot, snapshot.previous_snapshot_id)
                    if pointed is None and snapshot.sequence > 1:
                        # Head of the chain removed by a retention sweep.
                        result.truncated = True
                        previous = snapshot
                        continue
                    if pointed is not None and pointed.delivery_id != delivery_id:
                        result.problems.append(
                            f"seq {snapshot.sequence}: points at snapshot of "
                            f"delivery '{pointed.delivery_id}'"
                        )
                    else:
                        result.problems.append(
                            f"seq {snapshot.sequence}: first snapshot has a predecessor pointer"
                        )
                elif snapshot.sequence != 1:
                    result.problems.append(
                        f"seq {snapshot.sequence}: chain does not start at sequence 1"
                    )
            else:
                previous_chain_hash = previous.chain_hash
                if snapshot.previous_snapshot_id != previous.id:
                    result.problems.append(
                        f"seq {snapshot.sequence}: previous pointer "
                        f"{snapshot.previous_snapshot_id!r} != {previous.id!r}"
                    )
                if snapshot.sequence != previous.sequence + 1:
                    result.problems.append(
                        f"seq {snapshot.sequence}: sequence gap after {previous.sequence}"
                    )

            if compute_chain_hash(snapshot, previous_chain_hash) != snapshot.chain_hash:
                result.problems.append(f"seq {snapshot.sequence}: chain hash mismatch")
            previous = snapshot

        if result.problems:
            logger.warning(
                "Snapshot chain for delivery %s failed verification (%d problems)",
                delivery_id,
                len(result.problems),
            )
        return result

    def compare_with_previous(self, snapshot: DeliverySnapshot) -> dict[str, Any]:
        """Describe what changed between a snapshot and its predecessor.

        Returns:
            Dict with has_changes, changes (list of field groups),
            previous_snapshot_id and time_diff_minutes. has_changes is False
            for the first snapshot of a delivery.
        """
        if snapshot.previous_snapshot_id is None:
            return {"has_changes": False, "changes": []}
        previous = self.db.get(DeliverySnapshot, snapshot.previous_snapshot_id)
        if previous is None:
            return {"has_changes": False, "changes": []}

        changes = []
        if snapshot.delivery_status != previous.delivery_status:
            changes.append("status")
        if snapshot.vehicle_id != previous.vehicle_id:
            changes.append("vehicle_assignment")
        if snapshot.delivery_fee != previous.delivery_fee:
            changes.append("delivery_fee")
        if snapshot.provider_code != previous.provider_code:
            changes.append("provider")

        elapsed = from_iso(snapshot.created_at) - from_iso(previous.created_at)
        return {
            "has_changes": bool(changes),
            "changes": changes,
            "previous_snapshot_id": previous.id,
            "time_diff_minutes": elapsed.total_seconds() / 60,
        }

    def export_timeline_text(self, delivery_id: str) -> str:
        """Export a delivery timeline as plain text with PII redacted.

        Example output:
            [2024-01-23T10:30:45.000000+00:00] [#1] [created] order_created by pos-sync
                {
                    "customer": "[REDACTED]",
                    "items": 3
                }
        """
        lines = []
        for snapshot in self.get_delivery_timeline(delivery_id):
            actor = snapshot.triggered_by
            if snapshot.triggered_by_user_id:
                actor = f"{actor} ({snapshot.triggered_by_user_id})"
            event = snapshot.triggered_event or snapshot.snapshot_type
            archived = " [archived]" if snapshot.is_archived else ""
            lines.append(
                f"[{snapshot.created_at}] [#{snapshot.sequence}] "
                f"[{snapshot.snapshot_type}] {event} by {actor}{archived}"
            )
            data = snapshot.data
            if data:
                formatted = json.dumps(redact_sensitive(data), indent=4, sort_keys=True)
                for detail_line in formatted.split("\n"):
                    lines.append(f"    {detail_line}")
        return "\n".join(lines)

    # =========================================================================
    # Retention
    # =========================================================================

    def archive_snapshots_older_than(self, cutoff: DayLike) -> int:
        """Tag snapshots with business_date before cutoff as archived.

        Audit content is left untouched; already archived rows keep their
        original archived_at.

        Returns:
            Number of snapshots newly archived.
        """
        cutoff_day = self._business_day(cutoff)
        count = (
            self._query()
            .filter(
                DeliverySnapshot.business_date < cutoff_day,
                DeliverySnapshot.archived_at.is_(None),
            )
            .update(
                {DeliverySnapshot.archived_at: to_iso(self._clock())},
                synchronize_session=False,
            )
        )
        self.db.commit()
        logger.info("Archived %d snapshots older than %s", count, cutoff_day)
        return count

    def delete_snapshots_older_than(self, cutoff: DayLike) -> int:
        """Hard-delete snapshots with business_date before cutoff.

        Returns:
            Number of snapshots deleted.
        """
        cutoff_day = self._business_day(cutoff)
        count = (
            self._query()
            .filter(DeliverySnapshot.business_date < cutoff_day)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Deleted %d snapshots older than %s", count, cutoff_day)
        return count

    def delete(self, snapshot_id: str) -> None:
        """Hard-delete one snapshot.

        Raises:
            NotFoundError: If no snapshot has this id.
        """
        snapshot = self.get_by_id(snapshot_id)
        self.db.delete(snapshot)
        self.db.commit()
        logger.info("Deleted snapshot %s", snapshot_id)

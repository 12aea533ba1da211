"""
Registration order model.

An order carries the applicant's personal details, the vehicle being
registered, the workflow status with its audit stamps, a soft-delete
tombstone and an integer ``row_version`` used for optimistic concurrency.

Engine and board numbers are unique among orders that are not deleted.
Both rules are enforced by partial unique indexes so the database stays the
final arbiter when two writers pass the service pre-checks together.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
    Text,
    false,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from vehicle_registry.database.base import Base, UUIDMixin
from vehicle_registry.services.orders.enums import OrderStatus

ENGINE_NUMBER_INDEX = "uq_orders_engine_number_active"
BOARD_NUMBER_INDEX = "uq_orders_board_number_active"


class Order(Base, UUIDMixin):
    """
    Vehicle registration order.

    Attributes:
        id: Unique order identifier (UUID, immutable)
        created_by_id: Applicant who created the order
        status: Current lifecycle status
        engine_number: Engine number, unique among active orders
        board_number: License plate assigned at registration
        is_deleted: Soft-delete tombstone
        return_comment: Reason given by the last validator return
        row_version: Optimistic concurrency token, bumped on every update
    """

    __tablename__ = "orders"

    # Creation audit
    created_by_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="User who created the order",
    )

    created_by_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Display name of the creating user",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Timestamp when the order was created",
    )

    # Applicant
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    national_number: Mapped[str] = mapped_column(String(64), nullable=False)
    mother_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Vehicle
    car_name: Mapped[str] = mapped_column(String(255), nullable=False)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    year_of_manufacture: Mapped[int] = mapped_column(Integer, nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    engine_number: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Engine number, unique among non-deleted orders",
    )

    board_number: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
        comment="Normalized license plate assigned at registration",
    )

    # Workflow
    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(
            OrderStatus,
            name="order_status",
            values_callable=lambda enum: [member.value for member in enum],
            create_constraint=True,
        ),
        nullable=False,
        default=OrderStatus.DRAFT,
        index=True,
        comment="Current lifecycle status",
    )

    status_changed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status_changed_by_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    status_changed_by_name: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    return_comment: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Reason for the most recent return to the applicant",
    )

    # Modification audit
    modified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    modified_by_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    modified_by_name: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    # Soft delete
    is_deleted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
        comment="Tombstone; deleted orders are excluded from every query",
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deleted_by_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    deleted_by_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Concurrency
    row_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic concurrency token",
    )

    __table_args__ = (
        Index(
            ENGINE_NUMBER_INDEX,
            "engine_number",
            unique=True,
            postgresql_where=text("NOT is_deleted"),
            sqlite_where=text("NOT is_deleted"),
        ),
        Index(
            BOARD_NUMBER_INDEX,
            "board_number",
            unique=True,
            postgresql_where=text("board_number IS NOT NULL AND NOT is_deleted"),
            sqlite_where=text("board_number IS NOT NULL AND NOT is_deleted"),
        ),
        # Validator queue and status listings
        Index("ix_orders_status_changed", "status", "status_changed_at"),
        Index("ix_orders_creator_active", "created_by_id", "is_deleted"),
        CheckConstraint(
            "year_of_manufacture > 0",
            name="ck_orders_year_positive",
        ),
        CheckConstraint(
            "row_version >= 1",
            name="ck_orders_row_version_positive",
        ),
    )

"""
Registration order Pydantic schemas for request/response validation.

Request models only normalize input (strip whitespace, cap lengths). The
business rules on required fields, years and board-number shape belong to
the lifecycle service so that every caller gets the same error codes.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from vehicle_registry.services.orders.enums import OrderStatus


class OrderFields(BaseModel):
    """Applicant and vehicle fields supplied on create and edit."""

    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: str = Field(default="", max_length=255, description="Applicant full name")
    national_number: str = Field(
        default="", max_length=64, description="Applicant national number"
    )
    mother_name: Optional[str] = Field(
        default=None, max_length=255, description="Applicant mother's name"
    )
    car_name: str = Field(default="", max_length=255, description="Vehicle make")
    model: str = Field(default="", max_length=255, description="Vehicle model")
    year_of_manufacture: int = Field(default=0, description="Year of manufacture")
    color: Optional[str] = Field(default=None, max_length=64, description="Vehicle color")
    engine_number: str = Field(
        default="", max_length=128, description="Engine number, unique per active order"
    )


class ReturnOrderRequest(BaseModel):
    """Validator's reason for sending an order back to the applicant."""

    model_config = ConfigDict(str_strip_whitespace=True)

    comment: str = Field(default="", max_length=2000)


class RegisterBoardRequest(BaseModel):
    """License plate assigned by the registrar."""

    board_number: str = Field(default="", max_length=64)


class OrderResponse(BaseModel):
    """Order as returned to callers and stored in the cache."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_by_id: str
    created_by_name: str
    created_at: datetime

    full_name: str
    national_number: str
    mother_name: Optional[str] = None
    car_name: str
    model: str
    year_of_manufacture: int
    color: Optional[str] = None
    engine_number: str
    board_number: Optional[str] = None

    status: OrderStatus
    status_changed_at: Optional[datetime] = None
    status_changed_by_id: Optional[str] = None
    status_changed_by_name: Optional[str] = None
    return_comment: Optional[str] = None

    modified_at: Optional[datetime] = None
    modified_by_id: Optional[str] = None
    modified_by_name: Optional[str] = None

    row_version: int


class ErrorResponse(BaseModel):
    """Body of every non-2xx response."""

    code: str
    message: str
    errors: list[str] = Field(default_factory=list)

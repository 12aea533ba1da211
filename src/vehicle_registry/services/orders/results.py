"""Typed outcomes returned by the order lifecycle service."""

from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar

from vehicle_registry.services.orders.enums import ErrorCode

T = TypeVar("T")


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    """Success with ``data``, a coded failure, or a list of validation errors.

    Build instances through ``success``, ``failure`` and
    ``validation_failure`` rather than the constructor.
    """

    is_success: bool
    data: Optional[T] = None
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None
    validation_errors: list[str] = field(default_factory=list)

    @classmethod
    def success(cls, data: T) -> "ServiceResult[T]":
        return cls(is_success=True, data=data)

    @classmethod
    def failure(cls, code: ErrorCode, message: str) -> "ServiceResult[T]":
        return cls(is_success=False, error_code=code, error_message=message)

    @classmethod
    def validation_failure(
        cls,
        errors: list[str],
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ) -> "ServiceResult[T]":
        return cls(
            is_success=False,
            error_code=code,
            error_message="; ".join(errors),
            validation_errors=list(errors),
        )

    @property
    def is_validation_failure(self) -> bool:
        return not self.is_success and bool(self.validation_errors)

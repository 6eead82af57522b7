"""
Error taxonomy for ledger sync + reconciliation.

Propagation policy:
- ConfigurationError / ValidationError: surfaced to the caller as-is (fix input/config).
- ProvisioningError: surfaced, partial ledger state is left in place (no rollback).
- StoreError / TransientStoreError: surfaced on append/locate paths; reconciliation
  downgrades them per user.
Notification failures never raise out of the dispatcher.
"""

from __future__ import annotations

from typing import Optional, Sequence


class TimesheetError(RuntimeError):
    pass


class ConfigurationError(TimesheetError):
    pass


class ValidationError(TimesheetError):
    def __init__(self, problems: Sequence[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems: list[str] = [str(p) for p in problems]
        super().__init__("; ".join(self.problems) or "invalid input")


class ProvisioningError(TimesheetError):
    def __init__(
        self,
        message: str,
        *,
        ledger_id: Optional[str] = None,
        completed_partitions: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.ledger_id = ledger_id
        self.completed_partitions: tuple[str, ...] = tuple(completed_partitions)


class StoreError(TimesheetError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientStoreError(StoreError):
    """Rate limit, 5xx or network failure. Safe to retry."""


class PartitionNotFoundError(StoreError):
    def __init__(self, ledger_id: str, partition: str) -> None:
        super().__init__(f"partition {partition!r} not found in ledger {ledger_id}", status_code=400)
        self.ledger_id = ledger_id
        self.partition = partition


class PartitionExistsError(StoreError):
    def __init__(self, ledger_id: str, partition: str) -> None:
        super().__init__(f"partition {partition!r} already exists in ledger {ledger_id}", status_code=400)
        self.ledger_id = ledger_id
        self.partition = partition

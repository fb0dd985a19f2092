"""
rrl_core/host.py — Host collaborators the ledger runs on top of.

The ledger never decides who is calling, what time it is, or how value
moves; it asks the host. Each collaborator is a Protocol plus a
reference implementation good enough to run the ledger stand-alone:

- IdentityProvider  → StaticIdentity  (settable caller, act_as())
- ClockProvider     → BlockClock      (block height, advance())
- TransferPrimitive → StorageCustody  (custody accounts in the ledger DB)

StorageCustody writes to the same SQLite connection as the ledger, so a
transfer commits or rolls back together with the operation around it.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Protocol, runtime_checkable

from .errors import InvalidInput, TransferFailure
from .storage import Storage


@runtime_checkable
class IdentityProvider(Protocol):
    def current_caller(self) -> str:
        """Principal of the operation in progress. Stable for its duration."""
        ...


@runtime_checkable
class ClockProvider(Protocol):
    def current_timestamp(self) -> int:
        """Non-decreasing integer timestamp."""
        ...


@runtime_checkable
class TransferPrimitive(Protocol):
    def transfer(self, amount: int, to: str) -> None:
        """Move `amount` from pool custody to `to` atomically.

        Raises TransferFailure if the transfer cannot happen.
        """
        ...


class StaticIdentity:
    """Caller identity set by the host between operations."""

    def __init__(self, caller: str) -> None:
        self.caller = caller

    def current_caller(self) -> str:
        return self.caller

    @contextmanager
    def act_as(self, principal: str) -> Iterator[str]:
        """Temporarily switch the caller."""
        previous = self.caller
        self.caller = principal
        try:
            yield principal
        finally:
            self.caller = previous


class BlockClock:
    """Block-height clock. Height only moves forward."""

    def __init__(self, height: int = 1) -> None:
        if height < 0:
            raise ValueError("Block height cannot be negative")
        self.height = height

    def current_timestamp(self) -> int:
        return self.height

    def advance(self, blocks: int = 1) -> int:
        if blocks < 0:
            raise ValueError("Block height is non-decreasing")
        self.height += blocks
        return self.height


class StorageCustody:
    """Transfer primitive backed by the ledger's own accounts table.

    freeze() models a custody account that is otherwise constrained:
    every transfer fails with TransferFailure until thaw().
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage
        self.frozen = False

    def freeze(self) -> None:
        self.frozen = True

    def thaw(self) -> None:
        self.frozen = False

    def transfer(self, amount: int, to: str) -> None:
        if self.frozen:
            raise TransferFailure(f"Custody account is frozen; cannot pay {amount} to {to}")
        if amount <= 0:
            raise TransferFailure(f"Transfer amount must be positive, got {amount}")
        try:
            self.storage.credit_account(to, amount)
        except InvalidInput as e:
            raise TransferFailure(f"Custody credit to {to} failed: {e.message}") from e

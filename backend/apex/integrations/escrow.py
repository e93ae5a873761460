"""Escrow gate — the payment interface consumed by the scan pipeline.

A paid action locks funds in a time-bounded escrow:
  - after release_after the service may release (claim) the funds
  - after cancel_after the payer may refund (reclaim) them
Ledger specifics (amounts, windows, signing) live behind EscrowGate; only
the disabled gate ships here. The API locks through the gate before a scan
exists; the scan job releases on success.

Refund rules:
  1. only failed scans
  2. an escrow must be recorded on the scan
  3. not already refunded
  4. now >= cancel_after
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from apex.config import settings
from apex.errors import EscrowLockError, RefundNotAllowedError
from apex.models.scan import Scan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscrowLock:
    owner: str
    sequence: int
    tx_hash: str
    release_after: datetime | None = None
    cancel_after: datetime | None = None


class EscrowGate(Protocol):
    enabled: bool

    async def lock(self, action: str, payer: str) -> EscrowLock: ...

    async def release(self, lock: EscrowLock) -> str: ...

    async def refund(self, lock: EscrowLock) -> str: ...


class DisabledEscrowGate:
    """Gate used when payments are off. Nothing is ever locked."""

    enabled = False

    async def lock(self, action: str, payer: str) -> EscrowLock:
        raise EscrowLockError(f"Payments are disabled; cannot lock {action} for {payer}")

    async def release(self, lock: EscrowLock) -> str:
        logger.debug("Escrow disabled; not releasing %s/%s", lock.owner, lock.sequence)
        return ""

    async def refund(self, lock: EscrowLock) -> str:
        raise RefundNotAllowedError("Payments are disabled")


def lock_from_scan(scan: Scan) -> EscrowLock | None:
    """The escrow recorded on scan, or None if none was recorded."""
    if not scan.escrow_owner or scan.escrow_sequence is None or not scan.escrow_tx_hash:
        return None
    return EscrowLock(
        owner=scan.escrow_owner,
        sequence=scan.escrow_sequence,
        tx_hash=scan.escrow_tx_hash,
        release_after=scan.escrow_release_after,
        cancel_after=scan.escrow_cancel_after,
    )


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def check_refund_allowed(scan: Scan, now: datetime | None = None) -> EscrowLock:
    """Return the lock to refund, or raise with the reason the refund is refused.

    Raises:
        RefundNotAllowedError: If any refund rule fails.
    """
    if scan.status != "failed":
        raise RefundNotAllowedError("Refund is only for failed scans")
    lock = lock_from_scan(scan)
    if lock is None:
        raise RefundNotAllowedError("No escrow to refund for this scan")
    if scan.escrow_refunded_at is not None:
        raise RefundNotAllowedError("Already refunded")
    now = now or datetime.now(timezone.utc)
    if lock.cancel_after is not None and now < _aware(lock.cancel_after):
        raise RefundNotAllowedError(f"Refund available after {_aware(lock.cancel_after).isoformat()}")
    return lock


_default_gate: EscrowGate | None = None


def get_escrow_gate() -> EscrowGate:
    """Return the configured gate.

    No ledger client ships with the service, so this is always the disabled
    gate; API tests and deployments inject theirs via set_dependencies().
    """
    global _default_gate
    if _default_gate is None:
        if settings.escrow_enabled:
            logger.warning("escrow_enabled is set but no escrow gate was installed; payments are disabled")
        _default_gate = DisabledEscrowGate()
    return _default_gate


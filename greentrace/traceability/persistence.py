# -*- coding: utf-8 -*-
"""
Custody Store - GreenTrace Lineage & Custody Ledger

Persistence collaborator for the custody ledger. Defines the abstract
``CustodyStore`` interface (chain CRUD, append-only event logs,
transactions, idempotent creation) and a thread-safe in-memory
implementation used by tests, the CLI and single-process deployments.

Guarantees of InMemoryCustodyStore:
    - Per-record atomicity via a re-entrant lock
    - ``transaction()`` gives all-or-nothing batch writes: on exception
      every write made inside the block is rolled back
    - ``create_if_absent(key, factory)`` runs the factory at most once per
      idempotency key; retries return the stored result
    - Custody and mass-balance events are append-only

Example:
    >>> store = InMemoryCustodyStore()
    >>> with store.transaction():
    ...     store.insert_chain(chain)
    ...     store.append_custody_event(event)

Author: GreenTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from greentrace.traceability.models import (
    CustodyChain,
    CustodyEvent,
    MassBalanceEvent,
)

logger = logging.getLogger(__name__)


class CustodyStore(ABC):
    """Persistence interface required by the custody ledger."""

    # -- Chains --------------------------------------------------------------

    @abstractmethod
    def get_chain(self, chain_pk: str) -> Optional[CustodyChain]:
        """Return a chain by internal id, or None."""

    @abstractmethod
    def find_chain_by_chain_id(self, chain_id: str) -> Optional[CustodyChain]:
        """Return a chain by human-readable chain_id, or None."""

    @abstractmethod
    def insert_chain(self, chain: CustodyChain) -> None:
        """Insert a new chain.

        Raises:
            KeyError: If a chain with the same internal id exists.
        """

    @abstractmethod
    def update_chain(self, chain: CustodyChain) -> None:
        """Replace the stored state of an existing chain.

        Raises:
            KeyError: If the chain does not exist.
        """

    @abstractmethod
    def list_chains(self) -> List[CustodyChain]:
        """Return every chain in insertion order."""

    # -- Events --------------------------------------------------------------

    @abstractmethod
    def append_custody_event(self, event: CustodyEvent) -> None:
        """Append a custody event to its chain's log."""

    @abstractmethod
    def list_custody_events(self, chain_pk: str) -> List[CustodyEvent]:
        """Return a chain's custody events ordered by sequence."""

    @abstractmethod
    def append_mass_balance_event(self, event: MassBalanceEvent) -> None:
        """Append a mass-balance event."""

    @abstractmethod
    def list_mass_balance_events(
        self,
        chain_pk: Optional[str] = None,
    ) -> List[MassBalanceEvent]:
        """Return mass-balance events, optionally those touching one chain."""

    # -- Atomicity -----------------------------------------------------------

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager making the enclosed writes all-or-nothing."""

    @abstractmethod
    def create_if_absent(
        self,
        idempotency_key: str,
        factory: Callable[[], Any],
    ) -> Tuple[Any, bool]:
        """Run ``factory`` once per key.

        Returns:
            Tuple of (result, created). ``created`` is False when the key
            was already present and the stored result is returned.
        """

    def list_mass_balance_events_between(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[MassBalanceEvent]:
        """Return mass-balance events whose process_date is in [start, end]."""
        return [
            e for e in self.list_mass_balance_events()
            if (start is None or e.process_date >= start)
            and (end is None or e.process_date <= end)
        ]


class InMemoryCustodyStore(CustodyStore):
    """Thread-safe in-memory CustodyStore.

    Attributes:
        _chains: Chains keyed by internal id (insertion ordered).
        _chain_ids: Human-readable chain_id -> internal id.
        _custody_events: Custody event logs keyed by chain internal id.
        _mass_balance_events: Mass-balance events in append order.
        _idempotency: Stored results keyed by idempotency key.
        _lock: Re-entrant lock guarding all state.
    """

    def __init__(self) -> None:
        self._chains: Dict[str, CustodyChain] = {}
        self._chain_ids: Dict[str, str] = {}
        self._custody_events: Dict[str, List[CustodyEvent]] = {}
        self._mass_balance_events: List[MassBalanceEvent] = []
        self._idempotency: Dict[str, Any] = {}
        self._lock = threading.RLock()
        self._tx_depth = 0

        logger.info("InMemoryCustodyStore initialized")

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def get_chain(self, chain_pk: str) -> Optional[CustodyChain]:
        with self._lock:
            return self._chains.get(chain_pk)

    def find_chain_by_chain_id(self, chain_id: str) -> Optional[CustodyChain]:
        with self._lock:
            pk = self._chain_ids.get(chain_id)
            return self._chains.get(pk) if pk is not None else None

    def insert_chain(self, chain: CustodyChain) -> None:
        with self._lock:
            if chain.id in self._chains:
                raise KeyError(f"chain {chain.id} already exists")
            if chain.chain_id in self._chain_ids:
                raise KeyError(f"chain_id {chain.chain_id} already exists")
            self._chains[chain.id] = chain
            self._chain_ids[chain.chain_id] = chain.id
            self._custody_events.setdefault(chain.id, [])

    def update_chain(self, chain: CustodyChain) -> None:
        with self._lock:
            if chain.id not in self._chains:
                raise KeyError(f"chain {chain.id} not found")
            self._chains[chain.id] = chain

    def list_chains(self) -> List[CustodyChain]:
        with self._lock:
            return list(self._chains.values())

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def append_custody_event(self, event: CustodyEvent) -> None:
        with self._lock:
            if event.chain_id not in self._chains:
                raise KeyError(f"chain {event.chain_id} not found")
            self._custody_events.setdefault(event.chain_id, []).append(event)

    def list_custody_events(self, chain_pk: str) -> List[CustodyEvent]:
        with self._lock:
            events = list(self._custody_events.get(chain_pk, []))
        return sorted(events, key=lambda e: e.sequence)

    def append_mass_balance_event(self, event: MassBalanceEvent) -> None:
        with self._lock:
            self._mass_balance_events.append(event)

    def list_mass_balance_events(
        self,
        chain_pk: Optional[str] = None,
    ) -> List[MassBalanceEvent]:
        with self._lock:
            events = list(self._mass_balance_events)
        if chain_pk is None:
            return events
        return [e for e in events if chain_pk in e.chain_ids]

    # ------------------------------------------------------------------
    # Atomicity
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[InMemoryCustodyStore]:
        """All-or-nothing block; nested blocks join the outer transaction."""
        with self._lock:
            if self._tx_depth > 0:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return

            snapshot = self._snapshot()
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                logger.debug("Custody store transaction rolled back")
                raise
            finally:
                self._tx_depth = 0

    def create_if_absent(
        self,
        idempotency_key: str,
        factory: Callable[[], Any],
    ) -> Tuple[Any, bool]:
        with self._lock:
            if idempotency_key in self._idempotency:
                logger.info(
                    "Idempotency key %s already applied; returning stored result",
                    idempotency_key,
                )
                return self._idempotency[idempotency_key], False
            with self.transaction():
                result = factory()
                self._idempotency[idempotency_key] = result
            return result, True

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "chains": dict(self._chains),
            "chain_ids": dict(self._chain_ids),
            "custody_events": {
                k: list(v) for k, v in self._custody_events.items()
            },
            "mass_balance_events": list(self._mass_balance_events),
            "idempotency": dict(self._idempotency),
        }

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self._chains = snapshot["chains"]
        self._chain_ids = snapshot["chain_ids"]
        self._custody_events = snapshot["custody_events"]
        self._mass_balance_events = snapshot["mass_balance_events"]
        self._idempotency = snapshot["idempotency"]

    # ------------------------------------------------------------------
    # Bulk import
    # ------------------------------------------------------------------

    def import_records(
        self,
        chains: Optional[List[CustodyChain]] = None,
        custody_events: Optional[List[CustodyEvent]] = None,
        mass_balance_events: Optional[List[MassBalanceEvent]] = None,
    ) -> None:
        """Load previously recorded history in one transaction."""
        with self.transaction():
            for chain in chains or []:
                self.insert_chain(chain)
            for event in custody_events or []:
                self.append_custody_event(event)
            for mb_event in mass_balance_events or []:
                self.append_mass_balance_event(mb_event)


__all__ = [
    "CustodyStore",
    "InMemoryCustodyStore",
]

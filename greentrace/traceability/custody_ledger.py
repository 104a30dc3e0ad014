# -*- coding: utf-8 -*-
"""
Custody Ledger - GreenTrace Lineage & Custody Ledger

Maintains custody chains and the mass-balance accounting of the
operations performed on them:

- create_custody_chain: register material entering tracking
- record_custody_event: append receive/process/ship events; process and
  ship quantities decrement the chain
- split_custody_chain / merge_custody_chains: mass-conserving
  re-partitioning of chains, each emitting one mass-balance event
- transform_custody_chain: lossy product transformation (e.g. FFB to CPO)
- record_mass_balance_event: processing accounting, kept separate from
  quantity bookkeeping
- validate_mass_balance: read-only reconciliation of the two

A chain's state is always a left fold of its ordered custody events
through :func:`apply_custody_event`; ``rebuild_chain_state`` replays the
log to audit the stored state. Every mutating call is all-or-nothing via
``CustodyStore.transaction()``; split, merge and transform accept an
idempotency key so that retries never double-create child chains.

Example:
    >>> ledger = CustodyLedger()
    >>> chain = ledger.create_custody_chain(
    ...     CreateCustodyChainRequest(product_type="ffb", total_quantity=100),
    ... )
    >>> result = ledger.split_custody_chain(
    ...     chain.id, [{"quantity": 60}, {"quantity": 40}], "MILL-1",
    ... )
    >>> result.parent_chain.status
    <ChainStatus.SPLIT: 'split'>

Author: GreenTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from greentrace.exceptions import (
    ChainNotFound,
    DuplicateChainId,
    EmptyChainMerge,
    InsufficientQuantity,
    InvalidQuantity,
    NegativeWaste,
    ProductTypeMismatch,
    SplitExceedsAvailable,
)
from greentrace.traceability import metrics
from greentrace.traceability.config import TraceabilityConfig, get_config
from greentrace.traceability.mass_balance import MassBalanceAnalyzer
from greentrace.traceability.models import (
    QUANTITY_EPSILON,
    ChainStatus,
    CreateCustodyChainRequest,
    CustodyChain,
    CustodyEvent,
    CustodyEventType,
    EfficiencySummary,
    EntityRef,
    EntityType,
    FacilityEfficiency,
    MassBalanceAnomaly,
    MassBalanceEvent,
    MassBalanceEventType,
    MassBalanceValidation,
    MergeResult,
    RecordCustodyEventRequest,
    RecordMassBalanceEventRequest,
    SplitDefinition,
    SplitResult,
    TransformChainRequest,
    TransformResult,
)
from greentrace.traceability.persistence import CustodyStore, InMemoryCustodyStore
from greentrace.traceability.provenance import ProvenanceTracker

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC datetime with microseconds zeroed."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def _require_quantity(name: str, value: float, allow_zero: bool = False) -> None:
    """Raise InvalidQuantity unless ``value`` is finite and positive.

    With ``allow_zero`` the value need only be non-negative.
    """
    if math.isfinite(value) and (value >= 0 if allow_zero else value > 0):
        return
    expected = "non-negative" if allow_zero else "positive"
    raise InvalidQuantity(
        f"{name} must be a finite {expected} number, got {value!r}",
        context={name: value},
    )


def _generate_chain_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


# Status a chain takes when an event of this type drains it
_TERMINAL_STATUS = {
    CustodyEventType.PROCESS: ChainStatus.CONSUMED,
    CustodyEventType.SHIP: ChainStatus.SHIPPED,
    CustodyEventType.SPLIT: ChainStatus.SPLIT,
    CustodyEventType.MERGE: ChainStatus.MERGED,
}


def apply_custody_event(chain: CustodyChain, event: CustodyEvent) -> CustodyChain:
    """Return the chain state after one custody event.

    ``process`` and ``ship`` events with a quantity decrement the chain.
    ``split`` and ``merge`` events decrement only when they carry a
    ``mass_balance_event_id``. ``receive`` events and any event without a
    quantity leave quantities unchanged. When the remaining quantity
    reaches zero the status becomes the event's terminal status.

    Raises:
        InsufficientQuantity: If the event would drive the remaining
            quantity below zero.
    """
    if event.quantity is None or event.event_type not in _TERMINAL_STATUS:
        return chain
    if (
        event.event_type in (CustodyEventType.SPLIT, CustodyEventType.MERGE)
        and event.mass_balance_event_id is None
    ):
        return chain

    remaining = chain.remaining_quantity - event.quantity
    if remaining < -QUANTITY_EPSILON:
        raise InsufficientQuantity(
            f"{event.event_type.value} of {event.quantity:g} exceeds remaining "
            f"quantity {chain.remaining_quantity:g} of chain {chain.chain_id}",
            context={
                "chain_id": chain.id,
                "requested": event.quantity,
                "remaining": chain.remaining_quantity,
            },
        )
    if abs(remaining) <= QUANTITY_EPSILON:
        remaining = 0.0

    status = chain.status
    if remaining == 0.0 and event.quantity > 0:
        status = _TERMINAL_STATUS[event.event_type]

    return chain.model_copy(update={
        "remaining_quantity": remaining,
        "status": status,
        "updated_at": event.event_time,
    })


class CustodyLedger:
    """Custody chain ledger with mass-balance accounting.

    Chains are addressed by their internal ``id``; ``chain_id`` is the
    unique human-readable label.

    Attributes:
        _store: Persistence collaborator.
        _config: Traceability configuration.
        _provenance: Optional provenance tracker.
        _analyzer: Mass-balance validation and analytics.
    """

    def __init__(
        self,
        store: Optional[CustodyStore] = None,
        config: Optional[TraceabilityConfig] = None,
        provenance: Optional[ProvenanceTracker] = None,
    ) -> None:
        self._store = store if store is not None else InMemoryCustodyStore()
        self._config = config or get_config()
        if provenance is None and self._config.enable_provenance:
            provenance = ProvenanceTracker()
        self._provenance = provenance
        self._analyzer = MassBalanceAnalyzer(self._store, self._config)
        logger.info(
            "CustodyLedger initialized (tolerance=%.4f, provenance=%s)",
            self._config.mass_balance_tolerance,
            self._provenance is not None,
        )

    @property
    def store(self) -> CustodyStore:
        return self._store

    @property
    def provenance(self) -> Optional[ProvenanceTracker]:
        return self._provenance

    # ------------------------------------------------------------------
    # Chains and custody events
    # ------------------------------------------------------------------

    def create_custody_chain(
        self,
        request: Union[CreateCustodyChainRequest, Dict[str, Any]],
    ) -> CustodyChain:
        """Register material entering tracking.

        Args:
            request: Chain details; ``chain_id`` is generated when omitted.

        Returns:
            The new active chain with ``remaining_quantity == total_quantity``.

        Raises:
            InvalidQuantity: If ``total_quantity`` is not finite and positive.
            DuplicateChainId: If the chain_id is already in use.
        """
        if isinstance(request, dict):
            request = CreateCustodyChainRequest.model_validate(request)

        with self._track("create_chain"):
            _require_quantity("total_quantity", request.total_quantity)

            with self._store.transaction():
                chain_id = request.chain_id or _generate_chain_id("CHAIN")
                if self._store.find_chain_by_chain_id(chain_id) is not None:
                    raise DuplicateChainId(
                        f"Custody chain {chain_id} already exists",
                        context={"chain_id": chain_id},
                    )
                chain = CustodyChain(
                    chain_id=chain_id,
                    source_plot=request.source_plot,
                    source_facility=request.source_facility,
                    destination_facility=request.destination_facility,
                    product_type=request.product_type,
                    total_quantity=request.total_quantity,
                    remaining_quantity=request.total_quantity,
                    quality_grade=request.quality_grade,
                    batch_number=request.batch_number,
                    harvest_date=request.harvest_date,
                    expiry_date=request.expiry_date,
                    uom=request.uom or self._config.default_uom,
                )
                self._store.insert_chain(chain)
                self._append_event(
                    chain,
                    CustodyEventType.RECEIVE,
                    business_step="harvesting",
                    disposition="active",
                    quantity=chain.total_quantity,
                    facility_ref=chain.source_facility,
                    recorded_by=request.recorded_by,
                )

        self._record_provenance("chain_created", chain.id, "create", chain,
                                request.recorded_by)
        logger.info(
            "Created custody chain %s (%s): %s %g %s",
            chain.chain_id, chain.id, chain.product_type,
            chain.total_quantity, chain.uom,
        )
        return chain

    def record_custody_event(
        self,
        chain_pk: str,
        request: Union[RecordCustodyEventRequest, Dict[str, Any]],
    ) -> CustodyEvent:
        """Append a custody event to a chain.

        ``process`` and ``ship`` events with a quantity decrement the
        chain; when it reaches zero the status becomes ``consumed`` or
        ``shipped``. A rejected event is not appended.

        Raises:
            ChainNotFound: If the chain does not exist.
            InvalidQuantity: If the quantity is negative or not finite.
            InsufficientQuantity: If the quantity exceeds what remains.
        """
        if isinstance(request, dict):
            request = RecordCustodyEventRequest.model_validate(request)

        with self._track("record_event"):
            if request.quantity is not None:
                _require_quantity("quantity", request.quantity, allow_zero=True)
            with self._store.transaction():
                chain = self._require_chain(chain_pk)
                event, chain = self._append_event(
                    chain,
                    request.event_type,
                    business_step=request.business_step,
                    disposition=request.disposition,
                    quantity=request.quantity,
                    uom=request.uom,
                    event_time=request.event_time,
                    location=request.location,
                    facility_ref=request.facility_ref,
                    recorded_by=request.recorded_by,
                    user_data=request.user_data,
                )

        self._record_provenance("custody_event", chain_pk, "append", event,
                                request.recorded_by)
        logger.info(
            "Recorded %s event #%d on chain %s (qty=%s, remaining=%g, status=%s)",
            event.event_type.value, event.sequence, chain.chain_id,
            event.quantity, chain.remaining_quantity, chain.status.value,
        )
        return event

    # ------------------------------------------------------------------
    # Split / merge / transform
    # ------------------------------------------------------------------

    def split_custody_chain(
        self,
        parent_chain_id: str,
        splits: Sequence[Union[SplitDefinition, Dict[str, Any]]],
        process_location: str,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        processed_by: str = "system",
    ) -> SplitResult:
        """Split one chain into several children.

        Each child gets ``total_quantity = remaining_quantity =
        split.quantity`` and inherits the parent's product type. The parent
        is decremented by the split total and becomes ``split`` when
        drained. One balanced ``split`` mass-balance event is emitted.

        Args:
            parent_chain_id: Internal id of the chain to split.
            splits: Child definitions (quantity, destination, grade).
            process_location: Facility where the split happens.
            notes: Optional free text stored on the mass-balance event.
            idempotency_key: Retry key; a repeated key returns the
                original result without creating anything.
            processed_by: Actor recorded on the events.

        Raises:
            ChainNotFound: If the parent does not exist.
            InvalidQuantity: If no splits are given or any is non-positive.
            SplitExceedsAvailable: If the splits sum to more than remains.
        """
        definitions = [
            s if isinstance(s, SplitDefinition) else SplitDefinition.model_validate(s)
            for s in splits
        ]

        def work() -> SplitResult:
            return self._split(
                parent_chain_id, definitions, process_location, notes,
                processed_by,
            )

        with self._track("split"):
            result, created = self._run_once("split", idempotency_key, work)

        if created:
            self._record_provenance(
                "chain_split", result.parent_chain.id, "split",
                result.mass_balance_event, processed_by,
            )
            logger.info(
                "Split chain %s into %d children (%g %s), parent remaining=%g",
                result.parent_chain.chain_id, len(result.child_chains),
                result.mass_balance_event.input_quantity,
                result.parent_chain.uom,
                result.parent_chain.remaining_quantity,
            )
        return result

    def _split(
        self,
        parent_pk: str,
        definitions: List[SplitDefinition],
        process_location: str,
        notes: Optional[str],
        processed_by: str,
    ) -> SplitResult:
        parent = self._require_chain(parent_pk)
        if not definitions:
            raise InvalidQuantity("at least one split definition is required")
        for definition in definitions:
            _require_quantity("split quantity", definition.quantity)

        total = sum(d.quantity for d in definitions)
        if total > parent.remaining_quantity + QUANTITY_EPSILON:
            raise SplitExceedsAvailable(
                f"Split total {total:g} exceeds remaining quantity "
                f"{parent.remaining_quantity:g} of chain {parent.chain_id}",
                context={
                    "chain_id": parent.id,
                    "requested": total,
                    "remaining": parent.remaining_quantity,
                },
            )

        origin = parent.destination_facility or parent.source_facility
        children: List[CustodyChain] = []
        for definition in definitions:
            child = CustodyChain(
                chain_id=_generate_chain_id("SPLIT"),
                source_plot=parent.source_plot,
                source_facility=origin,
                destination_facility=definition.destination_facility,
                product_type=parent.product_type,
                total_quantity=definition.quantity,
                remaining_quantity=definition.quantity,
                quality_grade=definition.quality_grade or parent.quality_grade,
                batch_number=parent.batch_number,
                harvest_date=parent.harvest_date,
                expiry_date=parent.expiry_date,
                parent_chain_ids=[parent.id],
                uom=parent.uom,
            )
            self._store.insert_chain(child)
            children.append(child)

        mb_event = MassBalanceEvent(
            event_type=MassBalanceEventType.SPLIT,
            parent_chain_ids=[parent.id],
            child_chain_ids=[c.id for c in children],
            input_quantity=total,
            output_quantity=total,
            conversion_rate=1.0,
            waste_quantity=0.0,
            process_location=process_location,
            processed_by=processed_by,
            notes=notes,
        )
        _, parent = self._append_event(
            parent,
            CustodyEventType.SPLIT,
            business_step="processing",
            disposition="split",
            quantity=total,
            facility_ref=_facility(process_location),
            recorded_by=processed_by,
            mass_balance_event_id=mb_event.id,
        )
        for child in children:
            self._append_event(
                child,
                CustodyEventType.RECEIVE,
                business_step="processing",
                disposition="active",
                quantity=child.total_quantity,
                facility_ref=_facility(process_location),
                recorded_by=processed_by,
                user_data={"split_from": parent.chain_id},
            )
        self._store.append_mass_balance_event(mb_event)

        return SplitResult(
            parent_chain=parent,
            child_chains=children,
            mass_balance_event=mb_event,
        )

    def merge_custody_chains(
        self,
        parent_chain_ids: Sequence[str],
        destination_facility: Optional[Union[EntityRef, Dict[str, Any]]],
        product_type: str,
        process_location: str,
        quality_grade: Optional[str] = None,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        processed_by: str = "system",
    ) -> MergeResult:
        """Merge several chains of one product type into a new chain.

        The merged chain's total is the sum of the parents' remaining
        quantities; every parent is drained and becomes ``merged``. One
        balanced ``merge`` mass-balance event is emitted.

        Raises:
            ChainNotFound: If a parent does not exist.
            InvalidQuantity: If fewer than two distinct parents are given
                or the parents use different units.
            ProductTypeMismatch: If a parent's product type differs from
                ``product_type``.
            EmptyChainMerge: If a parent has nothing remaining.
        """
        if isinstance(destination_facility, dict):
            destination_facility = EntityRef.model_validate(destination_facility)

        def work() -> MergeResult:
            return self._merge(
                list(parent_chain_ids), destination_facility, product_type,
                process_location, quality_grade, notes, processed_by,
            )

        with self._track("merge"):
            result, created = self._run_once("merge", idempotency_key, work)

        if created:
            self._record_provenance(
                "chains_merged", result.merged_chain.id, "merge",
                result.mass_balance_event, processed_by,
            )
            logger.info(
                "Merged %d chains into %s (%g %s)",
                len(result.parent_chains), result.merged_chain.chain_id,
                result.merged_chain.total_quantity, result.merged_chain.uom,
            )
        return result

    def _merge(
        self,
        parent_pks: List[str],
        destination_facility: Optional[EntityRef],
        product_type: str,
        process_location: str,
        quality_grade: Optional[str],
        notes: Optional[str],
        processed_by: str,
    ) -> MergeResult:
        unique_pks = list(dict.fromkeys(parent_pks))
        if len(unique_pks) < 2:
            raise InvalidQuantity(
                "at least two distinct chains are required for a merge",
                context={"parent_chain_ids": parent_pks},
            )

        parents = [self._require_chain(pk) for pk in unique_pks]
        for parent in parents:
            if parent.product_type != product_type:
                raise ProductTypeMismatch(
                    f"Chain {parent.chain_id} carries {parent.product_type}, "
                    f"cannot merge into {product_type}",
                    context={
                        "chain_id": parent.id,
                        "chain_product_type": parent.product_type,
                        "product_type": product_type,
                    },
                )
        units = sorted({p.uom for p in parents})
        if len(units) > 1:
            raise InvalidQuantity(
                f"Cannot merge chains measured in different units: {', '.join(units)}",
                context={
                    "parent_chain_ids": [p.id for p in parents],
                    "uoms": {p.id: p.uom for p in parents},
                },
            )
        for parent in parents:
            if parent.remaining_quantity <= QUANTITY_EPSILON:
                raise EmptyChainMerge(
                    f"Chain {parent.chain_id} has no remaining quantity",
                    context={"chain_id": parent.id},
                )

        total = sum(p.remaining_quantity for p in parents)
        first = parents[0]
        merged = CustodyChain(
            chain_id=_generate_chain_id("MERGE"),
            source_facility=_facility(process_location),
            destination_facility=destination_facility,
            product_type=product_type,
            total_quantity=total,
            remaining_quantity=total,
            quality_grade=quality_grade,
            harvest_date=min(
                (p.harvest_date for p in parents if p.harvest_date),
                default=None,
            ),
            parent_chain_ids=[p.id for p in parents],
            uom=first.uom,
        )
        self._store.insert_chain(merged)

        mb_event = MassBalanceEvent(
            event_type=MassBalanceEventType.MERGE,
            parent_chain_ids=[p.id for p in parents],
            child_chain_ids=[merged.id],
            input_quantity=total,
            output_quantity=total,
            conversion_rate=1.0,
            waste_quantity=0.0,
            process_location=process_location,
            processed_by=processed_by,
            notes=notes,
        )
        drained: List[CustodyChain] = []
        for parent in parents:
            _, parent = self._append_event(
                parent,
                CustodyEventType.MERGE,
                business_step="processing",
                disposition="merged",
                quantity=parent.remaining_quantity,
                facility_ref=_facility(process_location),
                recorded_by=processed_by,
                mass_balance_event_id=mb_event.id,
            )
            drained.append(parent)
        self._append_event(
            merged,
            CustodyEventType.RECEIVE,
            business_step="processing",
            disposition="active",
            quantity=total,
            facility_ref=_facility(process_location),
            recorded_by=processed_by,
            user_data={"merged_from": [p.chain_id for p in parents]},
        )
        self._store.append_mass_balance_event(mb_event)

        return MergeResult(
            parent_chains=drained,
            merged_chain=merged,
            mass_balance_event=mb_event,
        )

    def transform_custody_chain(
        self,
        request: Union[TransformChainRequest, Dict[str, Any]],
    ) -> TransformResult:
        """Convert part of a chain into a new product with processing loss.

        ``output = input * conversion_rate`` and ``waste = input - output``.
        The source chain is decremented through a ``process`` event.

        Raises:
            ChainNotFound: If the source chain does not exist.
            InvalidQuantity: If ``input_quantity <= 0``.
            InsufficientQuantity: If input exceeds the remaining quantity.
        """
        if isinstance(request, dict):
            request = TransformChainRequest.model_validate(request)

        def work() -> TransformResult:
            return self._transform(request)

        with self._track("transform"):
            _require_quantity("input_quantity", request.input_quantity)
            result, created = self._run_once(
                "transform", request.idempotency_key, work,
            )

        if created:
            self._record_provenance(
                "chain_transformed", result.transformed_chain.id, "transform",
                result.mass_balance_event, request.processed_by,
            )
            logger.info(
                "Transformed %g %s of %s into %g %s of %s (rate=%.4f)",
                request.input_quantity, result.source_chain.product_type,
                result.source_chain.chain_id,
                result.transformed_chain.total_quantity,
                result.transformed_chain.product_type,
                result.transformed_chain.chain_id,
                request.conversion_rate,
            )
        return result

    def _transform(self, request: TransformChainRequest) -> TransformResult:
        source = self._require_chain(request.source_chain_id)
        if request.input_quantity > source.remaining_quantity + QUANTITY_EPSILON:
            raise InsufficientQuantity(
                f"Transform input {request.input_quantity:g} exceeds remaining "
                f"quantity {source.remaining_quantity:g} of chain {source.chain_id}",
                context={
                    "chain_id": source.id,
                    "requested": request.input_quantity,
                    "remaining": source.remaining_quantity,
                },
            )

        output = request.input_quantity * request.conversion_rate
        waste = request.input_quantity - output
        transformed = CustodyChain(
            chain_id=_generate_chain_id("TRANS"),
            source_plot=source.source_plot,
            source_facility=_facility(request.process_location),
            destination_facility=request.destination_facility,
            product_type=request.output_product_type,
            total_quantity=output,
            remaining_quantity=output,
            quality_grade=request.quality_grade,
            batch_number=source.batch_number,
            harvest_date=source.harvest_date,
            parent_chain_ids=[source.id],
            uom=source.uom,
        )
        self._store.insert_chain(transformed)

        mb_event = MassBalanceEvent(
            event_type=MassBalanceEventType.TRANSFORM,
            parent_chain_ids=[source.id],
            child_chain_ids=[transformed.id],
            input_quantity=request.input_quantity,
            output_quantity=output,
            conversion_rate=request.conversion_rate,
            waste_quantity=waste,
            process_location=request.process_location,
            processed_by=request.processed_by,
            notes=request.notes,
        )
        _, source = self._append_event(
            source,
            CustodyEventType.PROCESS,
            business_step="processing",
            disposition="transformed",
            quantity=request.input_quantity,
            facility_ref=_facility(request.process_location),
            recorded_by=request.processed_by,
            mass_balance_event_id=mb_event.id,
        )
        self._append_event(
            transformed,
            CustodyEventType.RECEIVE,
            business_step="processing",
            disposition="active",
            quantity=output,
            facility_ref=_facility(request.process_location),
            recorded_by=request.processed_by,
            user_data={"transformed_from": source.chain_id},
        )
        self._store.append_mass_balance_event(mb_event)

        return TransformResult(
            source_chain=source,
            transformed_chain=transformed,
            mass_balance_event=mb_event,
        )

    # ------------------------------------------------------------------
    # Mass balance
    # ------------------------------------------------------------------

    def record_mass_balance_event(
        self,
        request: Union[RecordMassBalanceEventRequest, Dict[str, Any]],
    ) -> MassBalanceEvent:
        """Record the accounting of a processing step.

        Waste defaults to ``input - output``. A computed waste within the
        tolerance below zero is recorded as 0. Chain quantities are not
        touched; pair this with ``record_custody_event`` and reconcile
        through :meth:`validate_mass_balance`.

        Raises:
            InvalidQuantity: If a quantity is not finite, input is not
                positive or output is negative.
            NegativeWaste: If explicit waste is negative or output exceeds
                input beyond the tolerance.
            ChainNotFound: If a referenced chain does not exist.
        """
        if isinstance(request, dict):
            request = RecordMassBalanceEventRequest.model_validate(request)

        with self._track("record_mass_balance"):
            event = self._build_mass_balance_event(request)
            with self._store.transaction():
                for chain_pk in event.chain_ids:
                    self._require_chain(chain_pk)
                self._store.append_mass_balance_event(event)

        self._record_provenance("mass_balance_event", event.id, "record",
                                event, request.processed_by)
        logger.info(
            "Recorded %s mass-balance event %s: in=%g out=%g waste=%g",
            event.event_type.value, event.id, event.input_quantity,
            event.output_quantity, event.waste_quantity,
        )
        return event

    def _build_mass_balance_event(
        self,
        request: RecordMassBalanceEventRequest,
    ) -> MassBalanceEvent:
        epsilon = self._config.mass_balance_tolerance
        _require_quantity("input_quantity", request.input_quantity)
        _require_quantity("output_quantity", request.output_quantity, allow_zero=True)
        if request.output_quantity > request.input_quantity * (1 + epsilon):
            raise NegativeWaste(
                f"output {request.output_quantity:g} exceeds input "
                f"{request.input_quantity:g} beyond tolerance",
                context={
                    "input_quantity": request.input_quantity,
                    "output_quantity": request.output_quantity,
                    "tolerance": epsilon,
                },
            )

        if request.waste_quantity is not None:
            if not math.isfinite(request.waste_quantity):
                raise InvalidQuantity(
                    f"waste_quantity must be finite, got {request.waste_quantity!r}",
                    context={"waste_quantity": request.waste_quantity},
                )
            if request.waste_quantity < 0:
                raise NegativeWaste(
                    f"waste_quantity must be non-negative, got {request.waste_quantity:g}",
                    context={"waste_quantity": request.waste_quantity},
                )
            waste = request.waste_quantity
            drift = request.input_quantity - request.output_quantity - waste
            if abs(drift) > epsilon * request.input_quantity:
                logger.warning(
                    "Output %g plus waste %g differs from input %g by %g",
                    request.output_quantity, waste, request.input_quantity, drift,
                )
        else:
            waste = max(request.input_quantity - request.output_quantity, 0.0)

        if request.conversion_rate is not None:
            if not math.isfinite(request.conversion_rate):
                raise InvalidQuantity(
                    f"conversion_rate must be finite, got {request.conversion_rate!r}",
                    context={"conversion_rate": request.conversion_rate},
                )
            implied = request.output_quantity / request.input_quantity
            if abs(implied - request.conversion_rate) > epsilon:
                logger.warning(
                    "Stated conversion rate %.4f differs from output/input %.4f",
                    request.conversion_rate, implied,
                )

        return MassBalanceEvent(
            event_type=request.event_type,
            parent_chain_ids=list(request.parent_chain_ids),
            child_chain_ids=list(request.child_chain_ids),
            input_quantity=request.input_quantity,
            output_quantity=request.output_quantity,
            conversion_rate=request.conversion_rate,
            waste_quantity=waste,
            process_location=request.process_location,
            process_date=request.process_date or _utcnow(),
            processed_by=request.processed_by,
            notes=request.notes,
        )

    def validate_mass_balance(self, chain_pk: str) -> MassBalanceValidation:
        """Reconcile every mass-balance event connected to a chain.

        Read-only. See :meth:`MassBalanceAnalyzer.validate`.
        """
        with self._track("validate"):
            return self._analyzer.validate(chain_pk)

    def get_chain_efficiency(
        self,
        chain_pk: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> EfficiencySummary:
        self._require_chain(chain_pk)
        return self._analyzer.chain_efficiency(chain_pk, start, end)

    def get_facility_efficiency(
        self,
        facility_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> FacilityEfficiency:
        return self._analyzer.facility_efficiency(facility_id, start, end)

    def detect_anomalies(
        self,
        facility_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[MassBalanceAnomaly]:
        return self._analyzer.detect_anomalies(facility_id, start, end)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_chain(self, chain_pk: str) -> Optional[CustodyChain]:
        return self._store.get_chain(chain_pk)

    def get_chain_by_chain_id(self, chain_id: str) -> Optional[CustodyChain]:
        return self._store.find_chain_by_chain_id(chain_id)

    def list_chains(
        self,
        status: Optional[Union[ChainStatus, str]] = None,
        product_type: Optional[str] = None,
    ) -> List[CustodyChain]:
        """List chains, optionally filtered by status and product type."""
        chains = self._store.list_chains()
        if status is not None:
            wanted = ChainStatus(status)
            chains = [c for c in chains if c.status == wanted]
        if product_type is not None:
            chains = [c for c in chains if c.product_type == product_type]
        return chains

    def list_custody_events(self, chain_pk: str) -> List[CustodyEvent]:
        self._require_chain(chain_pk)
        return self._store.list_custody_events(chain_pk)

    def list_mass_balance_events(
        self,
        chain_pk: Optional[str] = None,
    ) -> List[MassBalanceEvent]:
        return self._store.list_mass_balance_events(chain_pk)

    def rebuild_chain_state(self, chain_pk: str) -> CustodyChain:
        """Replay a chain's custody events from its creation state.

        The result matches the stored chain unless the log and the stored
        state have diverged.
        """
        chain = self._require_chain(chain_pk)
        state = chain.model_copy(update={
            "remaining_quantity": chain.total_quantity,
            "status": ChainStatus.ACTIVE,
            "updated_at": chain.created_at,
        })
        for event in self._store.list_custody_events(chain_pk):
            state = apply_custody_event(state, event)
        return state

    def get_statistics(self) -> Dict[str, Any]:
        """Return chain counts by status and event totals."""
        chains = self._store.list_chains()
        by_status = {status.value: 0 for status in ChainStatus}
        for chain in chains:
            by_status[chain.status.value] += 1
        return {
            "chains": len(chains),
            "chains_by_status": by_status,
            "custody_events": sum(
                len(self._store.list_custody_events(c.id)) for c in chains
            ),
            "mass_balance_events": len(self._store.list_mass_balance_events()),
            "provenance_entries": (
                self._provenance.entry_count if self._provenance else 0
            ),
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_chain(self, chain_pk: str) -> CustodyChain:
        chain = self._store.get_chain(chain_pk)
        if chain is None:
            raise ChainNotFound(
                f"Custody chain {chain_pk} not found", chain_id=chain_pk,
            )
        return chain

    def _append_event(
        self,
        chain: CustodyChain,
        event_type: CustodyEventType,
        business_step: str = "",
        disposition: str = "",
        quantity: Optional[float] = None,
        uom: Optional[str] = None,
        event_time: Optional[datetime] = None,
        location: Any = None,
        facility_ref: Optional[EntityRef] = None,
        recorded_by: str = "system",
        user_data: Optional[Dict[str, Any]] = None,
        mass_balance_event_id: Optional[str] = None,
    ) -> tuple:
        """Apply and append one event; must run inside a store transaction."""
        sequence = len(self._store.list_custody_events(chain.id)) + 1
        event = CustodyEvent(
            chain_id=chain.id,
            sequence=sequence,
            event_type=event_type,
            event_time=event_time or _utcnow(),
            business_step=business_step,
            disposition=disposition,
            quantity=quantity,
            uom=uom or chain.uom,
            location=location,
            facility_ref=facility_ref,
            recorded_by=recorded_by,
            user_data=dict(user_data or {}),
            mass_balance_event_id=mass_balance_event_id,
        )
        updated = apply_custody_event(chain, event)
        if updated is not chain:
            self._store.update_chain(updated)
        self._store.append_custody_event(event)
        return event, updated

    def _run_once(
        self,
        operation: str,
        idempotency_key: Optional[str],
        work: Callable[[], Any],
    ) -> tuple:
        if idempotency_key is None:
            with self._store.transaction():
                return work(), True
        return self._store.create_if_absent(f"{operation}:{idempotency_key}", work)

    @contextmanager
    def _track(self, operation: str) -> Iterator[None]:
        start_time = time.monotonic()
        try:
            yield
        except Exception as exc:
            metrics.record_ledger_operation(
                operation, type(exc).__name__, time.monotonic() - start_time,
            )
            raise
        metrics.record_ledger_operation(
            operation, "success", time.monotonic() - start_time,
        )

    def _record_provenance(
        self,
        operation: str,
        entity_id: str,
        action: str,
        payload: Any,
        user_id: str,
    ) -> None:
        if self._provenance is None:
            return
        self._provenance.record(
            entity_type=operation,
            entity_id=entity_id,
            action=action,
            data_hash=self._provenance.build_hash(
                payload.model_dump(mode="json")
                if hasattr(payload, "model_dump") else payload
            ),
            user_id=user_id,
        )


def _facility(facility_id: Optional[str]) -> Optional[EntityRef]:
    if not facility_id:
        return None
    return EntityRef(id=facility_id, type=EntityType.FACILITY)


__all__ = [
    "CustodyLedger",
    "apply_custody_event",
]

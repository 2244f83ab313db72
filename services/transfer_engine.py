from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from services.consolidation import consolidate_records
from services.models import CompletedTransfer, ExecutionSummary
from services.records import (
    DEMAND,
    PRODUCT_NUMBER,
    TRANSFER_HISTORY,
    append_history,
    copy_records,
    format_quantity,
    location_of,
    safe_float,
    split_week_key,
    variant_of,
    variant_value,
    week_of,
)
from services.selections import (
    BulkSelection,
    IndividualSelection,
    GranularSelection,
    granular_quantity,
)


# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    records: List[dict]
    history: List[dict] = field(default_factory=list)
    transfer_count: int = 0
    summary: Optional[ExecutionSummary] = None


def _reassign(record, target, timestamp, history):
    """Move a whole record to ``target``, noting the prior variant."""
    source = variant_of(record)
    amount = safe_float(record.get(DEMAND))
    record[PRODUCT_NUMBER] = variant_value(target)
    append_history(record, f"[{source} → {format_quantity(amount)} @ {timestamp}]")
    history.append({"from": source, "to": target, "amount": amount, "timestamp": timestamp})


def apply_bulk(records, selection: BulkSelection, timestamp) -> TransferResult:
    """Every record not already on the target variant is rewritten to it."""
    records = copy_records(records)
    target = selection.target_variant
    history = []
    moved_variants = []

    for record in records:
        source = variant_of(record)
        if source == target:
            continue
        if source not in moved_variants:
            moved_variants.append(source)
        _reassign(record, target, timestamp, history)

    logger.debug("Bulk transfer to %s rewrote %d records", target, len(history))
    summary = ExecutionSummary(
        transfer_type="Bulk Transfer",
        timestamp=timestamp,
        message=f"{len(moved_variants)} variants transferred to {target}",
        details=[f"All variants consolidated into: {target}"],
    )
    return TransferResult(consolidate_records(records), history, len(moved_variants), summary)


def apply_individual(records, selection: IndividualSelection, timestamp) -> TransferResult:
    """
    Rewrite each source variant's records to its mapped target.

    Pairs are applied in mapping order against the records as they stand at that
    point, so ``A -> B`` followed by ``B -> C`` ends with A's demand on C.
    """
    records = copy_records(records)
    history = []
    executed = []

    for source, target in selection.mapping.items():
        if source == target:
            continue
        matching = [r for r in records if variant_of(r) == source]
        for record in matching:
            _reassign(record, target, timestamp, history)
        executed.append(f"{source} → {target}")
        logger.debug("Individual transfer %s -> %s rewrote %d records", source, target, len(matching))

    summary = ExecutionSummary(
        transfer_type="Individual Transfers",
        timestamp=timestamp,
        message=f"{len(executed)} variant transfers executed",
        details=executed,
    )
    return TransferResult(consolidate_records(records), history, len(executed), summary)


def _find(records, variant, week, location):
    for record in records:
        if variant_of(record) == variant and week_of(record) == week and location_of(record) == location:
            return record
    return None


def apply_granular(records, selection: GranularSelection, timestamp) -> TransferResult:
    """
    Move single week/location quantities between variants.

    The source record loses exactly what the target gains; its demand is allowed
    to go negative when a custom quantity exceeds what it holds.
    """
    records = copy_records(records)
    history = []
    details = []

    for source, target, key, choice in selection.entries():
        if source == target:
            continue
        week, location = split_week_key(key)
        source_record = _find(records, source, week, location)
        if source_record is None:
            logger.debug("Granular week %s has no %s record, skipped", key, source)
            continue

        current = safe_float(source_record.get(DEMAND))
        amount = granular_quantity(choice, current)
        quantity = format_quantity(amount)

        target_record = _find(records, target, week, location)
        if target_record is None:
            target_record = copy.deepcopy(source_record)
            target_record[PRODUCT_NUMBER] = variant_value(target)
            target_record[DEMAND] = amount
            target_record[TRANSFER_HISTORY] = ""
            records.append(target_record)
        else:
            target_record[DEMAND] = safe_float(target_record.get(DEMAND)) + amount
        append_history(target_record, f"[W{week} {source} → {quantity} @ {timestamp}]")

        source_record[DEMAND] = current - amount
        append_history(source_record, f"[W{week} {quantity} transferred to {target} @ {timestamp}]")

        history.append({
            "from": source,
            "to": target,
            "amount": amount,
            "week": week,
            "sourceLocation": location,
            "timestamp": timestamp,
        })
        details.append(f"W{week} {location}: {source} → {target} ({quantity})")

    summary = ExecutionSummary(
        transfer_type="Granular Transfers",
        timestamp=timestamp,
        message=f"{len(history)} week-level transfers executed",
        details=details,
    )
    return TransferResult(consolidate_records(records), history, len(history), summary)


def apply_selection(records, selection, timestamp) -> TransferResult:
    if isinstance(selection, BulkSelection):
        return apply_bulk(records, selection, timestamp)
    if isinstance(selection, IndividualSelection):
        return apply_individual(records, selection, timestamp)
    if isinstance(selection, GranularSelection):
        return apply_granular(records, selection, timestamp)
    raise TypeError(f"Unsupported selection type: {type(selection).__name__}")


def record_completion(
        existing: Optional[CompletedTransfer],
        dfu_code,
        before_records,
        selection,
        result: TransferResult,
        completed_by,
        timestamp,
) -> CompletedTransfer:
    """
    Completed-transfer entry after an execution.

    The pre-transfer slice is captured only when the DFU has no entry yet; an
    existing capture is carried forward unchanged so undo always returns to the
    state before the first transfer.
    """
    if existing is not None and existing.original_records is not None:
        original = existing.original_records
        history = list(existing.transfer_history)
    else:
        original = copy_records(before_records)
        history = []

    entry = CompletedTransfer(
        dfu_code=dfu_code,
        transfer_type=selection.kind,
        timestamp=timestamp,
        completed_by=completed_by or "",
        transfer_count=result.transfer_count,
        transfer_history=history + result.history,
        original_variant_count=len({variant_of(r) for r in before_records if variant_of(r)}),
        summary=result.summary,
        original_records=original,
    )
    if isinstance(selection, BulkSelection):
        entry.target_variant = selection.target_variant
    elif isinstance(selection, IndividualSelection):
        entry.transfers = dict(selection.mapping)
    return entry

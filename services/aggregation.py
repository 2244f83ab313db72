from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from services.records import (
    DEMAND,
    DESCRIPTION,
    DEFAULT_DESCRIPTION,
    PLANT,
    LINE,
    dfu_of,
    variant_of,
    week_of,
    location_of,
    week_key,
    safe_float,
    to_comparable_string,
)


# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class WeeklyBucket:
    week_number: str
    source_location: str
    demand: float = 0.0
    record_count: int = 0

    def to_dict(self):
        return {
            "weekNumber": self.week_number,
            "sourceLocation": self.source_location,
            "demand": self.demand,
            "recordCount": self.record_count,
        }


@dataclass
class VariantSummary:
    variant: str
    total_demand: float = 0.0
    record_count: int = 0
    description: str = DEFAULT_DESCRIPTION
    weekly: Dict[str, WeeklyBucket] = field(default_factory=dict)
    extras: Dict[str, object] = field(default_factory=dict)

    def to_dict(self):
        return {
            "totalDemand": self.total_demand,
            "recordCount": self.record_count,
            "partDescription": self.description,
            "weeklyRecords": {k: b.to_dict() for k, b in self.weekly.items()},
            "extras": dict(self.extras),
        }


@dataclass
class DfuAggregate:
    dfu_code: str
    variants: List[str] = field(default_factory=list)
    variant_demand: Dict[str, VariantSummary] = field(default_factory=dict)
    total_records: int = 0
    plant_locations: List[str] = field(default_factory=list)
    production_lines: List[str] = field(default_factory=list)
    plant_filter: Optional[str] = None
    line_filter: Optional[str] = None
    is_completed: bool = False
    completion_info: Optional[dict] = None

    @property
    def total_demand(self):
        return sum(v.total_demand for v in self.variant_demand.values())

    def to_dict(self):
        return {
            "dfuCode": self.dfu_code,
            "variants": list(self.variants),
            "variantDemand": {k: v.to_dict() for k, v in self.variant_demand.items()},
            "totalRecords": self.total_records,
            "totalDemand": self.total_demand,
            "plantLocations": list(self.plant_locations),
            "productionLines": list(self.production_lines),
            "plantLocation": self.plant_filter,
            "productionLine": self.line_filter,
            "isCompleted": self.is_completed,
            "completionInfo": self.completion_info,
        }


@dataclass(frozen=True)
class FilterOptions:
    plant_locations: List[str]
    production_lines: List[str]

    def to_dict(self):
        return {"plantLocations": list(self.plant_locations), "productionLines": list(self.production_lines)}


def _distinct(values):
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def filter_options(records) -> FilterOptions:
    """Distinct sorted plant and line values over all records, ignoring any active filter."""
    plants = {to_comparable_string(r.get(PLANT)) for r in records}
    lines = {to_comparable_string(r.get(LINE)) for r in records}
    return FilterOptions(
        plant_locations=sorted(p for p in plants if p),
        production_lines=sorted(ln for ln in lines if ln),
    )


def filter_records(records, plant=None, line=None):
    plant = to_comparable_string(plant)
    line = to_comparable_string(line)
    if not plant and not line:
        return list(records)
    return [
        r for r in records
        if (not plant or to_comparable_string(r.get(PLANT)) == plant)
        and (not line or to_comparable_string(r.get(LINE)) == line)
    ]


def group_by_dfu(records):
    """Group records by trimmed DFU code; records with a blank DFU are dropped."""
    grouped: Dict[str, list] = {}
    for record in records:
        code = dfu_of(record)
        if code:
            grouped.setdefault(code, []).append(record)
    return grouped


def summarise_variant(variant, records) -> VariantSummary:
    summary = VariantSummary(variant=variant)
    for record in records:
        demand = safe_float(record.get(DEMAND))
        summary.total_demand += demand
        summary.record_count += 1

        key = week_key(week_of(record), location_of(record))
        bucket = summary.weekly.get(key)
        if bucket is None:
            bucket = WeeklyBucket(week_number=week_of(record), source_location=location_of(record))
            summary.weekly[key] = bucket
        bucket.demand += demand
        bucket.record_count += 1

    description = records[0].get(DESCRIPTION) if records else None
    summary.description = to_comparable_string(description) or DEFAULT_DESCRIPTION
    return summary


def build_dfu_aggregate(dfu_code, records, plant=None, line=None, completion=None) -> DfuAggregate:
    variants = _distinct(variant_of(r) for r in records)
    by_variant: Dict[str, list] = {v: [] for v in variants}
    for record in records:
        code = variant_of(record)
        if code:
            by_variant[code].append(record)

    return DfuAggregate(
        dfu_code=dfu_code,
        variants=variants,
        variant_demand={v: summarise_variant(v, by_variant[v]) for v in variants},
        total_records=len(records),
        plant_locations=_distinct(to_comparable_string(r.get(PLANT)) for r in records),
        production_lines=_distinct(to_comparable_string(r.get(LINE)) for r in records),
        plant_filter=to_comparable_string(plant) or None,
        line_filter=to_comparable_string(line) or None,
        is_completed=completion is not None,
        completion_info=completion,
    )


def aggregate_dfus(
        records,
        plant=None,
        line=None,
        completed=None,
        supplementary=None,
        multi_variant_only=False,
) -> Dict[str, DfuAggregate]:
    """
    Group flat demand records into DFU -> variant -> weekly bucket aggregates.

    :param records: Flat record sequence.
    :param plant: Optional Production Plant filter value.
    :param line: Optional Production Line filter value.
    :param completed: Mapping of DFU code to CompletedTransfer, used to flag finished DFUs.
    :param supplementary: Optional SupplementaryData used to enrich variant summaries.
    :param multi_variant_only: Keep only DFUs with several variants or a completed transfer.
    :return: Mapping of DFU code to DfuAggregate, in first-seen order.
    """
    completed = completed or {}
    filtered = filter_records(records, plant, line)
    if (plant or line) and not filtered:
        logger.warning("No records match plant=%r line=%r", plant, line)

    aggregates = {}
    for dfu_code, dfu_records in group_by_dfu(filtered).items():
        entry = completed.get(dfu_code)
        completion = entry.metadata() if entry is not None else None
        aggregate = build_dfu_aggregate(dfu_code, dfu_records, plant, line, completion)

        if multi_variant_only and len(aggregate.variants) < 2 and not aggregate.is_completed:
            continue
        if supplementary is not None:
            for variant, summary in aggregate.variant_demand.items():
                summary.extras.update(supplementary.details_for(dfu_code, variant))
        aggregates[dfu_code] = aggregate

    logger.debug("Aggregated %d records into %d DFUs", len(filtered), len(aggregates))
    return aggregates


def search_aggregates(aggregates, term):
    """Case-insensitive substring match on DFU codes and variant codes."""
    term = to_comparable_string(term).lower()
    if not term:
        return dict(aggregates)
    return {
        code: agg for code, agg in aggregates.items()
        if term in code.lower() or any(term in v.lower() for v in agg.variants)
    }

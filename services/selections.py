"""
Pending transfer selections.

A selection is one of three explicit shapes. The book keeps at most one active
shape per DFU: setting a shape clears whatever else was pending for that DFU.
Nothing here is persisted; selections live only until executed or cancelled.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from services.exceptions import ValidationError
from services.records import to_comparable_string, safe_float

BULK = "bulk"
INDIVIDUAL = "individual"
GRANULAR = "granular"
GRANULAR_QUANTITY = "granular_quantity"


@dataclass(frozen=True)
class BulkSelection:
    target_variant: str
    kind: str = field(default=BULK, init=False)

    def is_empty(self):
        return not self.target_variant

    def to_dict(self):
        return {"type": self.kind, "targetVariant": self.target_variant}


@dataclass(frozen=True)
class IndividualSelection:
    mapping: Dict[str, str]
    kind: str = field(default=INDIVIDUAL, init=False)

    def is_empty(self):
        return not self.mapping

    def to_dict(self):
        return {"type": self.kind, "transfers": dict(self.mapping)}


@dataclass(frozen=True)
class WeekChoice:
    selected: bool = True
    custom_quantity: Optional[float] = None

    def to_dict(self):
        return {"selected": self.selected, "customQuantity": self.custom_quantity}


@dataclass(frozen=True)
class GranularSelection:
    # source variant -> target variant -> week key -> choice
    weeks: Dict[str, Dict[str, Dict[str, WeekChoice]]]
    kind: str = field(default=GRANULAR, init=False)

    def is_empty(self):
        return not any(
            choice.selected
            for targets in self.weeks.values()
            for week_choices in targets.values()
            for choice in week_choices.values()
        )

    def entries(self):
        """Yield (source, target, week_key, choice) for every selected week."""
        for source, targets in self.weeks.items():
            for target, week_choices in targets.items():
                for key, choice in week_choices.items():
                    if choice.selected:
                        yield source, target, key, choice

    def to_dict(self):
        return {
            "type": self.kind,
            "granularTransfers": {
                s: {t: {k: c.to_dict() for k, c in wk.items()} for t, wk in targets.items()}
                for s, targets in self.weeks.items()
            },
        }


Selection = Union[BulkSelection, IndividualSelection, GranularSelection]


def _custom_quantity(value):
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Custom quantity {value!r} is not a number", operation="transfer")


def parse_selection(payload, dfu_code=None):
    """
    Build a selection from a JSON payload.

    Accepted shapes::

        {"type": "bulk", "targetVariant": "B"}
        {"type": "individual", "transfers": {"A": "B"}}
        {"type": "granular", "granularTransfers": {"A": {"B": {"3-PlantX": {"selected": true, "customQuantity": 5}}}}}
    """
    if not isinstance(payload, dict):
        raise ValidationError("Selection must be an object", dfu_code, "transfer")

    kind = to_comparable_string(payload.get("type")).lower()
    if kind == BULK:
        target = to_comparable_string(payload.get("targetVariant"))
        if not target:
            raise ValidationError("Bulk transfer needs a target variant", dfu_code, "transfer")
        return BulkSelection(target)

    if kind == INDIVIDUAL:
        raw = payload.get("transfers") or {}
        if not isinstance(raw, dict):
            raise ValidationError("Individual transfers must map source to target", dfu_code, "transfer")
        mapping = {
            to_comparable_string(src): to_comparable_string(dst)
            for src, dst in raw.items()
            if to_comparable_string(src) and to_comparable_string(dst)
        }
        return IndividualSelection(mapping)

    if kind == GRANULAR:
        raw = payload.get("granularTransfers") or {}
        if not isinstance(raw, dict):
            raise ValidationError("Granular transfers must be nested objects", dfu_code, "transfer")
        weeks = {}
        for source, targets in raw.items():
            for target, week_choices in (targets or {}).items():
                for key, choice in (week_choices or {}).items():
                    choice = choice or {}
                    weeks.setdefault(to_comparable_string(source), {}).setdefault(
                        to_comparable_string(target), {}
                    )[str(key)] = WeekChoice(
                        selected=bool(choice.get("selected", True)),
                        custom_quantity=_custom_quantity(choice.get("customQuantity")),
                    )
        return GranularSelection(weeks)

    raise ValidationError(f"Unknown transfer type {payload.get('type')!r}", dfu_code, "transfer")


class PendingSelections:
    """Per-DFU pending selections. Setting one shape for a DFU clears the others."""

    def __init__(self):
        self._lock = threading.Lock()
        self._bulk: Dict[str, BulkSelection] = {}
        self._individual: Dict[str, Dict[str, str]] = {}
        self._granular: Dict[str, Dict[str, Dict[str, Dict[str, WeekChoice]]]] = {}

    def _drop(self, dfu_code):
        self._bulk.pop(dfu_code, None)
        self._individual.pop(dfu_code, None)
        self._granular.pop(dfu_code, None)

    def set(self, dfu_code, selection: Selection):
        dfu_code = to_comparable_string(dfu_code)
        with self._lock:
            self._drop(dfu_code)
            if selection.is_empty():
                return
            if isinstance(selection, BulkSelection):
                self._bulk[dfu_code] = selection
            elif isinstance(selection, IndividualSelection):
                self._individual[dfu_code] = dict(selection.mapping)
            else:
                self._granular[dfu_code] = {
                    s: {t: dict(wk) for t, wk in targets.items()} for s, targets in selection.weeks.items()
                }

    def set_individual(self, dfu_code, source, target):
        """Map one source variant; any bulk choice or granular weeks for that source are dropped."""
        dfu_code = to_comparable_string(dfu_code)
        source = to_comparable_string(source)
        target = to_comparable_string(target)
        with self._lock:
            self._bulk.pop(dfu_code, None)
            self._granular.get(dfu_code, {}).pop(source, None)
            mapping = self._individual.setdefault(dfu_code, {})
            if target:
                mapping[source] = target
            else:
                mapping.pop(source, None)

    def toggle_week(self, dfu_code, source, target, key, custom_quantity=None):
        """
        Toggle one granular week. Returns True when the week is now selected.

        A week that is already selected is only deselected when no custom
        quantity comes with the toggle; otherwise it takes the new quantity.
        """
        dfu_code = to_comparable_string(dfu_code)
        source = to_comparable_string(source)
        target = to_comparable_string(target)
        quantity = _custom_quantity(custom_quantity)
        with self._lock:
            self._bulk.pop(dfu_code, None)
            self._individual.get(dfu_code, {}).pop(source, None)
            week_choices = self._granular.setdefault(dfu_code, {}).setdefault(source, {}).setdefault(target, {})
            if key in week_choices and quantity is None:
                del week_choices[key]
                return False
            week_choices[key] = WeekChoice(True, quantity)
            return True

    def set_week_quantity(self, dfu_code, source, target, key, custom_quantity):
        """
        Change the quantity of a selected week; blank means the full demand.

        Returns False, changing nothing, when the week is not selected.
        """
        dfu_code = to_comparable_string(dfu_code)
        source = to_comparable_string(source)
        target = to_comparable_string(target)
        quantity = _custom_quantity(custom_quantity)
        with self._lock:
            week_choices = self._granular.get(dfu_code, {}).get(source, {}).get(target, {})
            if key not in week_choices:
                return False
            week_choices[key] = WeekChoice(True, quantity)
            return True

    def get(self, dfu_code) -> Optional[Selection]:
        """
        The DFU's active selection, checking bulk, then individual, then granular.

        Only the first non-empty shape is returned.
        """
        dfu_code = to_comparable_string(dfu_code)
        with self._lock:
            bulk = self._bulk.get(dfu_code)
            if bulk is not None and not bulk.is_empty():
                return bulk
            mapping = self._individual.get(dfu_code)
            if mapping:
                return IndividualSelection(dict(mapping))
            weeks = self._granular.get(dfu_code)
            if weeks:
                granular = GranularSelection(
                    {s: {t: dict(wk) for t, wk in targets.items()} for s, targets in weeks.items()}
                )
                if not granular.is_empty():
                    return granular
        return None

    def clear(self, dfu_code):
        dfu_code = to_comparable_string(dfu_code)
        with self._lock:
            self._drop(dfu_code)

    def clear_all(self):
        with self._lock:
            self._bulk.clear()
            self._individual.clear()
            self._granular.clear()

    def to_dict(self):
        with self._lock:
            codes = set(self._bulk) | set(self._individual) | set(self._granular)
        pending = {}
        for code in sorted(codes):
            selection = self.get(code)
            if selection is not None:
                pending[code] = selection.to_dict()
        return pending


def granular_quantity(choice: WeekChoice, current_demand):
    """Quantity a granular week moves: the custom quantity when given, else the full current demand."""
    if choice.custom_quantity is not None:
        return choice.custom_quantity
    return safe_float(current_demand)

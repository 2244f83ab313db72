import pytest

from services.exceptions import ValidationError
from services.selections import (
    BulkSelection,
    GranularSelection,
    IndividualSelection,
    PendingSelections,
    WeekChoice,
    granular_quantity,
    parse_selection,
)


class TestParseSelection:

    def test_bulk(self):
        selection = parse_selection({"type": "bulk", "targetVariant": "B"})
        assert selection == BulkSelection("B")

    def test_bulk_requires_target(self):
        with pytest.raises(ValidationError):
            parse_selection({"type": "bulk"}, "D1")

    def test_individual_normalises_codes(self):
        selection = parse_selection({"type": "individual", "transfers": {1001.0: " 1002 ", "": "X"}})
        assert selection.mapping == {"1001": "1002"}

    def test_granular(self):
        selection = parse_selection({
            "type": "granular",
            "granularTransfers": {"A": {"B": {"3-PlantX": {"selected": True, "customQuantity": "5"}}}},
        })
        assert list(selection.entries()) == [("A", "B", "3-PlantX", WeekChoice(True, 5.0))]

    def test_bad_custom_quantity(self):
        with pytest.raises(ValidationError):
            parse_selection({
                "type": "granular",
                "granularTransfers": {"A": {"B": {"3-PlantX": {"customQuantity": "lots"}}}},
            })

    @pytest.mark.parametrize("payload", [None, "bulk", {"type": "sideways"}])
    def test_unknown_shapes_are_rejected(self, payload):
        with pytest.raises(ValidationError):
            parse_selection(payload)


class TestPendingSelections:

    def test_setting_one_shape_clears_the_others(self):
        pending = PendingSelections()
        pending.set("D1", IndividualSelection({"A": "B"}))
        pending.set("D1", BulkSelection("C"))
        assert pending.get("D1") == BulkSelection("C")

        pending.set("D1", IndividualSelection({"A": "B"}))
        assert pending.get("D1") == IndividualSelection({"A": "B"})

    def test_set_individual_drops_bulk(self):
        pending = PendingSelections()
        pending.set("D1", BulkSelection("C"))
        pending.set_individual("D1", "A", "B")
        assert pending.get("D1") == IndividualSelection({"A": "B"})

        pending.set_individual("D1", "A", "")
        assert pending.get("D1") is None

    def test_toggle_week(self):
        pending = PendingSelections()
        assert pending.toggle_week("D1", "A", "B", "3-PlantX", 5) is True
        selection = pending.get("D1")
        assert isinstance(selection, GranularSelection)
        assert list(selection.entries()) == [("A", "B", "3-PlantX", WeekChoice(True, 5.0))]

        assert pending.toggle_week("D1", "A", "B", "3-PlantX") is False
        assert pending.get("D1") is None

    def test_toggle_with_quantity_updates_a_selected_week(self):
        pending = PendingSelections()
        pending.toggle_week("D1", "A", "B", "3-PlantX")
        assert pending.toggle_week("D1", "A", "B", "3-PlantX", "7") is True
        assert list(pending.get("D1").entries()) == [("A", "B", "3-PlantX", WeekChoice(True, 7.0))]

    def test_set_week_quantity(self):
        pending = PendingSelections()
        assert pending.set_week_quantity("D1", "A", "B", "3-PlantX", 4) is False
        assert pending.get("D1") is None

        pending.toggle_week("D1", "A", "B", "3-PlantX", 5)
        assert pending.set_week_quantity("D1", "A", "B", "3-PlantX", 2) is True
        assert list(pending.get("D1").entries()) == [("A", "B", "3-PlantX", WeekChoice(True, 2.0))]

        pending.set_week_quantity("D1", "A", "B", "3-PlantX", "")
        assert list(pending.get("D1").entries()) == [("A", "B", "3-PlantX", WeekChoice(True, None))]

        with pytest.raises(ValidationError):
            pending.set_week_quantity("D1", "A", "B", "3-PlantX", "lots")

    def test_clear(self):
        pending = PendingSelections()
        pending.set("D1", BulkSelection("B"))
        pending.set("D2", BulkSelection("C"))
        pending.clear("D1")
        assert pending.get("D1") is None
        assert pending.to_dict() == {"D2": {"type": "bulk", "targetVariant": "C"}}

        pending.clear_all()
        assert pending.to_dict() == {}


def test_granular_quantity_defaults_to_full_demand():
    assert granular_quantity(WeekChoice(True, None), "20") == 20.0
    assert granular_quantity(WeekChoice(True, 5.0), 20) == 5.0

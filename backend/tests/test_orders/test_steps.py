"""Tests for the fulfillment checklist definitions and evidence gating."""

import pytest

from freshdrop.services.orders.enums import TOTAL_STEPS
from freshdrop.services.orders.steps import (
    FULFILLMENT_STEPS,
    NavigationTarget,
    PhotoUpload,
    StepEvidence,
    get_step,
    missing_evidence,
    photo_gated_steps,
    resolve_navigation_address,
)


class TestChecklist:
    def test_thirteen_ordered_steps(self) -> None:
        assert [step.number for step in FULFILLMENT_STEPS] == list(range(1, TOTAL_STEPS + 1))

    def test_only_label_and_handoff_need_photos(self) -> None:
        assert photo_gated_steps() == [4, 13]

    def test_bag_count_step(self) -> None:
        assert [s.number for s in FULFILLMENT_STEPS if s.requires_bag_count] == [3]

    def test_last_step_is_terminal(self) -> None:
        assert get_step(TOTAL_STEPS).is_terminal
        assert not get_step(12).is_terminal

    @pytest.mark.parametrize("number", [0, 14, 99])
    def test_unknown_step(self, number: int) -> None:
        with pytest.raises(ValueError, match="outside the checklist"):
            get_step(number)

    def test_to_dict(self) -> None:
        data = get_step(4).to_dict()
        assert data["number"] == 4
        assert data["requires_photo"] is True
        assert data["phase"] == "pickup"
        assert isinstance(data["instructions"], list)


class TestMissingEvidence:
    def test_ungated_step_needs_nothing(self) -> None:
        assert missing_evidence(get_step(1), None) == []

    def test_photo_step_without_photo(self) -> None:
        assert missing_evidence(get_step(4), StepEvidence()) == ["photo"]

    def test_photo_reference_satisfies_gate(self) -> None:
        evidence = StepEvidence(photo_reference="https://cdn.example/p.jpg")
        assert missing_evidence(get_step(13), evidence) == []

    def test_uploaded_photo_satisfies_gate(self) -> None:
        evidence = StepEvidence(photo=PhotoUpload(content=b"img", content_type="image/jpeg"))
        assert missing_evidence(get_step(4), evidence) == []

    @pytest.mark.parametrize("bag_count", [None, 0])
    def test_bag_count_required(self, bag_count) -> None:
        assert missing_evidence(get_step(3), StepEvidence(bag_count=bag_count)) == ["bag_count"]

    def test_bag_count_given(self) -> None:
        assert missing_evidence(get_step(3), StepEvidence(bag_count=3)) == []

    @pytest.mark.parametrize("reference", ["", "   "])
    def test_blank_reference_is_not_a_photo(self, reference) -> None:
        evidence = StepEvidence(photo_reference=reference)
        assert not evidence.has_photo
        assert evidence.reference is None
        assert missing_evidence(get_step(4), evidence) == ["photo"]

    def test_reference_is_stripped(self) -> None:
        assert StepEvidence(photo_reference=" https://e.test/a.jpg\n").reference == "https://e.test/a.jpg"


class TestNavigation:
    def test_pickup_steps_point_at_pickup(self) -> None:
        step = get_step(1)
        assert step.navigation == NavigationTarget.PICKUP
        assert resolve_navigation_address(step, "1 Pickup St", "2 Drop Ave") == "1 Pickup St"

    def test_delivery_steps_point_at_delivery(self) -> None:
        assert resolve_navigation_address(get_step(11), "1 Pickup St", "2 Drop Ave") == (
            "2 Drop Ave"
        )

    def test_delivery_falls_back_to_pickup(self) -> None:
        assert resolve_navigation_address(get_step(12), "1 Pickup St", None) == "1 Pickup St"

    def test_no_navigation(self) -> None:
        assert resolve_navigation_address(get_step(7), "1 Pickup St", "2 Drop Ave") is None

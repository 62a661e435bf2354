from __future__ import annotations

from datetime import datetime

import pytest

from stratus.constants import StatusCode
from stratus.core.exceptions import ValidationError
from stratus.task.model import Event, Identifier, TaskAttributes, empty_status

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


class TestIdentifier:
    def test_long_form(self):
        long = Identifier("train").long()
        assert long.startswith("stratus-train-")
        assert len(long) == len("stratus-train-") + 8

    def test_long_is_deterministic(self):
        assert Identifier("train").long() == Identifier("train").long()
        assert Identifier("train").long() != Identifier("infer").long()

    def test_parse_roundtrip(self):
        identifier = Identifier("my-task-1")
        assert Identifier.parse(identifier.long()) == identifier

    def test_parse_rejects_wrong_digest(self):
        with pytest.raises(ValidationError):
            Identifier.parse("stratus-train-00000000")

    @pytest.mark.parametrize("value", ["train", "other-train-1a2b3c4d", ""])
    def test_parse_rejects_short_forms(self, value: str):
        with pytest.raises(ValidationError):
            Identifier.parse(value)

    @pytest.mark.parametrize("name", ["Train", "-x", "x-", "a_b", ""])
    def test_invalid_names(self, name: str):
        with pytest.raises(ValidationError):
            Identifier(name)

    def test_compact(self):
        compact = Identifier("a-very-long-task-name-for-azure").compact()
        assert len(compact) == 24
        assert compact.isalnum()
        assert compact.islower()
        assert compact == Identifier("a-very-long-task-name-for-azure").compact()

    def test_compact_distinguishes_similar_names(self):
        assert Identifier("ab").compact() != Identifier("a-b").compact()


class TestEvent:
    def test_render(self):
        event = Event(
            time=datetime(2024, 3, 1, 12, 30, 5),
            code="Launching",
            description=("Launching a new EC2 instance", "Status: Failed"),
        )
        assert event.render() == (
            "2024-03-01 12:30:05: Launching\nLaunching a new EC2 instance\nStatus: Failed"
        )

    def test_render_without_description(self):
        assert Event(time=datetime(2024, 1, 1), code="X").render() == "2024-01-01 00:00:00: X"


class TestTaskAttributes:
    def test_on_demand(self):
        assert TaskAttributes().on_demand
        assert not TaskAttributes(spot=0).on_demand
        assert not TaskAttributes(spot=0.5).on_demand

    def test_empty_status(self):
        assert empty_status() == {
            StatusCode.ACTIVE: 0,
            StatusCode.SUCCEEDED: 0,
            StatusCode.FAILED: 0,
        }

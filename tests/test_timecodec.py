import pytest

from errors import ValidationError
from timecodec import epoch_to_human, human_to_epoch


class TestHumanToEpoch:
    def test_utc_designator(self) -> None:
        assert human_to_epoch("2024-01-01T00:00:00Z") == 1704067200

    def test_offset_is_honoured(self) -> None:
        assert human_to_epoch("2024-01-01T02:00:00+02:00") == 1704067200

    def test_naive_timestamp_is_utc(self) -> None:
        assert human_to_epoch("2024-01-02T00:00:00") == 1704153600

    def test_milliseconds_are_dropped(self) -> None:
        assert human_to_epoch("2024-01-01T00:00:00.987Z") == 1704067200

    @pytest.mark.parametrize("value", ["", "   ", "yesterday", "2024-13-01T00:00:00Z", None])
    def test_malformed_input(self, value) -> None:
        with pytest.raises(ValidationError):
            human_to_epoch(value)


class TestEpochToHuman:
    def test_millisecond_iso_form(self) -> None:
        assert epoch_to_human(1704067200) == "2024-01-01T00:00:00.000Z"

    @pytest.mark.parametrize(
        ("start", "end"),
        [
            ("2024-01-01T00:00:00Z", "2024-01-02T00:00:00Z"),
            ("2023-06-30T23:59:59.500Z", "2023-07-01T00:00:00Z"),
            ("2030-02-28T08:15:00+05:30", "2030-03-01T00:00:00+00:00"),
        ],
    )
    def test_round_trip_keeps_the_instant(self, start: str, end: str) -> None:
        for value in (start, end):
            epoch = human_to_epoch(value)
            assert human_to_epoch(epoch_to_human(epoch)) == epoch
        assert human_to_epoch(start) < human_to_epoch(end)

import pytest

from errors import ResultUnparseable
from result_extraction import (
    UNKNOWN_POSITION,
    BoardingPositionExtractor,
    ExtractionStrategy,
)


@pytest.mark.parametrize(
    "text, expected, source",
    [
        ("You're checked in!\nBoarding position: B23", "B23", "labelled"),
        ("boarding position a5", "A5", "labelled"),
        ("Group A Position 5 (seat C12 pending)", "A5", "group"),
        ("Group: C  Position: 44", "C44", "group"),
        ("Your position: C7", "C7", "position"),
        ("Passenger SMITH  B12  Gate 4", "B12", "bare_token"),
    ],
)
def test_extraction_precedence(text, expected, source) -> None:
    assert BoardingPositionExtractor().extract_with_source(text) == (expected, source)


def test_labelled_value_wins_over_other_tokens() -> None:
    text = "Flight C12 departs. Boarding position: A30"
    assert BoardingPositionExtractor().extract(text) == "A30"


@pytest.mark.parametrize("text", ["", "Check-in complete", "Boarding position: D12", "a12 lowercase token"])
def test_unparseable_pages_raise(text) -> None:
    with pytest.raises(ResultUnparseable):
        BoardingPositionExtractor().extract(text)


def test_custom_strategies_are_tried_in_order() -> None:
    extractor = BoardingPositionExtractor(
        [
            ExtractionStrategy("wrong-shape", lambda _text: "Z99"),
            ExtractionStrategy("fixed", lambda _text: "B2"),
        ]
    )
    assert extractor.extract_with_source("anything") == ("B2", "fixed")


def test_unknown_marker_is_not_a_valid_position() -> None:
    extractor = BoardingPositionExtractor([ExtractionStrategy("unknown", lambda _text: UNKNOWN_POSITION)])
    with pytest.raises(ResultUnparseable):
        extractor.extract("whatever")

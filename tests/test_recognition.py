"""Tests for candidate parsing and selection."""

import pytest

from scalecam.recognition import (
    AcceptedReading,
    Candidate,
    CandidateSelector,
    ParseMode,
    extract_reply_value,
    format_reading,
    parse_permissive,
    parse_reading,
    parse_strict,
)


# ---------------------------------------------------------------------------
# Strict parsing
# ---------------------------------------------------------------------------


class TestParseStrict:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("12.301", 12.301),
            ("0.000", 0.0),
            ("0.125", 0.125),
            ("  7.500\n", 7.5),
            ("100.001", 100.001),
        ],
    )
    def test_accepts_readout_format(self, text, expected):
        assert parse_strict(text) == expected

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "   ",
            "012.301",  # leading zero on multi-digit integer part
            "00.123",
            "12.3",  # too few fractional digits
            "12.3010",  # too many
            "12.",
            ".301",
            "12",
            "-12.301",
            "+12.301",
            "12.301kg",
            "x12.301",
            "12,301",
            "12.3O1",  # letter O
            "1 2.301",
        ],
    )
    def test_rejects_everything_else(self, text):
        assert parse_strict(text) is None

    def test_none_safe(self):
        assert parse_strict(None) is None


# ---------------------------------------------------------------------------
# Permissive parsing
# ---------------------------------------------------------------------------


class TestParsePermissive:
    def test_finds_embedded_number(self):
        assert parse_permissive("val=12.33cm") == 12.33

    def test_first_match_wins(self):
        assert parse_permissive("1.5 then 2.75") == 1.5

    def test_variable_fraction_length(self):
        assert parse_permissive("12.3") == 12.3
        assert parse_permissive("12.3010") == 12.301

    def test_leading_zero_allowed(self):
        assert parse_permissive("012.301") == 12.301

    def test_requires_decimal_point(self):
        assert parse_permissive("1234") is None
        assert parse_permissive("12.") is None
        assert parse_permissive("") is None

    def test_mode_dispatch(self):
        assert parse_reading("w 12.30 g", ParseMode.PERMISSIVE) == 12.3
        assert parse_reading("w 12.30 g", ParseMode.STRICT) is None
        assert parse_reading("12.300") == 12.3

    def test_reply_mode(self):
        assert parse_reading("The display shows 12.3456", ParseMode.REPLY) == 12.3456
        assert parse_reading("12", ParseMode.REPLY) == 12.0
        assert parse_reading("12", ParseMode.STRICT) is None
        assert parse_reading("no reading", ParseMode.REPLY) is None


# ---------------------------------------------------------------------------
# Free-text replies
# ---------------------------------------------------------------------------


class TestExtractReplyValue:
    def test_number_in_sentence(self):
        assert extract_reply_value("The display shows 12.301.") == 12.301

    def test_whole_reply_fallback(self):
        assert extract_reply_value("  42\n") == 42.0

    def test_no_number(self):
        assert extract_reply_value("I cannot see a display.") is None
        assert extract_reply_value("") is None

    def test_non_finite_rejected(self):
        assert extract_reply_value("nan") is None
        assert extract_reply_value("inf") is None


class TestFormatReading:
    def test_three_decimals(self):
        assert format_reading(12.3) == "12.300"
        assert format_reading(0.0) == "0.000"

    @pytest.mark.parametrize("text", ["0.000", "0.001", "12.301", "999.999", "123456.789"])
    def test_strict_values_round_trip(self, text):
        value = parse_strict(text)
        assert format_reading(value) == text
        assert parse_strict(format_reading(value)) == value


# ---------------------------------------------------------------------------
# CandidateSelector
# ---------------------------------------------------------------------------


class TestCandidateSelector:
    @pytest.fixture
    def selector(self):
        return CandidateSelector(confidence_threshold=0.6)

    def test_most_confident_valid_candidate_wins(self, selector):
        """Unparsable text loses regardless of confidence."""
        candidates = [
            Candidate("9.1", 0.5),
            Candidate("12.301", 0.9),
            Candidate("bad", 0.99),
        ]
        result = selector.select(candidates, timestamp=3.0)

        assert isinstance(result, AcceptedReading)
        assert result.value == 12.301
        assert result.confidence == 0.9
        assert result.timestamp == 3.0

    def test_all_below_threshold(self, selector):
        assert selector.select([Candidate("12.301", 0.5), Candidate("1.000", 0.59)], 0.0) is None

    def test_all_unparsable(self, selector):
        assert selector.select([Candidate("abc", 0.9), Candidate("12.3", 0.95)], 0.0) is None

    def test_empty_batch(self, selector):
        assert selector.select([], 0.0) is None

    def test_tie_goes_to_first(self, selector):
        result = selector.select([Candidate("1.111", 0.8), Candidate("2.222", 0.8)], 0.0)
        assert result.value == 1.111

    def test_threshold_is_inclusive(self, selector):
        result = selector.select([Candidate("1.111", 0.6)], 0.0)
        assert result is not None

    def test_default_requires_full_confidence(self):
        selector = CandidateSelector()
        assert selector.select([Candidate("1.111", 0.99)], 0.0) is None
        assert selector.select([Candidate("1.111", 1.0)], 0.0).value == 1.111

    def test_threshold_clamped(self):
        selector = CandidateSelector(confidence_threshold=1.5)
        assert selector.confidence_threshold == 1.0
        selector.confidence_threshold = -0.2
        assert selector.confidence_threshold == 0.0

    def test_permissive_mode(self):
        selector = CandidateSelector(confidence_threshold=0.5, parse_mode=ParseMode.PERMISSIVE)
        result = selector.select([Candidate("W: 12.3 kg", 0.7)], 0.0)
        assert result.value == 12.3

    def test_box_carried_through(self, selector):
        box = (0.1, 0.2, 0.3, 0.4)
        result = selector.select([Candidate("5.000", 0.9, box=box)], 0.0)
        assert result.box == box
        assert result.text == "5.000"

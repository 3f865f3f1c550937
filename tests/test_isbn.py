"""Tests for ISBN candidate extraction and checksum validation."""

import pytest

from book_organizer import (clean_candidate, extract_candidates, first_valid_isbn,
                            is_valid_isbn, is_valid_isbn10, is_valid_isbn13)


class TestChecksums:
    """ISBN-10 and ISBN-13 checksum rules."""

    @pytest.mark.parametrize("isbn", ["0306406152", "080442957X", "9780306406157", "9780262033848"])
    def test_valid_examples(self, isbn):
        """Known-good ISBNs pass."""
        assert is_valid_isbn(isbn)

    @pytest.mark.parametrize("isbn", ["0306406153", "9780306406158", "0804429571"])
    def test_bad_check_digit(self, isbn):
        """A wrong check digit fails."""
        assert not is_valid_isbn(isbn)

    def test_wrong_length(self):
        """Only 10 or 13 significant characters are considered."""
        assert not is_valid_isbn("030640615")
        assert not is_valid_isbn("03064061520")
        assert not is_valid_isbn("")

    def test_x_only_in_last_position(self):
        """X counts as 10 only as the ISBN-10 check character."""
        assert not is_valid_isbn10("X306406152")
        assert is_valid_isbn10("080442957X")

    def test_isbn13_rejects_x(self):
        """ISBN-13 never contains X."""
        assert not is_valid_isbn13("978030640615X")

    def test_separators_ignored(self):
        """Hyphens and spaces do not affect validity."""
        assert is_valid_isbn("978-0-306-40615-7")
        assert is_valid_isbn("0 306 40615 2")

    def test_lowercase_x_accepted(self):
        """A lowercase check character is normalized."""
        assert is_valid_isbn("080442957x")


class TestCandidateExtraction:
    """Regex candidate discovery in free text."""

    def test_labelled_isbn13(self):
        """The label digits of 'ISBN-13' are not part of the candidate."""
        candidates = extract_candidates("Printed in USA. ISBN-13: 978-0-306-40615-7.")
        assert candidates == ["9780306406157"]

    def test_labelled_isbn10(self):
        """A labelled ISBN-10 with spaces is cleaned."""
        assert extract_candidates("ISBN 0 306 40615 2") == ["0306406152"]

    def test_bare_number(self):
        """A bare 13 digit run is found without any label."""
        assert extract_candidates("see 9780262033848 for details") == ["9780262033848"]

    def test_order_of_first_occurrence(self):
        """Candidates come back in the order they appear."""
        text = "first 9780262033848 then ISBN 0306406152"
        assert extract_candidates(text) == ["9780262033848", "0306406152"]

    def test_duplicates_removed(self):
        """The same number found by both patterns is reported once."""
        candidates = extract_candidates("ISBN 9780306406157 (ISBN 978-0-306-40615-7)")
        assert candidates == ["9780306406157"]

    def test_no_candidates(self):
        """Text without digit runs yields nothing."""
        assert extract_candidates("Once upon a time there was a mystery.") == []
        assert extract_candidates("") == []

    def test_long_digit_runs_ignored(self):
        """Digits embedded in a longer run are not candidates."""
        assert extract_candidates("order 123456789012345678") == []

    def test_extraction_is_idempotent(self):
        """Extracting from the same text twice gives the same result."""
        text = "ISBN: 0-306-40615-2 and 9780262033848"
        assert extract_candidates(text) == extract_candidates(text)


class TestHelpers:
    """Cleaning and first-valid selection."""

    def test_clean_candidate(self):
        """Non-alphanumerics are stripped and letters uppercased."""
        assert clean_candidate("0-8044-2957-x") == "080442957X"

    def test_hyphenated_round_trip(self):
        """A hyphenated ISBN cleans to its digits and stays valid."""
        cleaned = clean_candidate("978-0-306-40615-7")
        assert cleaned == "9780306406157"
        assert is_valid_isbn(cleaned)

    def test_first_valid_skips_invalid(self):
        """Checksum failures are skipped in favour of later candidates."""
        assert first_valid_isbn(["0306406153", "0306406152"]) == "0306406152"
        assert first_valid_isbn(["1234567890"]) is None

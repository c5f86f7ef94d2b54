"""Tests for party normalization, validation and list operations."""

import pytest

from consentflow.wizard.parties import (
    PartyErrors,
    add_contact,
    add_party,
    find_duplicates,
    normalize_party,
    remove_party,
    update_party,
    validate_party,
)
from consentflow.wizard.validation import (
    DUPLICATE_PARTY,
    INVALID_HANDLE,
    NAME_TOO_SHORT,
    PARTY_REQUIRED,
    ValidationIssue,
)


class TestNormalizeParty:
    def test_handle_is_lowercased_and_trimmed(self):
        assert normalize_party("  @Alex_Doe ") == "@alex_doe"

    def test_repeated_at_signs_collapse(self):
        assert normalize_party("@@@sam") == "@sam"

    def test_legal_name_keeps_case(self):
        assert normalize_party(" Jane Smith ") == "Jane Smith"

    def test_empty_and_none(self):
        assert normalize_party("") == ""
        assert normalize_party(None) == ""
        assert normalize_party("   ") == ""


class TestValidateParty:
    @pytest.mark.parametrize("value", ["@sam", "@a", "@first.last", "@under_score_99", "@" + "x" * 30])
    def test_valid_handles(self, value):
        assert validate_party(value) is None

    @pytest.mark.parametrize("value", ["@", "@sam!", "@with space", "@" + "x" * 31, "@émile"])
    def test_invalid_handles(self, value):
        issue = validate_party(value)
        assert issue is not None
        assert issue.code == INVALID_HANDLE

    def test_uppercase_handle_is_valid_after_normalization(self):
        assert validate_party("@SAM") is None

    def test_single_character_name_is_too_short(self):
        issue = validate_party("J")
        assert issue is not None
        assert issue.code == NAME_TOO_SHORT

    def test_whitespace_does_not_count_toward_name_length(self):
        assert validate_party(" J  ").code == NAME_TOO_SHORT
        assert validate_party("J D") is None

    def test_empty_is_only_an_error_when_required(self):
        assert validate_party("") is None
        assert validate_party("", required=True).code == PARTY_REQUIRED


class TestFindDuplicates:
    def test_later_repeat_is_flagged_case_insensitively(self):
        duplicates = find_duplicates(["@alex", "@sam", "@SAM"])
        assert list(duplicates) == [2]
        assert duplicates[2].code == DUPLICATE_PARTY

    def test_legal_names_and_blanks_are_ignored(self):
        assert find_duplicates(["Jane Smith", "Jane Smith", "", ""]) == {}

    def test_duplicates_are_reported_not_removed(self):
        parties = ["@alex", "@alex"]
        find_duplicates(parties)
        assert parties == ["@alex", "@alex"]


class TestPartyErrors:
    def test_set_none_clears_entry(self):
        errors = PartyErrors()
        errors.set(1, ValidationIssue(INVALID_HANDLE, "bad"))
        assert 1 in errors
        errors.set(1, None)
        assert 1 not in errors
        assert not errors

    def test_reindex_after_removal_shifts_higher_indices(self):
        issue_a = ValidationIssue(INVALID_HANDLE, "a")
        issue_c = ValidationIssue(NAME_TOO_SHORT, "c")
        errors = PartyErrors({0: issue_a, 1: ValidationIssue(INVALID_HANDLE, "b"), 2: issue_c})

        errors.reindex_after_removal(1, new_length=2)

        assert errors.as_dict() == {0: issue_a, 1: issue_c}


class TestListOperations:
    def test_update_party_normalizes_and_records_error(self):
        errors = PartyErrors()
        updated = update_party(["@alex", ""], errors, 1, "  @Sam ")
        assert updated == ["@alex", "@sam"]
        assert not errors

        updated = update_party(updated, errors, 1, "@bad name")
        assert errors.get(1).code == INVALID_HANDLE

    def test_update_party_out_of_range(self):
        with pytest.raises(IndexError):
            update_party(["@alex"], PartyErrors(), 3, "@sam")

    def test_update_does_not_mutate_input(self):
        parties = ["@alex", ""]
        update_party(parties, PartyErrors(), 1, "@sam")
        assert parties == ["@alex", ""]

    def test_add_party_appends_blank_slot(self):
        assert add_party(["@alex", "@sam"]) == ["@alex", "@sam", ""]

    def test_remove_party_reindexes_errors(self):
        """Removing index 1 of [A, B(err), C(err)] leaves [A, C] with C's error at 1."""
        errors = PartyErrors()
        parties = ["@alex", "@bad!", "X"]
        for i, p in enumerate(parties):
            errors.set(i, validate_party(p))

        updated = remove_party(parties, errors, 1)

        assert updated == ["@alex", "X"]
        assert list(errors.as_dict()) == [1]
        assert errors.get(1).code == NAME_TOO_SHORT

    def test_removing_last_party_leaves_one_blank_slot(self):
        assert remove_party(["@alex"], PartyErrors(), 0) == [""]

    def test_add_contact_fills_first_empty_slot_after_owner(self):
        assert add_contact(["", ""], "sam") == ["", "@sam"]
        assert add_contact(["@alex", "", ""], "@Sam") == ["@alex", "@sam", ""]

    def test_add_contact_appends_when_full(self):
        assert add_contact(["@alex", "@sam"], "jo") == ["@alex", "@sam", "@jo"]

    def test_add_contact_ignores_existing_handle(self):
        assert add_contact(["@alex", "@SAM"], "sam") == ["@alex", "@SAM"]

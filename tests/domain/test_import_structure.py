"""Tests for the import envelope, options and the Result type."""

import pytest
from pydantic import ValidationError

from clinical_import.domain.entities import ClinicalData
from clinical_import.domain.enums import Severity
from clinical_import.domain.import_structure import (
    IdAllocator,
    ImportContext,
    ImportIssue,
    ImportOptions,
    ImportStructure,
    utc_timestamp,
)
from clinical_import.domain.ports import Result


class TestImportStructure:
    """Test suite for ImportStructure."""

    def test_success_derived_from_errors(self):
        """Test that build() sets success exactly when there are no errors."""
        ok = ImportStructure.build(ClinicalData(), warnings=[ImportIssue.warning("W", "warn")])
        assert ok.success
        assert ok.warning_codes() == ["W"]

        failed = ImportStructure.build(None, errors=[ImportIssue.error("E", "err")])
        assert not failed.success
        assert failed.error_codes() == ["E"]

    def test_inconsistent_success_rejected(self):
        """Test that success and errors can never disagree."""
        with pytest.raises(ValidationError):
            ImportStructure(success=True, errors=[ImportIssue.error("E", "err")])
        with pytest.raises(ValidationError):
            ImportStructure(success=False)

    def test_failure_factory(self):
        """Test the single-error failure envelope."""
        result = ImportStructure.failure("INVALID_JSON", "Bad JSON", details="line 1", metadata={"format": "json"})
        assert not result.success
        assert result.data is None
        assert result.errors[0].code == "INVALID_JSON"
        assert result.errors[0].details == "line 1"
        assert result.errors[0].severity is Severity.ERROR
        assert result.metadata == {"format": "json"}

    def test_with_metadata_returns_copy(self):
        """Test that metadata updates do not mutate the original envelope."""
        original = ImportStructure.build(ClinicalData(), metadata={"a": 1})
        updated = original.with_metadata(b=2)
        assert updated.metadata == {"a": 1, "b": 2}
        assert original.metadata == {"a": 1}

    def test_issue_timestamp(self):
        """Test that issues are timestamped in UTC."""
        issue = ImportIssue.warning("W", "warn", field="col", context={"row": 3})
        assert issue.is_warning
        assert issue.timestamp.endswith("Z")
        assert issue.context == {"row": 3}
        assert utc_timestamp().endswith("Z")


class TestImportOptions:
    """Test suite for ImportOptions."""

    def test_unknown_keys_ignored(self):
        options = ImportOptions.model_validate({"limit": 5, "delimiter": ";"})
        assert options.limit == 5

    def test_negative_limit_rejected(self):
        with pytest.raises(ValidationError):
            ImportOptions(limit=-1)


class TestIdAllocator:
    """Test suite for provisional id allocation."""

    def test_sequences_are_independent(self):
        ids = IdAllocator()
        assert [ids.next_patient_id(), ids.next_patient_id()] == [1, 2]
        assert ids.next_visit_id() == 1

    def test_context_has_fresh_allocator(self):
        first = ImportContext(filename="a.csv")
        second = ImportContext(filename="b.csv")
        first.ids.next_patient_id()
        assert second.ids.next_patient_id() == 1


class TestResult:
    """Test suite for the Result type."""

    def test_success(self):
        result = Result.success_result(42)
        assert result.is_success()
        assert result.value == 42

    def test_failure_from_exception(self):
        result = Result.failure_result(ValueError("boom"))
        assert result.is_failure()
        assert result.error == "boom"
        assert result.error_type == "ValueError"
        assert result.error_details == {}

    def test_failure_with_code(self):
        result = Result.failure_result("too big", "FILE_TOO_LARGE", {"size": 10})
        assert result.error_type == "FILE_TOO_LARGE"
        assert result.error_details == {"size": 10}

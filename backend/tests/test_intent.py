"""
Tests for intent.py - Job Request Normalisation
"""
import pytest

from app.services.errors import JobValidationError
from app.services.intent import (
    normalize_input,
    normalize_job_request,
    to_title_like,
)


class TestNormalizeInput:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("  Acme   Corp  ", "Acme Corp"),
            ('"Acme Corp"', "Acme Corp"),
            ("Acme\n\tCorp", "Acme Corp"),
            (None, ""),
            ("", ""),
        ],
    )
    def test_normalize_input(self, raw, expected):
        assert normalize_input(raw) == expected

    def test_title_like_keeps_existing_capitals(self):
        assert to_title_like("ACME industrial plc") == "ACME Industrial Plc"


class TestNormalizeJobRequest:
    """Tests for validating and cleaning a new job's inputs."""

    def test_valid_request(self):
        request = normalize_job_request(
            "  acme   industrial ",
            "united kingdom",
            industry="industrial machinery",
            focus_areas=["  pricing ", "", "pricing", "M&A"],
        )

        assert request["company_name"] == "Acme Industrial"
        assert request["normalized_company"] == "acme industrial"
        assert request["geography"] == "United Kingdom"
        assert request["normalized_geography"] == "united kingdom"
        assert request["industry"] == "Industrial Machinery"
        assert request["focus_areas"] == ["pricing", "M&A"]

    def test_geography_defaults_to_global(self):
        request = normalize_job_request("Acme", None)
        assert request["geography"] == "Global"
        assert request["industry"] is None
        assert request["focus_areas"] is None

    def test_garbage_geography_falls_back_to_global(self):
        assert normalize_job_request("Acme", "---")["geography"] == "Global"

    @pytest.mark.parametrize("company", [None, "", "   ", "A", "!!!", '""'])
    def test_rejects_missing_or_meaningless_company(self, company):
        with pytest.raises(JobValidationError):
            normalize_job_request(company, "Global")

    def test_rejects_overlong_company(self):
        with pytest.raises(JobValidationError, match="at most"):
            normalize_job_request("x" * 201, "Global")

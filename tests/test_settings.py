"""Tests for Settings validation."""

import pytest
from pydantic import ValidationError

from settings import Settings


class TestSettingsDefaults:
    def test_defaults(self):
        s = Settings(_env_file=None)
        assert s.preview_page_count == 3
        assert s.max_update_retries == 3
        assert s.reconcile_interval_seconds == 0
        assert s.jwt_algorithm == "HS256"

    def test_log_level_normalized(self):
        s = Settings(_env_file=None, log_level="debug")
        assert s.log_level == "DEBUG"

    def test_explicit_values(self):
        s = Settings(_env_file=None, database_url="mongodb://db:27017", preview_page_count=5)
        assert s.database_url == "mongodb://db:27017"
        assert s.preview_page_count == 5


class TestSettingsValidation:
    def test_zero_timeout_raises(self):
        with pytest.raises(ValidationError, match="[Tt]imeout"):
            Settings(_env_file=None, ledger_timeout_seconds=0)

    def test_zero_retries_raises(self):
        with pytest.raises(ValidationError, match="max_update_retries"):
            Settings(_env_file=None, max_update_retries=0)

    def test_negative_preview_raises(self):
        with pytest.raises(ValidationError, match="non-negative"):
            Settings(_env_file=None, preview_page_count=-1)

    def test_unknown_log_level_raises(self):
        with pytest.raises(ValidationError, match="log level"):
            Settings(_env_file=None, log_level="LOUD")

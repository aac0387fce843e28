"""
Tests for configuration loading and validation
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from slotfill.config import WaitlistConfig


def make_config(**overrides):
    return WaitlistConfig(_env_file=None, **overrides)


class TestDefaults:
    """Tests for default values"""

    def test_defaults(self):
        config = make_config()

        assert config.default_discount_percent == 10
        assert config.default_response_window == timedelta(hours=2)
        assert config.min_response_window == timedelta(hours=1)
        assert config.max_response_window == timedelta(days=7)
        assert config.sweep_interval == 900
        assert config.max_candidates == 10
        assert "yes" in config.affirmative_replies
        assert not config.sms_enabled

    def test_sqlite_url_from_file(self):
        assert make_config(db_file="x.db").get_database_url() == "sqlite:///x.db"

    def test_database_url_overrides_file(self):
        config = make_config(database_url="postgresql://u@h/db")
        assert config.get_database_url() == "postgresql://u@h/db"

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("MAX_CANDIDATES", "4")
        monkeypatch.setenv("ADMIN_TELEGRAM_ID", "99")

        config = make_config()

        assert config.max_candidates == 4
        assert config.admin_telegram_id == 99


class TestValidation:
    """Tests for rejected settings"""

    def test_invalid_token(self):
        with pytest.raises(ValidationError):
            make_config(telegram_bot_token="not-a-token")

    def test_valid_token(self):
        assert make_config(telegram_bot_token="123:abc").telegram_bot_token == "123:abc"

    def test_sweep_interval_must_fit_min_window(self):
        """Test a sweep runs at least four times within the shortest window"""
        with pytest.raises(ValidationError):
            make_config(sweep_interval=1200)
        assert make_config(sweep_interval=1200, min_response_window_minutes=80)

    def test_discount_bounds(self):
        with pytest.raises(ValidationError):
            make_config(min_discount_percent=50, max_discount_percent=20)
        with pytest.raises(ValidationError):
            make_config(default_discount_percent=101)

    def test_default_window_inside_bounds(self):
        with pytest.raises(ValidationError):
            make_config(default_response_window_hours=200)

    def test_affirmative_replies_normalized(self):
        config = make_config(affirmative_replies=[" Ja ", "OUI", ""])
        assert config.affirmative_replies == ["ja", "oui"]

    def test_sms_enabled_needs_all_settings(self):
        assert not make_config(twilio_account_sid="AC1", twilio_auth_token="t").sms_enabled
        assert make_config(
            twilio_account_sid="AC1", twilio_auth_token="t", twilio_from_phone="+1555"
        ).sms_enabled

"""
Tests for configuration, structured logging and the error taxonomy
"""

import json
import logging
import pytest
from decimal import Decimal

from loan_engine.config import LoanEngineConfig, get_config, reload_config
from loan_engine.exceptions import (
    AlreadyPaidError, InvalidArgumentError, LoanEngineError, NotEligibleError
)
from loan_engine.logging_config import JSONFormatter, log_action, setup_logging


class TestConfig:
    """Test pydantic-settings configuration"""

    def test_defaults(self):
        """Test default servicing rules"""
        config = LoanEngineConfig()
        assert config.npa_threshold_days == 90
        assert config.disbursement_tolerance_amount == Decimal("0.01")
        assert config.max_emi_ratio == Decimal("0.5")
        assert config.interest_rebate == Decimal("0.5")
        assert config.account_number_prefix == "LS"
        assert config.enable_events

    def test_environment_override(self, monkeypatch):
        """Test settings are read from LOAN_ENGINE_ variables"""
        monkeypatch.setenv("LOAN_ENGINE_NPA_THRESHOLD_DAYS", "60")
        monkeypatch.setenv("LOAN_ENGINE_ACCOUNT_NUMBER_PREFIX", "HL")

        config = reload_config()

        assert config.npa_threshold_days == 60
        assert config.account_number_prefix == "HL"
        assert get_config() is config

        monkeypatch.delenv("LOAN_ENGINE_NPA_THRESHOLD_DAYS")
        monkeypatch.delenv("LOAN_ENGINE_ACCOUNT_NUMBER_PREFIX")
        reload_config()

    def test_invalid_threshold(self):
        """Test the NPA threshold must be positive"""
        with pytest.raises(ValueError):
            LoanEngineConfig(npa_threshold_days=0)


class TestStructuredLogging:
    """Test JSON log output"""

    def test_json_formatter_fields(self):
        """Test structured fields appear and empty ones are dropped"""
        record = logging.LogRecord("loan_engine.servicing", logging.INFO, __file__, 1,
                                   "Payment recorded", (), None)
        record.action = "emi.payment_recorded"
        record.loan_id = "loan-1"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Payment recorded"
        assert entry["action"] == "emi.payment_recorded"
        assert entry["loan_id"] == "loan-1"
        assert "emi_id" not in entry

    def test_log_action(self, caplog):
        """Test log_action attaches the structured fields to the record"""
        logger = logging.getLogger("loan_engine.test_log_action")
        with caplog.at_level(logging.INFO, logger="loan_engine.test_log_action"):
            log_action(logger, "info", "Disbursed", action="loan.disbursed",
                       loan_id="loan-9", extra={"amount": "99000.00"})

        assert len(caplog.records) == 1
        record = caplog.records[0]
        assert record.action == "loan.disbursed"
        assert record.loan_id == "loan-9"
        assert record.extra == {"amount": "99000.00"}

    def test_log_action_respects_level(self, caplog):
        """Test disabled levels produce no record"""
        logger = logging.getLogger("loan_engine.test_log_level")
        with caplog.at_level(logging.WARNING, logger="loan_engine.test_log_level"):
            log_action(logger, "info", "Ignored", action="noop")
        assert caplog.records == []

    def test_setup_logging(self, tmp_path):
        """Test setup writes JSON lines to the configured file"""
        log_file = tmp_path / "engine.log"
        logger = setup_logging(level="DEBUG", logger_name="loan_engine.setup_test",
                               log_file=str(log_file))
        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()
            handler.close()

        entry = json.loads(log_file.read_text().strip())
        assert entry["message"] == "hello"
        assert entry["level"] == "INFO"


class TestErrors:
    """Test the error taxonomy"""

    def test_codes(self):
        """Test each error carries a stable code"""
        assert AlreadyPaidError("x").code == "ALREADY_PAID"
        assert isinstance(InvalidArgumentError("x"), ValueError)
        assert isinstance(NotEligibleError("x"), LoanEngineError)

    def test_to_dict(self):
        """Test errors serialize for controllers"""
        error = NotEligibleError("Customer is not eligible", ["Too young"])
        data = error.to_dict()
        assert data["error"] == "NotEligibleError"
        assert data["code"] == "NOT_ELIGIBLE"
        assert data["message"] == "Customer is not eligible"
        assert error.reasons == ["Too young"]


class TestLoggingFromConfig:
    """Test the servicing manager configures logging when asked"""

    def test_manager_installs_configured_handler(self, tmp_path):
        """Test log level, format and file come from the config"""
        from loan_engine.servicing import LoanServicingManager
        from loan_engine.storage import InMemoryStorage

        log_file = tmp_path / "servicing.log"
        config = LoanEngineConfig(configure_logging=True, log_level="DEBUG",
                                  log_format="text", log_file=str(log_file))
        package_logger = logging.getLogger("loan_engine")
        try:
            LoanServicingManager(InMemoryStorage(), config=config)
            logging.getLogger("loan_engine.servicing").info("Overdue processing complete")

            assert package_logger.level == logging.DEBUG
            assert len(package_logger.handlers) == 1
            assert "INFO loan_engine.servicing: Overdue processing complete" in log_file.read_text()
        finally:
            for handler in package_logger.handlers[:]:
                handler.close()
                package_logger.removeHandler(handler)
            package_logger.setLevel(logging.NOTSET)
            package_logger.propagate = True

    def test_logging_left_alone_by_default(self):
        """Test the manager does not touch handlers unless configured"""
        from loan_engine.servicing import LoanServicingManager
        from loan_engine.storage import InMemoryStorage

        package_logger = logging.getLogger("loan_engine")
        before = list(package_logger.handlers)
        LoanServicingManager(InMemoryStorage(), config=LoanEngineConfig())
        assert package_logger.handlers == before

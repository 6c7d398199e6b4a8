"""
Unit tests for logging setup and structured log events.
"""
import logging
from logging.handlers import QueueHandler

from attribution.core import logging_config
from attribution.core.logging_config import MaxLevelFilter, setup_logging
from attribution.core.structured_logger import log_event, mask_wallet
from tests.helpers import WALLET


class TestMaskWallet:
    """Tests for mask_wallet function"""

    def test_masks_address(self):
        assert mask_wallet(WALLET) == "0xabcd...1111"

    def test_missing_address(self):
        assert mask_wallet(None) == "none"
        assert mask_wallet("") == "none"

    def test_short_value_unchanged(self):
        assert mask_wallet("0x1234") == "0x1234"


class TestLogEvent:
    """Tests for log_event function"""

    def test_fields_attached(self, caplog):
        logger = logging.getLogger("tests.log_event")
        with caplog.at_level(logging.INFO, logger="tests.log_event"):
            log_event(
                logger,
                component="tracker",
                operation="register_conversion",
                correlation_id="ctx-1",
                outcome="failed",
                reason="http_503",
                level="warning",
            )

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.component == "tracker"
        assert record.operation == "register_conversion"
        assert record.correlation_id == "ctx-1"
        assert record.reason == "http_503"
        assert record.getMessage() == "tracker register_conversion outcome=failed reason=http_503"

    def test_message_override(self, caplog):
        logger = logging.getLogger("tests.log_event")
        with caplog.at_level(logging.INFO, logger="tests.log_event"):
            log_event(
                logger,
                component="tracker",
                operation="track_click",
                outcome="success",
                message="REFERRAL_CLICK_TRACKED [code=CG-ab12cd]",
            )

        record = caplog.records[-1]
        assert record.getMessage() == "REFERRAL_CLICK_TRACKED [code=CG-ab12cd]"
        assert not hasattr(record, "correlation_id")
        assert not hasattr(record, "duration_ms")


class TestSetupLogging:
    """Tests for setup_logging function"""

    def test_max_level_filter(self):
        flt = MaxLevelFilter(logging.WARNING)
        warning = logging.LogRecord("x", logging.WARNING, __file__, 1, "w", None, None)
        error = logging.LogRecord("x", logging.ERROR, __file__, 1, "e", None, None)
        assert flt.filter(warning) is True
        assert flt.filter(error) is False

    def test_installs_queue_handler_and_quiets_http_loggers(self):
        root = logging.getLogger()
        saved_handlers = list(root.handlers)
        saved_level = root.level
        try:
            setup_logging()

            assert any(isinstance(h, QueueHandler) for h in root.handlers)
            assert logging.getLogger("httpx").level == logging.WARNING
            assert logging.getLogger("httpcore").level == logging.WARNING
            assert logging_config._log_listener is not None
        finally:
            logging_config._stop_log_listener()
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

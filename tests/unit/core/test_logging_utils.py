"""Unit tests for the structured logger helpers and logging setup."""

import logging

import pytest

from stage_relay.core.logging_config import coerce_level, configure_logging
from stage_relay.core.logging_utils import StructuredLogger, ensure_structured_logger, get_module_logger


class TestStructuredLogger:

    def test_messages_prefixed_with_component(self, caplog):
        logger = get_module_logger("SessionManager")
        with caplog.at_level(logging.INFO, logger="stage_relay"):
            logger.info("attached %d", 3)

        assert caplog.records[-1].getMessage() == "[SessionManager] attached 3"
        assert caplog.records[-1].name == "stage_relay.SessionManager"

    def test_child_component(self, caplog):
        child = get_module_logger("SessionManager").getChild("jpeg")
        with caplog.at_level(logging.INFO, logger="stage_relay"):
            child.info("started")

        assert caplog.records[-1].getMessage() == "[SessionManager.jpeg] started"

    def test_bad_format_args_do_not_raise(self, caplog):
        logger = get_module_logger("Relay")
        with caplog.at_level(logging.INFO, logger="stage_relay"):
            logger.info("%d frames", "many")

        assert "args=many" in caplog.records[-1].getMessage()

    def test_ensure_wraps_plain_logger(self):
        wrapped = ensure_structured_logger(logging.getLogger("custom.thing"), component="Custom")
        assert isinstance(wrapped, StructuredLogger)
        assert wrapped.component == "Custom"

    def test_ensure_falls_back_to_module_logger(self):
        wrapped = ensure_structured_logger(None, fallback_name="FrameReassembler")
        assert wrapped.name == "stage_relay.FrameReassembler"

    def test_ensure_keeps_structured_logger(self):
        logger = get_module_logger("Relay")
        assert ensure_structured_logger(logger) is logger


class TestConfigureLogging:

    def test_coerce_level(self):
        assert coerce_level("debug") == logging.DEBUG
        assert coerce_level(logging.ERROR) == logging.ERROR
        with pytest.raises(ValueError):
            coerce_level("loud")

    def test_file_handler_and_suppression(self, tmp_path):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        log_file = tmp_path / "logs" / "relay.log"
        try:
            configure_logging("debug", force=True, console=False, log_file=log_file)

            assert log_file.parent.is_dir()
            assert any(isinstance(h, logging.FileHandler) for h in root.handlers)
            assert root.level == logging.DEBUG
            assert logging.getLogger("aiohttp.access").level == logging.WARNING
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
                handler.close()
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)

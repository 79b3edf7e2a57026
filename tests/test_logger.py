import logging

from mcptransport.logger import DEFAULT_LOGGER_NAME, Logger, StdLogger, default_logger


def test_info_prefixes_and_formats(caplog):
    caplog.set_level(logging.INFO, logger="test.logger")
    log = StdLogger(logging.getLogger("test.logger"))
    log.info("hello %s", "world")
    assert [r.getMessage() for r in caplog.records] == ["INFO: hello world"]
    assert caplog.records[0].levelno == logging.INFO


def test_error_prefixes_and_formats(caplog):
    caplog.set_level(logging.INFO, logger="test.logger")
    log = StdLogger(logging.getLogger("test.logger"))
    log.error("failed: %d items", 3)
    assert [r.getMessage() for r in caplog.records] == ["ERROR: failed: 3 items"]
    assert caplog.records[0].levelno == logging.ERROR


def test_message_without_arguments_is_unchanged(caplog):
    caplog.set_level(logging.INFO, logger="test.logger")
    StdLogger(logging.getLogger("test.logger")).info("plain")
    assert caplog.records[0].getMessage() == "INFO: plain"


def test_default_logger_uses_package_logger(caplog):
    caplog.set_level(logging.INFO, logger=DEFAULT_LOGGER_NAME)
    log = default_logger()
    log.error("boom %s", "now")
    assert isinstance(log, Logger)
    assert caplog.records[0].name == DEFAULT_LOGGER_NAME
    assert caplog.records[0].getMessage() == "ERROR: boom now"
import logging

import pytest

from src.subwatch.core.log_config import ROOT_LOGGER_NAME, configure_logging, get_logger


@pytest.fixture()
def restore_logger():
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)


def test_get_logger_uses_component_hierarchy():
    assert get_logger().name == "subwatch"
    assert get_logger("scheduler").name == "subwatch.scheduler"


def test_configure_logging_console_only(restore_logger):
    logger = configure_logging("warning")
    assert logger is restore_logger
    assert logger.level == logging.WARNING
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.StreamHandler)


def test_configure_logging_writes_dated_file(tmp_path, restore_logger):
    logger = configure_logging("INFO", log_dir=tmp_path / "logs")
    get_logger("sweep").info("sweep started")
    for handler in logger.handlers:
        handler.flush()

    files = list((tmp_path / "logs").glob("subwatch_*.log"))
    assert len(files) == 1
    text = files[0].read_text(encoding="utf-8")
    assert "subwatch.sweep" in text
    assert "sweep started" in text
    assert logger.level == logging.DEBUG


def test_configure_logging_replaces_handlers(restore_logger):
    configure_logging("INFO")
    configure_logging("INFO")
    assert len(restore_logger.handlers) == 1

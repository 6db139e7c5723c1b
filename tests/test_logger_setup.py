import json
import logging

import pytest

from loggers.logger_setup import get_logger, setup_application_logging


@pytest.fixture
def clean_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    perf_logger = logging.getLogger("performance")
    for handler in perf_logger.handlers[:]:
        perf_logger.removeHandler(handler)
        handler.close()
    root.setLevel(level)


def test_component_logs_reach_the_application_log_file(tmp_path, clean_root_logging):
    component = get_logger("ComponentUnderTest")
    setup_application_logging("testapp", log_level=logging.INFO, log_dir=str(tmp_path))

    component.error("upsert dropped", extra={"event": "upsert_dropped"})
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = (tmp_path / "testapp.log").read_text(encoding="utf-8").splitlines()
    entries = [json.loads(line) for line in lines]
    dropped = [e for e in entries if e["logger"] == "ComponentUnderTest"]
    assert dropped[0]["message"] == "upsert dropped"
    assert dropped[0]["event"] == "upsert_dropped"
    assert dropped[0]["level"] == "ERROR"


def test_component_loggers_follow_the_application_level(tmp_path, clean_root_logging):
    component = get_logger("QuietComponent")
    setup_application_logging("quietapp", log_level=logging.WARNING, log_dir=str(tmp_path))

    component.info("not written")
    component.warning("written")
    for handler in logging.getLogger().handlers:
        handler.flush()

    text = (tmp_path / "quietapp.log").read_text(encoding="utf-8")
    assert "not written" not in text
    assert "written" in text
    assert component.propagate is True
    assert component.getEffectiveLevel() == logging.WARNING


def test_explicit_level_overrides_one_logger():
    verbose = get_logger("VerboseComponent", level=logging.DEBUG)
    try:
        assert verbose.level == logging.DEBUG
    finally:
        verbose.setLevel(logging.NOTSET)

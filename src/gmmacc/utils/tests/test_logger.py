import logging

import pytest

from gmmacc.utils import _logging, logger


@pytest.mark.parametrize("verbose,expected", [
    (None, "INFO"),
    (True, "INFO"),
    (False, "WARNING"),
    ("debug", "DEBUG"),
    (20, "INFO"),
    (logging.DEBUG, "DEBUG"),
])
def test_set_log_level_coercion(verbose, expected, capsys):
    """Ensure bools and None are coerced correctly."""
    _logging.set_log_level(verbose)
    logger.log(expected, "message")
    out = capsys.readouterr().out
    assert expected in out
    _logging.set_log_level("INFO")


def test_levels_below_threshold_are_dropped(capsys):
    _logging.set_log_level(False)
    logger.info("per-utterance chatter")
    logger.warning("utterance skipped")
    out = capsys.readouterr().out
    assert "per-utterance chatter" not in out
    assert "utterance skipped" in out
    _logging.set_log_level("INFO")


def test_log_colored_helper(capsys):
    _logging.set_log_level("INFO")
    _logging.log("Written accs", level="info", color="green", weight="bold")
    out = capsys.readouterr().out
    assert "Written accs" in out
    assert "<green>" not in out

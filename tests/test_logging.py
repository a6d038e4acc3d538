"""Tests for the batch job id log processor."""

import logging

from finmail.core.logging import QUIET_LOGGERS, add_batch_job_id, bind_batch_job, configure_logging


def test_batch_job_id_added_while_bound() -> None:
    bind_batch_job(7)
    try:
        event = add_batch_job_id(None, "info", {"event": "batch_item_completed"})
    finally:
        bind_batch_job(None)

    assert event == {"event": "batch_item_completed", "batch_job_id": 7}
    assert add_batch_job_id(None, "info", {"event": "idle"}) == {"event": "idle"}


def test_quiet_loggers_stay_at_warning() -> None:
    configure_logging(log_level="DEBUG", json_output=False)
    for name in QUIET_LOGGERS:
        assert logging.getLogger(name).level == logging.WARNING

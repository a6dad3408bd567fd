"""Tests for structured logging setup."""

import json
import logging

import pytest

from pricewatch.logging_config import check_context, setup_logging


@pytest.fixture
def configured(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    setup_logging(tmp_path)
    yield tmp_path / "logs"
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


def read_json_lines(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def test_check_context_lands_in_json_log(configured):
    log = logging.getLogger("pricewatch.test")

    with check_context(product_id=7, trigger="manual"):
        log.warning("price element missing")
    log.warning("outside any check")

    records = read_json_lines(configured / "app.log")
    inside, outside = records[-2], records[-1]
    assert inside["message"] == "price element missing"
    assert inside["product_id"] == 7
    assert inside["trigger"] == "manual"
    assert inside["level"] == "WARNING"
    assert "product_id" not in outside
    assert "check" not in inside


def test_errors_also_go_to_error_log(configured):
    logging.getLogger("pricewatch.test").error("channel exploded")
    logging.getLogger("pricewatch.test").info("just chatter")

    messages = [r["message"] for r in read_json_lines(configured / "error.log")]
    assert messages == ["channel exploded"]

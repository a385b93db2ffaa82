import json
import logging
from collections.abc import Iterator

import pytest

from skillops.logging import bind_run, clear_context, configure_logging


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    clear_context()
    root.handlers[:] = handlers
    root.setLevel(level)
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.NOTSET)


def test_http_client_request_lines_are_quieted() -> None:
    configure_logging("INFO", json_output=True)
    assert logging.getLogger("httpx").getEffectiveLevel() == logging.WARNING
    assert logging.getLogger("httpcore").getEffectiveLevel() == logging.WARNING
    assert logging.getLogger("skillops.update.pipeline").getEffectiveLevel() == logging.INFO


def test_debug_level_still_quiets_http_client() -> None:
    configure_logging("DEBUG", json_output=True)
    assert logging.getLogger("httpx").getEffectiveLevel() == logging.WARNING


def test_json_lines_carry_bound_run(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging("INFO", json_output=True)
    bind_run("upd_1234", "update")
    logging.getLogger("skillops.update.pipeline").info("Fetched manifest %s", "1.3.0")

    line = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert line["event"] == "Fetched manifest 1.3.0"
    assert line["run_id"] == "upd_1234"
    assert line["pipeline"] == "update"
    assert line["level"] == "info"

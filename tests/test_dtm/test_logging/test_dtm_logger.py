"""
Purpose
-------
Unit tests for `dtm.logging.dtm_logger`.

Key behaviors
-------------
- `emit` respects the level threshold and builds complete entries.
- `format_entry` produces JSON by default and key=value text otherwise,
  falling back to `str` for unserializable context values.
- `render_text` keeps the separator and trailing-space layout for empty
  messages and contexts.
- `initialize_logger` prefers the explicit level, honors `DTM_LOG_*`
  variables, and warns once per invalid setting.
- `child` keeps the run id and merges metadata.

Conventions
-----------
- Time is patched through `dtm.logging.dtm_logger.dt.datetime` for
  deterministic timestamps.
- Output is captured with `capsys`; file destinations use `tmp_path`.

Downstream usage
----------------
Run with `pytest -q tests/test_dtm/test_logging`.
"""

import datetime as dt
import json
from unittest.mock import MagicMock

import pytest
from pytest_mock import MockerFixture

from dtm.logging import dtm_logger
from dtm.logging.dtm_logger import DtmLogger, initialize_logger
from tests.test_dtm.dtm_testing_utils import (
    TEST_COMPONENT_NAME,
    TEST_RUN_ID,
    TEST_RUN_META,
    init_logger_for_test,
)

TEST_NOW = dt.datetime(2025, 1, 1, 12, 0, 0, tzinfo=dt.timezone.utc)


def mock_datetime_now(mocker: MockerFixture) -> MagicMock:
    mock_dt: MagicMock = mocker.patch("dtm.logging.dtm_logger.dt.datetime")
    mock_dt.now.return_value = TEST_NOW
    return mock_dt


def test_emit_writes_full_json_entry(
    mocker: MockerFixture, capsys: pytest.CaptureFixture[str]
) -> None:
    """
    Verify that `emit` writes one JSON line with every entry field populated.

    Parameters
    ----------
    mocker : MockerFixture
        Used to freeze `datetime.now`.
    capsys : pytest.CaptureFixture[str]
        Captures STDERR.

    Returns
    -------
    None

    Raises
    ------
    AssertionError
        If the decoded entry differs from the expected fields.
    """

    mock_datetime_now(mocker)
    logger = init_logger_for_test(log_level="DEBUG")
    logger.info(event="block_matrix_assembled", msg="done", context={"nnz": 3})

    entry = json.loads(capsys.readouterr().err.strip())
    assert entry == {
        "timestamp": "2025-01-01T12:00:00Z",
        "level": "INFO",
        "run_id": TEST_RUN_ID,
        "component": TEST_COMPONENT_NAME,
        "event": "block_matrix_assembled",
        "message": "done",
        "run_meta": TEST_RUN_META,
        "context": {"nnz": 3},
    }


def test_emit_drops_entries_below_threshold(capsys: pytest.CaptureFixture[str]) -> None:
    logger = init_logger_for_test(log_level="WARNING")
    logger.debug(event="ignored")
    logger.info(event="ignored")
    logger.warning(event="kept")

    lines = capsys.readouterr().err.strip().splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["event"] == "kept"


def test_format_entry_text_and_unserializable_context(mocker: MockerFixture) -> None:
    """
    Check the text format and the JSON `default=str` fallback.

    Parameters
    ----------
    mocker : MockerFixture
        Used to freeze `datetime.now` and capture `write_entry`.

    Returns
    -------
    None

    Raises
    ------
    AssertionError
        If the text line or the JSON fallback is malformed.
    """

    mock_datetime_now(mocker)
    text_logger = init_logger_for_test(log_level="DEBUG", log_format="text")
    write_text = mocker.patch.object(text_logger, "write_entry")
    text_logger.error(event="block_chunk_failed", msg="boom", context={"block": "b1"})
    write_text.assert_called_once_with(
        "2025-01-01T12:00:00Z [ERROR] test_component block_chunk_failed - boom block=b1"
    )

    json_logger = init_logger_for_test(log_level="DEBUG")
    write_json = mocker.patch.object(json_logger, "write_entry")
    json_logger.info(event="odd_context", context={"value": {1, 2}})
    written = json.loads(write_json.call_args.args[0])
    assert written["context"]["value"] in ("{1, 2}", "{2, 1}")


@pytest.mark.parametrize(
    ["message", "context", "expected"],
    [
        ("", {}, "2025-01-01T12:00:00Z [INFO] worker block_matrix_assembled -"),
        (
            "",
            {"nnz": 3},
            "2025-01-01T12:00:00Z [INFO] worker block_matrix_assembled -  nnz=3",
        ),
        (
            "done",
            {"block_id": "b2", "nnz": 3},
            "2025-01-01T12:00:00Z [INFO] worker block_matrix_assembled - done block_id=b2 nnz=3",
        ),
    ],
)
def test_render_text_layout(message: str, context: dict, expected: str) -> None:
    entry: dtm_logger.LogEntry = {
        "timestamp": "2025-01-01T12:00:00Z",
        "level": "INFO",
        "run_id": TEST_RUN_ID,
        "component": "worker",
        "event": "block_matrix_assembled",
        "message": message,
        "run_meta": {},
        "context": context,
    }
    assert dtm_logger.render_text(entry) == expected


def test_file_destination_appends(tmp_path) -> None:
    log_path = tmp_path / "run.log"
    logger = init_logger_for_test(log_level="INFO", log_dest=str(log_path))
    logger.info(event="first")
    logger.info(event="second")

    events = [json.loads(line)["event"] for line in log_path.read_text().splitlines()]
    assert events == ["first", "second"]


def test_initialize_logger_explicit_level_wins(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DTM_LOG_LEVEL", "ERROR")
    logger = initialize_logger(TEST_COMPONENT_NAME, level="debug", run_id=TEST_RUN_ID)
    assert logger.level == "DEBUG"
    assert logger.run_id == TEST_RUN_ID
    assert logger.run_meta == {}


def test_initialize_logger_falls_back_and_warns(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    """
    Ensure invalid environment settings fall back and are reported.

    Parameters
    ----------
    monkeypatch : pytest.MonkeyPatch
        Sets invalid `DTM_LOG_LEVEL` and `DTM_LOG_FORMAT` values.
    capsys : pytest.CaptureFixture[str]
        Captures the fallback warnings.

    Returns
    -------
    None

    Raises
    ------
    AssertionError
        If defaults are not applied or a warning is missing.
    """

    monkeypatch.setenv("DTM_LOG_LEVEL", "LOUD")
    monkeypatch.setenv("DTM_LOG_FORMAT", "xml")
    monkeypatch.delenv("DTM_LOG_DEST", raising=False)

    logger = initialize_logger(TEST_COMPONENT_NAME)

    assert logger.level == "INFO"
    assert logger.format == "json"
    assert logger.dest == "stderr"
    assert logger.run_id.startswith(f"{TEST_COMPONENT_NAME}--")
    events = [json.loads(line)["event"] for line in capsys.readouterr().err.splitlines()]
    assert events == ["fallback_level", "fallback_log_format"]


def test_initialize_logger_unwritable_destination_falls_back(
    monkeypatch: pytest.MonkeyPatch, tmp_path
) -> None:
    monkeypatch.setenv("DTM_LOG_DEST", str(tmp_path / "missing_dir" / "run.log"))
    logger = initialize_logger(TEST_COMPONENT_NAME, level="ERROR")
    assert logger.dest == "stderr"


def test_child_keeps_run_id_and_merges_meta() -> None:
    parent = DtmLogger(
        component_name="block_aggregator",
        run_id=TEST_RUN_ID,
        run_meta={"blocks": 4},
        log_level="DEBUG",
        log_format="text",
    )
    child = parent.child("block_assembly_worker", {"block_id": "b1"})

    assert child.run_id == TEST_RUN_ID
    assert child.component_name == "block_assembly_worker"
    assert child.run_meta == {"blocks": 4, "block_id": "b1"}
    assert (child.level, child.format, child.dest) == ("DEBUG", "text", "stderr")
    assert parent.run_meta == {"blocks": 4}


def test_generate_run_id_includes_pid(mocker: MockerFixture) -> None:
    mock_datetime_now(mocker)
    mocker.patch.object(dtm_logger.os, "getpid", return_value=1234)
    assert dtm_logger.generate_run_id("x") == "x--20250101T120000Z--1234"

from __future__ import annotations

import json
import logging

import pytest
from pydantic import ValidationError as PydanticValidationError

from TrackSearch.logging import JSONFormatter, configure_logging, get_logger, log_event
from TrackSearch.settings import LogFormat, load_settings


def test_defaults_and_section_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TRACKSEARCH_INDEX_DENSE_DIM", raising=False)
    settings = load_settings(index={"location": ":memory:", "dense_dim": 8})
    assert settings.index.dense_dim == 8
    assert settings.index.rrf_k == 60.0
    assert settings.ingestion.max_attempts == 5
    assert settings.ingestion.skip_already_indexed is False
    assert settings.ingestion.throttle_max_wait_s is None


def test_environment_variables_use_section_prefixes(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRACKSEARCH_LOG_FORMAT", "json")
    monkeypatch.setenv("TRACKSEARCH_INDEX_COLLECTION", "tracks_v2")
    monkeypatch.setenv("TRACKSEARCH_INGESTION_MAX_ATTEMPTS", "3")
    settings = load_settings()
    assert settings.app.log_format == LogFormat.JSON
    assert settings.index.collection == "tracks_v2"
    assert settings.ingestion.max_attempts == 3


def test_unknown_section_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown settings sections"):
        load_settings(storage={"path": "x"})


@pytest.mark.parametrize("schedule", [[], [10.0, 5.0], [-1.0]])
def test_backoff_schedule_validation(schedule: list) -> None:
    with pytest.raises(PydanticValidationError):
        load_settings(ingestion={"backoff_schedule_s": schedule})


def test_unsupported_datatype_is_rejected() -> None:
    with pytest.raises(PydanticValidationError):
        load_settings(index={"dense_datatype": "int4"})


def test_redacted_dump_hides_credentials() -> None:
    settings = load_settings(adapters={"llm_api_key": "sk-live", "lyrics_api_key": None})
    dumped = settings.model_dump_redacted()
    assert dumped["adapters"]["llm_api_key"] == "***REDACTED***"
    assert dumped["adapters"]["lyrics_api_key"] is None
    assert dumped["adapters"]["llm_model"] == settings.adapters.llm_model


def test_log_event_carries_event_name_and_masks_secrets(caplog: pytest.LogCaptureFixture) -> None:
    logger = get_logger("TrackSearch.tests", base_fields={"component": "tests"})
    with caplog.at_level(logging.DEBUG, logger="TrackSearch"):
        log_event(logger.child(isrc="USRC17607839"), "warning", "thing_failed", api_key="abc", attempt=2)

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert record.extra_fields["event"] == "thing_failed"
    assert record.extra_fields["error_kind"] is None
    assert record.extra_fields["isrc"] == "USRC17607839"

    payload = json.loads(JSONFormatter().format(record))
    assert payload["message"] == "thing_failed"
    assert payload["component"] == "tests"
    assert payload["attempt"] == 2
    assert payload["api_key"] == "***masked***"
    assert payload["timestamp"].endswith("Z")


def test_log_event_rejects_unknown_level() -> None:
    with pytest.raises(AttributeError):
        log_event(get_logger("TrackSearch.tests"), "loud", "nope")


def test_configure_logging_replaces_its_handler() -> None:
    configure_logging("DEBUG", "json")
    root = configure_logging("WARNING", "console")
    installed = [h for h in root.handlers if getattr(h, "_tracksearch_handler", False)]
    assert len(installed) == 1
    assert root.level == logging.WARNING
    assert not isinstance(installed[0].formatter, JSONFormatter)

from __future__ import annotations

from pathlib import Path

import pytest

from TrackSearch.Ingestion.ledger import StepLedger
from TrackSearch.Ingestion.models import RunStatus, StepId, TrackIngestionRequest


class ManualClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _request(force: bool = False) -> TrackIngestionRequest:
    return TrackIngestionRequest(
        isrc="USRC17607839", title="Midnight City", artist="M83", album="Hurry Up", force_reprocess=force
    )


def test_duplicate_triggers_coalesce_within_window() -> None:
    clock = ManualClock()
    ledger = StepLedger(":memory:", clock=clock)
    first, created = ledger.open_run(_request(), window_s=3600)
    clock.now += 60
    second, created_again = ledger.open_run(_request(), window_s=3600)
    assert created and not created_again
    assert second.run_id == first.run_id

    clock.now += 3600
    third, created_third = ledger.open_run(_request(), window_s=3600)
    assert created_third and third.run_id != first.run_id


def test_force_reprocess_always_opens_new_run() -> None:
    ledger = StepLedger(":memory:")
    first, _ = ledger.open_run(_request(), window_s=3600)
    forced, created = ledger.open_run(_request(force=True), window_s=3600)
    assert created and forced.run_id != first.run_id
    assert forced.force and forced.request.force_reprocess


def test_first_recorded_value_wins() -> None:
    ledger = StepLedger(":memory:")
    run, _ = ledger.open_run(_request(), window_s=0)
    first = ledger.record_step(run.run_id, run.isrc, StepId.FETCH_LYRICS, {"text": "original"})
    second = ledger.record_step(run.run_id, run.isrc, StepId.FETCH_LYRICS, {"text": "replacement"})
    assert first.value == second.value == {"text": "original"}
    assert ledger.get_step(run.run_id, StepId.FETCH_LYRICS).value == {"text": "original"}


def test_null_step_values_are_recorded() -> None:
    ledger = StepLedger(":memory:")
    run, _ = ledger.open_run(_request(), window_s=0)
    ledger.record_step(run.run_id, run.isrc, StepId.FETCH_AUDIO_FEATURES, None)
    recorded = ledger.get_step(run.run_id, StepId.FETCH_AUDIO_FEATURES)
    assert recorded is not None and recorded.value is None
    assert set(ledger.completed_steps(run.run_id)) == {StepId.FETCH_AUDIO_FEATURES}


def test_status_transitions_and_attempts(tmp_path: Path) -> None:
    path = tmp_path / "state" / "ledger.sqlite"
    ledger = StepLedger(path)
    run, _ = ledger.open_run(_request(), window_s=0)
    assert ledger.mark_running(run.run_id) == 1
    ledger.mark_retrying(run.run_id, next_attempt_at=123.0, error_kind="adapter_error", error_message="503")
    assert ledger.mark_running(run.run_id) == 2
    assert [r.run_id for r in ledger.pending_runs()] == [run.run_id]
    ledger.mark_failed(run.run_id, error_kind="adapter_error", error_message="x" * 5000)
    ledger.close()

    reopened = StepLedger(path)
    stored = reopened.get_run(run.run_id)
    assert stored.status == RunStatus.FAILED and stored.status.terminal
    assert stored.attempts == 2
    assert len(stored.error_message) == 2000
    assert reopened.pending_runs() == []
    assert reopened.stats()["failed"] == 1


def test_purge_removes_only_terminal_runs() -> None:
    clock = ManualClock()
    ledger = StepLedger(":memory:", clock=clock)
    done, _ = ledger.open_run(_request(), window_s=0)
    active, _ = ledger.open_run(_request(force=True), window_s=0)
    for run in (done, active):
        ledger.record_step(run.run_id, run.isrc, StepId.FETCH_LYRICS, None)
    ledger.mark_completed(done.run_id)
    clock.now += 10
    assert ledger.purge_steps(before=clock.now) == 1
    assert ledger.completed_steps(done.run_id) == {}
    assert StepId.FETCH_LYRICS in ledger.completed_steps(active.run_id)


def test_unknown_run_is_an_error() -> None:
    ledger = StepLedger(":memory:")
    with pytest.raises(KeyError):
        ledger.mark_completed("missing")

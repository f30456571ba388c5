"""Job record contract tests."""

import pytest

from app.errors import JobStateError
from app.jobs.models import (
    AffectedItem,
    ItemOutcome,
    JobRecord,
    JobStatus,
    OutcomeKind,
    can_transition,
    compute_progress,
    make_target_key,
    split_target_key,
)


def test_new_record_defaults():
    job = JobRecord(target_key="diag-1:images", total_items=3)
    assert job.status == JobStatus.PENDING
    assert job.processed_items == 0
    assert job.progress == 0
    assert job.error_message is None
    assert job.id
    job.check_invariants()


@pytest.mark.parametrize(
    "old,new,allowed",
    [
        (JobStatus.PENDING, JobStatus.PROCESSING, True),
        (JobStatus.PENDING, JobStatus.FAILED, True),
        (JobStatus.PROCESSING, JobStatus.COMPLETED, True),
        (JobStatus.PROCESSING, JobStatus.FAILED, True),
        (JobStatus.PROCESSING, JobStatus.PENDING, False),
        (JobStatus.PENDING, JobStatus.COMPLETED, False),
        (JobStatus.COMPLETED, JobStatus.FAILED, False),
        (JobStatus.FAILED, JobStatus.PROCESSING, False),
        (JobStatus.PROCESSING, JobStatus.PROCESSING, True),
    ],
)
def test_status_transitions(old, new, allowed):
    assert can_transition(old, new) is allowed


def test_terminal_statuses():
    assert JobStatus.COMPLETED.is_terminal
    assert JobStatus.FAILED.is_terminal
    assert not JobStatus.PENDING.is_terminal
    assert not JobStatus.PROCESSING.is_terminal


def test_compute_progress_rounds():
    assert compute_progress(0, 0) == 0
    assert compute_progress(1, 3) == 33
    assert compute_progress(2, 3) == 67
    assert compute_progress(5, 5) == 100


def test_implied_completion_needs_items():
    assert not JobRecord(target_key="k", total_items=0).implies_completion()
    job = JobRecord(
        target_key="k",
        status=JobStatus.PROCESSING,
        total_items=2,
        processed_items=2,
        success_count=2,
    )
    assert job.implies_completion()


def test_invariant_counts_must_add_up():
    job = JobRecord(target_key="k", total_items=3, processed_items=2, success_count=1)
    with pytest.raises(JobStateError):
        job.check_invariants()


def test_invariant_processed_not_above_total():
    job = JobRecord(target_key="k", total_items=1, processed_items=2, success_count=2)
    with pytest.raises(JobStateError):
        job.check_invariants()


def test_invariant_error_message_only_when_failed():
    job = JobRecord(target_key="k", error_message="boom")
    with pytest.raises(JobStateError):
        job.check_invariants()

    failed = JobRecord(target_key="k", status=JobStatus.FAILED)
    with pytest.raises(JobStateError):
        failed.check_invariants()

    JobRecord(target_key="k", status=JobStatus.FAILED, error_message="boom").check_invariants()


def test_target_key_lowercases_issue_type():
    key = make_target_key("diag-9", "IMAGES")
    assert key == "diag-9:images"
    assert split_target_key(key) == ("diag-9", "images")


def test_affected_item_accepts_numeric_ids_and_extra_fields():
    item = AffectedItem.model_validate({"id": 42, "title": "Blue shirt", "type": "product"})
    assert item.id == "42"
    assert item.label == "42"
    assert item.model_extra == {"title": "Blue shirt"}
    assert AffectedItem(id="1", name="Shoe").label == "Shoe"


def test_item_outcome_constructors():
    assert ItemOutcome.success().kind == OutcomeKind.SUCCESS
    failure = ItemOutcome.failure("timeout")
    assert failure.kind == OutcomeKind.FAILURE
    assert failure.reason == "timeout"
    assert ItemOutcome.skip().kind == OutcomeKind.SKIP

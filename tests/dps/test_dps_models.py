"""Tests for DPS wire models."""

from metis_core.dps.models import DpsTask, Revision, TaskProgress, TaskState
from tests._support.doubles import T0


class TestTaskState:
    def test_terminal_states(self):
        assert TaskState.PROCESSED.is_terminal
        assert TaskState.DROPPED.is_terminal
        assert not TaskState.PENDING.is_terminal
        assert not TaskState.CURRENTLY_PROCESSING.is_terminal


class TestTaskProgress:
    def test_from_dps_field_names(self):
        progress = TaskProgress.from_dict(
            {"state": "PROCESSED", "expectedSize": "10", "processedElementCount": 10}
        )

        assert progress == TaskProgress(TaskState.PROCESSED, expected_records=10, processed_records=10)

    def test_from_alternative_field_names(self):
        progress = TaskProgress.from_dict({"status": "PENDING", "expectedRecords": 5, "processedRecords": 0})

        assert progress.state is TaskState.PENDING
        assert progress.expected_records == 5

    def test_missing_counters_default_to_zero(self):
        progress = TaskProgress.from_dict({"state": "PENDING", "errors": None})

        assert progress.errors == 0
        assert progress.processed_records == 0


class TestDpsTask:
    def test_task_ids_increase(self):
        assert DpsTask().task_id < DpsTask().task_id

    def test_optional_sections_omitted(self):
        body = DpsTask(task_name="NORMALIZATION").to_dict()

        assert "outputRevision" not in body
        assert "harvestingDetails" not in body

    def test_revision_to_dict(self):
        revision = Revision("NORMALIZATION", "metis_provider", T0)

        assert revision.to_dict() == {
            "revisionName": "NORMALIZATION",
            "revisionProviderId": "metis_provider",
            "creationTimeStamp": T0.isoformat(),
        }

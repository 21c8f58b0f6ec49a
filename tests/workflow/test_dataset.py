"""Tests for dataset inputs: XSLT catalog and scheduled triggers."""

from datetime import timedelta

import pytest

from metis_core.workflow.dataset import (
    InMemoryXsltCatalog,
    ScheduledTrigger,
    ScheduleFrequency,
)
from metis_core.workflow.plugins import PluginType
from tests._support.doubles import T0, make_dataset, make_workflow


class TestWorkflowTemplate:
    def test_enabled_types_keep_order(self):
        workflow = make_workflow(
            "1001",
            PluginType.OAIPMH_HARVEST,
            PluginType.VALIDATION_EXTERNAL,
            PluginType.TRANSFORMATION,
            disabled=(PluginType.VALIDATION_EXTERNAL,),
        )

        assert workflow.enabled_types() == [PluginType.OAIPMH_HARVEST, PluginType.TRANSFORMATION]


class TestXsltCatalog:
    def test_default_and_dataset_specific(self):
        catalog = InMemoryXsltCatalog()
        default = catalog.add("<xsl:stylesheet/>")
        custom = catalog.add("<xsl:stylesheet/>", dataset_id="1001")

        assert catalog.latest_default() == default
        assert catalog.get_by_id(custom.id) == custom
        assert catalog.get_by_id("missing") is None

    def test_latest_default_wins(self):
        catalog = InMemoryXsltCatalog()
        catalog.add("<old/>")
        newest = catalog.add("<new/>")

        assert catalog.latest_default().id == newest.id

    def test_empty_catalog(self):
        assert InMemoryXsltCatalog().latest_default() is None


def trigger(frequency: ScheduleFrequency, pointer=T0) -> ScheduledTrigger:
    return ScheduledTrigger(
        dataset=make_dataset(),
        workflow=make_workflow("1001", PluginType.OAIPMH_HARVEST),
        frequency=frequency,
        pointer_date=pointer,
    )


class TestOccurrences:
    def test_once(self):
        assert trigger(ScheduleFrequency.ONCE).occurrences(T0 + timedelta(days=30)) == [T0]

    def test_daily(self):
        occurrences = trigger(ScheduleFrequency.DAILY).occurrences(T0 + timedelta(days=2, hours=1))

        assert occurrences == [T0, T0 + timedelta(days=1), T0 + timedelta(days=2)]

    def test_weekly(self):
        occurrences = trigger(ScheduleFrequency.WEEKLY).occurrences(T0 + timedelta(days=14))

        assert occurrences[-1] == T0 + timedelta(weeks=2)
        assert len(occurrences) == 3

    def test_monthly_clamps_day(self):
        pointer = T0.replace(month=1, day=31)

        occurrences = trigger(ScheduleFrequency.MONTHLY, pointer).occurrences(pointer.replace(month=3, day=31))

        assert [o.date().isoformat() for o in occurrences] == ["2024-01-31", "2024-02-29", "2024-03-31"]

    def test_nothing_before_pointer(self):
        assert trigger(ScheduleFrequency.DAILY).occurrences(T0 - timedelta(seconds=1)) == []


class TestIsDue:
    @pytest.mark.parametrize(
        ("since", "now", "due"),
        [
            (None, T0, True),
            (None, T0 - timedelta(minutes=1), False),
            (T0 - timedelta(minutes=1), T0, True),
            (T0, T0 + timedelta(hours=23), False),
            (T0 + timedelta(hours=23), T0 + timedelta(days=1), True),
        ],
    )
    def test_daily(self, since, now, due):
        assert trigger(ScheduleFrequency.DAILY).is_due(since, now) is due

    def test_once_fires_once(self):
        once = trigger(ScheduleFrequency.ONCE)

        assert once.is_due(None, T0 + timedelta(days=3)) is True
        assert once.is_due(T0 + timedelta(days=3), T0 + timedelta(days=4)) is False

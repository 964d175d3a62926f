"""Tests for due-pair selection."""

from dataclasses import replace
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

import pytest

from agents.dunning.dto import DuePair, EventType, InstallmentStatus, LogStatus
from agents.dunning.evaluator import DunningEvaluator, day_bounds, group_pairs, target_date
from dunning_factories import SCHOOL_A, SCHOOL_B, engine_config, make_installment, make_step

SAO_PAULO = ZoneInfo("America/Sao_Paulo")


@pytest.fixture
def evaluator(store):
    return DunningEvaluator(store, store, store)


@pytest.fixture
def ruler(store):
    store.save_steps(
        SCHOOL_A,
        [
            make_step("before", -3),
            make_step("on", 0, template_key="finance_on_due"),
            make_step("after", 5, template_key="finance_overdue"),
        ],
    )


def _due(evaluator, today, **overrides):
    config = engine_config(SCHOOL_A, **overrides)
    return [(p.installment.id, p.step.id) for p in evaluator.due_pairs(SCHOOL_A, today, config)]


class TestOffsetMath:
    """DUE_DATE steps fire on due_date + day_offset."""

    @pytest.fixture(autouse=True)
    def _seed(self, store, ruler):
        store.add_installment(make_installment("inst-1", due=date(2024, 1, 10)))

    @pytest.mark.parametrize(
        "today,expected",
        [
            (date(2024, 1, 7), [("inst-1", "before")]),
            (date(2024, 1, 10), [("inst-1", "on")]),
            (date(2024, 1, 15), [("inst-1", "after")]),
            (date(2024, 1, 8), []),
            (date(2024, 1, 14), []),
        ],
    )
    def test_selected_only_on_target_date(self, evaluator, today, expected):
        assert _due(evaluator, today) == expected

    def test_target_date_helper(self):
        inst = make_installment(due=date(2024, 1, 10))
        assert target_date(make_step("s", -3), inst, SAO_PAULO) == date(2024, 1, 7)
        assert target_date(make_step("s", 5), inst, SAO_PAULO) == date(2024, 1, 15)
        assert target_date(make_step("s", 0), inst, SAO_PAULO) == date(2024, 1, 10)


class TestCreationAnchor:
    """CREATION steps fire on the installment's creation day."""

    @pytest.fixture(autouse=True)
    def _seed(self, store):
        store.save_steps(
            SCHOOL_A,
            [make_step("created", 7, event_type=EventType.CREATION, template_key="finance_on_created")],
        )

    def test_fires_on_creation_day_regardless_of_due_date(self, store, evaluator):
        store.add_installment(
            make_installment("inst-1", due=date(2024, 2, 10), created_at=datetime(2024, 1, 5, 15, 0, tzinfo=UTC))
        )

        assert _due(evaluator, date(2024, 1, 5)) == [("inst-1", "created")]
        assert _due(evaluator, date(2024, 1, 12)) == []
        assert _due(evaluator, date(2024, 2, 10)) == []

    def test_creation_day_uses_school_timezone(self, store, evaluator):
        # 02:00 UTC on the 6th is still the 5th in Sao Paulo (UTC-3)
        store.add_installment(
            make_installment("late", created_at=datetime(2024, 1, 6, 2, 0, tzinfo=UTC))
        )

        assert _due(evaluator, date(2024, 1, 5)) == [("late", "created")]
        assert _due(evaluator, date(2024, 1, 6), retry_failed_days=0) == []

    def test_day_bounds_are_utc(self):
        start, end = day_bounds(date(2024, 1, 5), SAO_PAULO)
        assert start == datetime(2024, 1, 5, 3, 0, tzinfo=UTC)
        assert end == datetime(2024, 1, 6, 3, 0, tzinfo=UTC)


class TestEligibility:
    def test_cancelled_installments_are_excluded(self, store, evaluator, ruler):
        store.add_installment(make_installment("cancelled", status=InstallmentStatus.CANCELLED))
        assert _due(evaluator, date(2024, 1, 10)) == []

    def test_paid_installments_remain_eligible(self, store, evaluator, ruler):
        store.add_installment(make_installment("paid", status=InstallmentStatus.PAID))
        assert _due(evaluator, date(2024, 1, 10)) == [("paid", "on")]

    def test_inactive_step_never_fires(self, store, evaluator):
        store.save_steps(SCHOOL_A, [make_step("off", 0, active=False)])
        store.add_installment(make_installment("inst-1"))

        assert _due(evaluator, date(2024, 1, 10)) == []

    def test_reactivated_step_does_not_catch_up(self, store, evaluator):
        store.save_steps(SCHOOL_A, [make_step("off", 0, active=False)])
        store.add_installment(make_installment("inst-1"))
        assert _due(evaluator, date(2024, 1, 10)) == []

        store.save_steps(SCHOOL_A, [make_step("off", 0, active=True)])
        assert _due(evaluator, date(2024, 1, 11)) == []

    def test_pair_with_success_log_is_excluded(self, store, evaluator, ruler):
        store.add_installment(make_installment("inst-1"))
        store.append_log(school_id=SCHOOL_A, installment_id="inst-1", step_id="on", status=LogStatus.SUCCESS)

        assert _due(evaluator, date(2024, 1, 10)) == []

    def test_other_school_is_invisible(self, store, evaluator, ruler):
        store.save_steps(SCHOOL_B, [make_step("b-on", 0, school_id=SCHOOL_B)])
        store.add_installment(make_installment("a-1"))
        store.add_installment(make_installment("b-1", school_id=SCHOOL_B))

        assert _due(evaluator, date(2024, 1, 10)) == [("a-1", "on")]
        pairs = evaluator.due_pairs(SCHOOL_B, date(2024, 1, 10), engine_config(SCHOOL_B))
        assert [(p.installment.id, p.step.id) for p in pairs] == [("b-1", "b-on")]


class TestFailedRetries:
    """Failed pairs are re-selected inside the retry window."""

    @pytest.fixture(autouse=True)
    def _seed(self, store, ruler):
        store.add_installment(make_installment("inst-1", due=date(2024, 1, 10)))

    def test_failed_pair_retried_next_day(self, store, evaluator):
        store.append_log(
            school_id=SCHOOL_A, installment_id="inst-1", step_id="on",
            status=LogStatus.FAILED, error_message="http_500",
        )

        pairs = evaluator.due_pairs(SCHOOL_A, date(2024, 1, 11), engine_config(SCHOOL_A))

        assert [(p.key, p.is_retry) for p in pairs] == [(("inst-1", "on"), True)]

    def test_never_attempted_pair_is_not_caught_up(self, evaluator):
        assert _due(evaluator, date(2024, 1, 11)) == []

    def test_failed_then_succeeded_is_not_retried(self, store, evaluator):
        store.append_log(school_id=SCHOOL_A, installment_id="inst-1", step_id="on", status=LogStatus.FAILED)
        store.append_log(school_id=SCHOOL_A, installment_id="inst-1", step_id="on", status=LogStatus.SUCCESS)

        assert _due(evaluator, date(2024, 1, 11)) == []

    def test_retry_window_is_bounded(self, store, evaluator):
        store.append_log(school_id=SCHOOL_A, installment_id="inst-1", step_id="on", status=LogStatus.FAILED)

        assert _due(evaluator, date(2024, 1, 12), retry_failed_days=2) == [("inst-1", "on")]
        assert _due(evaluator, date(2024, 1, 13), retry_failed_days=2) == []
        assert _due(evaluator, date(2024, 1, 11), retry_failed_days=0) == []


class TestGroupPairs:
    def _pair(self, installment_id, step, enrollment_id, *, due=date(2024, 1, 10), is_retry=False):
        installment = make_installment(installment_id, due=due, enrollment_id=enrollment_id)
        return DuePair(installment, step, date(2024, 1, 10), is_retry=is_retry)

    def test_same_step_and_enrollment_are_merged(self):
        on = make_step("on", 0)
        later = self._pair("inst-2", on, "enr-1", due=date(2024, 1, 10))
        earlier = self._pair("inst-1", on, "enr-1", due=date(2024, 1, 10))
        other = self._pair("inst-3", on, "enr-2")

        groups = group_pairs([later, other, earlier])

        assert [group.keys for group in groups] == [
            [("inst-1", "on"), ("inst-2", "on")],
            [("inst-3", "on")],
        ]
        assert [i.id for i in groups[0].installments] == ["inst-1", "inst-2"]

    def test_steps_retries_and_orphans_stay_apart(self):
        on, before = make_step("on", 0), make_step("before", -3)
        orphans = [replace(make_installment(f"orphan-{i}"), enrollment_id=None) for i in (1, 2)]
        pairs = [
            self._pair("inst-1", on, "enr-1"),
            self._pair("inst-2", before, "enr-1"),
            self._pair("inst-3", on, "enr-1", is_retry=True),
            DuePair(orphans[0], on, date(2024, 1, 10)),
            DuePair(orphans[1], on, date(2024, 1, 10)),
        ]

        groups = group_pairs(pairs)

        assert len(groups) == 5
        assert all(len(group.pairs) == 1 for group in groups)

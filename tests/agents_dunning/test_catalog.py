"""Tests for ruler management (step upsert, defaults, validation)."""

from datetime import date

import pytest

from agents.dunning.catalog import DEFAULT_RULER, StepCatalog
from agents.dunning.dto import EventType
from dunning_factories import SCHOOL_A, SCHOOL_B, make_installment, make_step


@pytest.fixture
def catalog(store):
    return StepCatalog(store)


class TestStepCatalog:
    def test_ensure_defaults_seeds_once(self, catalog):
        steps = catalog.ensure_defaults(SCHOOL_A)

        assert sorted((s.event_type.value, s.day_offset, s.template_key) for s in steps) == sorted(
            (e.value, o, k) for e, o, k in DEFAULT_RULER
        )
        again = catalog.ensure_defaults(SCHOOL_A)
        assert {s.id for s in again} == {s.id for s in steps}

    def test_save_upserts_and_removes_missing(self, catalog):
        catalog.save_steps(SCHOOL_A, [make_step("keep", -3), make_step("drop", 5)])

        saved = catalog.save_steps(SCHOOL_A, [make_step("keep", -2), make_step("new", 0)])

        assert sorted((s.id, s.day_offset) for s in saved) == [("keep", -2), ("new", 0)]

    def test_save_does_not_touch_other_schools(self, catalog):
        catalog.save_steps(SCHOOL_B, [make_step("b1", 0, school_id=SCHOOL_B)])
        catalog.save_steps(SCHOOL_A, [make_step("a1", 0)])

        assert [s.id for s in catalog.list_steps(SCHOOL_B)] == ["b1"]

    def test_foreign_step_id_is_rejected_atomically(self, catalog):
        catalog.save_steps(SCHOOL_B, [make_step("shared", 0, school_id=SCHOOL_B)])
        catalog.save_steps(SCHOOL_A, [make_step("a1", 0)])

        with pytest.raises(ValueError):
            catalog.save_steps(SCHOOL_A, [make_step("shared", 1)])

        assert [s.id for s in catalog.list_steps(SCHOOL_A)] == ["a1"]

    def test_creation_offset_forced_to_zero(self, catalog):
        (step,) = catalog.save_steps(SCHOOL_A, [make_step("c", 4, event_type=EventType.CREATION)])
        assert step.day_offset == 0

    @pytest.mark.parametrize(
        "step",
        [
            make_step("s", 0, custom="   "),
            make_step("s", 0, template_key=""),
        ],
    )
    def test_invalid_steps_rejected(self, catalog, step):
        with pytest.raises(ValueError):
            catalog.save_steps(SCHOOL_A, [step])

    def test_duplicate_ids_rejected(self, catalog):
        with pytest.raises(ValueError, match="Duplicate step id"):
            catalog.save_steps(SCHOOL_A, [make_step("x", 0), make_step("x", 1)])

    def test_missing_ids_are_generated(self, catalog):
        (step,) = catalog.save_steps(SCHOOL_A, [make_step("", 0)])
        assert step.id

    def test_active_steps(self, catalog):
        catalog.save_steps(SCHOOL_A, [make_step("on", 0), make_step("off", 1, active=False)])
        assert [s.id for s in catalog.list_active_steps(SCHOOL_A)] == ["on"]


class TestEditedSteps:
    def test_edited_step_does_not_fire_again(self, store, catalog, engine, dispatcher):
        catalog.save_steps(SCHOOL_A, [make_step("on", 0, template_key="finance_on_due")])
        store.add_installment(make_installment("inst-1"))
        assert engine.run_for_school(SCHOOL_A, date(2024, 1, 10)).sent == 1

        catalog.save_steps(SCHOOL_A, [make_step("on", 0, template_key="finance_overdue")])
        result = engine.run_for_school(SCHOOL_A, date(2024, 1, 10))

        assert result.sent == 0
        assert len(dispatcher.calls) == 1

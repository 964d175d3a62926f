"""Fixtures for the dunning engine tests.

Everything runs against ``InMemoryDunningStore`` and a recording fake
channel unless a test builds its own SQLite store.
"""

import pytest

from agents.dunning.engine import DunningEngine
from agents.dunning.memory import InMemoryDunningStore
from agents.dunning.templates import FileTemplateRepository
from dunning_factories import NOW, SCHOOL_A, SCHOOL_B, FakeDispatcher, engine_config, make_school


@pytest.fixture
def store():
    store = InMemoryDunningStore()
    for template in FileTemplateRepository().templates.values():
        store.add_template(template)
    store.add_school(make_school(SCHOOL_A, "Escola Alpha"))
    store.add_school(make_school(SCHOOL_B, "Escola Beta"))
    return store


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def config_overrides():
    """Per-test overrides applied to every school's config."""
    return {}


@pytest.fixture
def engine(store, dispatcher, config_overrides):
    def factory(school):
        school.require_whatsapp()
        return dispatcher

    return DunningEngine.from_store(
        store,
        dispatcher_factory=factory,
        config_factory=lambda school_id: engine_config(school_id, **config_overrides),
        clock=lambda: NOW,
        max_tenant_workers=2,
    )

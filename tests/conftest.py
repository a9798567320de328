from types import SimpleNamespace

import pytest

from kidvolts.models import Role
from kidvolts.ops import StructuredLogger
from kidvolts.persistence import (
    BazaarItem,
    Mission,
    RecordStore,
    User,
    create_db_and_tables,
    make_engine,
)


@pytest.fixture()
def store():
    engine = make_engine("sqlite://")
    create_db_and_tables(engine)
    yield RecordStore(engine)
    engine.dispose()


@pytest.fixture()
def logger() -> StructuredLogger:
    return StructuredLogger()


@pytest.fixture()
def household(store):
    """A parent, two children, one active and one retired mission, and a bazaar item."""

    mom = store.save(User(id="mom", username="Mom", role=Role.PARENT.value))
    ava = store.save(User(id="ava", username="Ava", role=Role.CHILD.value, points=25))
    ben = store.save(User(id="ben", username="Ben", role=Role.CHILD.value))
    dishes = store.save(Mission(id="dishes", title="Dishes", icon="kitchen", base_points=20))
    retired = store.save(Mission(id="retired", title="Old chore", base_points=5, is_active=False))
    movie = store.save(BazaarItem(id="movie", item_name="Movie Night Pick", cost=10, stock=5, max_stock=5))
    return SimpleNamespace(mom=mom, ava=ava, ben=ben, dishes=dishes, retired=retired, movie=movie)

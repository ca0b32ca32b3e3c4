import asyncio

import pytest

from presencebook.errors import (
    ActorNotPermittedError,
    GuardianAlreadyLinkedError,
    GuardianNotLinkedError,
    UserNotFoundError,
)
from presencebook.services.children import ChildRegistry


@pytest.fixture()
def guardian(store):
    asyncio.run(store.set("users", "parent-2", {"email": "far@example.com", "role": "parent", "name": "Far"}))
    return "parent-2"


def test_link_guardian_by_email(store, employee, make_child, guardian):
    child_id = make_child(guardian_ids=["parent-1"])

    child = asyncio.run(ChildRegistry(store).link_guardian(employee, child_id, "  Far@Example.com "))

    assert child["guardianIds"] == ["parent-1", "parent-2"]


def test_link_rejects_unknown_email(store, employee, make_child):
    child_id = make_child()
    with pytest.raises(UserNotFoundError):
        asyncio.run(ChildRegistry(store).link_guardian(employee, child_id, "nobody@example.com"))


def test_link_rejects_duplicate(store, employee, make_child, guardian):
    child_id = make_child(guardian_ids=[guardian])
    with pytest.raises(GuardianAlreadyLinkedError):
        asyncio.run(ChildRegistry(store).link_guardian(employee, child_id, "far@example.com"))


def test_unlink_guardian(store, admin, make_child, guardian):
    child_id = make_child(guardian_ids=["parent-1", guardian])
    registry = ChildRegistry(store)

    child = asyncio.run(registry.unlink_guardian(admin, child_id, "far@example.com"))
    assert child["guardianIds"] == ["parent-1"]

    with pytest.raises(GuardianNotLinkedError):
        asyncio.run(registry.unlink_guardian(admin, child_id, "far@example.com"))


def test_parents_may_not_change_guardians(store, parent, make_child, guardian):
    child_id = make_child(guardian_ids=["parent-1"])
    with pytest.raises(ActorNotPermittedError):
        asyncio.run(ChildRegistry(store).link_guardian(parent, child_id, "far@example.com"))

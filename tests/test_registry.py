import pytest

from services.errors import InvalidInput, NameTaken
from services.registry import ConnectionRegistry


def test_claim_and_resolve():
    registry = ConnectionRegistry()
    assert registry.claim("c1", "  alice ") == "alice"
    assert registry.resolve("alice") == "c1"
    assert registry.username_of("c1") == "alice"


@pytest.mark.parametrize("name", ["", "   ", None])
def test_claim_rejects_blank_names(name):
    registry = ConnectionRegistry()
    with pytest.raises(InvalidInput):
        registry.claim("c1", name)
    assert registry.online_users() == []


def test_second_live_claim_is_name_taken():
    registry = ConnectionRegistry()
    registry.claim("c1", "alice")
    with pytest.raises(NameTaken):
        registry.claim("c2", "alice")
    assert registry.resolve("alice") == "c1"
    assert registry.username_of("c2") is None


def test_same_connection_can_reclaim_its_name():
    registry = ConnectionRegistry()
    registry.claim("c1", "alice")
    registry.claim("c1", "alice")
    assert registry.online_users() == ["alice"]


def test_rename_drops_stale_mapping():
    registry = ConnectionRegistry()
    registry.claim("c1", "alice")
    registry.claim("c1", "alicia")
    assert registry.resolve("alice") is None
    assert registry.resolve("alicia") == "c1"
    assert registry.online_users() == ["alicia"]


def test_release_is_idempotent_and_frees_name():
    registry = ConnectionRegistry()
    registry.claim("c1", "alice")
    assert registry.release("c1") == "alice"
    assert registry.release("c1") is None
    assert registry.resolve("alice") is None
    registry.claim("c2", "alice")
    assert registry.resolve("alice") == "c2"


def test_online_users_keep_claim_order():
    registry = ConnectionRegistry()
    for cid, name in [("c1", "zoe"), ("c2", "adam"), ("c3", "mike")]:
        registry.claim(cid, name)
    assert registry.online_users() == ["zoe", "adam", "mike"]
    registry.release("c2")
    registry.claim("c4", "bob")
    assert registry.online_users() == ["zoe", "mike", "bob"]

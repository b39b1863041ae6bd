import pytest

from poolauth.storage.base import ensure_pool
from poolauth.storage.errors import AlreadyExists, NotFound, TenantIsolationViolation
from poolauth.storage.memory import MemoryStore
from poolauth.storage.models import (
    Client,
    Group,
    MfaDevice,
    User,
    UserPool,
    UserUpdate,
)


def _store_with_pools(*pool_ids):
    store = MemoryStore()
    store.connect()
    for pool_id in pool_ids:
        store.create_pool(UserPool(pool_id=pool_id, client_id=f"client-{pool_id}", pool_name=pool_id))
    return store


def _user(pool_id, email="alice@example.com"):
    return User(pool_id=pool_id, email=email, password_hash="hash")


def test_same_email_in_two_pools_is_isolated():
    store = _store_with_pools("p1", "p2")
    first = store.create_user(_user("p1"))
    second = store.create_user(_user("p2"))

    assert first.user_id != second.user_id
    assert store.get_user_by_email("p1", "alice@example.com").user_id == first.user_id
    assert store.get_user_by_email("p2", "ALICE@example.com").user_id == second.user_id
    with pytest.raises(NotFound):
        store.get_user("p2", first.user_id)


def test_duplicate_email_in_pool_rejected():
    store = _store_with_pools("p1")
    store.create_user(_user("p1"))
    with pytest.raises(AlreadyExists):
        store.create_user(_user("p1", email=" Alice@Example.com "))


def test_duplicate_client_id_rejected_across_pools():
    store = _store_with_pools("p1", "p2")
    store.create_client(Client(client_id="c1", client_secret="s", client_name="one", pool_id="p1"))
    with pytest.raises(AlreadyExists):
        store.create_client(
            Client(client_id="c1", client_secret="s", client_name="two", pool_id="p2")
        )


def test_create_user_in_unknown_pool_is_not_found():
    store = _store_with_pools()
    with pytest.raises(NotFound):
        store.create_user(_user("missing"))


def test_generated_ids_are_not_uuid_shaped():
    store = _store_with_pools("p1")
    user = store.create_user(_user("p1"))
    assert "-" not in user.user_id
    assert len(user.user_id) == 24


def test_pagination_visits_every_record_once_despite_inserts():
    store = _store_with_pools("p1")
    created = {store.create_user(_user("p1", f"user{i}@example.com")).user_id for i in range(23)}

    seen = []
    page = store.list_users("p1", limit=5)
    seen.extend(u.user_id for u in page.items)
    # Inserted after the first page; may or may not show up later
    late = store.create_user(_user("p1", "late@example.com")).user_id
    while page.next_token:
        page = store.list_users("p1", limit=5, next_token=page.next_token)
        seen.extend(u.user_id for u in page.items)

    assert len(seen) == len(set(seen))
    assert created <= set(seen)
    assert set(seen) - created <= {late}


def test_page_size_is_clamped():
    store = _store_with_pools("p1")
    for i in range(3):
        store.create_user(_user("p1", f"u{i}@example.com"))
    page = store.list_users("p1", limit=0)
    assert len(page.items) == 1
    assert page.next_token


def test_invalid_page_token_raises_value_error():
    store = _store_with_pools("p1")
    with pytest.raises(ValueError):
        store.list_users("p1", next_token="not-a-token!")


def test_partial_update_leaves_other_fields():
    store = _store_with_pools("p1")
    user = store.create_user(
        User(pool_id="p1", email="a@example.com", password_hash="h", given_name="Al", nickname="al")
    )
    updated = store.update_user("p1", user.user_id, UserUpdate(nickname="ally"))
    assert updated.nickname == "ally"
    assert updated.given_name == "Al"
    assert updated.password_hash == "h"
    assert updated.updated_at >= user.updated_at


def test_update_with_none_clears_optional_field():
    store = _store_with_pools("p1")
    user = store.create_user(
        User(pool_id="p1", email="a@example.com", password_hash="h", given_name="Al", nickname="nick")
    )
    assert not UserUpdate(nickname=None).is_empty()
    updated = store.update_user("p1", user.user_id, UserUpdate(nickname=None))
    assert updated.nickname is None
    assert updated.given_name == "Al"
    assert store.get_user("p1", user.user_id).nickname is None


def test_update_rejects_clearing_required_field():
    with pytest.raises(ValueError):
        UserUpdate(email=None)
    assert UserUpdate().is_empty()


def test_update_to_taken_email_conflicts():
    store = _store_with_pools("p1")
    store.create_user(_user("p1", "a@example.com"))
    other = store.create_user(_user("p1", "b@example.com"))
    with pytest.raises(AlreadyExists):
        store.update_user("p1", other.user_id, UserUpdate(email="A@example.com"))


def test_delete_pool_cascades_everything():
    store = _store_with_pools("p1", "p2")
    user = store.create_user(_user("p1"))
    keeper = store.create_user(_user("p2"))
    store.create_client(Client(client_id="c1", client_secret="s", client_name="n", pool_id="p1"))
    group = store.create_group(Group(pool_id="p1", group_name="admins"))
    device = store.create_mfa_device(
        MfaDevice(pool_id="p1", user_id=user.user_id, device_name="phone", secret_key="x")
    )

    store.delete_pool("p1")

    with pytest.raises(NotFound):
        store.get_pool("p1")
    with pytest.raises(NotFound):
        store.get_user("p1", user.user_id)
    with pytest.raises(NotFound):
        store.get_client("c1")
    with pytest.raises(NotFound):
        store.get_group("p1", group.group_id)
    with pytest.raises(NotFound):
        store.get_mfa_device("p1", user.user_id, device.device_id)
    assert store.get_user("p2", keeper.user_id).email == "alice@example.com"


def test_delete_group_removes_membership():
    store = _store_with_pools("p1")
    user = store.create_user(_user("p1"))
    group = store.create_group(Group(pool_id="p1", group_name="staff"))
    store.add_user_to_group("p1", user.user_id, group.group_id)
    # Adding twice keeps a single membership
    member = store.add_user_to_group("p1", user.user_id, group.group_id)
    assert member.groups == [group.group_id]
    assert [u.user_id for u in store.get_group_users("p1", group.group_id)] == [user.user_id]

    store.delete_group("p1", group.group_id)

    assert store.get_user("p1", user.user_id).groups == []
    assert store.get_user_groups("p1", user.user_id) == []


def test_device_names_unique_per_user():
    store = _store_with_pools("p1")
    alice = store.create_user(_user("p1", "alice@example.com"))
    bob = store.create_user(_user("p1", "bob@example.com"))
    store.create_mfa_device(
        MfaDevice(pool_id="p1", user_id=alice.user_id, device_name="phone", secret_key="x")
    )
    store.create_mfa_device(
        MfaDevice(pool_id="p1", user_id=bob.user_id, device_name="phone", secret_key="x")
    )
    with pytest.raises(AlreadyExists):
        store.create_mfa_device(
            MfaDevice(pool_id="p1", user_id=alice.user_id, device_name="phone", secret_key="y")
        )


def test_duplicate_device_id_rejected():
    store = _store_with_pools("p1")
    user = store.create_user(_user("p1"))
    first = store.create_mfa_device(
        MfaDevice(pool_id="p1", user_id=user.user_id, device_name="phone", secret_key="x")
    )
    with pytest.raises(AlreadyExists) as exc:
        store.create_mfa_device(
            MfaDevice(
                pool_id="p1",
                user_id=user.user_id,
                device_name="tablet",
                secret_key="y",
                device_id=first.device_id,
            )
        )
    assert exc.value.detail == {"field": "device_id"}
    assert store.get_mfa_device("p1", user.user_id, first.device_id).device_name == "phone"


def test_consume_backup_code_only_once():
    store = _store_with_pools("p1")
    user = store.create_user(_user("p1"))
    device = store.create_mfa_device(
        MfaDevice(
            pool_id="p1",
            user_id=user.user_id,
            device_name="phone",
            secret_key="x",
            backup_codes=["aaa", "bbb"],
        )
    )
    assert store.consume_backup_code("p1", user.user_id, device.device_id, "aaa") is True
    assert store.consume_backup_code("p1", user.user_id, device.device_id, "aaa") is False
    assert store.get_mfa_device("p1", user.user_id, device.device_id).backup_codes == ["bbb"]


def test_returned_entities_are_copies():
    store = _store_with_pools("p1")
    user = store.create_user(_user("p1"))
    user.groups.append("tampered")
    assert store.get_user("p1", user.user_id).groups == []


def test_ensure_pool_raises_on_foreign_row():
    with pytest.raises(TenantIsolationViolation):
        ensure_pool("p2", "p1", entity="user", key="u1")

"""DynamoDB store behaviour against moto's in-process DynamoDB."""

import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from poolauth.storage.dynamodb import DynamoStore
from poolauth.storage.errors import AlreadyExists, NotFound
from poolauth.storage.models import (
    Client,
    Group,
    MfaDevice,
    MfaDeviceUpdate,
    User,
    UserPool,
    UserStatus,
    UserUpdate,
)


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def store(aws_credentials):
    with mock_aws():
        dynamo = DynamoStore("us-east-1", table_prefix="test-")
        dynamo.connect()
        for pool_id in ("p1", "p2"):
            dynamo.create_pool(UserPool(pool_id=pool_id, client_id=f"owner-{pool_id}", pool_name=pool_id))
        yield dynamo


def _user(pool_id, email="alice@example.com"):
    return User(pool_id=pool_id, email=email, password_hash="hash")


def test_connect_is_idempotent(store):
    store.connect()
    assert store.get_pool("p1").pool_name == "p1"


def test_pool_lookup_by_owner_client(store):
    assert store.get_pool_by_client_id("owner-p2").pool_id == "p2"
    assert store.get_pool_by_client_id("nobody") is None
    with pytest.raises(AlreadyExists):
        store.create_pool(UserPool(pool_id="p3", client_id="owner-p1", pool_name="dup"))
    with pytest.raises(AlreadyExists):
        store.create_pool(UserPool(pool_id="p1", client_id="fresh", pool_name="dup"))


def test_users_are_pool_scoped(store):
    first = store.create_user(_user("p1"))
    second = store.create_user(_user("p2", "Alice@Example.com"))

    assert store.get_user_by_email("p1", "ALICE@example.com").user_id == first.user_id
    assert store.get_user_by_email("p2", "alice@example.com").user_id == second.user_id
    with pytest.raises(NotFound):
        store.get_user("p2", first.user_id)
    with pytest.raises(AlreadyExists):
        store.create_user(_user("p1"))
    with pytest.raises(NotFound):
        store.create_user(_user("missing"))


def test_update_user_round_trips_types(store):
    user = store.create_user(_user("p1"))
    updated = store.update_user(
        "p1",
        user.user_id,
        UserUpdate(given_name="Al", status=UserStatus.ARCHIVED, custom_attributes={"tier": "gold"}),
    )
    assert updated.given_name == "Al"
    assert updated.status == UserStatus.ARCHIVED
    assert updated.custom_attributes == {"tier": "gold"}
    assert updated.password_hash == "hash"

    fetched = store.get_user("p1", user.user_id)
    assert fetched.status == UserStatus.ARCHIVED
    with pytest.raises(NotFound):
        store.update_user("p1", "0000000000000000deadbeef", UserUpdate(nickname="x"))


def test_update_with_none_removes_attribute(store):
    user = store.create_user(
        User(pool_id="p1", email="a@example.com", password_hash="hash", nickname="nick", given_name="Al")
    )
    updated = store.update_user("p1", user.user_id, UserUpdate(nickname=None))
    assert updated.nickname is None
    assert updated.given_name == "Al"
    assert store.get_user("p1", user.user_id).nickname is None


def test_update_to_taken_email_conflicts(store):
    store.create_user(_user("p1", "a@example.com"))
    other = store.create_user(_user("p1", "b@example.com"))
    with pytest.raises(AlreadyExists):
        store.update_user("p1", other.user_id, UserUpdate(email="a@example.com"))


def test_list_users_pages_without_gaps(store):
    created = {store.create_user(_user("p1", f"user{i}@example.com")).user_id for i in range(7)}
    store.create_user(_user("p2", "elsewhere@example.com"))

    seen = []
    page = store.list_users("p1", limit=3)
    seen.extend(u.user_id for u in page.items)
    while page.next_token:
        page = store.list_users("p1", limit=3, next_token=page.next_token)
        seen.extend(u.user_id for u in page.items)

    assert len(seen) == len(set(seen)) == 7
    assert set(seen) == created
    assert store.count_users("p1") == 7


def test_clients_unique_and_listed_per_pool(store):
    store.create_client(Client(client_id="c1", client_secret="s", client_name="one", pool_id="p1"))
    store.create_client(Client(client_id="c2", client_secret="s", client_name="two", pool_id="p1"))
    store.create_client(Client(client_id="c3", client_secret="s", client_name="three", pool_id="p2"))

    with pytest.raises(AlreadyExists):
        store.create_client(Client(client_id="c1", client_secret="s", client_name="x", pool_id="p2"))
    with pytest.raises(NotFound):
        store.create_client(Client(client_id="c9", client_secret="s", client_name="x", pool_id="nope"))

    first = store.list_clients("p1", limit=1)
    assert [c.client_id for c in first.items] == ["c1"]
    second = store.list_clients("p1", limit=1, next_token=first.next_token)
    assert [c.client_id for c in second.items] == ["c2"]
    assert second.next_token is None

    moved = store.reassociate_client("c3", "p1")
    assert moved.pool_id == "p1"
    assert store.get_client("c3").pool_id == "p1"


def test_group_membership_and_delete_fan_out(store):
    user = store.create_user(_user("p1"))
    staff = store.create_group(Group(pool_id="p1", group_name="staff"))
    admins = store.create_group(Group(pool_id="p1", group_name="admins"))
    with pytest.raises(AlreadyExists):
        store.create_group(Group(pool_id="p1", group_name="staff"))

    store.add_user_to_group("p1", user.user_id, staff.group_id)
    member = store.add_user_to_group("p1", user.user_id, admins.group_id)
    assert sorted(member.groups) == sorted([staff.group_id, admins.group_id])
    assert [u.user_id for u in store.get_group_users("p1", staff.group_id)] == [user.user_id]

    store.delete_group("p1", staff.group_id)

    assert store.get_user("p1", user.user_id).groups == [admins.group_id]
    assert [g.group_id for g in store.get_user_groups("p1", user.user_id)] == [admins.group_id]
    with pytest.raises(NotFound):
        store.get_group("p1", staff.group_id)


def test_mfa_device_lifecycle(store):
    user = store.create_user(_user("p1"))
    device = store.create_mfa_device(
        MfaDevice(
            pool_id="p1",
            user_id=user.user_id,
            device_name="phone",
            secret_key="ciphertext",
            backup_codes=["aaa", "bbb"],
        )
    )
    with pytest.raises(AlreadyExists):
        store.create_mfa_device(
            MfaDevice(pool_id="p1", user_id=user.user_id, device_name="phone", secret_key="x")
        )

    verified = store.verify_mfa_device("p1", user.user_id, device.device_id)
    assert verified.is_verified

    assert store.consume_backup_code("p1", user.user_id, device.device_id, "aaa") is True
    assert store.consume_backup_code("p1", user.user_id, device.device_id, "aaa") is False
    assert store.get_mfa_device("p1", user.user_id, device.device_id).backup_codes == ["bbb"]

    renamed = store.update_mfa_device(
        "p1", user.user_id, device.device_id, MfaDeviceUpdate(device_name="work phone")
    )
    assert renamed.device_name == "work phone"

    store.delete_mfa_device("p1", user.user_id, device.device_id)
    assert store.list_user_mfa_devices("p1", user.user_id) == []
    with pytest.raises(NotFound):
        store.delete_mfa_device("p1", user.user_id, device.device_id)


def test_update_user_mfa_status(store):
    user = store.create_user(_user("p1"))
    assert store.update_user_mfa_status("p1", user.user_id, True).mfa_enabled is True


def test_delete_pool_cascades(store):
    user = store.create_user(_user("p1"))
    keeper = store.create_user(_user("p2"))
    store.create_client(Client(client_id="c1", client_secret="s", client_name="one", pool_id="p1"))
    group = store.create_group(Group(pool_id="p1", group_name="staff"))
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
    assert store.get_user("p2", keeper.user_id).user_id == keeper.user_id
    with pytest.raises(NotFound):
        store.delete_pool("p1")


def test_delete_pool_carries_on_past_a_failed_device_delete(store, monkeypatch):
    user = store.create_user(_user("p1"))
    phone = store.create_mfa_device(
        MfaDevice(pool_id="p1", user_id=user.user_id, device_name="phone", secret_key="x")
    )
    laptop = store.create_mfa_device(
        MfaDevice(pool_id="p1", user_id=user.user_id, device_name="laptop", secret_key="y")
    )
    real_delete = store.devices_table.delete_item

    def flaky_delete(**kwargs):
        if kwargs["Key"]["device_id"] == phone.device_id:
            raise ClientError(
                {"Error": {"Code": "InternalServerError", "Message": "boom"}}, "DeleteItem"
            )
        return real_delete(**kwargs)

    monkeypatch.setattr(store.devices_table, "delete_item", flaky_delete)

    store.delete_pool("p1")

    with pytest.raises(NotFound):
        store.get_user("p1", user.user_id)
    with pytest.raises(NotFound):
        store.get_pool("p1")
    with pytest.raises(NotFound):
        store.get_mfa_device("p1", user.user_id, laptop.device_id)
    assert store.get_mfa_device("p1", user.user_id, phone.device_id).device_name == "phone"

from __future__ import annotations

import json
import pickle
from typing import Any

import pytest
from kazoo.exceptions import BadVersionError, ConnectionLoss, NoNodeError, NodeExistsError, RolledBackError

from moebench.config import SerializationSettings
from moebench.exceptions import ConcurrentModification, StorageError
from moebench.metastore import (
    Metastore,
    MetastoreConflictError,
    MetastoreStoppedError,
    Precondition,
    VersionToken,
    make_serializers,
)


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_init_ensures_base_structure_without_group(connection, fake_client):
    _m = Metastore(connection=connection, group=None, base_structure=["/base", "/nested/path"])
    assert "/base" in fake_client.ensure_calls
    assert "/nested/path" in fake_client.ensure_calls


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_init_ensures_base_structure_with_group(connection, fake_client):
    _m = Metastore(connection=connection, group="g1", base_structure=["/base"])
    assert "/g1/base" in fake_client.ensure_calls


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_update_and_get_key_default_pickle(connection, fake_client):
    m = Metastore(connection=connection, group=None)

    value = {"a": 1, "b": [1, 2, 3]}
    m.update_key("/foo/bar", value)

    assert fake_client.data["/foo/bar"] == pickle.dumps(value)
    assert m.get_key("/foo/bar") == value


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_update_and_get_key_with_group(connection, fake_client):
    m = Metastore(connection=connection, group="sim1")

    m.update_key("foo", 42)
    assert "/sim1/foo" in fake_client.data
    assert m.get_key("foo") == 42


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_json_serializers_store_plain_json(connection, fake_client):
    packb, unpackb = make_serializers(SerializationSettings(format="json"))
    m = Metastore(connection=connection, group=None, packb=packb, unpackb=unpackb)

    m.update_key("/doc", {"b": [1, 2], "a": None})

    assert json.loads(fake_client.data["/doc"]) == {"a": None, "b": [1, 2]}
    assert m.get_key("/doc") == {"a": None, "b": [1, 2]}


def test_pickle_serializers_use_configured_protocol():
    packb, unpackb = make_serializers(SerializationSettings(format="pickle", protocol=2))
    data = packb({"x": 1})
    assert data[:2] == b"\x80\x02"
    assert unpackb(data) == {"x": 1}


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_contains_and_list_members(connection, fake_client):
    m = Metastore(connection=connection, group=None)

    m.update_key("/root/a", 1)
    m.update_key("/root/b", 2)
    m.update_key("/root/sub/c", 3)

    assert "root/a" in m
    assert "root/x" not in m
    assert set(m.list_members("root")) == {"a", "b", "sub"}


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_list_members_of_missing_path_is_empty(connection):
    m = Metastore(connection=connection, group=None)
    assert m.list_members("/nothing/here") == []


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_drop_key_is_recursive_and_reports_absence(connection, fake_client):
    m = Metastore(connection=connection, group=None)

    m.update_key("/root/a", 1)
    m.update_key("/root/sub/b", 2)

    assert m.drop_key("/root")
    assert not fake_client.data
    assert not m.drop_key("/root")


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_create_key_only_creates_once(connection):
    m = Metastore(connection=connection, group=None)

    assert m.create_key("/k", "first") is True
    assert m.create_key("/k", "second") is False
    assert m.get_key("/k") == "first"


# ---------------------------------------------------------------------------
# Versioning / CAS / atomic update
# ---------------------------------------------------------------------------

# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_get_key_with_version_missing_returns_none(connection):
    m = Metastore(connection=connection, group=None)
    assert m.get_key_with_version("/missing") == (None, None)


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_get_key_with_version_increments(connection):
    m = Metastore(connection=connection, group=None)

    m.update_key("/k", {"a": 1})
    _, tok1 = m.get_key_with_version("/k")
    m.update_key("/k", {"a": 2})
    v2, tok2 = m.get_key_with_version("/k")

    assert isinstance(tok1, VersionToken)
    assert v2 == {"a": 2}
    assert tok2.value == tok1.value + 1


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_update_key_expected_enforces_cas(connection):
    m = Metastore(connection=connection, group=None)

    m.update_key("/k", 1)
    _, tok = m.get_key_with_version("/k")

    m.update_key("/k", 2, expected=tok)
    assert m.get_key("/k") == 2

    with pytest.raises(BadVersionError):
        m.update_key("/k", 3, expected=tok)

    with pytest.raises(NoNodeError):
        m.update_key("/missing", 1, expected=VersionToken(0))


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_compare_and_set_key_success_and_failure(connection):
    m = Metastore(connection=connection, group=None)

    m.update_key("/k", "v1")
    _, tok = m.get_key_with_version("/k")

    assert m.compare_and_set_key("/k", "v2", expected=tok) is True
    assert m.compare_and_set_key("/k", "v3", expected=tok) is False
    assert m.get_key("/k") == "v2"
    assert m.compare_and_set_key("/missing", 123, expected=VersionToken(0)) is False


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_atomic_update_key_updates_existing(metastore):
    metastore.update_key("/counter", 0)

    assert metastore.atomic_update_key("/counter", lambda cur: int(cur) + 1) == 1
    assert metastore.get_key("/counter") == 1


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_atomic_update_key_create_if_missing(metastore):
    out = metastore.atomic_update_key("/new", lambda cur: {"created": cur is None}, create_if_missing=True)
    assert out == {"created": True}
    assert metastore.get_key("/new") == {"created": True}


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_atomic_update_key_missing_raises_if_not_creating(metastore):
    with pytest.raises(NoNodeError):
        metastore.atomic_update_key("/missing", lambda cur: 1)


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_atomic_update_key_skips_write_when_updater_returns_current(metastore, fake_client):
    metastore.update_key("/k", {"v": 1})
    before = fake_client.set_calls

    out = metastore.atomic_update_key("/k", lambda cur: cur)

    assert out == {"v": 1}
    assert fake_client.set_calls == before


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_atomic_update_key_propagates_updater_errors_without_writing(metastore):
    metastore.update_key("/k", 1)

    def boom(_cur: Any) -> Any:
        raise ValueError("rejected")

    with pytest.raises(ValueError):
        metastore.atomic_update_key("/k", boom)
    assert metastore.get_key("/k") == 1


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_atomic_update_key_retries_on_contention_and_succeeds(metastore, monkeypatch):
    metastore.update_key("/k", 0)

    real_cas = metastore.compare_and_set_key
    calls = {"n": 0}

    def flaky_cas(path: str, value: Any, *, expected: VersionToken) -> bool:
        calls["n"] += 1
        if calls["n"] == 1:
            metastore.update_key(path, 999)  # bump version
            return False
        return real_cas(path, value, expected=expected)

    monkeypatch.setattr(metastore, "compare_and_set_key", flaky_cas)

    seen: list[Any] = []

    def updater(cur: Any) -> Any:
        seen.append(cur)
        return int(cur) + 1

    assert metastore.atomic_update_key("/k", updater) == 1000
    assert seen == [0, 999]
    assert metastore.get_key("/k") == 1000


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_atomic_update_key_fails_after_max_retries(metastore, monkeypatch):
    metastore.update_key("/k", 0)
    monkeypatch.setattr(metastore, "compare_and_set_key", lambda *_a, **_kw: False)

    with pytest.raises(MetastoreConflictError) as ei:
        metastore.atomic_update_key("/k", lambda cur: int(cur) + 1, max_retries=3)
    assert isinstance(ei.value, ConcurrentModification)


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_atomic_update_key_create_race_then_retry(metastore, fake_client, monkeypatch):
    real_create = fake_client.create
    calls = {"n": 0}

    def flaky_create(path: str, value: bytes, makepath: bool = False, ephemeral: bool = False, **kwargs: Any) -> None:
        calls["n"] += 1
        if calls["n"] == 1:
            real_create(path, pickle.dumps("other"), makepath=makepath)
            raise NodeExistsError()
        return real_create(path, value, makepath=makepath, **kwargs)

    monkeypatch.setattr(fake_client, "create", flaky_create)

    seen: list[Any] = []

    def updater(cur: Any) -> Any:
        seen.append(cur)
        return "mine"

    assert metastore.atomic_update_key("/race", updater, create_if_missing=True) == "mine"
    assert seen == [None, "other"]
    assert metastore.get_key("/race") == "mine"


def _owner_is_open(value: Any) -> None:
    if value != "open":
        raise ValueError(f"owner is {value!r}")


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_atomic_update_key_with_precondition_creates_then_updates(metastore):
    metastore.update_key("/owner", "open")
    guard = Precondition("/owner", _owner_is_open)

    assert metastore.atomic_update_key("/child", lambda cur: 1, create_if_missing=True, precondition=guard) == 1
    assert metastore.atomic_update_key("/child", lambda cur: cur + 1, precondition=guard) == 2
    assert metastore.get_key("/child") == 2
    # the guard key is only checked, never written
    assert metastore.get_key_with_version("/owner")[1] == VersionToken(0)


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
@pytest.mark.parametrize("owner", ["closed", None])
def test_failing_precondition_aborts_without_writing(metastore, owner):
    if owner is not None:
        metastore.update_key("/owner", owner)

    with pytest.raises(ValueError):
        metastore.atomic_update_key(
            "/child", lambda cur: 1, create_if_missing=True, precondition=Precondition("/owner", _owner_is_open)
        )
    assert "/child" not in metastore


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_guard_key_changing_before_commit_forces_a_fresh_check(metastore, fake_client, monkeypatch):
    metastore.update_key("/owner", "open")
    metastore.update_key("/child", 0)
    real_transaction = fake_client.transaction
    seen: list[Any] = []

    def check(value: Any) -> None:
        seen.append(value)
        _owner_is_open(value)

    def transaction_after_close():
        metastore.update_key("/owner", "closed")
        return real_transaction()

    monkeypatch.setattr(fake_client, "transaction", transaction_after_close)

    with pytest.raises(ValueError):
        metastore.atomic_update_key("/child", lambda cur: cur + 1, precondition=Precondition("/owner", check))
    assert seen == ["open", "closed"]
    assert metastore.get_key("/child") == 0


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_guard_key_bumped_without_closing_is_retried(metastore, fake_client, monkeypatch):
    metastore.update_key("/owner", "open")
    real_transaction = fake_client.transaction
    calls = {"n": 0}

    def transaction_after_touch():
        calls["n"] += 1
        if calls["n"] == 1:
            metastore.update_key("/owner", "open")  # same value, new version
        return real_transaction()

    monkeypatch.setattr(fake_client, "transaction", transaction_after_touch)

    out = metastore.atomic_update_key(
        "/child", lambda cur: "mine", create_if_missing=True, precondition=Precondition("/owner", _owner_is_open)
    )
    assert out == "mine"
    assert calls["n"] == 2
    assert metastore.get_key("/child") == "mine"


class _BrokenTransaction:
    def check(self, *_a: Any, **_kw: Any) -> None:
        pass

    def create(self, *_a: Any, **_kw: Any) -> None:
        pass

    def commit(self) -> list[Any]:
        return [RolledBackError(), ConnectionLoss()]


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_guarded_write_transport_failure_is_storage_error(metastore, fake_client, monkeypatch):
    metastore.update_key("/owner", "open")
    monkeypatch.setattr(fake_client, "transaction", lambda: _BrokenTransaction())

    with pytest.raises(StorageError):
        metastore.atomic_update_key(
            "/child", lambda cur: 1, create_if_missing=True, precondition=Precondition("/owner", _owner_is_open)
        )


# ---------------------------------------------------------------------------
# Transport failures
# ---------------------------------------------------------------------------

# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_kazoo_transport_errors_surface_as_storage_error(connection, fake_client, monkeypatch):
    m = Metastore(connection=connection, group=None)

    def lost(*_a: Any, **_kw: Any) -> Any:
        raise ConnectionLoss()

    monkeypatch.setattr(fake_client, "get", lost)

    with pytest.raises(StorageError):
        m.get_key("/k")


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_operations_on_stopped_metastore_raise(connection):
    m = Metastore(connection=connection, group=None)
    connection.stop()

    with pytest.raises(MetastoreStoppedError) as ei:
        m.get_key("/k")
    assert isinstance(ei.value, StorageError)

from __future__ import annotations

import os
import pwd

import pytest

from image_builder.services.privilege import (
    PrivilegeError,
    RuntimeIdentity,
    drop_privileges,
    lookup_runtime_identity,
    resolve_service_account,
)


class _FakeProcess:
    def __init__(self, euid: int, *, reversible: bool = False) -> None:
        self.euid = euid
        self.reversible = reversible
        self.calls: list[tuple[str, object]] = []

    def geteuid(self) -> int:
        return self.euid

    def setgroups(self, groups: list[int]) -> None:
        self.calls.append(("setgroups", list(groups)))

    def setgid(self, gid: int) -> None:
        self.calls.append(("setgid", gid))

    def setuid(self, uid: int) -> None:
        self.calls.append(("setuid", uid))
        if uid == 0 and self.euid != 0 and not self.reversible:
            raise PermissionError("Operation not permitted")
        self.euid = uid

    def drop(self, identity: RuntimeIdentity) -> bool:
        return drop_privileges(
            identity,
            geteuid=self.geteuid,
            setgroups=self.setgroups,
            setgid=self.setgid,
            setuid=self.setuid,
        )


IDENTITY = RuntimeIdentity(uid=1000, gid=1000, name="node", home="/home/node")


def test_drop_privileges_from_root_switches_group_before_user() -> None:
    process = _FakeProcess(euid=0)

    assert process.drop(IDENTITY) is True

    assert process.calls == [
        ("setgroups", []),
        ("setgid", 1000),
        ("setuid", 1000),
        ("setuid", 0),
    ]
    assert process.euid == 1000


def test_drop_privileges_noop_when_already_target_user() -> None:
    process = _FakeProcess(euid=1000)

    assert process.drop(IDENTITY) is False
    assert process.calls == []


def test_drop_privileges_rejects_other_non_root_user() -> None:
    process = _FakeProcess(euid=1500)

    with pytest.raises(PrivilegeError, match="without root"):
        process.drop(IDENTITY)


def test_drop_privileges_fails_when_root_can_be_regained() -> None:
    process = _FakeProcess(euid=0, reversible=True)

    with pytest.raises(PrivilegeError, match="could be regained"):
        process.drop(IDENTITY)


def test_drop_privileges_refuses_root_identity() -> None:
    process = _FakeProcess(euid=0)

    with pytest.raises(PrivilegeError, match="must not be root"):
        process.drop(RuntimeIdentity(uid=0, gid=0, name="root"))
    assert process.calls == []


def test_lookup_runtime_identity_uses_passwd_entry() -> None:
    uid = os.getuid()
    if uid == 0:
        pytest.skip("current user is root")
    entry = pwd.getpwuid(uid)

    identity = lookup_runtime_identity(uid)

    assert identity == RuntimeIdentity(
        uid=uid, gid=entry.pw_gid, name=entry.pw_name, home=entry.pw_dir
    )


def test_lookup_runtime_identity_without_passwd_entry() -> None:
    uid = 4_000_000
    try:
        pwd.getpwuid(uid)
    except KeyError:
        pass
    else:
        pytest.skip("uid unexpectedly has a passwd entry")

    assert lookup_runtime_identity(uid) == RuntimeIdentity(uid=uid, gid=uid, name=str(uid))


def test_lookup_runtime_identity_rejects_root() -> None:
    with pytest.raises(PrivilegeError):
        lookup_runtime_identity(0)


def test_resolve_service_account_accepts_numeric_ids() -> None:
    assert resolve_service_account("1000", "1000") == (1000, 1000)


def test_resolve_service_account_rejects_unknown_names() -> None:
    with pytest.raises(PrivilegeError, match="unknown service user"):
        resolve_service_account("no-such-user-xyz", "1000")
    with pytest.raises(PrivilegeError, match="unknown service group"):
        resolve_service_account("1000", "no-such-group-xyz")

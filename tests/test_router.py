from types import SimpleNamespace

import pytest
from librouteros.exceptions import TrapError

from collospot.core.config import get_settings
from collospot.core.exceptions import RouterUnavailable
from collospot.services.router import (
    MikrotikGateway,
    SpeedProfile,
    format_rate_limit,
    format_session_timeout,
    parse_data_limit,
    speed_profile_for_plan,
)


class _FakePath:
    def __init__(self, rows):
        self.rows = rows
        self.added = []
        self.removed = []
        self.updated = []

    def __iter__(self):
        return iter(list(self.rows))

    def add(self, **kwargs):
        self.added.append(kwargs)
        new_id = f"*N{len(self.added)}"
        self.rows.append({".id": new_id, **kwargs})
        return new_id

    def remove(self, *ids):
        self.removed.extend(ids)
        self.rows[:] = [row for row in self.rows if row[".id"] not in ids]

    def update(self, **kwargs):
        self.updated.append(kwargs)


class _FakeApi:
    def __init__(self, *, users=None, active=None, profiles=None, fail_on=None):
        self.paths = {
            ("ip", "hotspot", "user"): _FakePath(users or []),
            ("ip", "hotspot", "active"): _FakePath(active or []),
            ("ip", "hotspot", "user", "profile"): _FakePath(profiles or []),
        }
        self.fail_on = fail_on
        self.closed = False

    def path(self, *parts):
        if parts == self.fail_on:
            raise TrapError(message="no such command")
        return self.paths[parts]

    def close(self):
        self.closed = True


@pytest.fixture
def mikrotik():
    settings = get_settings().model_copy(update={"mikrotik_test_mode": False})
    return MikrotikGateway(settings)


PROFILE = SpeedProfile(name="collospot-plan-1", rate_limit="5M/5M", session_timeout="3600s", limit_bytes=500 * 1024 ** 2)


def test_format_helpers():
    assert format_rate_limit("5Mbps") == "5M/5M"
    assert format_rate_limit("512kbps") == "512K/512K"
    assert format_rate_limit("2M/10M") == "2M/10M"
    assert format_rate_limit("fast") == ""
    assert format_session_timeout(6) == "21600s"
    assert parse_data_limit("500MB") == 500 * 1024 ** 2
    assert parse_data_limit("2 GB") == 2 * 1024 ** 3
    assert parse_data_limit("Unlimited") is None


def test_speed_profile_for_plan():
    plan = SimpleNamespace(id=7, speed_limit="20Mbps", duration_hours=24, data_limit="10GB")
    profile = speed_profile_for_plan(plan)
    assert profile.name == "collospot-plan-7"
    assert profile.rate_limit == "20M/20M"
    assert profile.session_timeout == "86400s"
    assert profile.limit_bytes == 10 * 1024 ** 3


def test_grant_access_creates_profile_and_user(mikrotik, monkeypatch):
    api = _FakeApi(users=[{".id": "*9", "name": "tok123"}])
    monkeypatch.setattr(mikrotik, "_connect", lambda: api)

    handle = mikrotik.grant_access("tok123", PROFILE)

    profiles = api.paths[("ip", "hotspot", "user", "profile")]
    users = api.paths[("ip", "hotspot", "user")]
    assert profiles.added[0]["name"] == "collospot-plan-1"
    assert profiles.added[0]["rate-limit"] == "5M/5M"
    assert users.removed == ["*9"]
    added = users.added[0]
    assert added["name"] == "tok123"
    assert added["password"] == "tok123"
    assert added["limit-uptime"] == "3600s"
    assert added["limit-bytes-total"] == str(500 * 1024 ** 2)
    assert handle == "*N1"
    assert api.closed is True


def test_grant_access_updates_existing_profile(mikrotik, monkeypatch):
    api = _FakeApi(profiles=[{".id": "*P1", "name": "collospot-plan-1"}])
    monkeypatch.setattr(mikrotik, "_connect", lambda: api)

    mikrotik.grant_access("tok123", PROFILE)

    profiles = api.paths[("ip", "hotspot", "user", "profile")]
    assert profiles.added == []
    assert profiles.updated[0][".id"] == "*P1"


def test_revoke_access_kicks_and_removes(mikrotik, monkeypatch):
    api = _FakeApi(
        users=[{".id": "*1", "name": "tok123"}, {".id": "*2", "name": "other"}],
        active=[{".id": "*A1", "user": "tok123"}],
    )
    monkeypatch.setattr(mikrotik, "_connect", lambda: api)

    mikrotik.revoke_access("tok123")

    assert api.paths[("ip", "hotspot", "active")].removed == ["*A1"]
    assert api.paths[("ip", "hotspot", "user")].removed == ["*1"]
    assert api.closed is True


def test_list_active_connections(mikrotik, monkeypatch):
    api = _FakeApi(
        active=[
            {
                ".id": "*A1",
                "user": "tok123",
                "address": "10.5.50.10",
                "mac-address": "AA:BB:CC:DD:EE:FF",
                "bytes-in": 1200,
                "bytes-out": "800",
                "uptime": "5m",
            }
        ]
    )
    monkeypatch.setattr(mikrotik, "_connect", lambda: api)

    [conn] = mikrotik.list_active_connections()

    assert conn.username == "tok123"
    assert conn.ip_address == "10.5.50.10"
    assert (conn.bytes_in, conn.bytes_out) == (1200, 800)
    assert api.closed is True


def test_connection_failure_raises_router_unavailable(mikrotik, monkeypatch):
    def _refuse():
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr(mikrotik, "_connect", _refuse)

    with pytest.raises(RouterUnavailable) as exc_info:
        mikrotik.revoke_access("tok123")
    assert exc_info.value.command == "revoke_access"


def test_command_failure_closes_connection(mikrotik, monkeypatch):
    api = _FakeApi(fail_on=("ip", "hotspot", "active"))
    monkeypatch.setattr(mikrotik, "_connect", lambda: api)

    with pytest.raises(RouterUnavailable):
        mikrotik.list_active_connections()
    assert api.closed is True


def test_test_mode_skips_device_io(monkeypatch):
    gateway = MikrotikGateway(get_settings().model_copy(update={"mikrotik_test_mode": True}))

    def _unexpected():
        raise AssertionError("no device I/O in test mode")

    monkeypatch.setattr(gateway, "_connect", _unexpected)

    assert gateway.grant_access("tok123", PROFILE).startswith("*TEST")
    gateway.revoke_access("tok123")
    assert gateway.list_active_connections() == []

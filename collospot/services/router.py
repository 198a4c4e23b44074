import logging
import re
import secrets
from contextlib import contextmanager
from dataclasses import dataclass

from librouteros import connect
from librouteros.exceptions import LibRouterosError

from collospot.core.config import Settings, get_settings
from collospot.core.exceptions import RouterUnavailable


logger = logging.getLogger(__name__)

_UNITS = {"": 1, "B": 1, "KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3, "TB": 1024 ** 4}


@dataclass
class SpeedProfile:
    name: str
    rate_limit: str
    session_timeout: str
    limit_bytes: int | None = None


@dataclass
class ConnectionInfo:
    session_id: str
    username: str
    ip_address: str = ""
    mac_address: str = ""
    bytes_in: int = 0
    bytes_out: int = 0
    uptime: str = "0s"


def format_rate_limit(speed_limit: str | None) -> str:
    """``5Mbps`` -> ``5M/5M`` (upload/download, RouterOS notation)."""
    raw = str(speed_limit or "").strip()
    if "/" in raw:
        return raw
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kKmMgG])?(?:bps)?$", raw)
    if not match:
        return ""
    value, unit = match.groups()
    rate = f"{value}{(unit or '').upper()}"
    return f"{rate}/{rate}"


def format_session_timeout(hours: int) -> str:
    return f"{int(hours) * 3600}s"


def parse_data_limit(data_limit: str | None) -> int | None:
    """``500MB`` -> bytes. ``Unlimited`` or anything unparseable means no cap."""
    raw = str(data_limit or "").strip().upper().replace(" ", "")
    match = re.match(r"^(\d+(?:\.\d+)?)([KMGT]?B)?$", raw)
    if not match:
        return None
    value, unit = match.groups()
    return int(float(value) * _UNITS[unit or ""])


def speed_profile_for_plan(plan) -> SpeedProfile:
    return SpeedProfile(
        name=f"collospot-plan-{plan.id}",
        rate_limit=format_rate_limit(plan.speed_limit),
        session_timeout=format_session_timeout(plan.duration_hours),
        limit_bytes=parse_data_limit(plan.data_limit),
    )


def _to_int(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class MikrotikGateway:
    """RouterOS API client. Every call opens its own connection and always closes it."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.host = self.settings.mikrotik_host
        self.port = self.settings.mikrotik_port
        self.test_mode = self.settings.mikrotik_test_mode

    def _connect(self):
        return connect(
            host=self.host,
            username=self.settings.mikrotik_username,
            password=self.settings.mikrotik_password,
            port=self.port,
            timeout=self.settings.mikrotik_timeout_seconds,
        )

    @contextmanager
    def _connection(self, command: str):
        try:
            api = self._connect()
        except (LibRouterosError, OSError) as exc:
            raise RouterUnavailable(f"Unable to reach router {self.host}:{self.port}: {exc}", command=command) from exc
        try:
            yield api
        except (LibRouterosError, OSError) as exc:
            raise RouterUnavailable(f"Router command {command} failed: {exc}", command=command) from exc
        finally:
            try:
                api.close()
            except (LibRouterosError, OSError) as exc:
                logger.debug("Error closing router connection: %s", exc)

    def _ensure_profile(self, api, profile: SpeedProfile) -> None:
        profiles = api.path("ip", "hotspot", "user", "profile")
        existing = [item for item in profiles if item.get("name") == profile.name]
        attrs = {
            "rate-limit": profile.rate_limit,
            "session-timeout": profile.session_timeout,
        }
        if existing:
            profiles.update(**{".id": existing[0][".id"], **attrs})
            return
        profiles.add(name=profile.name, **attrs, **{"shared-users": "1", "status-autorefresh": "1m"})
        logger.info("Created hotspot profile %s (%s)", profile.name, profile.rate_limit)

    def grant_access(self, username: str, profile: SpeedProfile, password: str | None = None) -> str:
        if self.test_mode:
            handle = f"*TEST{secrets.token_hex(3).upper()}"
            logger.info("Router test mode: grant %s profile=%s handle=%s", username[:8], profile.name, handle)
            return handle
        with self._connection("grant_access") as api:
            self._ensure_profile(api, profile)
            users = api.path("ip", "hotspot", "user")
            stale = [item[".id"] for item in users if item.get("name") == username]
            if stale:
                users.remove(*stale)
            attrs = {
                "name": username,
                "password": password or username,
                "profile": profile.name,
                "limit-uptime": profile.session_timeout,
                "disabled": "no",
                "comment": "collospot",
            }
            if profile.limit_bytes:
                attrs["limit-bytes-total"] = str(profile.limit_bytes)
            handle = users.add(**attrs)
            logger.info("Granted hotspot access %s handle=%s", username[:8], handle)
            return str(handle)

    def revoke_access(self, username: str) -> None:
        if self.test_mode:
            logger.info("Router test mode: revoke %s", username[:8])
            return
        with self._connection("revoke_access") as api:
            active = api.path("ip", "hotspot", "active")
            kicked = [item[".id"] for item in active if item.get("user") == username]
            if kicked:
                active.remove(*kicked)
            users = api.path("ip", "hotspot", "user")
            removed = [item[".id"] for item in users if item.get("name") == username]
            if removed:
                users.remove(*removed)
            logger.info("Revoked hotspot access %s (kicked=%s removed=%s)", username[:8], len(kicked), len(removed))

    def list_active_connections(self) -> list[ConnectionInfo]:
        if self.test_mode:
            return []
        with self._connection("list_active_connections") as api:
            return [
                ConnectionInfo(
                    session_id=str(item.get(".id") or ""),
                    username=str(item.get("user") or "unknown"),
                    ip_address=str(item.get("address") or ""),
                    mac_address=str(item.get("mac-address") or ""),
                    bytes_in=_to_int(item.get("bytes-in")),
                    bytes_out=_to_int(item.get("bytes-out")),
                    uptime=str(item.get("uptime") or "0s"),
                )
                for item in api.path("ip", "hotspot", "active")
            ]

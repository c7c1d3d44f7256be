"""Guest provisioning: keeps the record store and the router in step.

The store and the router are written by two separate, non-transactional
calls. The router is always written first; a record only becomes visible
once the router has accepted the user. Revocation goes the other way: the
record is only retired once the router no longer holds the user.
"""

import asyncio
import logging
import time
from collections import Counter
from datetime import date, datetime, time as dt_time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from .config import AccessProfile, Config
from .credentials import CredentialGenerator
from .db import AccessAction, Database, GuestAccessRecord, GuestStatus, SyncStatus
from .errors import (
    ConflictError,
    DeviceCommandError,
    GenerationExhausted,
    GuestNetError,
    NotFound,
    PersistenceError,
    ValidationError,
)
from .gateway import DeviceConnector, run_with_reconnect
from .models import (
    CleanupFailure,
    CleanupReport,
    ConnectionReport,
    DeviceSession,
    GeneratedCredentials,
    GuestPresence,
    RemovalOutcome,
    RemovalResult,
    SyncReport,
)
from .notifier import Notifier

logger = logging.getLogger(__name__)

DateLike = Union[date, str]


def _as_date(value: DateLike, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field_name} must be a YYYY-MM-DD date, got '{value}'")


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)


class GuestProvisioningService:
    """Generates, revokes, expires and reconciles guest access."""

    def __init__(
        self,
        config: Config,
        store: Database,
        connector: Optional[Callable[[], Any]] = None,
        generator: Optional[CredentialGenerator] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the service.

        Args:
            config: Full application configuration.
            store: Guest record store.
            connector: Zero-argument callable returning an async context
                manager that yields a connected gateway.
            generator: Credential generator; built from ``config`` by default.
            notifier: Webhook notifier; built from ``config`` by default.
            clock: Returns the current local time.
        """
        self.config = config
        self.store = store
        self.connector = connector or DeviceConnector(config.device)
        self.generator = generator or CredentialGenerator(store, config.credentials)
        self.notifier = notifier or Notifier.from_config(config.notifications)
        self._clock = clock or datetime.now
        self._device_lock = asyncio.Lock()
        self._known_profiles: Set[str] = set()

    # -- helpers ---------------------------------------------------------

    def profile(self, name: Optional[str]) -> AccessProfile:
        """Look up a configured profile by name."""
        name = name or self.config.default_profile
        profile = self.config.profiles.get(name)
        if profile is None:
            known = ", ".join(sorted(self.config.profiles))
            raise ValidationError(f"Unknown profile '{name}' (known: {known})")
        return profile

    def time_limit_for(self, checkout: date, now: datetime) -> str:
        """Session allowance from now until checkout, as HH:MM:SS.

        Clamped to at least one hour and at most the configured cap.
        """
        checkout_at = datetime.combine(checkout, dt_time(hour=self.config.guests.checkout_hour))
        seconds = (checkout_at - now).total_seconds()
        cap = self.config.guests.max_time_limit_hours * 3600
        seconds = int(min(max(seconds, 3600), cap))
        hours, remainder = divmod(seconds, 3600)
        return f"{hours:02d}:{remainder // 60:02d}:00"

    async def _mutate(self, operation: Callable[[Any], Awaitable[Any]], label: str) -> Any:
        """Run a device-mutating operation; one at a time per router."""
        async with self._device_lock:
            return await run_with_reconnect(
                self.connector,
                operation,
                attempts=self.config.device.retry_attempts,
                deadline=self.config.device.operation_deadline,
                label=label,
            )

    async def _read(self, operation: Callable[[Any], Awaitable[Any]], label: str) -> Any:
        return await run_with_reconnect(
            self.connector,
            operation,
            attempts=self.config.device.retry_attempts,
            deadline=self.config.device.operation_deadline,
            label=label,
        )

    async def _ensure_profile(self, gateway, profile: AccessProfile) -> None:
        if profile.name in self._known_profiles:
            return
        await gateway.ensure_profile(profile)
        self._known_profiles.add(profile.name)

    # -- generate --------------------------------------------------------

    async def generate(
        self,
        room: str,
        guest_name: str,
        checkin: DateLike,
        checkout: DateLike,
        profile_name: Optional[str] = None,
    ) -> GeneratedCredentials:
        """Issue credentials for a guest stay.

        Raises:
            ValidationError: unknown profile, missing fields or bad dates.
            ConflictError: the room already has access, or a duplicate
                username slipped past the generator.
            GenerationExhausted: no unique username could be found.
        """
        started = time.monotonic()
        room = (room or "").strip()
        guest_name = (guest_name or "").strip()
        profile = self.profile(profile_name)

        if not room:
            raise ValidationError("Room number is required")
        if not guest_name:
            raise ValidationError("Guest name is required")
        checkin_date = _as_date(checkin, "checkin")
        checkout_date = _as_date(checkout, "checkout")
        if checkout_date < checkin_date:
            raise ValidationError(f"Checkout {checkout_date} is before checkin {checkin_date}")

        if self.config.guests.one_active_per_room:
            existing = await self.store.get_active_by_room(room)
            if existing:
                raise ConflictError(f"Room {room} already has active access ({existing.username})")

        now = self._clock()
        time_limit = self.time_limit_for(checkout_date, now)

        try:
            username, password = await self._provision_on_device(room, profile, time_limit)
        except GuestNetError as exc:
            logger.error(f"Could not provision room {room}: [{exc.kind}] {exc.message}")
            await self.notifier.notify_failure("generate", room, exc)
            raise

        record = GuestAccessRecord(
            room_number=room,
            guest_name=guest_name,
            username=username,
            password=password,
            profile_name=profile.name,
            checkin_date=checkin_date,
            checkout_date=checkout_date,
            status=GuestStatus.ACTIVE,
            sync_status=SyncStatus.SYNCED,
            last_sync=now,
        )

        try:
            guest_id = await self.store.create_guest(record)
        except PersistenceError as exc:
            logger.error(f"Store rejected {username} for room {room}: {exc.message}")
            await self._withdraw_device_user(username)
            raise ConflictError(f"Room {room}: {exc.message}") from exc

        elapsed = _elapsed_ms(started)
        await self.store.log_action(username, room, AccessAction.CREATED, response_time=elapsed)
        logger.info(f"Issued {username} for room {room} ({profile.name}, limit {time_limit}) in {elapsed}ms")

        return GeneratedCredentials(
            guest_id=guest_id,
            room_number=room,
            username=username,
            password=password,
            profile=profile.name,
            bandwidth=profile.rate_limit,
            valid_until=checkout_date,
            time_limit=time_limit,
        )

    async def _provision_on_device(self, room: str, profile: AccessProfile, time_limit: str) -> Tuple[str, str]:
        """Create the hotspot user, regenerating the username on conflicts."""
        attempts = self.config.credentials.generation_retries

        for _ in range(attempts):
            username = await self.generator.username(room)
            password = self.generator.password()
            create_sent = False

            async def operation(gateway) -> None:
                nonlocal create_sent
                await self._ensure_profile(gateway, profile)
                resent = create_sent
                create_sent = True
                try:
                    await gateway.create_hotspot_user(
                        username, password, profile.name, time_limit, comment=f"room {room}"
                    )
                except ConflictError:
                    if resent:
                        # The interrupted attempt reached the router before the connection dropped
                        logger.info(f"{username} was created by the interrupted attempt")
                        return
                    raise

            try:
                await self._mutate(operation, label=f"create {username}")
            except ConflictError:
                logger.warning(f"{username} already exists on router, regenerating")
                continue
            return username, password

        raise GenerationExhausted(f"Router rejected {attempts} generated usernames for room {room}")

    async def _withdraw_device_user(self, username: str) -> None:
        """Undo a device-side create whose record could not be stored."""
        try:
            await self._mutate(lambda gateway: gateway.remove_hotspot_user(username), label=f"withdraw {username}")
        except GuestNetError as exc:
            logger.error(f"{username} left on router after store rejection; run sync to clear it: {exc.message}")

    # -- remove / expire -------------------------------------------------

    async def remove(self, room: str) -> RemovalResult:
        """Revoke every active credential of a room.

        A room without active access is a no-op. If the router cannot be
        updated the record is still disabled, with sync status ``failed``
        so that ``sync_with_device`` finishes the router side, and the
        error propagates.
        """
        room = (room or "").strip()
        result = RemovalResult(room_number=room)

        record = await self.store.get_active_by_room(room)
        if record is None:
            result.noop = True
            result.message = f"No active access for room {room}"
            logger.info(result.message)
            return result

        while record is not None:
            try:
                outcome, disconnected = await self._revoke(record, GuestStatus.DISABLED, AccessAction.DISABLED)
            except GuestNetError as exc:
                await self.notifier.notify_failure("removal", room, exc)
                raise
            result.usernames.append(record.username)
            result.outcomes[record.username] = outcome
            result.sessions_disconnected += int(disconnected)
            record = await self.store.get_active_by_room(room)

        result.message = f"Access removed for room {room} ({', '.join(result.usernames)})"
        return result

    async def _revoke(
        self,
        record: GuestAccessRecord,
        final_status: GuestStatus,
        action: AccessAction,
    ) -> Tuple[RemovalOutcome, bool]:
        """Kick the live session, remove the router user, retire the record."""
        started = time.monotonic()

        async def operation(gateway) -> Tuple[RemovalOutcome, bool]:
            disconnected = await gateway.disconnect_active_session(record.username)
            outcome = await gateway.remove_hotspot_user(record.username)
            return outcome, disconnected

        try:
            outcome, disconnected = await self._mutate(operation, label=f"remove {record.username}")
        except GuestNetError as exc:
            await self.store.update_guest(
                record.id,
                status=final_status,
                sync_status=SyncStatus.FAILED,
                last_sync=self._clock(),
            )
            await self.store.log_action(
                record.username, record.room_number, AccessAction.SYNC_FAILED,
                response_time=_elapsed_ms(started), error_message=exc.message,
            )
            raise

        await self.store.update_guest(
            record.id,
            status=final_status,
            sync_status=SyncStatus.SYNCED,
            last_sync=self._clock(),
        )
        await self.store.log_action(
            record.username, record.room_number, action,
            response_time=_elapsed_ms(started),
            error_message="user was already absent on router" if outcome is RemovalOutcome.NOT_FOUND else None,
        )
        logger.info(f"{record.username} (room {record.room_number}) -> {final_status.value} [{outcome.value}]")
        return outcome, disconnected

    async def cleanup_expired(self, now: Optional[datetime] = None) -> CleanupReport:
        """Expire every active record whose checkout date has passed.

        Each record is handled on its own; a failure is recorded in the
        report and the sweep moves on.
        """
        now = now or self._clock()
        report = CleanupReport()

        for record in await self.store.list_expired(now.date()):
            try:
                await self._revoke(record, GuestStatus.EXPIRED, AccessAction.EXPIRED)
            except GuestNetError as exc:
                report.failed += 1
                report.failures.append(CleanupFailure(
                    username=record.username,
                    room_number=record.room_number,
                    kind=exc.kind,
                    message=exc.message,
                ))
                logger.warning(f"Could not expire {record.username} (room {record.room_number}): {exc.message}")
                continue
            report.removed += 1

        if report.attempted:
            logger.info(f"Cleanup: {report.removed} expired, {report.failed} failed")
        await self.notifier.notify_cleanup(report)
        return report

    # -- read side -------------------------------------------------------

    async def active_guest(self, room: str) -> GuestAccessRecord:
        """The active record for a room.

        Raises:
            NotFound: the room has no active access.
        """
        record = await self.store.get_active_by_room((room or "").strip())
        if record is None:
            raise NotFound(f"No active access for room {room}")
        return record

    async def active_sessions(self) -> List[DeviceSession]:
        sessions = await self._read(lambda gateway: gateway.list_active_sessions(), "list active sessions")
        return [DeviceSession.from_attributes(attrs) for attrs in sessions]

    async def reconciled_active_guests(self) -> List[GuestPresence]:
        """Active records annotated with their live session, if any."""
        records = await self.store.list_active()
        if not records:
            return []

        live: Dict[str, DeviceSession] = {}
        for session in await self.active_sessions():
            live.setdefault(session.username, session)

        presence = []
        for record in records:
            session = live.get(record.username)
            if session is None:
                presence.append(GuestPresence(record=record))
                continue
            presence.append(GuestPresence(
                record=record,
                online=True,
                address=session.address,
                uptime=session.uptime,
                uptime_seconds=session.uptime_seconds,
                bytes_in=session.bytes_in,
                bytes_out=session.bytes_out,
            ))
        return presence

    async def sync_with_device(self) -> SyncReport:
        """Push active records missing on the router and confirm the rest.

        Retired records whose router removal failed are removed again. With
        ``guests.remove_orphans_on_sync`` every other router user that this
        store issued and has since retired is removed as well.
        """
        records = await self.store.list_active()
        retired = await self.store.list_unsynced_retired()
        retired_names = {record.username for record in retired}
        orphan_candidates: List[str] = []
        if self.config.guests.remove_orphans_on_sync:
            orphan_candidates = [
                name for name in await self.store.inactive_usernames() if name not in retired_names
            ]
        now = self._clock()

        async def operation(gateway):
            report = SyncReport(store_users=len(records))
            synced: List[GuestAccessRecord] = []
            failed: List[Tuple[GuestAccessRecord, str]] = []
            retirements: List[GuestAccessRecord] = []

            device_users = await gateway.list_hotspot_users()
            report.device_users = len(device_users)
            names = {user.get("name") for user in device_users}

            for record in records:
                if record.username in names:
                    if record.sync_status != SyncStatus.SYNCED:
                        report.confirmed += 1
                        synced.append(record)
                    continue

                try:
                    profile = self.config.profiles.get(record.profile_name)
                    if profile is not None:
                        await self._ensure_profile(gateway, profile)
                    await gateway.create_hotspot_user(
                        record.username,
                        record.password,
                        record.profile_name,
                        self.time_limit_for(record.checkout_date, now),
                        comment=f"room {record.room_number}",
                    )
                    report.created_on_device += 1
                except ConflictError:
                    report.confirmed += 1
                except DeviceCommandError as exc:
                    report.errors.append(f"create {record.username}: {exc.message}")
                    failed.append((record, exc.message))
                    continue
                synced.append(record)

            for record in retired:
                try:
                    if record.username in names:
                        await gateway.disconnect_active_session(record.username)
                        if await gateway.remove_hotspot_user(record.username) is RemovalOutcome.REMOVED:
                            report.removed_from_device += 1
                except DeviceCommandError as exc:
                    report.errors.append(f"remove {record.username}: {exc.message}")
                    continue
                retirements.append(record)

            for username in orphan_candidates:
                if username not in names:
                    continue
                try:
                    if await gateway.remove_hotspot_user(username) is RemovalOutcome.REMOVED:
                        report.removed_from_device += 1
                except DeviceCommandError as exc:
                    report.errors.append(f"remove orphan {username}: {exc.message}")

            return report, synced, failed, retirements

        report, synced, failed, retirements = await self._mutate(operation, label="sync")

        for record in synced:
            await self.store.update_guest(record.id, sync_status=SyncStatus.SYNCED, last_sync=now)
            await self.store.log_action(record.username, record.room_number, AccessAction.SYNC_SUCCESS)
        for record in retirements:
            await self.store.update_guest(record.id, sync_status=SyncStatus.SYNCED, last_sync=now)
            await self.store.log_action(record.username, record.room_number, AccessAction.REMOVED)
        for record, message in failed:
            await self.store.update_guest(record.id, sync_status=SyncStatus.FAILED, last_sync=now)
            await self.store.log_action(
                record.username, record.room_number, AccessAction.SYNC_FAILED, error_message=message
            )

        logger.info(
            f"Sync: {report.created_on_device} created, {report.removed_from_device} removed, "
            f"{report.confirmed} confirmed, {len(report.errors)} errors"
        )
        await self.notifier.notify_sync(report)
        return report

    async def stats(self) -> Dict[str, Any]:
        """Store counts plus router totals; router failures are reported inline."""
        stats: Dict[str, Any] = dict(await self.store.get_stats(self._clock().date()))
        active = stats["active_guests"]
        stats["sync_rate"] = round(stats["synced_guests"] / active * 100, 2) if active else 100.0

        async def operation(gateway):
            return await gateway.list_hotspot_users(), await gateway.list_active_sessions()

        try:
            users, sessions = await self._read(operation, "stats")
        except GuestNetError as exc:
            logger.warning(f"Router stats unavailable: {exc.message}")
            stats["device_status"] = "unreachable"
            stats["device_error"] = exc.message
            return stats

        stats["device_status"] = "connected"
        stats["device_users"] = len(users)
        stats["online_users"] = len(sessions)
        stats["users_by_profile"] = dict(Counter(user.get("profile", "default") for user in users))
        return stats

    async def test_connection(self) -> ConnectionReport:
        """Log in and read the router identity and version."""
        host = self.config.device.host

        async def operation(gateway):
            return await gateway.get_identity(), await gateway.get_resource()

        try:
            identity, resource = await self._read(operation, "connection test")
        except GuestNetError as exc:
            return ConnectionReport(success=False, host=host, error=f"[{exc.kind}] {exc.message}")

        return ConnectionReport(
            success=True,
            host=host,
            identity=identity.get("name"),
            version=resource.get("version"),
            board_name=resource.get("board-name"),
            extra={"uptime": resource.get("uptime"), "cpu_load": resource.get("cpu-load")},
        )

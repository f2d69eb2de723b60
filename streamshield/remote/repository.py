"""Remote backup repository.

Every write is an upsert on the entity's natural key, so retrying a push
after a partial failure never duplicates rows:

* history:  (user_profile_id, track_id, played_at_ms)
* sessions: (user_profile_id, session_start_ms)
* rules:    (user_profile_id, rule_id)

Database errors are wrapped in :class:`RemoteStoreError`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ..errors import RemoteStoreError
from ..models import ShieldSession, TrackPlayRecord
from ..schemas import DeviceRule, TimeRule
from .database import create_session_factory
from .models import UserDeviceRule, UserHistory, UserProfile, UserShieldSession, UserTimeRule

log = logging.getLogger(__name__)


class RemoteRepository:
    """Per-user backup of history, shield sessions and rules."""

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory or create_session_factory(engine)
        self._profile_ids: dict[str, uuid.UUID] = {}

    @asynccontextmanager
    async def _session(self, action: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
                await session.commit()
        except SQLAlchemyError as exc:
            log.error("Remote %s failed: %s", action, exc)
            raise RemoteStoreError(f"{action} failed: {exc}") from exc

    def _insert(self, model):
        if self._engine.dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        return insert(model)

    async def _upsert(
        self,
        session: AsyncSession,
        model,
        rows: list[dict[str, Any]],
        key: list[str],
    ) -> None:
        stmt = self._insert(model).values(rows)
        updatable = [c for c in rows[0] if c not in key and c != "id"]
        stmt = stmt.on_conflict_do_update(
            index_elements=key,
            set_={c: stmt.excluded[c] for c in updatable},
        )
        await session.execute(stmt)

    # -- profile -------------------------------------------------------------

    async def ensure_user_profile(self, spotify_user_id: str) -> uuid.UUID:
        """Return the profile id for *spotify_user_id*, creating it if needed.

        Failure here is unrecoverable for the caller and propagates.
        """
        if cached := self._profile_ids.get(spotify_user_id):
            return cached

        async with self._session("profile lookup") as session:
            profile_id = await self._find_profile(session, spotify_user_id)
            if profile_id is None:
                profile = UserProfile(
                    spotify_user_id=spotify_user_id,
                    last_sync_at=datetime.now(timezone.utc),
                )
                session.add(profile)
                try:
                    await session.flush()
                    profile_id = profile.id
                except IntegrityError:
                    # Created concurrently elsewhere; use that row.
                    await session.rollback()
                    profile_id = await self._find_profile(session, spotify_user_id)
                if profile_id is None:
                    raise RemoteStoreError("Failed to create user profile: no id returned")
                log.info("Created remote profile for %s", spotify_user_id)

        self._profile_ids[spotify_user_id] = profile_id
        return profile_id

    @staticmethod
    async def _find_profile(session: AsyncSession, spotify_user_id: str) -> uuid.UUID | None:
        result = await session.execute(
            select(UserProfile.id).where(UserProfile.spotify_user_id == spotify_user_id)
        )
        return result.scalar_one_or_none()

    async def _touch(self, session: AsyncSession, profile_id: uuid.UUID) -> None:
        await session.execute(
            update(UserProfile)
            .where(UserProfile.id == profile_id)
            .values(last_sync_at=datetime.now(timezone.utc))
        )

    async def delete_profile(self, spotify_user_id: str) -> None:
        """Delete the profile and everything stored under it."""
        profile_id = await self.ensure_user_profile(spotify_user_id)
        async with self._session("profile delete") as session:
            for model in (UserHistory, UserShieldSession, UserTimeRule, UserDeviceRule):
                await session.execute(delete(model).where(model.user_profile_id == profile_id))
            await session.execute(delete(UserProfile).where(UserProfile.id == profile_id))
        self._profile_ids.pop(spotify_user_id, None)
        log.info("Deleted remote profile for %s", spotify_user_id)

    # -- history -------------------------------------------------------------

    async def upsert_history(self, spotify_user_id: str, tracks: list[TrackPlayRecord]) -> int:
        tracks = [t for t in tracks if t.id]
        if not tracks:
            return 0
        profile_id = await self.ensure_user_profile(spotify_user_id)
        rows = [
            {
                "id": uuid.uuid4(),
                "user_profile_id": profile_id,
                "track_id": t.id,
                "track_name": t.name,
                "artist_name": t.artist,
                "album_name": t.album,
                "album_art_url": t.album_art or None,
                "duration_ms": t.duration,
                "played_at_ms": t.timestamp,
            }
            for t in _unique(tracks, key=lambda t: (t.id, t.timestamp))
        ]
        async with self._session("history upsert") as session:
            await self._upsert(
                session, UserHistory, rows, ["user_profile_id", "track_id", "played_at_ms"],
            )
            await self._touch(session, profile_id)
        log.debug("Upserted %d history rows", len(rows))
        return len(rows)

    async def fetch_history(self, spotify_user_id: str, limit: int = 200) -> list[TrackPlayRecord]:
        """Most recent plays first."""
        profile_id = await self.ensure_user_profile(spotify_user_id)
        async with self._session("history fetch") as session:
            result = await session.execute(
                select(UserHistory)
                .where(UserHistory.user_profile_id == profile_id)
                .order_by(UserHistory.played_at_ms.desc(), UserHistory.track_id)
                .limit(limit)
            )
            records = result.scalars().all()
        return [
            TrackPlayRecord(
                id=r.track_id,
                name=r.track_name,
                artist=r.artist_name,
                album=r.album_name,
                album_art=r.album_art_url or "",
                duration=r.duration_ms or 0,
                timestamp=r.played_at_ms,
            )
            for r in records
        ]

    # -- sessions ------------------------------------------------------------

    async def upsert_sessions(self, spotify_user_id: str, sessions: list[ShieldSession]) -> int:
        if not sessions:
            return 0
        profile_id = await self.ensure_user_profile(spotify_user_id)
        rows = [
            {
                "id": uuid.uuid4(),
                "user_profile_id": profile_id,
                "session_start_ms": s.start,
                "session_end_ms": s.end,
                "source": s.source,
            }
            for s in _unique(sessions, key=lambda s: s.start)
        ]
        async with self._session("session upsert") as session:
            await self._upsert(
                session, UserShieldSession, rows, ["user_profile_id", "session_start_ms"],
            )
            await self._touch(session, profile_id)
        return len(rows)

    async def fetch_sessions(self, spotify_user_id: str) -> list[ShieldSession]:
        """Sessions in start order."""
        profile_id = await self.ensure_user_profile(spotify_user_id)
        async with self._session("session fetch") as session:
            result = await session.execute(
                select(UserShieldSession)
                .where(UserShieldSession.user_profile_id == profile_id)
                .order_by(UserShieldSession.session_start_ms)
            )
            records = result.scalars().all()
        return [
            ShieldSession(start=r.session_start_ms, end=r.session_end_ms, source=r.source)
            for r in records
        ]

    # -- rules ---------------------------------------------------------------

    async def upsert_rules(
        self,
        spotify_user_id: str,
        time_rules: list[TimeRule],
        device_rules: list[DeviceRule],
        *,
        prune: bool = True,
    ) -> None:
        """Upsert both rule kinds; with *prune*, drop remote rules missing locally."""
        profile_id = await self.ensure_user_profile(spotify_user_id)
        time_rows = [
            {
                "id": uuid.uuid4(),
                "user_profile_id": profile_id,
                "rule_id": r.id,
                "rule_name": r.name,
                "days": r.days,
                "start_time": r.start_time,
                "end_time": r.end_time,
                "enabled": r.enabled,
            }
            for r in time_rules
        ]
        device_rows = [
            {
                "id": uuid.uuid4(),
                "user_profile_id": profile_id,
                "rule_id": r.id,
                "device_id": r.device_id,
                "device_name": r.device_name,
                "device_type": r.device_type,
                "enabled": r.enabled,
                "auto_shield": r.auto_shield,
                "shield_duration": r.shield_duration,
                "time_enabled": r.time_enabled,
                "days": r.days,
                "start_time": r.start_time,
                "end_time": r.end_time,
            }
            for r in device_rules
        ]
        key = ["user_profile_id", "rule_id"]
        async with self._session("rule upsert") as session:
            for model, rows in ((UserTimeRule, time_rows), (UserDeviceRule, device_rows)):
                if prune:
                    keep = [row["rule_id"] for row in rows]
                    await session.execute(
                        delete(model).where(
                            model.user_profile_id == profile_id,
                            model.rule_id.not_in(keep),
                        )
                    )
                if rows:
                    await self._upsert(session, model, rows, key)
            await self._touch(session, profile_id)

    async def fetch_rules(self, spotify_user_id: str) -> tuple[list[TimeRule], list[DeviceRule]]:
        profile_id = await self.ensure_user_profile(spotify_user_id)
        async with self._session("rule fetch") as session:
            time_result = await session.execute(
                select(UserTimeRule)
                .where(UserTimeRule.user_profile_id == profile_id)
                .order_by(UserTimeRule.rule_id)
            )
            device_result = await session.execute(
                select(UserDeviceRule)
                .where(UserDeviceRule.user_profile_id == profile_id)
                .order_by(UserDeviceRule.rule_id)
            )
            time_records = time_result.scalars().all()
            device_records = device_result.scalars().all()

        time_rules: list[TimeRule] = []
        for r in time_records:
            try:
                time_rules.append(TimeRule(
                    id=r.rule_id,
                    name=r.rule_name,
                    days=r.days,
                    start_time=r.start_time,
                    end_time=r.end_time,
                    enabled=r.enabled,
                ))
            except ValueError:
                log.warning("Skipping invalid remote time rule %s", r.rule_id)

        device_rules: list[DeviceRule] = []
        for r in device_records:
            try:
                device_rules.append(DeviceRule(
                    id=r.rule_id,
                    device_id=r.device_id,
                    device_name=r.device_name,
                    device_type=r.device_type,
                    enabled=r.enabled,
                    auto_shield=r.auto_shield,
                    shield_duration=r.shield_duration,
                    time_enabled=r.time_enabled,
                    days=r.days or [],
                    start_time=r.start_time,
                    end_time=r.end_time,
                ))
            except ValueError:
                log.warning("Skipping invalid remote device rule %s", r.rule_id)
        return time_rules, device_rules


def _unique(items, key):
    """Last item wins per key (ON CONFLICT cannot touch a row twice per statement)."""
    seen = {}
    for item in items:
        seen[key(item)] = item
    return list(seen.values())

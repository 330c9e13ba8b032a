"""
Session Tracker

Tracks "this game is running" without help from the launched process:

    Launching -> Watching -> Closed

Launching records last-played, opens a play_sessions row and hands off to the
platform launcher. Watching polls the OS process list for the executables
found in the install folder; when none is running (or when the game cannot
be identified and the fallback timeout elapses) the session is closed.

Each session is watched by its own task, registered under ``session:{id}``.
"""

import asyncio
import math
from typing import Callable, Dict, Iterable, List, Optional

import psutil

from .database import DatabaseManager
from .discord_presence import PresenceBroadcaster
from .events import EventHub, EventKind
from .launcher import GameLauncher, plan_launch
from .local_scanner import find_executables
from .logger import setup_logger
from .models import Game, LaunchResult, PlaySession, Platform, SessionState, now_iso, parse_iso
from .presence import PresenceArbiter
from .task_registry import TaskRegistry

logger = setup_logger()

# Playtime for these platforms comes from the provider; sessions only touch last_played
PROVIDER_AUTHORITATIVE_PLAYTIME = {Platform.STEAM}


def running_process_names() -> List[str]:
    names = []
    for proc in psutil.process_iter(["name"]):
        try:
            name = proc.info.get("name")
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if name:
            names.append(name)
    return names


def session_duration(start_time: str, end_time: str) -> int:
    start = parse_iso(start_time)
    end = parse_iso(end_time)
    if start is None or end is None:
        return 0
    return max(0, math.floor((end - start).total_seconds()))


class SessionTracker:
    def __init__(
        self,
        db: DatabaseManager,
        presence: PresenceArbiter,
        broadcaster: PresenceBroadcaster,
        events: EventHub,
        tasks: TaskRegistry,
        launcher: Optional[GameLauncher] = None,
        poll_interval: float = 10.0,
        fallback_timeout: float = 60.0,
        process_lister: Callable[[], Iterable[str]] = running_process_names,
    ):
        self.db = db
        self.presence = presence
        self.broadcaster = broadcaster
        self.events = events
        self.tasks = tasks
        self.launcher = launcher or GameLauncher()
        self.poll_interval = poll_interval
        self.fallback_timeout = fallback_timeout
        self._process_lister = process_lister
        self._states: Dict[int, SessionState] = {}

    @staticmethod
    def _task_key(session_id: int) -> str:
        return f"session:{session_id}"

    def get_state(self, session_id: int) -> SessionState:
        """Only live sessions are tracked; anything else reports CLOSED."""
        return self._states.get(session_id, SessionState.CLOSED)

    def active_session_ids(self) -> List[int]:
        return list(self._states)

    # ----- launching -----

    async def launch(self, game_id: str) -> LaunchResult:
        game = await self.db.get_game(game_id)
        if game is None:
            return LaunchResult(success=False, error="Game not found")

        plan = plan_launch(game)
        if plan is None:
            return LaunchResult(success=False, error="No launch method available")

        start_time = now_iso()
        await self.db.set_last_played(game.id, start_time)
        session_id = await self.db.open_session(game.id, start_time)
        if session_id is None:
            return LaunchResult(success=False, error="Could not record play session")
        self._states[session_id] = SessionState.LAUNCHING

        await self._announce_start(game, start_time)

        if not await self.launcher.launch(plan):
            await self._close(session_id)
            return LaunchResult(success=False, session_id=session_id, error="Launch failed")

        self.tasks.spawn(
            self._watch(session_id, game, plan.watch_path),
            name=f"watch-{game.id}",
            key=self._task_key(session_id),
        )
        logger.info(f"Launched {game.title} ({game.id}), session {session_id}")
        return LaunchResult(success=True, session_id=session_id)

    async def _announce_start(self, game: Game, start_time: str):
        try:
            status = await self.presence.on_session_start(game.id)
            await self.broadcaster.set_game_activity(
                game.id,
                game.title,
                start_time,
                status.intent_state,
                status.intent_metadata.get("custom_label"),
            )
        except Exception as e:
            logger.warning(f"Presence update on launch of {game.id} failed: {e}")
        session = await self.db.get_open_session(game.id)
        if session is not None:
            await self.events.emit(EventKind.SESSION_CHANGED, session)

    # ----- watching -----

    async def _watch(self, session_id: int, game: Game, watch_path: Optional[str]):
        if session_id in self._states:
            self._states[session_id] = SessionState.WATCHING
        candidates = await asyncio.to_thread(find_executables, watch_path)

        if not candidates:
            logger.info(f"Cannot identify the process of {game.title}; closing in {self.fallback_timeout:.0f}s")
            await asyncio.sleep(self.fallback_timeout)
            await self._close(session_id)
            return

        wanted = {name.lower() for name in candidates}
        logger.info(f"Watching process for {game.title}... Candidates: {', '.join(candidates)}")
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                names = await asyncio.to_thread(self._process_lister)
            except Exception as e:
                logger.debug(f"Process poll failed for session {session_id}, retrying: {e}")
                continue
            if not any(name.lower() in wanted for name in names):
                break

        logger.info(f"Session ended for {game.title}")
        await self._close(session_id)

    # ----- closing -----

    async def stop(self, session_id: int) -> Optional[PlaySession]:
        """Close a session now, cancelling its watcher."""
        self.tasks.cancel(self._task_key(session_id))
        return await self._close(session_id)

    async def _close(self, session_id: int) -> Optional[PlaySession]:
        session = await self.db.get_session(session_id)
        if session is None or not session.is_open:
            self._states.pop(session_id, None)
            return session

        end_time = now_iso()
        duration = session_duration(session.start_time, end_time)
        if not await self.db.close_session(session_id, end_time, duration):
            self._states.pop(session_id, None)
            return await self.db.get_session(session_id)
        self._states.pop(session_id, None)

        game = await self.db.get_game(session.game_id)
        if game is not None:
            if game.platform in PROVIDER_AUTHORITATIVE_PLAYTIME:
                # Next sync corrects the total
                await self.db.set_last_played(game.id, end_time)
            else:
                await self.db.add_playtime(game.id, duration, end_time)

        try:
            await self.broadcaster.clear()
            await self.presence.on_session_end(session.game_id)
        except Exception as e:
            logger.warning(f"Presence reset after session {session_id} failed: {e}")

        closed = await self.db.get_session(session_id)
        logger.info(f"Closed session {session_id} for {session.game_id} after {duration}s")
        if closed is not None:
            await self.events.emit(EventKind.SESSION_CHANGED, closed)
        return closed

    # ----- queries -----

    async def get_current_session(self, game_id: str) -> Optional[PlaySession]:
        return await self.db.get_open_session(game_id)

    async def get_session_history(self, game_id: str, limit: int = 50) -> List[PlaySession]:
        """Completed sessions, newest first"""
        sessions = await self.db.get_sessions_for_game(game_id, limit)
        return [session for session in sessions if not session.is_open]

"""Battle execution: pending -> in_progress -> completed | failed.

A run is claimed synchronously in ``start`` and then executed as a tracked
background task that writes progress into a ``ProgressChannel``. The HTTP
stream only drains the channel, so a disconnecting client never cancels the
battle; the outcome stays discoverable through the battle row.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any, AsyncIterator, Callable, Coroutine

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from devarena_api.ai import BattleEvaluator, resolve_winner
from devarena_api.battles import (
    battle_criteria,
    claim_battle,
    complete_battle,
    fail_battle,
    fail_stale_battles,
    get_battle,
)
from devarena_api.core.config import Settings
from devarena_api.elo import compute_elo_change
from devarena_api.errors import (
    ArenaError,
    AuthorizationError,
    BattleTimeoutError,
    ConflictError,
    NotFoundError,
    PersistenceError,
)
from devarena_api.logs import log_event
from devarena_api.metrics import record_battle_outcome, record_notification
from devarena_api.notifications import (
    EmailSender,
    enqueue_battle_result_emails,
    process_email_outbox,
)
from devarena_api.profiles import ProfileCacheManager, ProfileProgress
from devarena_api.progress import ProgressChannel, ProgressEvent
from devarena_api.rankings import get_or_create_ranking
from devarena_api.usage import FEATURE_BATTLE, log_token_usage

# Advisory progress ranges per participant while their profile resolves.
_PROFILE_RANGES: dict[str, tuple[int, int]] = {
    "challenger": (10, 25),
    "opponent": (30, 45),
}

# Slack on top of the wall-clock budget before a claimed battle counts as abandoned.
_STALE_GRACE_SEC = 30.0


def _profile_progress(channel: ProgressChannel, side: str) -> ProfileProgress:
    lo, hi = _PROFILE_RANGES[side]

    def _emit(status: str, fraction: float, message: str, meta: dict[str, Any]) -> None:
        frac = min(1.0, max(0.0, float(fraction)))
        channel.emit(status, lo + (hi - lo) * frac, message, {**meta, "participant": side})

    return _emit


class BattleExecutor:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        profiles: ProfileCacheManager,
        evaluator: BattleEvaluator,
        email_sender: EmailSender | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory
        self.profiles = profiles
        self.evaluator = evaluator
        self.email_sender = email_sender
        self.settings = settings or Settings()
        self.clock = clock or (lambda: datetime.now(UTC))
        self.timeout_sec = float(self.settings.arena_battle_timeout_sec)
        self._admission = asyncio.Semaphore(int(self.settings.arena_max_concurrent_battles))
        self._tasks: set[asyncio.Task[Any]] = set()
        self._drain_lock = asyncio.Lock()

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every spawned run and outbox drain to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.wait_idle()
        close = getattr(self.profiles.repo_source, "aclose", None)
        if close is not None:
            await close()

    async def start(self, battle_id: str, *, caller_id: str) -> ProgressChannel:
        """Validate and claim ``battle_id`` for ``caller_id``, then run it in the background.

        Raises before any mutation when the battle is missing, owned by someone
        else, or not pending. A lost claim race raises ``ConflictError``.
        """
        with self.session_factory() as session:
            battle = get_battle(session, battle_id)
            if battle is None:
                raise NotFoundError(f"Battle {battle_id} not found", details={"battle_id": battle_id})
            if str(battle.challenger_id) != str(caller_id):
                raise AuthorizationError(
                    "Only the challenger can execute this battle",
                    details={"battle_id": battle_id},
                )
            if battle.status != "pending":
                raise ConflictError(
                    f"Battle {battle_id} is {battle.status}",
                    details={"battle_id": battle_id, "status": battle.status},
                )
            if not claim_battle(session, battle_id=battle.id, now=self.clock()):
                raise ConflictError(
                    f"Battle {battle_id} is already running",
                    details={"battle_id": battle_id},
                )

        channel = ProgressChannel(maxsize=int(self.settings.arena_progress_queue_size))
        channel.emit("initializing", 0, "Initializing battle...", {"battle_id": battle_id})
        log_event("battle_started", battle_id=battle_id, caller_id=str(caller_id))
        self._spawn(self._run(battle_id, channel), name=f"battle:{battle_id}")
        return channel

    async def execute(self, battle_id: str, *, caller_id: str) -> AsyncIterator[ProgressEvent]:
        """Progress events for one run, ending in exactly one ``complete`` or ``error``."""
        try:
            channel = await self.start(battle_id, caller_id=caller_id)
        except ArenaError as exc:
            rejected = ProgressChannel(maxsize=2)
            rejected.fail(exc.message, code=exc.code)
            channel = rejected
        async for event in channel:
            yield event

    async def _admitted(self, battle_id: str, channel: ProgressChannel) -> dict[str, Any]:
        if self._admission.locked():
            channel.emit("queued", 0, "Waiting for a free battle slot...")
        async with self._admission:
            return await self._pipeline(battle_id, channel)

    async def _run(self, battle_id: str, channel: ProgressChannel) -> None:
        # The budget starts at the claim, so time spent queued for a slot counts.
        try:
            result = await asyncio.wait_for(
                self._admitted(battle_id, channel), timeout=self.timeout_sec
            )
        except asyncio.TimeoutError:
            self._fail(
                battle_id,
                channel,
                BattleTimeoutError(
                    f"Battle exceeded the {self.timeout_sec:g}s time limit",
                    details={"battle_id": battle_id},
                ),
            )
            return
        except asyncio.CancelledError:
            self._fail(battle_id, channel, ArenaError("Battle was cancelled"))
            raise
        except Exception as exc:  # noqa: BLE001
            self._fail(battle_id, channel, exc)
            return

        channel.complete(result)
        record_battle_outcome("completed")
        log_event(
            "battle_completed",
            battle_id=battle_id,
            winner=result.get("winner"),
            elo_change=result.get("eloChange"),
        )
        if self.email_sender is not None:
            self._spawn(
                self.drain_outbox(battle_id=battle_id), name=f"battle-emails:{battle_id}"
            )

    async def _pipeline(self, battle_id: str, channel: ProgressChannel) -> dict[str, Any]:
        with self.session_factory() as session:
            battle = get_battle(session, battle_id)
            if battle is None:
                raise NotFoundError(f"Battle {battle_id} not found", details={"battle_id": battle_id})
            challenger_id = str(battle.challenger_id)
            opponent_id = str(battle.opponent_id)
            challenger_name = str(battle.challenger_username)
            opponent_name = str(battle.opponent_username)
            criteria = battle_criteria(battle)

        channel.emit(
            "in_progress",
            5,
            f"{challenger_name} vs {opponent_name}",
            {"criteria": [c.value for c in criteria]},
        )

        challenger_profile, opponent_profile = await asyncio.gather(
            self.profiles.get_or_generate_profile(
                challenger_name,
                requested_by=challenger_id,
                on_progress=_profile_progress(channel, "challenger"),
            ),
            self.profiles.get_or_generate_profile(
                opponent_name,
                requested_by=challenger_id,
                on_progress=_profile_progress(channel, "opponent"),
            ),
        )

        channel.emit("analyzing_battle", 50, "Comparing developer profiles...")
        evaluation, usage = await self.evaluator.evaluate_battle(
            challenger_profile.profile,
            opponent_profile.profile,
            challenger_name,
            opponent_name,
            criteria,
        )
        with self.session_factory() as session:
            log_token_usage(
                session,
                user_id=challenger_id,
                feature=FEATURE_BATTLE,
                username=opponent_name,
                model=str(getattr(self.evaluator, "model_name", "unknown")),
                usage=usage,
                is_byok=bool(self.settings.ai_is_byok),
                now=self.clock(),
            )
        evaluation, challenger_won = resolve_winner(
            evaluation,
            challenger_username=challenger_name,
            opponent_username=opponent_name,
            criteria=criteria,
        )
        channel.emit(
            "battle_analyzed",
            70,
            f"{evaluation.winner} takes the win",
            {"winner": evaluation.winner},
        )

        channel.emit("calculating_elo", 75, "Calculating rating changes...")
        now = self.clock()
        with self.session_factory() as session:
            c_rank = get_or_create_ranking(
                session,
                user_id=challenger_id,
                username=challenger_name,
                initial_elo=int(self.settings.arena_initial_elo),
                now=now,
            )
            o_rank = get_or_create_ranking(
                session,
                user_id=opponent_id,
                username=opponent_name,
                initial_elo=int(self.settings.arena_initial_elo),
                now=now,
            )
            elo = compute_elo_change(
                challenger_rating=int(c_rank.elo_rating),
                opponent_rating=int(o_rank.elo_rating),
                challenger_won=challenger_won,
                k_factor=int(self.settings.arena_k_factor),
            )

        channel.emit("saving_results", 85, "Saving battle results...", {"elo_change": elo.as_dict()})
        with self.session_factory() as session:
            battle = get_battle(session, battle_id)
            if battle is None:
                raise PersistenceError(
                    f"Battle {battle_id} disappeared before completion",
                    details={"battle_id": battle_id},
                )
            complete_battle(
                session,
                battle=battle,
                evaluation=evaluation,
                elo=elo,
                challenger_won=challenger_won,
                now=self.clock(),
            )

            channel.emit("sending_notifications", 95, "Queueing result notifications...")
            try:
                queued = enqueue_battle_result_emails(
                    session,
                    battle=get_battle(session, battle_id),
                    settings=self.settings,
                    now=self.clock(),
                )
                record_notification("queued", len(queued))
            except Exception as exc:  # noqa: BLE001
                session.rollback()
                log_event(
                    "notification_failed",
                    level="warning",
                    battle_id=battle_id,
                    stage="enqueue",
                    error=str(exc)[:300],
                )

        return {
            "battleId": battle_id,
            "winner": evaluation.winner,
            "challengerScore": evaluation.challenger_score.model_dump(),
            "opponentScore": evaluation.opponent_score.model_dump(),
            "eloChange": elo.as_dict(),
            "reason": evaluation.reason,
            "highlights": list(evaluation.highlights),
            "recommendations": list(evaluation.recommendations),
        }

    def _fail(self, battle_id: str, channel: ProgressChannel, exc: BaseException) -> None:
        if isinstance(exc, ArenaError):
            message, code = exc.message, exc.code
        else:
            message, code = "Battle failed due to an internal error", "internal_error"

        marked = False
        try:
            with self.session_factory() as session:
                marked = fail_battle(
                    session,
                    battle_id=battle_id,
                    error_message=f"{code}: {message}",
                    now=self.clock(),
                )
        except SQLAlchemyError as db_exc:
            log_event(
                "battle_fail_mark_failed",
                level="error",
                battle_id=battle_id,
                error=str(db_exc)[:300],
            )

        record_battle_outcome("failed", code=code)
        log_event(
            "battle_failed",
            level="error",
            battle_id=battle_id,
            code=code,
            error_type=type(exc).__name__,
            error=str(exc)[:500],
            marked_failed=marked,
        )
        channel.fail(message, code=code)

    async def drain_outbox(self, *, battle_id: str | None = None) -> None:
        """Send due result emails; one drain runs at a time per executor."""
        if self.email_sender is None:
            return
        async with self._drain_lock:
            try:
                with self.session_factory() as session:
                    res = await process_email_outbox(
                        session, sender=self.email_sender, now=self.clock()
                    )
            except Exception as exc:  # noqa: BLE001
                log_event(
                    "notification_failed",
                    level="warning",
                    battle_id=battle_id,
                    stage="send",
                    error=str(exc)[:300],
                )
                return
        record_notification("sent", int(res.get("sent", 0)))
        record_notification("failed", int(res.get("failed", 0)))
        record_notification("retried", int(res.get("retried", 0)))

    def fail_stale_battles(self) -> list[str]:
        """Fail battles left ``in_progress`` past the wall-clock budget, e.g. by a crashed process."""
        now = self.clock()
        cutoff = now - timedelta(seconds=self.timeout_sec + _STALE_GRACE_SEC)
        with self.session_factory() as session:
            failed = fail_stale_battles(
                session,
                started_before=cutoff,
                error_message=f"{BattleTimeoutError.code}: Battle was abandoned before finishing",
                now=now,
            )
        for battle_id in failed:
            record_battle_outcome("failed", code=BattleTimeoutError.code)
            log_event(
                "battle_failed",
                level="error",
                battle_id=battle_id,
                code=BattleTimeoutError.code,
                reason="stale",
            )
        return failed

    async def maintenance_loop(self, *, interval_sec: float) -> None:
        """Periodic stale-battle sweep and outbox drain; runs until cancelled."""
        while True:
            try:
                self.fail_stale_battles()
            except SQLAlchemyError as exc:
                log_event("maintenance_failed", level="error", stage="stale", error=str(exc)[:300])
            await self.drain_outbox()
            await asyncio.sleep(float(interval_sec))

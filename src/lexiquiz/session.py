"""Quiz session lifecycle.

A ``QuizSession`` owns at most one active ``GameSession`` for its user and is
the only thing allowed to mutate it. Local state is optimistic: every change is
applied in memory first and then written to the store. A failed write leaves
the fields pending and is retried with the next write, so the quiz can always
be played to the end.
"""

import asyncio
import logging
import random
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from .config import settings
from .errors import EmptySelection, InvalidTransition, RemoteError
from .models import (
    AnswerRecord,
    Feedback,
    GameSession,
    Question,
    QuizMode,
    SessionView,
    Stats,
    Word,
)
from .modes import get_mode
from .stats import compute_stats
from .store import SessionStore
from .vocabulary import VocabularyManager

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class QuizSession:
    """Session state machine for one user.

    States are NotStarted (no session), Active and Finished. All mutating
    operations hold ``self._lock``; a write to the store for answer ``i``
    completes before answer ``i + 1`` is applied.
    """

    def __init__(
        self,
        user_id: str,
        vocabulary: VocabularyManager,
        store: SessionStore,
        *,
        feedback_delay: Optional[float] = None,
        time_limit: Optional[int] = None,
        tick: Optional[float] = None,
        option_count: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        self.user_id = user_id
        self.vocabulary = vocabulary
        self.store = store
        self.feedback_delay = (
            settings.FEEDBACK_DELAY_SECONDS if feedback_delay is None else feedback_delay
        )
        self.time_limit = settings.TIMED_MODE_SECONDS if time_limit is None else time_limit
        self.tick = settings.TIMER_TICK_SECONDS if tick is None else tick
        self.option_count = option_count or settings.CHOICE_OPTION_COUNT
        self.rng = rng or random.Random()

        self._session: Optional[GameSession] = None
        self._confirmed: Optional[GameSession] = None
        self._pending: Dict[str, Any] = {}
        # Earlier sessions of this quiz with writes the store never confirmed.
        self._unsaved: List[Tuple[GameSession, Dict[str, Any]]] = []
        self._questions: List[Word] = []
        self._options: Optional[List[str]] = None
        self._time_left: Optional[int] = None
        self._feedback: Optional[Feedback] = None
        self._feedback_until = 0.0
        self._timer: Optional[asyncio.Task] = None
        self._write: Optional[asyncio.Task] = None
        self._history: List[GameSession] = []
        self._local_finished: List[GameSession] = []
        self._stats = Stats()
        self._lock = asyncio.Lock()
        self.last_error: Optional[RemoteError] = None

    # --- Observation ---

    @property
    def session(self) -> Optional[GameSession]:
        """Local copy of the current (or just finished) session."""
        return self._session

    @property
    def confirmed(self) -> Optional[GameSession]:
        """The session as last acknowledged by the store."""
        return self._confirmed

    @property
    def pending_fields(self) -> List[str]:
        if self._session is not None and self._session.id is None:
            return ["id"]
        return sorted(self._pending)

    @property
    def unsaved_sessions(self) -> List[Optional[str]]:
        """Ids of earlier sessions still waiting to be saved (None if never created)."""
        return [session.id for session, _ in self._unsaved]

    @property
    def is_active(self) -> bool:
        return self._session is not None and not self._session.is_finished

    @property
    def questions(self) -> List[Word]:
        return list(self._questions)

    @property
    def feedback(self) -> Optional[Feedback]:
        if self._feedback is not None and time.monotonic() < self._feedback_until:
            return self._feedback
        return None

    @property
    def question(self) -> Optional[Question]:
        if not self.is_active:
            return None
        index = self._session.current_index
        word = self._questions[index]
        return Question(
            index=index,
            total=len(self._questions),
            word_id=word.id,
            prompt=get_mode(self._session.mode).prompt(word),
            options=list(self._options) if self._options is not None else None,
            time_left=self._time_left,
        )

    @property
    def stats(self) -> Stats:
        return self._stats

    def view(self) -> SessionView:
        return SessionView(
            session=self._session,
            question=self.question,
            feedback=self.feedback,
            pending_fields=self.pending_fields,
            warning=str(self.last_error) if self.last_error else None,
        )

    # --- Operations ---

    async def start_session(
        self, list_ids: List[str], mode: Union[QuizMode, str] = QuizMode.REGULAR
    ) -> GameSession:
        mode = QuizMode(mode)
        async with self._lock:
            if not list_ids:
                raise EmptySelection("No word lists selected")
            words = self.vocabulary.list_words(self.user_id, list_ids)
            if not words:
                raise EmptySelection("The selected lists contain no words")
            return await self._start(list(dict.fromkeys(list_ids)), words, mode)

    async def submit_answer(self, text: str) -> Optional[AnswerRecord]:
        async with self._lock:
            return await self._answer(text, is_timeout=False)

    async def report_timeout(self) -> Optional[AnswerRecord]:
        async with self._lock:
            return await self._answer("", is_timeout=True)

    async def finish_early(self) -> GameSession:
        async with self._lock:
            if not self.is_active:
                raise InvalidTransition("No active session to finish")
            await self._drain()
            await self._finish_current()
            return self._session

    async def repeat_mistakes(self) -> GameSession:
        async with self._lock:
            session = self._session
            if session is None or not session.is_finished:
                raise InvalidTransition("No finished session to repeat")
            wrong_ids = list(
                dict.fromkeys(a.word_id for a in session.answers if not a.correct)
            )
            by_id = {w.id: w for w in self._questions}
            words = [by_id[word_id] for word_id in wrong_ids if word_id in by_id]
            if not words:
                raise EmptySelection("There are no mistakes to repeat")
            list_ids = list(dict.fromkeys(w.list_id for w in words))
            return await self._start(list_ids, words, session.mode)

    async def restore(self) -> Optional[GameSession]:
        """Resume the user's open session from the store, if there is one."""
        async with self._lock:
            try:
                active = await self.store.fetch_active(self.user_id)
            except RemoteError as e:
                self._remember_error(e)
                active = None
            if active is not None:
                words = self.vocabulary.get_words_by_id(self.user_id, active.word_ids)
                if len(words) != len(active.word_ids) or active.current_index >= len(words):
                    logger.warning(
                        f"Cannot resume session {active.id}: its words changed",
                        extra={"session_id": active.id},
                    )
                    await self._close_remote(active.id)
                else:
                    self._session = active
                    self._confirmed = active.model_copy(deep=True)
                    self._pending = {}
                    self._questions = words
                    self._load_question()
                    logger.info(
                        f"Resumed session {active.id} at question {active.current_index}",
                        extra={"session_id": active.id},
                    )
            await self._refresh_stats()
            return self._session

    async def refresh_stats(self) -> Stats:
        async with self._lock:
            await self._drain()
            return await self._refresh_stats()

    async def wait_idle(self) -> None:
        """Wait for the in-flight store write, if any."""
        async with self._lock:
            await self._drain()

    async def close(self) -> None:
        self._cancel_timer()
        await self.wait_idle()

    # --- Internals ---

    async def _start(self, list_ids: List[str], words: List[Word], mode: QuizMode) -> GameSession:
        await self._finish_prior()
        self._park_unsaved()
        now = _now()
        self._session = GameSession(
            user_id=self.user_id,
            list_ids=list_ids,
            word_ids=[w.id for w in words],
            mode=mode,
            started_at=now,
            updated_at=now,
        )
        self._confirmed = None
        self._pending = {}
        self._questions = list(words)
        self._feedback = None
        self._feedback_until = 0.0
        await self._create()
        self._load_question()
        logger.info(
            f"New session: {self._session.id} [Lists: {list_ids}, Mode: {mode.value}, "
            f"Questions: {len(words)}]",
            extra={"session_id": self._session.id},
        )
        return self._session

    async def _finish_prior(self) -> None:
        """Finish the local active session and any open one left in the store."""
        await self._drain()
        if self.is_active:
            await self._finish_current()
        else:
            await self._replay_unsaved()
        try:
            prior = await self.store.fetch_active(self.user_id)
        except RemoteError as e:
            self._remember_error(e)
            return
        if prior is None:
            return
        if self._session is not None and prior.id == self._session.id:
            # Our own session whose finishing write has not landed yet.
            await self._flush({})
        else:
            await self._close_remote(prior.id)

    async def _close_remote(self, session_id: str) -> None:
        logger.info(f"Finishing stale session {session_id}", extra={"session_id": session_id})
        try:
            await self.store.patch(session_id, {"is_finished": True, "updated_at": _now()})
        except RemoteError as e:
            self._remember_error(e)

    def _park_unsaved(self) -> None:
        """Set aside the outgoing session if the store still lacks some of it."""
        session = self._session
        if session is None:
            return
        if session.id is None or self._pending:
            self._unsaved.append((session, dict(self._pending)))
            self._pending = {}

    async def _replay_unsaved(self) -> None:
        remaining = []
        for session, fields in self._unsaved:
            try:
                if session.id is None:
                    created = await self.store.create(session)
                    self._relink_local(session.model_copy(update={"id": created.id}))
                else:
                    await self.store.patch(session.id, fields)
            except RemoteError as e:
                self._remember_error(e)
                remaining.append((session, fields))
            else:
                logger.info(
                    f"Saved earlier session {session.id or 'new'} after a failed write",
                    extra={"session_id": session.id},
                )
        self._unsaved = remaining

    def _relink_local(self, saved: GameSession) -> None:
        # A locally finished session that was created late gets its id.
        for session in self._local_finished:
            if session.id is None and session.started_at == saved.started_at:
                self._local_finished.remove(session)
                self._local_finished.append(saved)
                break

    async def _answer(self, raw_input: str, is_timeout: bool) -> Optional[AnswerRecord]:
        if not self.is_active:
            raise InvalidTransition("No active session")
        session = self._session
        strategy = get_mode(session.mode)
        if is_timeout and not strategy.allows_timeout:
            raise InvalidTransition(f"Timeouts are not allowed in {session.mode.value} mode")
        if self.feedback is not None:
            logger.debug("Answer ignored while feedback is displayed")
            return None
        if not strategy.accepts(raw_input, is_timeout):
            return None
        await self._drain()

        word = self._questions[session.current_index]
        result = strategy.evaluate(word, raw_input, is_timeout)
        record = AnswerRecord(word_id=word.id, answer=result.answer, correct=result.correct)
        index = session.current_index + 1
        finished = index >= len(self._questions)
        fields: Dict[str, Any] = {
            "answers": session.answers + [record],
            "current_index": index,
            "updated_at": _now(),
        }
        if finished:
            fields["is_finished"] = True
        self._session = session.model_copy(update=fields)
        self._feedback = Feedback(record=record, expected=strategy.expected(word))
        self._feedback_until = time.monotonic() + self.feedback_delay

        if finished:
            self._cancel_timer()
            self._finish_local()
            logger.info(
                f"Session {session.id} finished",
                extra={"session_id": session.id},
            )
        else:
            self._load_question()
        self._write = asyncio.create_task(self._flush(fields, refresh_stats=finished))
        return record

    async def _finish_current(self) -> None:
        self._cancel_timer()
        fields = {"is_finished": True, "updated_at": _now()}
        self._session = self._session.model_copy(update=fields)
        self._finish_local()
        logger.info(
            f"Session {self._session.id} finished early after "
            f"{len(self._session.answers)} of {len(self._questions)} questions",
            extra={"session_id": self._session.id},
        )
        await self._flush(fields, refresh_stats=True)

    def _finish_local(self) -> None:
        self._options = None
        self._time_left = None
        self._local_finished.append(self._session)
        self._stats = compute_stats(self._merged_history())

    def _load_question(self) -> None:
        """Prepare the question at the current index; arms the countdown."""
        self._cancel_timer()
        self._options = None
        self._time_left = None
        if not self.is_active:
            return
        strategy = get_mode(self._session.mode)
        word = self._questions[self._session.current_index]
        if strategy.has_options:
            self._options = strategy.options(
                word,
                self.vocabulary.list_owned_words(self.user_id) or self._questions,
                count=self.option_count,
                rng=self.rng,
            )
        if strategy.allows_timeout:
            self._time_left = self.time_limit
            self._timer = asyncio.create_task(
                self._countdown(self._session.current_index)
            )
            self._timer.add_done_callback(self._timer_done)

    async def _countdown(self, index: int) -> None:
        # The clock starts once the previous answer's feedback is gone.
        while self.feedback is not None:
            await asyncio.sleep(max(self._feedback_until - time.monotonic(), 0.01))
        while self._time_left:
            await asyncio.sleep(self.tick)
            self._time_left -= 1
        async with self._lock:
            if not self.is_active or self._session.current_index != index:
                return
            await self._answer("", is_timeout=True)

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    @staticmethod
    def _timer_done(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Countdown failed", exc_info=task.exception())

    async def _drain(self) -> None:
        write, self._write = self._write, None
        if write is not None:
            await write

    async def _create(self) -> None:
        try:
            created = await self.store.create(self._session)
        except RemoteError as e:
            self._remember_error(e)
            return
        self._session = self._session.model_copy(update={"id": created.id})
        self._confirmed = created
        self._pending = {}
        if not self._unsaved:
            self.last_error = None
        self._relink_local(self._session)

    async def _flush(self, fields: Dict[str, Any], refresh_stats: bool = False) -> None:
        """Write ``fields`` plus anything still unconfirmed to the store."""
        self._pending.update(fields)
        if self._unsaved:
            await self._replay_unsaved()
        if self._session.id is None:
            # Creation never succeeded; retry it with the whole record.
            await self._create()
        elif self._pending:
            payload = dict(self._pending)
            try:
                await self.store.patch(self._session.id, payload)
            except RemoteError as e:
                self._remember_error(e)
            else:
                self._pending = {}
                if not self._unsaved:
                    self.last_error = None
                if self._confirmed is not None:
                    self._confirmed = self._confirmed.model_copy(update=payload)
        if refresh_stats:
            await self._refresh_stats()

    async def _refresh_stats(self) -> Stats:
        try:
            finished = await self.store.fetch_finished(self.user_id)
        except RemoteError as e:
            self._remember_error(e)
        else:
            self._history = finished
            stored_ids = {s.id for s in finished}
            # A local copy is dropped only once its last write was confirmed.
            self._local_finished = [
                s
                for s in self._local_finished
                if s.id is None or s.id not in stored_ids or self._awaits_write(s.id)
            ]
        self._stats = compute_stats(self._merged_history())
        return self._stats

    def _awaits_write(self, session_id: str) -> bool:
        if any(session.id == session_id for session, _ in self._unsaved):
            return True
        current = self._session
        return current is not None and current.id == session_id and bool(self._pending)

    def _merged_history(self) -> List[GameSession]:
        local_ids = {s.id for s in self._local_finished if s.id is not None}
        stored = [s for s in self._history if s.id not in local_ids]
        return sorted(stored + self._local_finished, key=lambda s: s.started_at)

    def _remember_error(self, error: RemoteError) -> None:
        self.last_error = error
        session_id = self._session.id if self._session is not None else None
        logger.warning(
            f"Session store unavailable, keeping local state: {error}",
            extra={"session_id": session_id},
        )


class QuizRegistry:
    """Hands out one ``QuizSession`` per user, restored on first use.

    The registry lock only guards the user table. Restoring a quiz talks to
    the store, so it runs outside the lock and concurrent requests for the
    same user wait on one shared restore task. Quizzes left idle for
    ``idle_minutes`` are closed and dropped unless they still hold writes the
    store has not confirmed; the next request restores them from the store.
    """

    def __init__(
        self,
        vocabulary: VocabularyManager,
        store: SessionStore,
        *,
        idle_minutes: Optional[float] = None,
        **options,
    ):
        self.vocabulary = vocabulary
        self.store = store
        self.idle_timeout = timedelta(
            minutes=settings.SESSION_TIMEOUT_MINUTES if idle_minutes is None else idle_minutes
        )
        self.options = options
        # Least recently used first.
        self._quizzes: "OrderedDict[str, QuizSession]" = OrderedDict()
        self._last_used: Dict[str, datetime] = {}
        self._restoring: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._quizzes)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._quizzes

    async def get(self, user_id: str) -> QuizSession:
        async with self._lock:
            quiz = self._quizzes.get(user_id)
            if quiz is None:
                quiz = QuizSession(user_id, self.vocabulary, self.store, **self.options)
                self._quizzes[user_id] = quiz
                self._restoring[user_id] = asyncio.create_task(quiz.restore())
            self._quizzes.move_to_end(user_id)
            self._last_used[user_id] = datetime.now()
            restoring = self._restoring.get(user_id)
            idle = self._take_idle(keep=user_id)

        for user, stale in idle:
            logger.info(f"Dropping idle quiz for user {user}")
            await stale.close()

        if restoring is not None:
            try:
                await asyncio.shield(restoring)
            except Exception:
                async with self._lock:
                    if self._quizzes.get(user_id) is quiz:
                        self._forget(user_id)
                raise
            async with self._lock:
                if self._restoring.get(user_id) is restoring:
                    del self._restoring[user_id]
        return quiz

    def _take_idle(self, keep: str) -> List[Tuple[str, QuizSession]]:
        now = datetime.now()
        idle = []
        for user_id, quiz in list(self._quizzes.items()):
            if now - self._last_used[user_id] < self.idle_timeout:
                break
            if user_id == keep or user_id in self._restoring:
                continue
            if quiz.pending_fields or quiz.unsaved_sessions:
                continue
            self._forget(user_id)
            idle.append((user_id, quiz))
        return idle

    def _forget(self, user_id: str) -> None:
        self._quizzes.pop(user_id, None)
        self._last_used.pop(user_id, None)
        self._restoring.pop(user_id, None)

    async def close(self) -> None:
        for quiz in list(self._quizzes.values()):
            await quiz.close()

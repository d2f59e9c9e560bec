"""Performance statistics folded from finished quiz sessions.

Nothing here is stored: stats are recomputed from the session history
whenever they are needed.
"""

import math
from typing import Iterable, List

from .models import GameResult, GameSession, Stats


def percentage(correct: int, total: int) -> int:
    """Whole percent, halves rounded up; 0 for an empty session."""
    if total <= 0:
        return 0
    return int(math.floor(100 * correct / total + 0.5))


def game_result(session: GameSession) -> GameResult:
    correct_count = sum(1 for a in session.answers if a.correct)
    total_questions = len(session.answers)
    return GameResult(
        id=session.id,
        date=session.started_at,
        mode=session.mode,
        total_questions=total_questions,
        correct_count=correct_count,
        percentage=percentage(correct_count, total_questions),
        incorrect_word_ids=[a.word_id for a in session.answers if not a.correct],
    )


def compute_stats(sessions: Iterable[GameSession]) -> Stats:
    history = [game_result(s) for s in sessions if s.is_finished]
    if not history:
        return Stats()
    return Stats(
        total_games=len(history),
        average_percentage=sum(r.percentage for r in history) / len(history),
        best_score=max(r.percentage for r in history),
        history=history,
    )


def recent_activity(history: List[GameResult], limit: int = 5) -> List[GameResult]:
    """Latest ``limit`` results, newest start first; ties keep history order."""
    return sorted(history, key=lambda r: r.date, reverse=True)[:limit]

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Query, Request

from .config import settings
from .models import AnswerRequest, SessionView, StartRequest, StatsView
from .session import QuizSession
from .stats import recent_activity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# --- Dependencies ---
def get_user_id(
    user_id: Optional[str] = Cookie(None, alias=settings.USER_COOKIE_NAME)
) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Not signed in")
    return user_id


async def get_quiz(request: Request, user_id: str = Depends(get_user_id)) -> QuizSession:
    return await request.app.state.quizzes.get(user_id)


# --- Routes ---
@router.get("/lists")
async def get_lists(request: Request, user_id: str = Depends(get_user_id)) -> List[Dict[str, Any]]:
    return request.app.state.vocabulary.get_lists(user_id)


@router.get("/session", response_model=SessionView)
async def get_session(quiz: QuizSession = Depends(get_quiz)):
    return quiz.view()


@router.post("/session/start", response_model=SessionView)
async def start_session(body: StartRequest, quiz: QuizSession = Depends(get_quiz)):
    await quiz.start_session(body.list_ids, body.mode)
    return quiz.view()


@router.post("/session/answer", response_model=SessionView)
async def submit_answer(body: AnswerRequest, quiz: QuizSession = Depends(get_quiz)):
    await quiz.submit_answer(body.text)
    return quiz.view()


@router.post("/session/timeout", response_model=SessionView)
async def report_timeout(quiz: QuizSession = Depends(get_quiz)):
    await quiz.report_timeout()
    return quiz.view()


@router.post("/session/finish", response_model=SessionView)
async def finish_early(quiz: QuizSession = Depends(get_quiz)):
    await quiz.finish_early()
    return quiz.view()


@router.post("/session/repeat", response_model=SessionView)
async def repeat_mistakes(quiz: QuizSession = Depends(get_quiz)):
    await quiz.repeat_mistakes()
    return quiz.view()


@router.get("/stats", response_model=StatsView)
async def get_stats(
    limit: int = Query(settings.RECENT_ACTIVITY_LIMIT, ge=1),
    quiz: QuizSession = Depends(get_quiz),
):
    stats = await quiz.refresh_stats()
    return StatsView(stats=stats, recent=recent_activity(stats.history, limit))

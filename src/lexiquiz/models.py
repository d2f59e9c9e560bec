from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# --- Models ---
class QuizMode(str, Enum):
    REGULAR = "regular"
    TIMED = "timed"
    REVERSE = "reverse"
    CHOICE = "choice"


class Word(BaseModel):
    id: str
    en: str
    ru: str
    description: Optional[str] = None
    list_id: str
    user_id: str


class AnswerRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    word_id: str
    answer: str
    correct: bool


class GameSession(BaseModel):
    id: Optional[str] = None
    user_id: str
    list_ids: List[str]
    # Exact QuestionSet order, so a resumed session asks the same words.
    word_ids: List[str]
    mode: QuizMode
    current_index: int = 0
    answers: List[AnswerRecord] = Field(default_factory=list)
    is_finished: bool = False
    started_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return not self.is_finished


class GameResult(BaseModel):
    id: Optional[str]
    date: datetime
    mode: QuizMode
    total_questions: int
    correct_count: int
    percentage: int
    incorrect_word_ids: List[str]


class Stats(BaseModel):
    total_games: int = 0
    average_percentage: float = 0.0
    best_score: int = 0
    history: List[GameResult] = Field(default_factory=list)


class Question(BaseModel):
    index: int
    total: int
    word_id: str
    prompt: str
    options: Optional[List[str]] = None
    time_left: Optional[int] = None


class Feedback(BaseModel):
    record: AnswerRecord
    expected: str


# --- Request / response bodies ---
class StartRequest(BaseModel):
    list_ids: List[str]
    mode: QuizMode = QuizMode.REGULAR


class AnswerRequest(BaseModel):
    text: str = ""


class SessionView(BaseModel):
    session: Optional[GameSession]
    question: Optional[Question]
    feedback: Optional[Feedback]
    pending_fields: List[str]
    warning: Optional[str]


class StatsView(BaseModel):
    stats: Stats
    recent: List[GameResult]

import logging
import os
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import Settings, settings
from .database import init_db
from .errors import EmptySelection, InvalidTransition, RemoteError
from .log_handler import SQLiteHandler
from .router import router
from .session import QuizRegistry
from .store import SqliteSessionStore
from .vocabulary import VocabularyManager


# --- Logging Setup ---
def setup_logging(config: Settings = settings):
    logger = logging.getLogger("lexiquiz")
    logger.setLevel(logging.INFO)

    if not os.path.exists(config.LOG_DIR):
        os.makedirs(config.LOG_DIR, exist_ok=True)
    log_path = os.path.join(config.LOG_DIR, config.LOG_FILE)
    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    if config.LOG_TO_DB and not any(isinstance(h, SQLiteHandler) for h in logger.handlers):
        db_handler = SQLiteHandler(config.db_path)
        db_handler.setFormatter(formatter)
        logger.addHandler(db_handler)
    # Also configure root logger to see logs from other libraries
    logging.basicConfig(level=logging.INFO)


# --- Error Handlers ---
async def empty_selection_handler(request: Request, exc: EmptySelection):
    return JSONResponse({"error": str(exc)}, status_code=400)


async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse({"error": str(exc)}, status_code=409)


async def remote_error_handler(request: Request, exc: RemoteError):
    return JSONResponse({"error": str(exc)}, status_code=503)


# --- Lifecycle ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.vocabulary.load_all()
    yield
    await app.state.quizzes.close()


# --- App Factory ---
def create_app(config: Optional[Settings] = None) -> FastAPI:
    config = config or settings
    init_db(config.db_path)
    setup_logging(config)
    app = FastAPI(
        title=config.PROJECT_NAME,
        debug=config.DEBUG,
        lifespan=lifespan,
        root_path=config.ROOT_PATH,
    )

    vocabulary = VocabularyManager(config.VOCAB_DIR)
    store = SqliteSessionStore(config.db_path)
    app.state.vocabulary = vocabulary
    app.state.quizzes = QuizRegistry(
        vocabulary,
        store,
        feedback_delay=config.FEEDBACK_DELAY_SECONDS,
        time_limit=config.TIMED_MODE_SECONDS,
        tick=config.TIMER_TICK_SECONDS,
        idle_minutes=config.SESSION_TIMEOUT_MINUTES,
        option_count=config.CHOICE_OPTION_COUNT,
    )

    app.add_exception_handler(EmptySelection, empty_selection_handler)
    app.add_exception_handler(InvalidTransition, invalid_transition_handler)
    app.add_exception_handler(RemoteError, remote_error_handler)
    app.include_router(router)

    return app

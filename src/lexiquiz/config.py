import os


class Settings:
    PROJECT_NAME: str = "lexiquiz"
    DEBUG: bool = False
    LOG_DIR: str = "log"
    LOG_FILE: str = "lexiquiz.log"
    LOG_TO_DB: bool = os.environ.get("LOG_TO_DB", "0") == "1"
    DB_DIR: str = os.environ.get("DB_DIR", "db")
    DB_FILE: str = "lexiquiz.db"
    VOCAB_DIR: str = os.environ.get("VOCAB_DIR", "vocabulary")
    USER_COOKIE_NAME: str = "lexiquiz_user"
    SESSION_TIMEOUT_MINUTES: int = 120
    FEEDBACK_DELAY_SECONDS: float = float(
        os.environ.get("FEEDBACK_DELAY_SECONDS", "1.2")
    )
    TIMED_MODE_SECONDS: int = int(os.environ.get("TIMED_MODE_SECONDS", "15"))
    TIMER_TICK_SECONDS: float = 1.0
    CHOICE_OPTION_COUNT: int = 4
    RECENT_ACTIVITY_LIMIT: int = 5
    ROOT_PATH: str = os.environ.get("ROOT_PATH", "")

    @property
    def db_path(self) -> str:
        return os.path.join(self.DB_DIR, self.DB_FILE)


settings = Settings()

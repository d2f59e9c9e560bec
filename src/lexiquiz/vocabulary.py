import glob
import logging
import os
from typing import Any, Dict, Iterable, List

import pandas as pd

from .models import Word

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("en", "ru")


# --- Service Layer: Vocabulary Management ---
class VocabularyManager:
    """Loads word lists and answers the lookups the quiz core needs.

    Lists live on disk as ``<directory>/<user_id>/<list_id>.csv`` with ``en``
    and ``ru`` columns and optional ``id`` and ``description`` columns. Every
    lookup is scoped to one user; list ids are only unique per user.
    """

    def __init__(self, directory: str):
        self.directory = directory
        # user_id -> list_id -> words
        self.lists: Dict[str, Dict[str, List[Word]]] = {}

    def load_all(self):
        self.lists = {}
        if not os.path.exists(self.directory):
            os.makedirs(self.directory, exist_ok=True)
            logger.warning(f"Created directory {self.directory}. Please add CSV files.")
            return

        csv_files = glob.glob(os.path.join(self.directory, "*", "*.csv"))
        for file_path in sorted(csv_files):
            user_id = os.path.basename(os.path.dirname(file_path))
            list_id = os.path.splitext(os.path.basename(file_path))[0]
            try:
                df = pd.read_csv(file_path, encoding="utf-8", dtype=str)
            except Exception as e:
                logger.error(f"Failed to load {file_path}: {e}")
                continue
            if not all(col in df.columns for col in REQUIRED_COLUMNS):
                logger.error(f"Skipping {file_path}: Missing columns.")
                continue
            df = df.dropna(subset=list(REQUIRED_COLUMNS))
            self.add_list(user_id, list_id, df.to_dict("records"))
            logger.info(f"Loaded {len(df)} words from {user_id}/{list_id}")

        if not self.lists:
            logger.warning("No word lists found.")

    def add_list(
        self, user_id: str, list_id: str, rows: Iterable[Dict[str, Any]]
    ) -> List[Word]:
        words = []
        for row_no, row in enumerate(rows):
            word_id = row.get("id")
            if not isinstance(word_id, str) or not word_id:
                word_id = f"{user_id}/{list_id}-{row_no}"
            description = row.get("description")
            words.append(
                Word(
                    id=word_id,
                    en=str(row["en"]).strip(),
                    ru=str(row["ru"]).strip(),
                    description=description if isinstance(description, str) else None,
                    list_id=list_id,
                    user_id=user_id,
                )
            )
        self.lists.setdefault(user_id, {})[list_id] = words
        return words

    def list_words(self, user_id: str, list_ids: List[str]) -> List[Word]:
        owned = self.lists.get(user_id, {})
        words = []
        for list_id in dict.fromkeys(list_ids):
            words.extend(owned.get(list_id, []))
        return words

    def list_owned_words(self, user_id: str) -> List[Word]:
        return [w for words in self.lists.get(user_id, {}).values() for w in words]

    def get_words_by_id(self, user_id: str, word_ids: List[str]) -> List[Word]:
        index = {w.id: w for w in self.list_owned_words(user_id)}
        return [index[wid] for wid in word_ids if wid in index]

    def get_lists(self, user_id: str) -> List[Dict[str, Any]]:
        lists = []
        for key, words in self.lists.get(user_id, {}).items():
            display_name = key.replace("_", " ").title()
            lists.append({"id": key, "name": display_name, "count": len(words)})
        lists.sort(key=lambda x: x["name"])
        return lists

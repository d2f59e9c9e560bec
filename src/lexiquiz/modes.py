import random
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, NamedTuple, Optional, Union

from .errors import InvalidTransition
from .models import QuizMode, Word


class Evaluation(NamedTuple):
    correct: bool
    answer: str


def generate_options(
    correct_translation: str,
    pool: Iterable[str],
    count: int = 4,
    rng: Optional[random.Random] = None,
) -> List[str]:
    """Return ``count`` shuffled options: the correct one plus distractors.

    Distractors are drawn without replacement from the deduplicated pool.
    When the pool is too small the set is padded with ``Option N``
    placeholders that never equal a real translation.
    """
    rng = rng or random.Random()
    candidates = set(pool)
    candidates.discard(correct_translation)

    num_distractors = count - 1
    if len(candidates) < num_distractors:
        incorrect = sorted(candidates)
        taken = candidates | {correct_translation}
        n = 1
        while len(incorrect) < num_distractors:
            placeholder = f"Option {n}"
            n += 1
            if placeholder not in taken:
                incorrect.append(placeholder)
    else:
        incorrect = rng.sample(sorted(candidates), num_distractors)

    options = [correct_translation] + incorrect
    rng.shuffle(options)
    return options


# --- Strategy Pattern: Quiz Modes ---
class ModeStrategy(ABC):
    """How one quiz mode asks a word and judges the reply."""

    mode: QuizMode
    allows_blank = False
    allows_timeout = False
    has_options = False

    @abstractmethod
    def prompt(self, word: Word) -> str:
        pass

    @abstractmethod
    def expected(self, word: Word) -> str:
        pass

    def matches(self, expected: str, given: str) -> bool:
        return given.lower() == expected.lower()

    def normalize(self, raw_input: str) -> str:
        return raw_input.strip()

    def accepts(self, raw_input: str, is_timeout: bool = False) -> bool:
        """False when the input should be ignored rather than judged."""
        if is_timeout:
            return True
        return self.allows_blank or bool(raw_input.strip())

    def evaluate(self, word: Word, raw_input: str, is_timeout: bool = False) -> Evaluation:
        if is_timeout:
            if not self.allows_timeout:
                raise InvalidTransition(f"Timeouts are not allowed in {self.mode.value} mode")
            return Evaluation(correct=False, answer="")
        answer = self.normalize(raw_input)
        return Evaluation(correct=self.matches(self.expected(word), answer), answer=answer)


class RegularMode(ModeStrategy):
    """Shows the English word, expects the Russian translation."""

    mode = QuizMode.REGULAR

    def prompt(self, word: Word) -> str:
        return word.en

    def expected(self, word: Word) -> str:
        return word.ru


class TimedMode(RegularMode):
    """Regular mode against a countdown; blank or timed-out answers count as wrong."""

    mode = QuizMode.TIMED
    allows_blank = True
    allows_timeout = True


class ReverseMode(ModeStrategy):
    mode = QuizMode.REVERSE

    def prompt(self, word: Word) -> str:
        return word.ru

    def expected(self, word: Word) -> str:
        return word.en


class ChoiceMode(RegularMode):
    """Pick the Russian translation from a set of options."""

    mode = QuizMode.CHOICE
    has_options = True

    # Options are existing translations, so no normalization.
    def normalize(self, raw_input: str) -> str:
        return raw_input

    def matches(self, expected: str, given: str) -> bool:
        return given == expected

    def options(
        self,
        word: Word,
        owned_words: Iterable[Word],
        count: int = 4,
        rng: Optional[random.Random] = None,
    ) -> List[str]:
        pool = [w.ru for w in owned_words if w.id != word.id]
        return generate_options(word.ru, pool, count=count, rng=rng)


MODES: Dict[QuizMode, ModeStrategy] = {
    strategy.mode: strategy
    for strategy in (RegularMode(), TimedMode(), ReverseMode(), ChoiceMode())
}


def get_mode(mode: Union[QuizMode, str]) -> ModeStrategy:
    try:
        return MODES[QuizMode(mode)]
    except ValueError:
        raise ValueError(f"Unknown quiz mode: {mode}") from None


def evaluate(
    mode: Union[QuizMode, str], word: Word, raw_input: str, is_timeout: bool = False
) -> Evaluation:
    return get_mode(mode).evaluate(word, raw_input, is_timeout)

import asyncio

import pytest

from lexiquiz.errors import EmptySelection, InvalidTransition
from lexiquiz.models import QuizMode
from lexiquiz.stats import game_result
from conftest import OTHER_USER, USER


def test_regular_session_example(run, make_quiz, store):
    async def scenario():
        quiz = make_quiz()
        session = await quiz.start_session(["animals"], QuizMode.REGULAR)
        assert session.id is not None
        assert quiz.question.prompt == "cat"

        record = await quiz.submit_answer("КОТ")
        assert record.correct is True
        assert quiz.session.current_index == 1
        assert len(quiz.session.answers) == 1
        assert not quiz.session.is_finished

        record = await quiz.submit_answer("pes")
        assert record.correct is False
        await quiz.wait_idle()
        return quiz

    quiz = run(scenario())
    assert quiz.session.current_index == 2
    assert quiz.session.is_finished
    assert quiz.question is None
    result = game_result(quiz.session)
    assert result.correct_count == 1
    assert result.percentage == 50
    assert quiz.stats.total_games == 1
    assert store.sessions[quiz.session.id].is_finished
    assert quiz.pending_fields == []


def test_answers_track_current_index(run, make_quiz):
    async def scenario():
        quiz = make_quiz()
        await quiz.start_session(["animals", "home"], "reverse")
        seen = []
        for word in quiz.questions:
            await quiz.submit_answer(word.en)
            seen.append((len(quiz.session.answers), quiz.session.current_index))
        await quiz.wait_idle()
        return quiz, seen

    quiz, seen = run(scenario())
    assert seen == [(i, i) for i in range(1, 6)]
    assert quiz.session.is_finished
    assert len(quiz.session.answers) == len(quiz.questions)
    assert quiz.stats.best_score == 100


def test_question_set_follows_list_order(run, make_quiz):
    async def scenario():
        quiz = make_quiz()
        session = await quiz.start_session(["home", "animals"], QuizMode.REGULAR)
        return session

    session = run(scenario())
    assert session.word_ids == ["w-house", "w-table", "w-chair", "w-cat", "w-dog"]
    assert session.list_ids == ["home", "animals"]


@pytest.mark.parametrize("list_ids", [[], ["empty"], ["missing"]])
def test_empty_selection(run, make_quiz, store, list_ids):
    quiz = make_quiz()
    with pytest.raises(EmptySelection):
        run(quiz.start_session(list_ids, QuizMode.REGULAR))
    assert quiz.session is None
    assert store.sessions == {}


def test_users_only_play_their_own_lists(run, make_quiz):
    async def scenario():
        mine = make_quiz()
        theirs = make_quiz(OTHER_USER)
        await mine.start_session(["animals"], QuizMode.REGULAR)
        await theirs.start_session(["animals"], QuizMode.REGULAR)
        with pytest.raises(EmptySelection):
            await mine.start_session(["secret"], QuizMode.REGULAR)
        return mine, theirs

    mine, theirs = run(scenario())
    assert mine.session.word_ids == ["w-cat", "w-dog"]
    assert [w.en for w in mine.questions] == ["cat", "dog"]
    assert theirs.session.word_ids == [f"{OTHER_USER}/animals-0"]
    assert theirs.question.prompt == "horse"


def test_restore_looks_up_the_users_own_words(run, make_quiz):
    async def scenario():
        first = make_quiz()
        await first.start_session(["animals"], QuizMode.REGULAR)
        second = make_quiz()
        await second.restore()
        return second

    quiz = run(scenario())
    # OTHER_USER also owns a word with the id "w-cat".
    assert quiz.session.word_ids == ["w-cat", "w-dog"]
    assert quiz.question.prompt == "cat"


def test_answer_without_session_fails_fast(run, make_quiz):
    quiz = make_quiz()
    with pytest.raises(InvalidTransition):
        run(quiz.submit_answer("кот"))
    with pytest.raises(InvalidTransition):
        run(quiz.finish_early())


def test_new_session_finishes_the_previous_one(run, make_quiz, store):
    async def scenario():
        quiz = make_quiz()
        first = await quiz.start_session(["animals"], QuizMode.REGULAR)
        await quiz.submit_answer("кот")
        second = await quiz.start_session(["home"], QuizMode.TIMED)
        await quiz.close()
        return first, second

    first, second = run(scenario())
    active = [s for s in store.sessions.values() if not s.is_finished]
    assert [s.id for s in active] == [second.id]
    assert store.sessions[first.id].is_finished
    assert len(store.sessions[first.id].answers) == 1


def test_open_session_from_another_device_is_finished(run, make_quiz, store):
    async def scenario():
        other = make_quiz()
        stale = await other.start_session(["animals"], QuizMode.REGULAR)
        quiz = make_quiz()
        fresh = await quiz.start_session(["home"], QuizMode.REGULAR)
        return stale, fresh

    stale, fresh = run(scenario())
    assert store.sessions[stale.id].is_finished
    assert not store.sessions[fresh.id].is_finished


def test_answers_ignored_while_feedback_is_shown(run, make_quiz):
    async def scenario():
        quiz = make_quiz(feedback_delay=60)
        await quiz.start_session(["animals"], QuizMode.REGULAR)
        first = await quiz.submit_answer("кот")
        second = await quiz.submit_answer("собака")
        return quiz, first, second

    quiz, first, second = run(scenario())
    assert first is not None
    assert second is None
    assert quiz.session.current_index == 1
    assert quiz.feedback.record == first
    assert quiz.feedback.expected == "кот"


def test_blank_answer_ignored_in_regular_mode(run, make_quiz):
    async def scenario():
        quiz = make_quiz()
        await quiz.start_session(["animals"], QuizMode.REGULAR)
        return quiz, await quiz.submit_answer("   ")

    quiz, record = run(scenario())
    assert record is None
    assert quiz.session.current_index == 0


def test_timeout_outside_timed_mode_is_rejected(run, make_quiz):
    async def scenario():
        quiz = make_quiz()
        await quiz.start_session(["animals"], QuizMode.REGULAR)
        await quiz.report_timeout()

    with pytest.raises(InvalidTransition):
        run(scenario())


def test_countdown_records_a_timeout(run, make_quiz):
    async def scenario():
        quiz = make_quiz(time_limit=3, tick=0.01)
        await quiz.start_session(["animals"], QuizMode.TIMED)
        assert quiz.question.time_left == 3
        for _ in range(200):
            if quiz.session.current_index == 1:
                break
            await asyncio.sleep(0.01)
        answers = list(quiz.session.answers)
        index = quiz.session.current_index
        await quiz.close()
        return answers, index

    answers, index = run(scenario())
    assert index == 1
    assert answers[0].word_id == "w-cat"
    assert answers[0].answer == ""
    assert answers[0].correct is False


def test_answering_cancels_the_countdown(run, make_quiz):
    async def scenario():
        quiz = make_quiz(time_limit=5, tick=0.01, feedback_delay=0.3)
        await quiz.start_session(["animals"], QuizMode.TIMED)
        await quiz.submit_answer("кот")
        # The next countdown only starts after the feedback window.
        await asyncio.sleep(0.1)
        assert quiz.session.current_index == 1
        assert quiz.question.time_left == 5
        await quiz.close()
        return quiz

    quiz = run(scenario())
    assert [a.correct for a in quiz.session.answers] == [True]


def test_blank_answer_counts_as_wrong_in_timed_mode(run, make_quiz):
    async def scenario():
        quiz = make_quiz()
        await quiz.start_session(["animals"], QuizMode.TIMED)
        record = await quiz.submit_answer("")
        await quiz.close()
        return record

    record = run(scenario())
    assert record.correct is False
    assert record.answer == ""


def test_finish_early_keeps_partial_answers(run, make_quiz, store):
    async def scenario():
        quiz = make_quiz()
        await quiz.start_session(["home"], QuizMode.REGULAR)
        await quiz.submit_answer("дом")
        return quiz, await quiz.finish_early()

    quiz, session = run(scenario())
    assert session.is_finished
    result = game_result(session)
    assert result.total_questions == 1
    assert result.percentage == 100
    assert store.sessions[session.id].is_finished
    assert quiz.stats.total_games == 1
    with pytest.raises(InvalidTransition):
        run(quiz.finish_early())


def test_repeat_mistakes_asks_only_the_wrong_words(run, make_quiz):
    async def scenario():
        quiz = make_quiz()
        await quiz.start_session(["home"], QuizMode.REVERSE)
        await quiz.submit_answer("house")
        await quiz.submit_answer("desk")
        await quiz.submit_answer("stool")
        await quiz.wait_idle()
        return quiz, await quiz.repeat_mistakes()

    quiz, retry = run(scenario())
    assert retry.word_ids == ["w-table", "w-chair"]
    assert retry.list_ids == ["home"]
    assert retry.mode == QuizMode.REVERSE
    assert quiz.is_active
    assert quiz.question.prompt == "стол"


def test_repeat_mistakes_needs_a_finished_session_with_mistakes(run, make_quiz):
    async def scenario():
        quiz = make_quiz()
        await quiz.start_session(["animals"], QuizMode.REGULAR)
        with pytest.raises(InvalidTransition):
            await quiz.repeat_mistakes()
        await quiz.submit_answer("кот")
        await quiz.submit_answer("собака")
        await quiz.wait_idle()
        with pytest.raises(EmptySelection):
            await quiz.repeat_mistakes()

    run(scenario())


def test_choice_question_offers_four_options(run, make_quiz):
    async def scenario():
        quiz = make_quiz()
        await quiz.start_session(["animals"], QuizMode.CHOICE)
        first = quiz.question
        await quiz.submit_answer("кот")
        second = quiz.question
        return first, second

    first, second = run(scenario())
    for question, expected in ((first, "кот"), (second, "собака")):
        assert len(question.options) == 4
        assert question.options.count(expected) == 1
        assert len(set(question.options)) == 4


def test_remote_errors_keep_local_progress(run, make_quiz, store):
    async def scenario():
        quiz = make_quiz()
        session = await quiz.start_session(["home"], QuizMode.REGULAR)
        store.failing.add("patch")
        await quiz.submit_answer("дом")
        await quiz.submit_answer("стол")
        await quiz.wait_idle()
        assert quiz.last_error is not None
        assert quiz.pending_fields == ["answers", "current_index", "updated_at"]
        assert quiz.session.current_index == 2
        assert quiz.confirmed.current_index == 0
        assert store.sessions[session.id].current_index == 0

        store.failing.clear()
        await quiz.submit_answer("стул")
        await quiz.wait_idle()
        return quiz, session

    quiz, session = run(scenario())
    assert quiz.pending_fields == []
    assert quiz.last_error is None
    stored = store.sessions[session.id]
    assert stored.is_finished
    assert [a.answer for a in stored.answers] == ["дом", "стол", "стул"]
    assert quiz.confirmed.is_finished


def test_quiz_can_be_finished_while_store_is_down(run, make_quiz, store):
    async def scenario():
        quiz = make_quiz()
        await quiz.start_session(["animals"], QuizMode.REGULAR)
        store.failing.update({"patch", "fetch_finished"})
        await quiz.submit_answer("кот")
        return quiz, await quiz.finish_early()

    quiz, session = run(scenario())
    assert session.is_finished
    assert "is_finished" in quiz.pending_fields
    assert quiz.view().warning is not None
    # Stats fall back to the locally finished session.
    assert quiz.stats.total_games == 1
    assert quiz.stats.history[0].total_questions == 1


def test_failed_create_is_retried_on_next_write(run, make_quiz, store):
    async def scenario():
        quiz = make_quiz()
        store.failing.add("create")
        session = await quiz.start_session(["animals"], QuizMode.REGULAR)
        assert session.id is None
        assert quiz.pending_fields == ["id"]
        store.failing.clear()
        await quiz.submit_answer("кот")
        await quiz.wait_idle()
        return quiz

    quiz = run(scenario())
    assert quiz.session.id is not None
    stored = store.sessions[quiz.session.id]
    assert stored.current_index == 1
    assert stored.answers[0].correct is True
    assert quiz.pending_fields == []


def test_failed_final_write_survives_a_new_session(run, make_quiz, store):
    async def scenario():
        quiz = make_quiz()
        first = await quiz.start_session(["animals"], QuizMode.REGULAR)
        store.failing.add("patch")
        await quiz.submit_answer("кот")
        await quiz.submit_answer("собака")
        await quiz.start_session(["home"], QuizMode.REGULAR)
        assert quiz.unsaved_sessions == [first.id]
        assert quiz.pending_fields == []
        # Still counted from local state.
        assert [r.percentage for r in quiz.stats.history] == [100]

        store.failing.clear()
        await quiz.start_session(["home"], QuizMode.REGULAR)
        return quiz, first, await quiz.refresh_stats()

    quiz, first, stats = run(scenario())
    stored = store.sessions[first.id]
    assert stored.is_finished
    assert [a.answer for a in stored.answers] == ["кот", "собака"]
    assert stored.current_index == 2
    assert quiz.unsaved_sessions == []
    assert quiz.last_error is None
    assert [(r.total_questions, r.percentage) for r in stats.history] == [(2, 100), (0, 0)]


def test_stats_keep_local_answers_until_saved(run, make_quiz, store):
    async def scenario():
        quiz = make_quiz()
        first = await quiz.start_session(["animals"], QuizMode.REGULAR)
        store.failing.add("patch")
        await quiz.submit_answer("кот")
        await quiz.submit_answer("x")
        await quiz.wait_idle()
        # Closed elsewhere before our answers arrived.
        store.sessions[first.id] = store.sessions[first.id].model_copy(
            update={"is_finished": True}
        )
        return first, await quiz.refresh_stats()

    first, stats = run(scenario())
    assert store.sessions[first.id].answers == []
    assert stats.total_games == 1
    assert stats.history[0].total_questions == 2
    assert stats.history[0].percentage == 50


def test_restore_resumes_open_session(run, make_quiz, store):
    async def scenario():
        first = make_quiz()
        session = await first.start_session(["home"], QuizMode.REGULAR)
        await first.submit_answer("дом")
        await first.wait_idle()

        second = make_quiz()
        restored = await second.restore()
        return session, restored, second

    session, restored, quiz = run(scenario())
    assert restored.id == session.id
    assert restored.current_index == 1
    assert quiz.question.prompt == "table"
    assert [w.id for w in quiz.questions] == ["w-house", "w-table", "w-chair"]


def test_restore_closes_session_whose_words_are_gone(run, make_quiz, store, vocabulary):
    async def scenario():
        first = make_quiz()
        session = await first.start_session(["animals"], QuizMode.REGULAR)
        vocabulary.add_list(USER, "animals", [{"id": "w-cat", "en": "cat", "ru": "кот"}])
        second = make_quiz()
        return session, await second.restore()

    session, restored = run(scenario())
    assert restored is None
    assert store.sessions[session.id].is_finished


def test_stats_collect_all_finished_sessions(run, make_quiz):
    async def scenario():
        quiz = make_quiz()
        await quiz.start_session(["animals"], QuizMode.REGULAR)
        await quiz.submit_answer("кот")
        await quiz.submit_answer("собака")
        await quiz.start_session(["animals"], QuizMode.REGULAR)
        await quiz.submit_answer("x")
        await quiz.finish_early()
        return await quiz.refresh_stats()

    stats = run(scenario())
    assert stats.total_games == 2
    assert [r.percentage for r in stats.history] == [100, 0]
    assert stats.average_percentage == 50
    assert stats.best_score == 100

import unittest

import pytest

from activities import ActivityService
from engines.aggregator import DifficultyPolicy, ProgressAggregator
from errors import NotFoundError


class DifficultyPolicyTests(unittest.TestCase):
    def test_default_bands(self):
        policy = DifficultyPolicy()
        self.assertEqual([policy(level) for level in range(1, 7)], ["easy", "easy", "medium", "medium", "hard", "hard"])

    def test_custom_bands(self):
        policy = DifficultyPolicy(easy_max_level=1, medium_max_level=1)
        self.assertEqual(policy(1), "easy")
        self.assertEqual(policy(2), "hard")


@pytest.mark.usefixtures("seeded_catalog")
def test_levels_for_new_user_default_to_level_one():
    overview = ProgressAggregator().get_levels("new-kid", "arrange")

    assert [level.level for level in overview.levels] == [1, 2]
    first, second = overview.levels
    assert first.title == "Level 1"
    assert first.total_questions == 3
    assert first.completed_questions == 0
    assert first.is_current is True
    assert first.is_unlocked is True
    assert second.is_current is False
    assert second.is_unlocked is True
    assert overview.user_progress.current_level == 1
    assert overview.user_progress.highest_question_no == 0
    assert overview.user_progress.total_levels == 2


@pytest.mark.usefixtures("seeded_catalog")
def test_levels_reflect_completed_questions():
    service = ActivityService()
    for no in (1, 2, 3):
        service.submit_attempt("kid-1", f"arr-001-1-0{no}", ["a", "b", "c"], 5)
    service.submit_attempt("kid-1", "arr-001-2-01", ["y", "x"], 5)

    overview = service.get_levels("kid-1", "arrange")
    first, second = overview.levels
    assert first.is_completed is True
    assert first.completed_questions == 3
    assert first.is_current is False
    assert second.completed_questions == 0
    assert second.is_current is True
    assert overview.user_progress.current_level == 2


@pytest.mark.usefixtures("temp_db")
def test_levels_for_unknown_activity_raise():
    with pytest.raises(NotFoundError):
        ProgressAggregator().get_levels("kid-1", "puzzle")


@pytest.mark.usefixtures("seeded_catalog")
def test_questions_with_progress_points_at_first_incomplete():
    service = ActivityService()
    service.submit_attempt("kid-1", "arr-001-1-01", ["a", "b", "c"], 5)
    service.submit_attempt("kid-1", "arr-001-1-03", ["a", "b", "c"], 5)

    view = service.get_questions_for_level("kid-1", "arrange", 1)

    assert [q.completed for q in view.questions] == [True, False, True]
    assert view.next_incomplete_index == 1
    assert view.progress.completed_questions == 2
    assert view.progress.total_questions == 3
    assert view.progress.completed_question_numbers == [1, 3]
    assert view.progress.current_level == 1
    assert view.progress.highest_question_no == 3


@pytest.mark.usefixtures("seeded_catalog")
def test_questions_with_progress_when_level_complete_points_at_last():
    service = ActivityService()
    for no in (1, 2, 3):
        service.submit_attempt("kid-1", f"arr-001-1-0{no}", ["a", "b", "c"], 5)

    view = service.get_questions_for_level("kid-1", "arrange", 1)
    assert view.next_incomplete_index == 2
    assert all(q.completed for q in view.questions)
    assert view.progress.current_level == 2


@pytest.mark.usefixtures("seeded_catalog")
def test_questions_with_progress_for_empty_level_raise():
    with pytest.raises(NotFoundError):
        ProgressAggregator().get_questions_with_progress("kid-1", "arrange", 7)

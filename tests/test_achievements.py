from ifrs17trainer.achievements import (
    ACHIEVEMENTS,
    ACHIEVEMENTS_BY_ID,
    AchievementStats,
    display_for,
    evaluate,
    new_achievements,
)


def _stats(**overrides: int) -> AchievementStats:
    values = {"score": 0, "streak": 0, "level": 1, "completed_modules": 0, "perfect_modules": 0, "max_combo": 0}
    values.update(overrides)
    return AchievementStats(**values)


def test_definitions_are_ordered_by_id() -> None:
    assert [item.id for item in ACHIEVEMENTS] == list(range(1, 9))
    assert ACHIEVEMENTS_BY_ID[6].name == "Combo King"


def test_thresholds() -> None:
    cases = {
        1: _stats(score=10),
        2: _stats(streak=5),
        3: _stats(completed_modules=1),
        4: _stats(level=5),
        5: _stats(perfect_modules=1),
        6: _stats(max_combo=10),
        7: _stats(completed_modules=5),
        8: _stats(streak=15),
    }
    for achievement_id, stats in cases.items():
        assert ACHIEVEMENTS_BY_ID[achievement_id].predicate(stats) is True
    assert ACHIEVEMENTS_BY_ID[1].predicate(_stats(score=9)) is False
    assert ACHIEVEMENTS_BY_ID[8].predicate(_stats(streak=14)) is False


def test_evaluate_surfaces_one_at_a_time() -> None:
    stats = _stats(score=100, streak=5, completed_modules=1)
    assert [item.id for item in new_achievements([], stats)] == [1, 2, 3]
    earned: list[int] = []
    for expected in (1, 2, 3):
        found = evaluate(earned, stats)
        assert [item.id for item in found] == [expected]
        earned.append(found[0].id)
    assert evaluate(earned, stats) == []


def test_evaluation_never_removes_earned() -> None:
    earned = [1, 2]
    assert evaluate(earned, _stats()) == []
    assert earned == [1, 2]


def test_display_variants() -> None:
    combo = ACHIEVEMENTS_BY_ID[6]
    assert display_for(combo) == ("Combo King", "🔥")
    assert display_for(combo, "Female") == ("Combo Queen", "👑")
    assert display_for(combo, "male") == ("Combo King", "🔥")
    assert display_for(ACHIEVEMENTS_BY_ID[4], "male")[1] == "👨‍🎓"

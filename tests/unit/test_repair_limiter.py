"""
Tests for RepairAttemptLimiter.

Scenario: three failed repairs inside the cooldown window exhaust the budget;
the fourth is refused; once the cooldown elapses attempts are allowed again.
"""
from oko.risk.repair_limiter import RepairAttemptLimiter


def test_first_attempt_allowed_and_counted(limiter):
    assert limiter.should_attempt("42", "fix_sltp", max_attempts=3, cooldown_minutes=10) is True
    assert limiter.attempts("42", "fix_sltp") == 1


def test_fourth_attempt_refused_inside_window(limiter, clock):
    for _ in range(3):
        assert limiter.should_attempt("42", "fix_sltp", max_attempts=3, cooldown_minutes=10) is True
        clock.advance(30)

    assert limiter.should_attempt("42", "fix_sltp", max_attempts=3, cooldown_minutes=10) is False
    assert limiter.attempts("42", "fix_sltp") == 3
    assert limiter.is_exhausted("42", "fix_sltp", max_attempts=3, cooldown_minutes=10) is True


def test_attempts_resume_after_cooldown(limiter, clock):
    for _ in range(3):
        limiter.should_attempt("42", "fix_sltp", max_attempts=3, cooldown_minutes=10)
    assert limiter.should_attempt("42", "fix_sltp", max_attempts=3, cooldown_minutes=10) is False

    clock.advance(10 * 60)

    assert limiter.is_exhausted("42", "fix_sltp", max_attempts=3, cooldown_minutes=10) is False
    assert limiter.should_attempt("42", "fix_sltp", max_attempts=3, cooldown_minutes=10) is True
    assert limiter.attempts("42", "fix_sltp") == 1


def test_clear_after_successful_repair(limiter):
    for _ in range(3):
        limiter.should_attempt("42", "fix_sltp", max_attempts=3)
    limiter.clear("42", "fix_sltp")
    assert limiter.attempts("42", "fix_sltp") == 0
    assert limiter.should_attempt("42", "fix_sltp", max_attempts=3) is True


def test_actions_tracked_separately(limiter):
    for _ in range(3):
        limiter.should_attempt("42", "fix_sltp", max_attempts=3)
    assert limiter.should_attempt("42", "fix_sltp", max_attempts=3) is False
    assert limiter.should_attempt("42", "fix_sltp_urgent", max_attempts=5) is True


def test_is_exhausted_does_not_count(clock):
    limiter = RepairAttemptLimiter(clock=clock)
    limiter.should_attempt("1", "fix_sltp", max_attempts=2)
    limiter.is_exhausted("1", "fix_sltp", max_attempts=2)
    limiter.is_exhausted("1", "fix_sltp", max_attempts=2)
    assert limiter.attempts("1", "fix_sltp") == 1

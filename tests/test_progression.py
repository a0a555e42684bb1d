"""Unit tests for the progression rules: streaks, badges, challenges and goal settlement."""

from datetime import date, datetime, timedelta

import pytest

from conftest import make_user, make_goal
from models import (
    Profile, Goal, Task, Transaction, UserStreak, Badge, Challenge,
    UserChallenge, Notification, FocusSession, ChallengeStatus
)
from progression import (
    next_streak, update_streak, get_or_create_streak, badges_to_award,
    check_for_badges, grant_badge, join_challenge, update_challenge_progress,
    expire_challenges, settle_goal, increment_balance, goal_progress,
    category_stats, next_break, focus_summary, format_duration, split_duration,
    local_today, days_remaining, BADGE_THRESHOLDS
)


def _challenge(db, name):
    return db.query(Challenge).filter(Challenge.name == name).one()


class TestNextStreak:
    def test_first_action_starts_at_one(self):
        assert next_streak(0, 0, None, date(2024, 3, 1)) == (1, 1)

    def test_same_day_is_noop(self):
        assert next_streak(4, 9, date(2024, 3, 1), date(2024, 3, 1)) is None

    def test_consecutive_day_increments(self):
        assert next_streak(6, 6, date(2024, 3, 1), date(2024, 3, 2)) == (7, 7)

    def test_longest_is_kept_when_higher(self):
        assert next_streak(3, 10, date(2024, 3, 1), date(2024, 3, 2)) == (4, 10)

    def test_gap_resets_to_one(self):
        assert next_streak(12, 12, date(2024, 3, 1), date(2024, 3, 5)) == (1, 12)

    def test_clock_going_backwards_is_noop(self):
        assert next_streak(5, 5, date(2024, 3, 5), date(2024, 3, 4)) is None


class TestUpdateStreak:
    def test_streak_is_created_lazily(self, db, user):
        streak = get_or_create_streak(db, user.id)
        db.commit()
        assert streak.current_streak == 0
        assert streak.last_streak_date is None
        assert get_or_create_streak(db, user.id).id == streak.id

    def test_same_day_writes_nothing(self, db, user):
        today = date(2024, 3, 10)
        db.add(UserStreak(user_id=user.id, current_streak=3, longest_streak=3,
                          last_streak_date=today, total_goals_completed=5))
        db.commit()

        result = update_streak(db, user.id, today)

        assert result["changed"] is False
        assert result["streak"].current_streak == 3
        assert result["streak"].total_goals_completed == 5

    def test_sixth_to_seventh_day_grants_week_warrior(self, db, user):
        today = date(2024, 3, 10)
        db.add(UserStreak(user_id=user.id, current_streak=6, longest_streak=6,
                          last_streak_date=today - timedelta(days=1), total_goals_completed=6))
        db.commit()

        result = update_streak(db, user.id, today)
        db.commit()

        streak = result["streak"]
        assert streak.current_streak == 7
        assert streak.longest_streak == 7
        assert streak.total_goals_completed == 7
        assert streak.last_streak_date == today
        assert [b.badge_type for b in result["new_badges"]] == ["streak_7"]
        assert result["new_badges"][0].badge_name == "Week Warrior"

    def test_gap_resets_but_keeps_longest(self, db, user):
        today = date(2024, 3, 10)
        db.add(UserStreak(user_id=user.id, current_streak=8, longest_streak=8,
                          last_streak_date=today - timedelta(days=3), total_goals_completed=8))
        db.commit()

        streak = update_streak(db, user.id, today)["streak"]

        assert streak.current_streak == 1
        assert streak.longest_streak == 8
        assert streak.total_goals_completed == 9


class TestBadges:
    def test_threshold_table_order(self):
        assert [row["type"] for row in BADGE_THRESHOLDS] == [
            "streak_7", "streak_30", "goals_10", "goals_50", "goals_100"
        ]

    def test_badges_to_award_uses_both_metrics(self):
        awarded = badges_to_award(7, 10, set())
        assert awarded == [("streak_7", "Week Warrior"), ("goals_10", "Goal Getter")]

    def test_owned_badges_are_skipped(self):
        assert badges_to_award(30, 10, {"streak_7", "goals_10"}) == [("streak_30", "Monthly Master")]

    def test_nothing_below_thresholds(self):
        assert badges_to_award(6, 9, set()) == []

    def test_check_for_badges_is_idempotent(self, db, user):
        first = check_for_badges(db, user.id, 7, 1)
        second = check_for_badges(db, user.id, 8, 2)
        db.commit()

        assert len(first) == 1
        assert second == []
        assert db.query(Badge).filter(Badge.user_id == user.id).count() == 1

    def test_grant_badge_once_and_notifies(self, db, user):
        assert grant_badge(db, user.id, "challenge_week_focus", "Week of Focus") is not None
        assert grant_badge(db, user.id, "challenge_week_focus", "Week of Focus") is None
        db.commit()

        notifications = db.query(Notification).filter(Notification.user_id == user.id).all()
        assert len(notifications) == 1
        assert notifications[0].type == "badge"


class TestChallenges:
    def test_catalog_is_seeded(self, db):
        assert db.query(Challenge).count() == 4

    def test_join_twice_is_noop(self, db, user):
        challenge = _challenge(db, "Week of Focus")

        first = join_challenge(db, user.id, challenge.id)
        second = join_challenge(db, user.id, challenge.id)
        db.commit()

        assert first is not None
        assert first.status == ChallengeStatus.active.value
        assert second is None
        assert db.query(UserChallenge).filter(UserChallenge.user_id == user.id).count() == 1

    def test_rejoin_after_completion_is_allowed(self, db, user):
        challenge = _challenge(db, "Weekend Sprint")
        uc = join_challenge(db, user.id, challenge.id)
        uc.status = ChallengeStatus.completed.value
        db.commit()

        assert join_challenge(db, user.id, challenge.id) is not None

    def test_reaching_target_completes_and_grants_reward(self, db, user):
        challenge = _challenge(db, "Week of Focus")
        now = datetime.utcnow()
        uc = join_challenge(db, user.id, challenge.id, now=now - timedelta(days=2))
        uc.goals_completed = 4
        db.commit()

        updated, badges = update_challenge_progress(db, user.id, now)
        db.commit()

        assert updated == [uc]
        assert uc.goals_completed == 5
        assert uc.status == ChallengeStatus.completed.value
        assert uc.completed_at == now
        assert [(b.badge_type, b.badge_name) for b in badges] == [
            ("challenge_week_focus", "Week of Focus")
        ]

    def test_progress_after_end_date_fails(self, db, user):
        challenge = _challenge(db, "Weekend Sprint")
        now = datetime.utcnow()
        uc = join_challenge(db, user.id, challenge.id, now=now - timedelta(days=4))
        db.commit()

        update_challenge_progress(db, user.id, now)

        assert uc.goals_completed == 1
        assert uc.status == ChallengeStatus.failed.value
        assert uc.completed_at is None

    def test_progress_within_window_stays_active(self, db, user):
        challenge = _challenge(db, "Monthly Marathon")
        uc = join_challenge(db, user.id, challenge.id)
        db.commit()

        update_challenge_progress(db, user.id, datetime.utcnow())

        assert uc.goals_completed == 1
        assert uc.status == ChallengeStatus.active.value

    def test_expire_challenges_keeps_counter(self, db, user):
        now = datetime.utcnow()
        old = join_challenge(db, user.id, _challenge(db, "Weekend Sprint").id, now=now - timedelta(days=10))
        old.goals_completed = 1
        fresh = join_challenge(db, user.id, _challenge(db, "Week of Focus").id, now=now)
        db.commit()

        assert expire_challenges(db, now) == 1
        assert old.status == ChallengeStatus.failed.value
        assert old.goals_completed == 1
        assert fresh.status == ChallengeStatus.active.value

    def test_days_remaining_never_negative(self, db, user):
        challenge = _challenge(db, "Weekend Sprint")
        now = datetime.utcnow()
        uc = join_challenge(db, user.id, challenge.id, now=now - timedelta(days=10))
        assert days_remaining(uc, challenge, now) == 0


class TestSettleGoal:
    def test_timely_completion_credits_once(self, db, user):
        goal = make_goal(db, user, hours=2)

        outcome = settle_goal(db, goal, datetime.utcnow())
        db.commit()
        db.expire_all()

        assert outcome["settled"] is True
        assert outcome["status"] == "completed"
        assert outcome["credited"] == 7200
        assert db.get(Profile, user.id).balance == 7200

        transactions = db.query(Transaction).filter(Transaction.user_id == user.id).all()
        assert len(transactions) == 1
        assert transactions[0].amount == 7200
        assert transactions[0].type == "credit"
        assert transactions[0].goal_id == goal.id
        assert transactions[0].reason == 'Completed goal: "Study"'

    def test_timely_completion_updates_streak(self, db, user):
        goal = make_goal(db, user)

        outcome = settle_goal(db, goal, datetime.utcnow())
        db.commit()

        assert outcome["streak"].current_streak == 1
        assert outcome["streak"].total_goals_completed == 1

    def test_late_completion_fails_without_credit(self, db, user):
        goal = make_goal(db, user, deadline_in=timedelta(hours=-1))

        outcome = settle_goal(db, goal, datetime.utcnow())
        db.commit()
        db.expire_all()

        assert outcome["status"] == "failed"
        assert outcome["credited"] == 0
        assert db.get(Goal, goal.id).status == "failed"
        assert db.get(Profile, user.id).balance == 0
        assert db.query(Transaction).count() == 0
        assert db.query(UserStreak).count() == 0

    def test_completion_exactly_at_deadline_fails(self, db, user):
        goal = make_goal(db, user)
        outcome = settle_goal(db, goal, goal.deadline)
        assert outcome["status"] == "failed"

    def test_second_settle_is_noop(self, db, user):
        goal = make_goal(db, user, hours=1)
        now = datetime.utcnow()

        settle_goal(db, goal, now)
        db.commit()
        again = settle_goal(db, goal, now)
        db.commit()
        db.expire_all()

        assert again["settled"] is False
        assert again["credited"] == 0
        assert db.get(Profile, user.id).balance == 3600
        assert db.query(Transaction).count() == 1

    def test_completion_advances_active_challenge(self, db, user):
        challenge = _challenge(db, "Week of Focus")
        uc = join_challenge(db, user.id, challenge.id)
        uc.goals_completed = 4
        db.commit()
        goal = make_goal(db, user)

        outcome = settle_goal(db, goal, datetime.utcnow())
        db.commit()

        assert uc.status == ChallengeStatus.completed.value
        assert "challenge_week_focus" in [b.badge_type for b in outcome["new_badges"]]

    def test_local_date_drives_streak(self, db):
        user = make_user(db, email="tokyo@example.com", timezone="Asia/Tokyo")
        goal = make_goal(db, user, deadline_in=timedelta(days=2))
        now = datetime.utcnow().replace(hour=20, minute=0, second=0, microsecond=0)

        outcome = settle_goal(db, goal, now)

        assert outcome["streak"].last_streak_date == (now + timedelta(hours=9)).date()


class TestWallet:
    def test_increment_balance_can_go_negative(self, db, user):
        increment_balance(db, user.id, 100)
        increment_balance(db, user.id, -400)
        db.commit()
        db.expire_all()
        assert db.get(Profile, user.id).balance == -300

    def test_increment_unknown_profile_raises(self, db):
        with pytest.raises(LookupError):
            increment_balance(db, 999, 10)

    def test_format_duration(self):
        assert format_duration(-3723) == "-1h 02m 03s"
        assert format_duration(0) == "0h 00m 00s"
        assert format_duration(90061) == "25h 01m 01s"

    def test_split_duration(self):
        assert split_duration(-61) == {"hours": 0, "minutes": 1, "seconds": 1, "is_negative": True}


class TestDerived:
    def test_goal_progress(self):
        tasks = [Task(completed=True), Task(completed=False), Task(completed=False)]
        assert goal_progress(tasks) == 33.3
        assert goal_progress([]) == 0.0

    def test_category_stats(self):
        goals = [
            Goal(category="study", status="completed", time_allocated=3600),
            Goal(category="study", status="failed", time_allocated=1800),
            Goal(category="fitness", status="ongoing", time_allocated=7200),
        ]
        stats = category_stats(goals)

        by_cat = {c["category"]: c for c in stats["categories"]}
        assert by_cat["study"]["count"] == 2
        assert by_cat["study"]["completion_rate"] == 50
        assert by_cat["study"]["label"] == "Study"
        assert by_cat["fitness"]["time_allocated"] == 7200
        assert stats["total_goals"] == 3
        assert stats["completion_rate"] == 33
        assert stats["failure_rate"] == 33
        assert stats["total_time_allocated"] == 12600

    def test_category_stats_empty(self):
        stats = category_stats([])
        assert stats["categories"] == []
        assert stats["completion_rate"] == 0

    def test_next_break_cadence(self):
        assert next_break(0) == {"is_long_break": False, "break_minutes": 5}
        assert next_break(3) == {"is_long_break": False, "break_minutes": 5}
        assert next_break(4) == {"is_long_break": True, "break_minutes": 15}
        assert next_break(3, 10, 30, 3) == {"is_long_break": True, "break_minutes": 30}

    def test_focus_summary_counts_work_only(self):
        today = date(2024, 5, 1)
        sessions = [
            FocusSession(duration_minutes=25, session_type="work", completed_at=datetime(2024, 5, 1, 9)),
            FocusSession(duration_minutes=5, session_type="break", completed_at=datetime(2024, 5, 1, 9, 30)),
            FocusSession(duration_minutes=50, session_type="work", completed_at=datetime(2024, 4, 30, 9)),
        ]
        summary = focus_summary(sessions, today)
        assert summary["today_sessions"] == 1
        assert summary["today_minutes"] == 25
        assert summary["total_sessions"] == 2
        assert summary["total_minutes"] == 75
        assert summary["total_hours"] == 1
        assert summary["remaining_minutes"] == 15

    def test_local_today(self):
        now = datetime(2024, 1, 1, 20, 0)
        assert local_today("Asia/Tokyo", now) == date(2024, 1, 2)
        assert local_today("America/New_York", now) == date(2024, 1, 1)
        assert local_today("Not/AZone", now) == date(2024, 1, 1)
        assert local_today(None, now) == date(2024, 1, 1)

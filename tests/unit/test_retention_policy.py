"""
Unit tests for retention policy evaluation.

Tests count, age and calendar-tier rules, reason codes, policy validation
and the handling of records that cannot be classified.
"""

import unittest
from datetime import datetime, timedelta, timezone

from schemasyncd.storage.retention_errors import ConfigurationError, EvaluationError
from schemasyncd.storage.retention_models import (
    BackupRecord, ReasonCode, RetentionPolicy, RETAINING_REASONS
)
from schemasyncd.storage.retention_policy import (
    TierBucket, bucket_key, evaluate, evaluate_with_errors, sort_backups
)
from tests.utils.backups import NOW, make_backup


def retained_ids(decisions):
    return [d.backup_id for d in decisions if d.retain]


def deleted_ids(decisions):
    return [d.backup_id for d in decisions if not d.retain]


class TestPolicyValidation(unittest.TestCase):
    """Test retention policy validation."""

    def test_all_limits_zero_is_rejected(self):
        policy = RetentionPolicy()

        with self.assertRaises(ConfigurationError) as ctx:
            policy.validate()

        self.assertEqual(ctx.exception.fields, ["retention"])

    def test_evaluate_rejects_policy_without_limits(self):
        backups = [make_backup("b1")]

        with self.assertRaises(ConfigurationError):
            evaluate(backups, RetentionPolicy(), NOW)

    def test_every_violation_is_reported(self):
        policy = RetentionPolicy(max_backups=-1, keep_daily=-2, max_age=timedelta(hours=-1))

        with self.assertRaises(ConfigurationError) as ctx:
            policy.validate()

        error = ctx.exception
        self.assertEqual(error.fields, ["max_backups", "max_age", "keep_daily"])
        self.assertTrue(str(error).startswith("3 validation errors: validation error for field 'max_backups'"))

    def test_single_limit_is_enough(self):
        RetentionPolicy(keep_monthly=1).validate()
        RetentionPolicy(max_age=timedelta(hours=1)).validate()


class TestCountAndAgeRules(unittest.TestCase):
    """Test the count and age rules."""

    def test_max_backups_keeps_newest(self):
        backups = [make_backup(f"b{i}", age=timedelta(days=i)) for i in range(5)]

        decisions = evaluate(backups, RetentionPolicy(max_backups=3), NOW)

        self.assertEqual(retained_ids(decisions), ["b0", "b1", "b2"])
        self.assertEqual(deleted_ids(decisions), ["b3", "b4"])
        for decision in decisions:
            expected = ReasonCode.WITHIN_MAX_COUNT if decision.retain else ReasonCode.EXCEEDS_MAX_COUNT
            self.assertEqual(decision.reasons, frozenset({expected}))

    def test_max_age_keeps_recent(self):
        backups = [make_backup(f"h{h}", age=timedelta(hours=h)) for h in (10, 30, 50, 72)]

        decisions = evaluate(backups, RetentionPolicy(max_age=timedelta(hours=48)), NOW)

        self.assertEqual(retained_ids(decisions), ["h10", "h30"])
        self.assertEqual(deleted_ids(decisions), ["h50", "h72"])
        self.assertEqual(decisions[-1].reasons, frozenset({ReasonCode.EXCEEDS_MAX_AGE}))

    def test_age_equal_to_max_age_is_kept(self):
        backups = [make_backup("edge", age=timedelta(hours=48))]

        decisions = evaluate(backups, RetentionPolicy(max_age=timedelta(hours=48)), NOW)

        self.assertTrue(decisions[0].retain)

    def test_max_backups_larger_than_inventory_keeps_everything(self):
        backups = [make_backup(f"b{i}", age=timedelta(days=i)) for i in range(4)]

        decisions = evaluate(backups, RetentionPolicy(max_backups=10), NOW)

        self.assertEqual(len(retained_ids(decisions)), 4)

    def test_count_only_retains_min_of_limit_and_inventory(self):
        policy = RetentionPolicy(max_backups=3)
        for n in range(8):
            backups = [make_backup(f"b{i}", age=timedelta(hours=i)) for i in range(n)]
            decisions = evaluate(backups, policy, NOW)
            self.assertEqual(len(retained_ids(decisions)), min(n, 3))

    def test_deleted_backup_lists_every_exceeded_limit(self):
        backups = [make_backup("new"), make_backup("old", age=timedelta(days=3))]
        policy = RetentionPolicy(max_backups=1, max_age=timedelta(days=1))

        decisions = evaluate(backups, policy, NOW)

        self.assertEqual(decisions[1].backup_id, "old")
        self.assertEqual(
            decisions[1].reasons,
            frozenset({ReasonCode.EXCEEDS_MAX_COUNT, ReasonCode.EXCEEDS_MAX_AGE})
        )

    def test_retained_backup_carries_only_retaining_reasons(self):
        # Within max_age but beyond max_backups
        backups = [make_backup("b0"), make_backup("b1", age=timedelta(hours=1))]
        policy = RetentionPolicy(max_backups=1, max_age=timedelta(days=1))

        decisions = evaluate(backups, policy, NOW)

        self.assertTrue(decisions[1].retain)
        self.assertEqual(decisions[1].reasons, frozenset({ReasonCode.WITHIN_MAX_AGE}))

    def test_naive_timestamps_are_treated_as_utc(self):
        naive = (NOW - timedelta(hours=1)).replace(tzinfo=None)
        backups = [make_backup("naive", created_at=naive)]

        decisions = evaluate(backups, RetentionPolicy(max_age=timedelta(hours=2)), NOW)

        self.assertTrue(decisions[0].retain)


class TestTierRules(unittest.TestCase):
    """Test daily, weekly and monthly bucket representatives."""

    def test_daily_keeps_newest_backup_per_day(self):
        backups = [
            make_backup("d0-a", age=timedelta(hours=1)),
            make_backup("d0-b", age=timedelta(hours=2)),
            make_backup("d0-c", age=timedelta(hours=3)),
            make_backup("d1-a", age=timedelta(days=1)),
            make_backup("d1-b", age=timedelta(days=1, hours=1)),
        ]

        decisions = evaluate(backups, RetentionPolicy(keep_daily=1), NOW)
        self.assertEqual(retained_ids(decisions), ["d0-a"])
        self.assertEqual(decisions[1].reasons, frozenset({ReasonCode.NO_POLICY_MATCH}))

        decisions = evaluate(backups, RetentionPolicy(keep_daily=2), NOW)
        self.assertEqual(retained_ids(decisions), ["d0-a", "d1-a"])
        self.assertEqual(decisions[0].reasons, frozenset({ReasonCode.DAILY_BUCKET_REPRESENTATIVE}))

    def test_daily_representatives_never_exceed_keep_daily(self):
        backups = [make_backup(f"b{i}", age=timedelta(hours=7 * i)) for i in range(30)]

        for keep in (1, 3, 5):
            decisions = evaluate(backups, RetentionPolicy(keep_daily=keep), NOW)
            daily = [d for d in decisions if ReasonCode.DAILY_BUCKET_REPRESENTATIVE in d.reasons]
            self.assertLessEqual(len(daily), keep)
            self.assertEqual(len(daily), keep)

    def test_weekly_uses_iso_weeks(self):
        backups = [
            make_backup("sat-w24", created_at=datetime(2024, 6, 15, 9, tzinfo=timezone.utc)),
            make_backup("tue-w24", created_at=datetime(2024, 6, 11, 9, tzinfo=timezone.utc)),
            make_backup("sun-w23", created_at=datetime(2024, 6, 9, 23, tzinfo=timezone.utc)),
            make_backup("mon-w23", created_at=datetime(2024, 6, 3, 1, tzinfo=timezone.utc)),
            make_backup("fri-w22", created_at=datetime(2024, 5, 31, 1, tzinfo=timezone.utc)),
        ]

        decisions = evaluate(backups, RetentionPolicy(keep_weekly=2), NOW)

        self.assertEqual(retained_ids(decisions), ["sat-w24", "sun-w23"])

    def test_monthly_keeps_newest_per_month(self):
        backups = [
            make_backup("jun-10", created_at=datetime(2024, 6, 10, tzinfo=timezone.utc)),
            make_backup("jun-01", created_at=datetime(2024, 6, 1, tzinfo=timezone.utc)),
            make_backup("may-31", created_at=datetime(2024, 5, 31, tzinfo=timezone.utc)),
            make_backup("may-02", created_at=datetime(2024, 5, 2, tzinfo=timezone.utc)),
            make_backup("apr-15", created_at=datetime(2024, 4, 15, tzinfo=timezone.utc)),
        ]

        decisions = evaluate(backups, RetentionPolicy(keep_monthly=2), NOW)

        self.assertEqual(retained_ids(decisions), ["jun-10", "may-31"])

    def test_reasons_accumulate_across_rules(self):
        backups = [make_backup("b0"), make_backup("b1", age=timedelta(days=1))]
        policy = RetentionPolicy(max_backups=1, keep_daily=2)

        decisions = evaluate(backups, policy, NOW)

        self.assertEqual(
            decisions[0].reasons,
            frozenset({ReasonCode.WITHIN_MAX_COUNT, ReasonCode.DAILY_BUCKET_REPRESENTATIVE})
        )
        self.assertEqual(decisions[1].reasons, frozenset({ReasonCode.DAILY_BUCKET_REPRESENTATIVE}))

    def test_identical_timestamps_are_ordered_by_id(self):
        created = NOW - timedelta(hours=1)
        backups = [make_backup("a", created_at=created), make_backup("b", created_at=created)]

        decisions = evaluate(backups, RetentionPolicy(keep_daily=1), NOW)

        self.assertEqual([d.backup_id for d in decisions], ["b", "a"])
        self.assertEqual(retained_ids(decisions), ["b"])

    def test_bucket_keys(self):
        moment = datetime(2024, 12, 30, 8, tzinfo=timezone.utc)
        self.assertEqual(bucket_key(moment, TierBucket.DAILY), moment.date())
        # 2024-12-30 belongs to ISO week 1 of 2025
        self.assertEqual(bucket_key(moment, TierBucket.WEEKLY), (2025, 1))
        self.assertEqual(bucket_key(moment, TierBucket.MONTHLY), (2024, 12))


class TestProtectionAndEdgeCases(unittest.TestCase):
    """Test protection tags, empty inputs and unclassifiable records."""

    def test_empty_inventory(self):
        self.assertEqual(evaluate([], RetentionPolicy(max_backups=1), NOW), [])

    def test_protection_tag_only_applies_when_enabled(self):
        backups = [
            make_backup("new"),
            make_backup("pinned", age=timedelta(days=5), tags={"protected": "true"}),
        ]

        decisions = evaluate(backups, RetentionPolicy(max_backups=1), NOW)
        self.assertEqual(deleted_ids(decisions), ["pinned"])

        decisions = evaluate(backups, RetentionPolicy(max_backups=1, honor_protection_tags=True), NOW)
        self.assertEqual(deleted_ids(decisions), [])
        self.assertEqual(decisions[1].reasons, frozenset({ReasonCode.PROTECTED_BY_TAG}))

    def test_records_without_timestamp_are_reported_not_classified(self):
        broken = BackupRecord(
            id="broken", database_name="orders", created_at=None,
            size_bytes=10, compressed_size_bytes=5
        )
        backups = [make_backup("ok"), broken]

        decisions, errors = evaluate_with_errors(backups, RetentionPolicy(max_backups=5), NOW)

        self.assertEqual([d.backup_id for d in decisions], ["ok"])
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], EvaluationError)
        self.assertEqual(errors[0].backup_id, "broken")

    def test_reason_sets_are_consistent_with_verdict(self):
        backups = [make_backup(f"b{i}", age=timedelta(hours=13 * i)) for i in range(40)]
        policy = RetentionPolicy(
            max_backups=4, max_age=timedelta(days=2), keep_daily=5, keep_weekly=3, keep_monthly=2
        )

        for decision in evaluate(backups, policy, NOW):
            self.assertTrue(decision.reasons)
            if decision.retain:
                self.assertTrue(decision.reasons <= RETAINING_REASONS)
            else:
                self.assertFalse(decision.reasons & RETAINING_REASONS)

    def test_evaluation_is_deterministic(self):
        backups = [make_backup(f"b{i}", age=timedelta(hours=5 * i)) for i in range(20)]
        policy = RetentionPolicy(max_backups=3, keep_daily=2, keep_weekly=2)

        first = evaluate(backups, policy, NOW)
        second = evaluate(list(reversed(backups)), policy, NOW)

        self.assertEqual(first, second)

    def test_sort_backups_is_newest_first(self):
        backups = [make_backup("old", age=timedelta(days=2)), make_backup("new")]
        self.assertEqual([b.id for b in sort_backups(backups)], ["new", "old"])


if __name__ == '__main__':
    unittest.main()

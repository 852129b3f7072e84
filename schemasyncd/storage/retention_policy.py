"""
Retention policy evaluation.

Classifies a backup inventory into retained and to-delete sets. Evaluation is
pure: no I/O, no clock reads, identical input gives identical output.

Rules, applied to backups sorted newest first (ties broken by ID):

- count: the first ``max_backups`` are retained
- age: backups no older than ``max_age`` are retained
- tiers: the newest backup of each of the newest ``keep_daily`` days,
  ``keep_weekly`` ISO weeks and ``keep_monthly`` months is retained

Reasons accumulate; a backup is retained if any rule retains it.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Hashable, List, Sequence, Set, Tuple

from .retention_errors import EvaluationError
from .retention_models import (
    BackupRecord, ReasonCode, RetentionDecision, RetentionPolicy, RETAINING_REASONS, as_utc
)

logger = logging.getLogger(__name__)


class TierBucket(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


_TIER_REASONS = {
    TierBucket.DAILY: ReasonCode.DAILY_BUCKET_REPRESENTATIVE,
    TierBucket.WEEKLY: ReasonCode.WEEKLY_BUCKET_REPRESENTATIVE,
    TierBucket.MONTHLY: ReasonCode.MONTHLY_BUCKET_REPRESENTATIVE,
}


def bucket_key(created_at: datetime, tier: TierBucket) -> Hashable:
    """Calendar bucket of a timestamp, computed in UTC. Weeks are ISO weeks."""
    moment = as_utc(created_at)
    if tier == TierBucket.DAILY:
        return moment.date()
    if tier == TierBucket.WEEKLY:
        iso = moment.isocalendar()
        return (iso[0], iso[1])
    return (moment.year, moment.month)


def sort_backups(backups: Sequence[BackupRecord]) -> List[BackupRecord]:
    """Newest first; equal timestamps ordered by descending ID."""
    return sorted(backups, key=lambda b: (as_utc(b.created_at), b.id), reverse=True)


def _split_evaluable(backups: Sequence[BackupRecord]) -> Tuple[List[BackupRecord], List[EvaluationError]]:
    valid: List[BackupRecord] = []
    errors: List[EvaluationError] = []
    for backup in backups:
        if isinstance(backup.created_at, datetime):
            valid.append(backup)
            continue
        error = EvaluationError(
            backup.id, "backup has no valid creation timestamp",
            database=backup.database_name, created_at=repr(backup.created_at)
        )
        logger.warning(f"Excluding backup from retention evaluation: {error}")
        errors.append(error)
    return valid, errors


def _tier_representatives(ordered: List[BackupRecord], tier: TierBucket, keep: int) -> Set[int]:
    """Indexes of the newest backup in each of the ``keep`` newest buckets."""
    seen: Set[Hashable] = set()
    picked: Set[int] = set()
    for index, backup in enumerate(ordered):
        key = bucket_key(backup.created_at, tier)
        if key in seen:
            continue
        seen.add(key)
        if len(seen) > keep:
            break
        picked.add(index)
    return picked


def evaluate_with_errors(
    backups: Sequence[BackupRecord],
    policy: RetentionPolicy,
    now: datetime
) -> Tuple[List[RetentionDecision], List[EvaluationError]]:
    """
    Evaluate ``backups`` against ``policy`` at time ``now``.

    Returns the decisions in newest-first order together with the records that
    were excluded because they could not be classified.

    Raises:
        ConfigurationError: if the policy is invalid.
    """
    policy.validate()

    valid, errors = _split_evaluable(backups)
    ordered = sort_backups(valid)
    reasons: Dict[int, Set[ReasonCode]] = {i: set() for i in range(len(ordered))}

    if policy.max_backups > 0:
        for index in reasons:
            if index < policy.max_backups:
                reasons[index].add(ReasonCode.WITHIN_MAX_COUNT)
            else:
                reasons[index].add(ReasonCode.EXCEEDS_MAX_COUNT)

    if policy.max_age > timedelta(0):
        for index, backup in enumerate(ordered):
            if backup.age(now) <= policy.max_age:
                reasons[index].add(ReasonCode.WITHIN_MAX_AGE)
            else:
                reasons[index].add(ReasonCode.EXCEEDS_MAX_AGE)

    tiers = (
        (TierBucket.DAILY, policy.keep_daily),
        (TierBucket.WEEKLY, policy.keep_weekly),
        (TierBucket.MONTHLY, policy.keep_monthly),
    )
    for tier, keep in tiers:
        if keep <= 0:
            continue
        for index in _tier_representatives(ordered, tier, keep):
            reasons[index].add(_TIER_REASONS[tier])

    if policy.honor_protection_tags:
        for index, backup in enumerate(ordered):
            if backup.is_protected:
                reasons[index].add(ReasonCode.PROTECTED_BY_TAG)

    decisions = []
    for index, backup in enumerate(ordered):
        retaining = reasons[index] & RETAINING_REASONS
        if retaining:
            decisions.append(RetentionDecision(backup.id, True, frozenset(retaining), backup))
            continue
        exceeding = reasons[index] - RETAINING_REASONS
        if not exceeding:
            exceeding = {ReasonCode.NO_POLICY_MATCH}
        decisions.append(RetentionDecision(backup.id, False, frozenset(exceeding), backup))

    return decisions, errors


def evaluate(
    backups: Sequence[BackupRecord],
    policy: RetentionPolicy,
    now: datetime
) -> List[RetentionDecision]:
    """Evaluate ``backups`` and return only the decisions."""
    decisions, _ = evaluate_with_errors(backups, policy, now)
    return decisions

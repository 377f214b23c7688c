"""
Deterministic traffic allocation for A/B/n tests.

Uses hashing of (test_id, visitor_id) into 10,000 buckets so percentages
like 33.33% are honoured, walks variants control-first in creation order,
and records the first assignment of each visitor in a ledger so later
traffic amendments never move an already-assigned visitor.
"""

import hashlib
import logging
import re
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

from .schema import ABTest, ExperimentStatus, TrafficRules, Variant
from .storage import Storage

logger = logging.getLogger(__name__)

BUCKETS = 10000

BOT_USER_AGENT = re.compile(r"bot|crawler|spider|slurp|headless|curl|wget", re.IGNORECASE)


def _hash_to_bucket(test_id: str, visitor_id: str) -> int:
    """
    Deterministic hash to [0, 9999] bucket.

    Same test + visitor always maps to same bucket, in any process.
    """
    key = f"{test_id}:{visitor_id}"
    h = hashlib.sha256(key.encode()).hexdigest()
    return int(h[:8], 16) % BUCKETS


def select_variant(variants: List[Variant], bucket: int) -> Optional[Variant]:
    """
    Pick the variant whose cumulative traffic bound first exceeds the bucket.

    Args:
        variants: Active variants, control first then creation order
        bucket: Value in [0, 9999]

    Returns:
        Selected Variant, or None if no variant carries traffic
    """
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.traffic_percentage * 100
        if bucket < cumulative:
            return variant
    # Percentages within tolerance of 100 can leave the top buckets uncovered.
    weighted = [v for v in variants if v.traffic_percentage > 0]
    return weighted[-1] if weighted else None


def exclusion_reason(rules: TrafficRules, context: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    Why a visitor is ineligible for a test, or None if eligible.

    Context keys read: is_bot, user_agent, is_internal, country, device, segment.
    Targeting lists are allow-lists; an empty list targets everyone.
    """
    context = context or {}
    if "bot_traffic" in rules.exclusion_rules:
        user_agent = context.get("user_agent") or ""
        if context.get("is_bot") or BOT_USER_AGENT.search(user_agent):
            return "bot_traffic"
    if "internal_users" in rules.exclusion_rules and context.get("is_internal"):
        return "internal_users"
    if rules.geographic_restrictions and context.get("country") not in rules.geographic_restrictions:
        return "geography"
    if rules.device_targeting and context.get("device") not in rules.device_targeting:
        return "device"
    if rules.user_segments and context.get("segment") not in rules.user_segments:
        return "segment"
    return None


def bucket_for(test_id: str, visitor_id: str) -> int:
    return _hash_to_bucket(test_id, visitor_id)


def allocate(test: ABTest, visitor_id: str) -> Optional[Variant]:
    """Pure allocation under the test's current weights (no ledger)."""
    return select_variant(test.active_variants(), _hash_to_bucket(test.id, visitor_id))


class AssignmentService:
    """Maps visitors of running tests to variants."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def assign(
        self,
        test_id: str,
        visitor_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Assign a visitor to a variant.

        Args:
            test_id: Test identifier
            visitor_id: Stable visitor identifier
            context: Targeting attributes (country, device, segment, user_agent...)

        Returns:
            variant_id, or None when the test is not running or the visitor is excluded
        """
        test = self.storage.load_test(test_id)
        if test.status != ExperimentStatus.RUNNING:
            logger.debug(f"Test {test_id} is {test.status.value}; visitor {visitor_id} not assigned")
            return None

        reason = exclusion_reason(test.configuration.traffic_rules, context)
        if reason:
            logger.debug(f"Visitor {visitor_id} excluded from test {test_id}: {reason}")
            return None

        sticky = test.configuration.advanced_settings.sticky_assignments
        existing = self.storage.load_assignment(test_id, visitor_id)
        if existing is not None and sticky:
            return existing

        variant = allocate(test, visitor_id)
        if variant is None:
            return None
        variant_id, _ = self.storage.record_assignment(
            test_id, visitor_id, variant.id, overwrite=not sticky
        )
        return variant_id

    def assign_many(
        self,
        test_id: str,
        visitor_ids: Iterable[str],
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Optional[str]]:
        """Assign a batch of visitors sharing one context."""
        assignments = {vid: self.assign(test_id, vid, context) for vid in visitor_ids}
        counts = Counter(v for v in assignments.values() if v is not None)
        excluded = sum(1 for v in assignments.values() if v is None)
        logger.info(
            f"Assignment complete: {len(assignments)} visitors -> "
            f"{dict(counts)}, excluded={excluded}"
        )
        return assignments

"""
Unit tests for scope matching and scope scoring.
"""

import pytest

from service_rules.app.rules.models import RuleScope
from service_rules.app.rules.scope import (
    ORGANIZATION_MISMATCH_SCORE, SCOPE_WEIGHTS, UNMATCHED_PENALTY_RATIO, ORGANIZATION_POINTS,
    in_scope, score_scope, specificity,
)
from shared.test_helpers import ContextFactory, ORG_ID, OTHER_ORG_ID


class TestInScope:
    """Test cases for the strict scope gate."""

    def test_organization_only_scope_matches_everything_in_org(self):
        scope = RuleScope(organization_id=ORG_ID)
        context = ContextFactory.context(branch_id="b1", channel="web", service_ids=["s1"])

        assert in_scope(scope, context) is True

    def test_organization_mismatch_rejects(self):
        """Test a different organization is rejected regardless of other dimensions."""
        scope = RuleScope(organization_id=OTHER_ORG_ID)
        context = ContextFactory.context(branch_id="b1")

        assert in_scope(scope, context) is False

    def test_singular_dimension_membership(self):
        scope = RuleScope(organization_id=ORG_ID, branches=["b1", "b2"])

        assert in_scope(scope, ContextFactory.context(branch_id="b2")) is True
        assert in_scope(scope, ContextFactory.context(branch_id="b3")) is False

    def test_list_dimension_needs_overlap(self):
        scope = RuleScope(organization_id=ORG_ID, services=["cut", "color"])

        assert in_scope(scope, ContextFactory.context(service_ids=["color", "spa"])) is True
        assert in_scope(scope, ContextFactory.context(service_ids=["spa"])) is False

    def test_every_populated_dimension_must_match(self):
        scope = RuleScope(organization_id=ORG_ID, branches=["b1"], channels=["web"])

        assert in_scope(scope, ContextFactory.context(branch_id="b1", channel="web")) is True
        assert in_scope(scope, ContextFactory.context(branch_id="b1", channel="phone")) is False

    def test_context_omitting_restricted_dimension_does_not_match(self):
        """Test an omitted context value does not satisfy a restricted dimension."""
        scope = RuleScope(organization_id=ORG_ID, specialists=["sp1"])

        assert in_scope(scope, ContextFactory.context()) is False

    def test_null_dimensions_are_unrestricted(self):
        scope = RuleScope.model_validate({"organization_id": ORG_ID, "branches": None, "channels": "web"})

        assert scope.branches == frozenset()
        assert scope.channels == frozenset({"web"})


class TestScoreScope:
    """Test cases for the diagnostic scope scorer."""

    def test_organization_mismatch_short_circuits(self):
        scope = RuleScope(organization_id=OTHER_ORG_ID, branches=["b1"])

        score, matched, unmatched = score_scope(scope, ContextFactory.context(branch_id="b1"))

        assert score == ORGANIZATION_MISMATCH_SCORE
        assert matched == []
        assert unmatched == ["organization"]

    def test_partial_service_overlap_awards_fraction(self):
        """Test 2 of 3 requested services earn 2/3 of the services weight."""
        scope = RuleScope(organization_id=ORG_ID, services=["s1", "s2"])
        context = ContextFactory.context(service_ids=["s1", "s2", "s3"])

        score, matched, unmatched = score_scope(scope, context)

        assert score == pytest.approx(ORGANIZATION_POINTS + SCOPE_WEIGHTS["services"] * 2 / 3)
        assert "services" in matched
        assert unmatched == []

    def test_unmatched_dimension_is_penalized(self):
        scope = RuleScope(organization_id=ORG_ID, branches=["b1"], channels=["web"])
        context = ContextFactory.context(branch_id="b2", channel="web")

        score, matched, unmatched = score_scope(scope, context)

        expected = (
            ORGANIZATION_POINTS
            - SCOPE_WEIGHTS["branches"] * UNMATCHED_PENALTY_RATIO
            + SCOPE_WEIGHTS["channels"]
        )
        assert score == pytest.approx(expected)
        assert matched == ["organization", "channels"]
        assert unmatched == ["branches"]

    def test_strict_and_scoring_agree_on_omitted_dimensions(self):
        scope = RuleScope(organization_id=ORG_ID, customer_segments=["vip"])
        context = ContextFactory.context()

        _, _, unmatched = score_scope(scope, context)

        assert in_scope(scope, context) is False
        assert unmatched == ["customer_segments"]


class TestSpecificity:
    """Test cases for the specificity tie-breaker."""

    def test_narrower_scope_is_more_specific(self):
        broad = RuleScope(organization_id=ORG_ID)
        channel = RuleScope(organization_id=ORG_ID, channels=["web"])
        branch = RuleScope(organization_id=ORG_ID, branches=["b1"])
        both = RuleScope(organization_id=ORG_ID, branches=["b1"], channels=["web"])

        assert specificity(broad) == 0
        assert specificity(channel) < specificity(branch) < specificity(both)

    def test_branch_outranks_all_lesser_dimensions_combined(self):
        lesser = RuleScope(
            organization_id=ORG_ID,
            services=["s"], specialists=["p"], customer_segments=["c"], channels=["w"],
        )
        branch = RuleScope(organization_id=ORG_ID, branches=["b1"])

        assert specificity(branch) > specificity(lesser)

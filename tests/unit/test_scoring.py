"""Unit tests for eligibility scoring logic"""

from datetime import datetime, timedelta, timezone

import pytest

from community_lending.domain.models import (
    Contribution,
    LoanStatus,
    Member,
    MemberLedger,
    PriorLoan,
    RejectionReason,
    ScoreComponents,
)
from community_lending.domain.scoring import (
    ScoringConfig,
    assess_eligibility,
    calculate_contribution_score,
    calculate_max_loan_amount,
    calculate_overall_score,
    calculate_participation_score,
    calculate_repayment_score,
    calculate_risk_score,
)

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)
CONFIG = ScoringConfig()


def make_ledger(amounts, span_days=120, verified=True, suspended=False, loans=()):
    """Contributions evenly spread so the first lands `span_days` before NOW"""
    step = span_days // max(len(amounts) - 1, 1)
    start = NOW - timedelta(days=span_days)
    contributions = [
        Contribution(member_id="m1", group_id="g1", amount=amount, contributed_at=start + timedelta(days=i * step))
        for i, amount in enumerate(amounts)
    ]
    return MemberLedger(
        member=Member(member_id="m1", is_verified=verified, is_suspended=suspended),
        group_id="g1",
        membership=None,
        contributions=contributions,
        loans=list(loans),
    )


def repaid_loan(installments_total=6, on_time=6):
    return PriorLoan(
        loan_id="old",
        status=LoanStatus.REPAID,
        amount=5000,
        installments_total=installments_total,
        installments_on_time=on_time,
    )


def assess(ledger, **kwargs):
    return assess_eligibility(ledger, NOW, CONFIG, assessment_id="a1", **kwargs)


def test_steady_saver_is_eligible():
    """Six contributions of 2,000 over four months"""
    result = assess(make_ledger([2000] * 6, span_days=120))

    assert result.is_eligible is True
    assert result.rejection_reason is None
    assert result.overall_score == pytest.approx(71.67, abs=0.01)
    assert result.overall_score >= 50
    assert result.max_loan_amount == min(12000 * 5 // 2, CONFIG.max_loan_amount)
    assert result.components.contribution_score == pytest.approx(26.67, abs=0.01)
    assert result.components.participation_score == 30.0
    assert result.components.repayment_score == 5.0
    assert result.components.risk_score == 10.0


def test_new_member_without_contributions():
    result = assess(make_ledger([]))

    assert result.is_eligible is False
    assert result.rejection_reason == RejectionReason.INSUFFICIENT_GROUP_MEMBERSHIP
    assert result.overall_score == 0
    assert result.max_loan_amount == 0


def test_short_tenure_is_rejected_even_with_large_contributions():
    result = assess(make_ledger([20000, 20000], span_days=45))

    assert result.is_eligible is False
    assert result.rejection_reason == RejectionReason.INSUFFICIENT_GROUP_MEMBERSHIP
    assert result.metadata["months_active"] == 1


def test_unverified_account_short_circuits():
    result = assess(make_ledger([2000] * 6, verified=False))

    assert result.is_eligible is False
    assert result.rejection_reason == RejectionReason.ACCOUNT_NOT_VERIFIED
    assert result.overall_score == 0
    assert result.max_loan_amount == 0


def test_suspended_account_short_circuits():
    result = assess(make_ledger([2000] * 6, suspended=True))

    assert result.rejection_reason == RejectionReason.ACCOUNT_SUSPENDED
    assert result.is_eligible is False


def test_low_contribution_score_short_circuits():
    # 200 total over two months: (5 + 6.67) / 2 < 10
    result = assess(make_ledger([100, 100], span_days=60))

    assert result.is_eligible is False
    assert result.rejection_reason == RejectionReason.INSUFFICIENT_CONTRIBUTION
    assert result.overall_score == 0
    assert result.components.contribution_score < CONFIG.min_contribution_score


def test_low_weighted_score_names_weakest_component():
    # contribution 12.5/40, participation 7.5/30, repayment 5/20, risk 10/10 -> 35
    result = assess(make_ledger([500, 3500], span_days=90))

    assert result.overall_score == pytest.approx(35.0)
    assert result.is_eligible is False
    assert result.rejection_reason == RejectionReason.INSUFFICIENT_PARTICIPATION
    assert result.max_loan_amount == 0


def test_prior_default_makes_member_ineligible():
    defaulted = PriorLoan(loan_id="old", status=LoanStatus.DEFAULTED, amount=5000)
    result = assess(make_ledger([2000] * 6, loans=[defaulted]))

    assert result.is_eligible is False
    assert result.rejection_reason == RejectionReason.RECENT_DEFAULT
    assert result.components.repayment_score == -20.0
    assert result.max_loan_amount == 0


def test_admin_override_forces_eligible():
    result = assess(make_ledger([500, 3500], span_days=90), override=True, overridden_by="admin", notes="vouched")

    assert result.is_eligible is True
    assert result.rejection_reason is None
    assert result.max_loan_amount == 10000
    assert result.overridden_by == "admin"
    assert result.overridden_at == NOW
    assert result.notes == "vouched"


def test_admin_override_forces_ineligible():
    result = assess(make_ledger([2000] * 6), override=False, overridden_by="admin")

    assert result.is_eligible is False
    assert result.rejection_reason == RejectionReason.ADMIN_OVERRIDE
    assert result.max_loan_amount == 0


def test_override_does_not_bypass_verification():
    result = assess(make_ledger([2000] * 6, verified=False), override=True, overridden_by="admin")

    assert result.is_eligible is False
    assert result.rejection_reason == RejectionReason.ACCOUNT_NOT_VERIFIED


def test_assessment_expires_after_validity_window():
    result = assess(make_ledger([2000] * 6))

    assert result.assessed_at == NOW
    assert result.expires_at == NOW + timedelta(days=30)
    assert result.expires_at > result.assessed_at


def test_assessment_is_deterministic():
    ledger = make_ledger([1500, 2500, 2000, 1800], span_days=150)

    assert assess(ledger) == assess(ledger)


def test_contribution_score_tiers_and_tenure():
    ledger = make_ledger([5000, 5000], span_days=360)
    result = calculate_contribution_score(ledger, NOW, CONFIG)

    # 10,000 total -> 40 tier points; 12 months -> full 40 bonus
    assert result.score == 40.0
    assert result.data["total_contributed"] == 10000
    assert result.data["average_contribution"] == 5000


def test_participation_score_needs_two_contributions():
    result = calculate_participation_score(make_ledger([2000]), CONFIG)

    assert result.score == 0.0
    assert result.reason == RejectionReason.INSUFFICIENT_PARTICIPATION


def test_participation_score_drops_with_variability():
    steady = calculate_participation_score(make_ledger([1000, 1000, 1000]), CONFIG)
    erratic = calculate_participation_score(make_ledger([100, 3000, 500]), CONFIG)

    assert steady.score == 30.0
    assert 0 <= erratic.score < steady.score


def test_repayment_score_neutral_without_history():
    assert calculate_repayment_score(make_ledger([2000] * 3), CONFIG).score == 5.0


def test_repayment_score_rewards_on_time_history():
    perfect = calculate_repayment_score(make_ledger([2000] * 3, loans=[repaid_loan(), repaid_loan()]), CONFIG)
    mostly = calculate_repayment_score(make_ledger([2000] * 3, loans=[repaid_loan(10, 9)]), CONFIG)

    assert perfect.score == 18.0  # 2 loans x 4 + full 10 bonus
    assert mostly.score == 12.0  # 4 + 80% of 10
    assert mostly.data["on_time_repayment_rate"] == 90


def test_repayment_score_is_capped():
    loans = [repaid_loan() for _ in range(8)]
    assert calculate_repayment_score(make_ledger([2000] * 3, loans=loans), CONFIG).score == 20.0


def test_risk_score_deducts_for_active_debt():
    active = PriorLoan(loan_id="cur", status=LoanStatus.DISBURSED, amount=8000, outstanding_amount=7000)
    result = calculate_risk_score(make_ledger([2000] * 6, loans=[active]), CONFIG)

    # 3 for the active loan, 5 more since 7,000 > half of 12,000
    assert result.score == 2.0
    assert result.reason == RejectionReason.EXCESSIVE_OUTSTANDING_LOANS
    assert result.data["total_outstanding"] == 7000


def test_risk_score_floors_at_zero():
    loans = [
        PriorLoan(loan_id=str(i), status=LoanStatus.APPROVED, amount=9000, outstanding_amount=9000)
        for i in range(4)
    ]
    assert calculate_risk_score(make_ledger([1000, 1000], loans=loans), CONFIG).score == 0.0


def test_overall_score_bounds():
    assert calculate_overall_score(ScoreComponents(40, 30, 20, 10), CONFIG) == 100.0
    assert calculate_overall_score(ScoreComponents(0, 0, -20, 0), CONFIG) == 0.0


@pytest.mark.parametrize(
    "total,expected",
    [
        (100, 1_000),  # floor at the minimum loan
        (12_000, 30_000),
        (1_000_000, 500_000),  # capped
    ],
)
def test_max_loan_amount_is_clamped(total, expected):
    assert calculate_max_loan_amount(total, CONFIG) == expected

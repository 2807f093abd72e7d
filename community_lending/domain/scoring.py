"""Eligibility scoring engine - turns a member's ledger into a borrowing verdict"""

import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Optional, Tuple

from community_lending.domain.models import (
    EligibilityAssessment,
    LoanStatus,
    MemberLedger,
    RejectionReason,
    ScoreComponents,
)
from community_lending.utils.date_utils import months_between

CONTRIBUTION_MAX = 40.0
PARTICIPATION_MAX = 30.0
REPAYMENT_MAX = 20.0
RISK_MAX = 10.0
NEUTRAL_REPAYMENT_SCORE = 5.0


@dataclass(frozen=True)
class ScoringConfig:
    """Weights and thresholds for the eligibility scorer"""

    weight_contribution: float = 0.40
    weight_participation: float = 0.30
    weight_repayment: float = 0.20
    weight_risk: float = 0.10

    # (minimum total contributed, points), highest threshold first
    amount_tiers: Tuple[Tuple[int, float], ...] = ((10_000, 40.0), (5_000, 25.0), (2_000, 15.0), (0, 5.0))
    months_for_full_points: int = 12

    min_contributions_for_participation: int = 2

    max_previous_loans: int = 5
    completed_loan_bonus: float = 4.0
    on_time_bonus: float = 10.0
    default_penalty: float = -20.0

    active_loan_penalty: float = 3.0
    max_active_loans_cap: int = 3
    outstanding_ratio_limit: float = 0.5
    outstanding_ratio_penalty: float = 5.0

    min_overall_score: float = 50.0
    min_contribution_score: float = 10.0
    min_group_tenure_months: int = 2

    max_loan_multiplier: Decimal = Decimal("2.5")
    min_loan_amount: int = 1_000
    max_loan_amount: int = 500_000

    assessment_validity_days: int = 30

    @classmethod
    def from_settings(cls, settings) -> "ScoringConfig":
        return cls(
            min_overall_score=settings.min_overall_score,
            min_contribution_score=settings.min_contribution_score,
            min_group_tenure_months=settings.min_group_tenure_months,
            max_loan_multiplier=Decimal(str(settings.max_loan_multiplier)),
            min_loan_amount=settings.min_loan_amount,
            max_loan_amount=settings.max_loan_amount,
            assessment_validity_days=settings.assessment_validity_days,
        )


@dataclass(frozen=True)
class ComponentScore:
    """One sub-score plus the raw figures it was derived from"""

    score: float
    data: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[RejectionReason] = None


def calculate_contribution_score(ledger: MemberLedger, now: datetime, config: ScoringConfig) -> ComponentScore:
    """
    Contribution score, 0-40 points.

    - No tenure below `min_group_tenure_months` (score 0)
    - Amount tier lookup on the total contributed
    - Tenure-linear bonus reaching 40 at `months_for_full_points`
    - The two are averaged and capped at 40
    """
    first = ledger.first_contribution_at
    months_active = months_between(first, now) if first is not None else 0
    total = ledger.total_contributed
    count = len(ledger.contributions)
    data = {
        "months_active": months_active,
        "total_contributed": total,
        "contribution_count": count,
        "average_contribution": total // count if count else 0,
    }

    if months_active < config.min_group_tenure_months:
        return ComponentScore(0.0, data, RejectionReason.INSUFFICIENT_GROUP_MEMBERSHIP)

    tier_points = 0.0
    for threshold, points in config.amount_tiers:
        if total >= threshold:
            tier_points = max(tier_points, points)

    month_bonus = min(months_active / config.months_for_full_points * CONTRIBUTION_MAX, CONTRIBUTION_MAX)
    score = min((tier_points + month_bonus) / 2, CONTRIBUTION_MAX)
    return ComponentScore(round(score, 2), data)


def calculate_participation_score(ledger: MemberLedger, config: ScoringConfig) -> ComponentScore:
    """
    Participation score, 0-30 points, from contribution consistency.

    score = 30 * (1 - min(CV, 1)) where CV is the coefficient of variation
    of contribution amounts. Fewer than two contributions scores 0.
    """
    amounts = [c.amount for c in ledger.contributions]
    if len(amounts) < config.min_contributions_for_participation:
        return ComponentScore(0.0, {"coefficient_of_variation": None}, RejectionReason.INSUFFICIENT_PARTICIPATION)

    mean = statistics.fmean(amounts)
    cv = statistics.pstdev(amounts) / mean if mean > 0 else 1.0
    score = max(0.0, PARTICIPATION_MAX * (1 - min(cv, 1.0)))
    return ComponentScore(round(score, 2), {"coefficient_of_variation": round(cv, 4)})


def calculate_repayment_score(ledger: MemberLedger, config: ScoringConfig) -> ComponentScore:
    """
    Repayment history score, -20 to 20 points.

    - No closed loans: neutral 5
    - Any defaulted loan: -20 and the member is ineligible
    - Otherwise 4 points per repaid loan (max 5 counted) plus an on-time
      bonus of 100% / 80% / 50% of 10 points at 100% / >=90% / >=75%
    """
    closed = [ln for ln in ledger.loans if ln.status in (LoanStatus.REPAID, LoanStatus.DEFAULTED)]
    completed = [ln for ln in closed if ln.status == LoanStatus.REPAID]
    defaulted = len(closed) - len(completed)
    data = {
        "completed_loans": len(completed),
        "defaulted_loans": defaulted,
        "on_time_repayment_rate": 100,
    }

    if not closed:
        return ComponentScore(NEUTRAL_REPAYMENT_SCORE, data)

    if defaulted:
        return ComponentScore(config.default_penalty, data, RejectionReason.RECENT_DEFAULT)

    score = min(len(completed), config.max_previous_loans) * config.completed_loan_bonus

    total_installments = sum(ln.installments_total for ln in completed)
    on_time = sum(ln.installments_on_time for ln in completed)
    if total_installments:
        rate = on_time / total_installments * 100
        data["on_time_repayment_rate"] = round(rate)
        if on_time == total_installments:
            score += config.on_time_bonus
        elif rate >= 90:
            score += config.on_time_bonus * 0.8
        elif rate >= 75:
            score += config.on_time_bonus * 0.5

    return ComponentScore(min(score, REPAYMENT_MAX), data)


def calculate_risk_score(ledger: MemberLedger, config: ScoringConfig) -> ComponentScore:
    """
    Risk score, 0-10 points, deduction based.

    - 3 points per active (approved or disbursed) loan, at most 3 counted
    - 5 more when outstanding exceeds half of the total contributed
    """
    active = [ln for ln in ledger.loans if ln.status in (LoanStatus.APPROVED, LoanStatus.DISBURSED)]
    outstanding = sum(ln.outstanding_amount for ln in active)
    data: Dict[str, Any] = {"active_loans": len(active), "total_outstanding": outstanding}

    deduction = min(len(active), config.max_active_loans_cap) * config.active_loan_penalty

    total = ledger.total_contributed
    if total > 0:
        ratio = outstanding / total
        if ratio > config.outstanding_ratio_limit:
            deduction += config.outstanding_ratio_penalty
            data["outstanding_ratio"] = round(ratio, 2)

    score = max(0.0, RISK_MAX - deduction)
    reason = RejectionReason.EXCESSIVE_OUTSTANDING_LOANS if deduction else None
    return ComponentScore(score, data, reason)


def calculate_overall_score(components: ScoreComponents, config: ScoringConfig) -> float:
    """
    Weighted overall score on a 0-100 scale.

    Each component is normalized by its maximum before weighting, so a
    member at every component's maximum scores exactly 100.
    """
    weighted = (
        components.contribution_score / CONTRIBUTION_MAX * config.weight_contribution
        + components.participation_score / PARTICIPATION_MAX * config.weight_participation
        + components.repayment_score / REPAYMENT_MAX * config.weight_repayment
        + components.risk_score / RISK_MAX * config.weight_risk
    )
    return round(min(max(weighted * 100, 0.0), 100.0), 2)


def weakest_component_reason(components: ScoreComponents) -> RejectionReason:
    """Rejection reason naming the component furthest below its maximum"""
    ratios = [
        (components.contribution_score / CONTRIBUTION_MAX, RejectionReason.INSUFFICIENT_CONTRIBUTION),
        (components.participation_score / PARTICIPATION_MAX, RejectionReason.INSUFFICIENT_PARTICIPATION),
        (components.repayment_score / REPAYMENT_MAX, RejectionReason.POOR_REPAYMENT_HISTORY),
        (components.risk_score / RISK_MAX, RejectionReason.EXCESSIVE_OUTSTANDING_LOANS),
    ]
    return min(ratios, key=lambda item: item[0])[1]


def calculate_max_loan_amount(total_contributed: int, config: ScoringConfig) -> int:
    """clamp(total_contributed * multiplier, min_loan_amount, max_loan_amount)"""
    raw = (Decimal(total_contributed) * config.max_loan_multiplier).to_integral_value(rounding=ROUND_DOWN)
    return min(max(int(raw), config.min_loan_amount), config.max_loan_amount)


def assess_eligibility(
    ledger: MemberLedger,
    now: datetime,
    config: ScoringConfig,
    assessment_id: str,
    override: Optional[bool] = None,
    overridden_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> EligibilityAssessment:
    """
    Main entry point: score a member's ledger and produce an assessment.

    Deterministic for a given ledger and `now`. Short-circuits (unverified
    account, short tenure, low contribution score) are never overridden;
    an admin override only replaces the weighted verdict.
    """
    expires_at = now + timedelta(days=config.assessment_validity_days)

    def build(components, overall, eligible, reason, max_amount, metadata):
        return EligibilityAssessment(
            assessment_id=assessment_id,
            member_id=ledger.member.member_id,
            group_id=ledger.group_id,
            overall_score=overall,
            components=components,
            is_eligible=eligible,
            rejection_reason=reason,
            max_loan_amount=max_amount,
            assessed_at=now,
            expires_at=expires_at,
            metadata=metadata,
            overridden_by=overridden_by if override is not None else None,
            overridden_at=now if override is not None else None,
            notes=notes,
        )

    if not ledger.member.is_verified:
        return build(ScoreComponents(), 0.0, False, RejectionReason.ACCOUNT_NOT_VERIFIED, 0, {})
    if ledger.member.is_suspended:
        return build(ScoreComponents(), 0.0, False, RejectionReason.ACCOUNT_SUSPENDED, 0, {})

    contribution = calculate_contribution_score(ledger, now, config)
    participation = calculate_participation_score(ledger, config)
    repayment = calculate_repayment_score(ledger, config)
    risk = calculate_risk_score(ledger, config)

    metadata = {**contribution.data, **participation.data, **repayment.data, **risk.data}

    if contribution.data["months_active"] < config.min_group_tenure_months:
        return build(
            ScoreComponents(), 0.0, False, RejectionReason.INSUFFICIENT_GROUP_MEMBERSHIP, 0, metadata
        )

    components = ScoreComponents(
        contribution_score=contribution.score,
        participation_score=participation.score,
        repayment_score=repayment.score,
        risk_score=risk.score,
    )

    if contribution.score < config.min_contribution_score:
        return build(components, 0.0, False, RejectionReason.INSUFFICIENT_CONTRIBUTION, 0, metadata)

    overall = calculate_overall_score(components, config)

    if repayment.reason == RejectionReason.RECENT_DEFAULT:
        is_eligible, reason = False, RejectionReason.RECENT_DEFAULT
    elif overall < config.min_overall_score:
        is_eligible, reason = False, weakest_component_reason(components)
    else:
        is_eligible, reason = True, None

    if override is not None:
        is_eligible = override
        reason = None if override else RejectionReason.ADMIN_OVERRIDE

    max_amount = calculate_max_loan_amount(ledger.total_contributed, config) if is_eligible else 0
    return build(components, overall, is_eligible, reason, max_amount, metadata)

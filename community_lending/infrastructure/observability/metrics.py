"""Prometheus metrics for eligibility outcomes, loan transitions and penalties"""

from prometheus_client import Counter, Histogram

# Eligibility metrics
eligibility_counter = Counter(
    "lending_eligibility_assessments_total",
    "Eligibility assessments computed",
    ["outcome"],  # eligible | ineligible
)

max_loan_bucket_counter = Counter(
    "lending_max_loan_bucket",
    "Loan ceilings issued by bucket",
    ["bucket"],  # 0 | <=10k | <=50k | >50k
)

eligibility_cache_counter = Counter(
    "lending_eligibility_cache_total",
    "Eligibility lookups served from cache or rescored",
    ["result"],  # hit | miss
)

# Lifecycle metrics
transition_counter = Counter(
    "lending_loan_transitions_total",
    "Loan lifecycle transition attempts",
    ["action", "outcome"],  # outcome: success | failed
)

penalty_counter = Counter(
    "lending_penalties_minor_units_total",
    "Late penalty minor units added to schedules",
)

duplicate_request_counter = Counter(
    "lending_duplicate_requests_total",
    "Retried requests answered from an earlier result",
    ["operation"],
)

# Audit side channel
audit_failure_counter = Counter(
    "lending_audit_write_failures_total",
    "Audit entries that could not be written",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_eligibility(is_eligible: bool, max_loan_amount: int) -> None:
    """Record eligibility outcome and ceiling distribution"""
    eligibility_counter.labels(outcome="eligible" if is_eligible else "ineligible").inc()

    if max_loan_amount == 0:
        bucket = "0"
    elif max_loan_amount <= 10_000:
        bucket = "<=10k"
    elif max_loan_amount <= 50_000:
        bucket = "<=50k"
    else:
        bucket = ">50k"

    max_loan_bucket_counter.labels(bucket=bucket).inc()

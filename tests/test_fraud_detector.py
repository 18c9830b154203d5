from decimal import Decimal

import pytest

from paygate.services.fraud_detector import FraudDetector, FraudPolicy, FraudSignals


@pytest.fixture()
def detector():
    return FraudDetector(FraudPolicy())


def _signals(**overrides):
    values = {"user_id": "user-1", "amount": Decimal("10.00"), "ip_address": "203.0.113.7"}
    values.update(overrides)
    return FraudSignals(**values)


def test_clean_request_scores_zero(detector):
    signals = _signals(recent_transaction_count=1, historical_average_amount=Decimal("10.00"))

    assert detector.score(signals) == 0.0
    assert detector.reasons(signals) == []
    assert not detector.is_fraudulent(0.0)


def test_velocity_alone_stays_below_threshold(detector):
    signals = _signals(recent_transaction_count=4)

    score = detector.score(signals)

    assert score == 0.4
    assert not detector.is_fraudulent(score)
    assert detector.reasons(signals) == ["velocity"]


def test_amount_anomaly_needs_history(detector):
    assert detector.score(_signals(amount=Decimal("500.00"))) == 0.0
    assert detector.score(_signals(amount=Decimal("500.00"), historical_average_amount=Decimal("10.00"))) == 0.3


def test_amount_at_exact_multiplier_is_not_anomalous(detector):
    signals = _signals(amount=Decimal("50.00"), historical_average_amount=Decimal("10.00"))

    assert detector.score(signals) == 0.0


def test_ip_reputation_and_velocity_reach_threshold(detector):
    """Test combined heuristics push a request over the threshold"""
    signals = _signals(recent_transaction_count=5, ip_incident_count=2)

    score = detector.score(signals)

    assert score == 0.9
    assert detector.is_fraudulent(score)
    assert detector.reasons(signals) == ["velocity", "ip_reputation"]


def test_score_is_capped_at_one(detector):
    signals = _signals(
        amount=Decimal("1000.00"),
        recent_transaction_count=10,
        historical_average_amount=Decimal("10.00"),
        ip_incident_count=3,
    )

    assert detector.score(signals) == 1.0


def test_ip_incidents_ignored_without_ip(detector):
    assert detector.score(_signals(ip_address=None, ip_incident_count=3)) == 0.0


def test_threshold_is_inclusive():
    detector = FraudDetector(FraudPolicy(threshold=0.4))

    assert detector.is_fraudulent(0.4)
    assert not detector.is_fraudulent(0.39)


def test_policy_from_config():
    policy = FraudPolicy.from_config({"FRAUD_THRESHOLD": "0.5", "FRAUD_VELOCITY_COUNT": "2"})

    assert policy.threshold == 0.5
    assert policy.velocity_count == 2
    assert policy.ip_weight == 0.5

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class FraudSignals:
    """Aggregated history for one payment request."""
    user_id: str
    amount: Decimal
    ip_address: Optional[str] = None
    recent_transaction_count: int = 0
    historical_average_amount: Optional[Decimal] = None
    ip_incident_count: int = 0


@dataclass(frozen=True)
class FraudPolicy:
    """Weights and thresholds for the fraud gate."""
    threshold: float = 0.7
    velocity_window_minutes: int = 5
    velocity_count: int = 4
    velocity_weight: float = 0.4
    amount_multiplier: float = 5.0
    amount_weight: float = 0.3
    ip_weight: float = 0.5

    @classmethod
    def from_config(cls, config) -> "FraudPolicy":
        return cls(
            threshold=float(config.get("FRAUD_THRESHOLD", cls.threshold)),
            velocity_window_minutes=int(config.get("FRAUD_VELOCITY_WINDOW_MINUTES", cls.velocity_window_minutes)),
            velocity_count=int(config.get("FRAUD_VELOCITY_COUNT", cls.velocity_count)),
            velocity_weight=float(config.get("FRAUD_VELOCITY_WEIGHT", cls.velocity_weight)),
            amount_multiplier=float(config.get("FRAUD_AMOUNT_MULTIPLIER", cls.amount_multiplier)),
            amount_weight=float(config.get("FRAUD_AMOUNT_WEIGHT", cls.amount_weight)),
            ip_weight=float(config.get("FRAUD_IP_WEIGHT", cls.ip_weight)),
        )


class FraudDetector:
    """Heuristic fraud scoring for payment requests."""

    def __init__(self, policy: FraudPolicy = None):
        self.policy = policy or FraudPolicy()

    def score(self, signals: FraudSignals) -> float:
        """
        Score a request between 0.0 (clean) and 1.0 (certainly abusive).

        Args:
            signals: History gathered by the transaction store

        Returns:
            Sum of the triggered heuristic weights, capped at 1.0
        """
        policy = self.policy
        score = 0.0

        # Velocity
        if signals.recent_transaction_count >= policy.velocity_count:
            score += policy.velocity_weight

        # Amount far above what this user normally pays
        average = signals.historical_average_amount
        if average is not None and average > 0:
            if Decimal(str(signals.amount)) > average * Decimal(str(policy.amount_multiplier)):
                score += policy.amount_weight

        # IP reputation
        if signals.ip_address and signals.ip_incident_count > 0:
            score += policy.ip_weight

        return round(min(score, 1.0), 4)

    def is_fraudulent(self, score: float) -> bool:
        return score >= self.policy.threshold

    def reasons(self, signals: FraudSignals) -> list:
        """Names of the heuristics that fired, for audit records."""
        policy = self.policy
        fired = []
        if signals.recent_transaction_count >= policy.velocity_count:
            fired.append("velocity")
        average = signals.historical_average_amount
        if average is not None and average > 0 and \
                Decimal(str(signals.amount)) > average * Decimal(str(policy.amount_multiplier)):
            fired.append("amount")
        if signals.ip_address and signals.ip_incident_count > 0:
            fired.append("ip_reputation")
        return fired

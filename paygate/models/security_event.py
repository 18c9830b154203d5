from paygate.extensions import db
from paygate.utils.clock import utcnow

HIGH_SEVERITIES = ("high", "critical")


class SecurityEvent(db.Model):
    """Security incidents keyed by source IP; feeds the fraud gate's IP reputation check."""

    __tablename__ = "security_events"

    id = db.Column(db.Integer, primary_key=True)
    ip_address = db.Column(db.String(64), nullable=True, index=True)
    event_type = db.Column(db.String(64), nullable=False)
    severity = db.Column(db.String(16), nullable=False, default="medium")
    details = db.Column(db.JSON, nullable=True, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<SecurityEvent {self.event_type} {self.severity} ip={self.ip_address}>"

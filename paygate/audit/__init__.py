from paygate.audit.logger import audit_event

__all__ = ["audit_event"]

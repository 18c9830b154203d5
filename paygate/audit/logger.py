import logging

logger = logging.getLogger("paygate.audit")


def audit_event(action: str, **fields):
    """
    Emit a structured audit record (fraud scores, transitions, webhook checks).

    Best effort: the audit sink never interrupts payment processing.
    """
    try:
        logger.info(action, extra={"audit_action": action, **fields})
    except Exception:
        logging.getLogger(__name__).debug("Audit emit failed for %s", action, exc_info=True)

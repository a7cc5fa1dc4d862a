from shieldcsp.audit.events import SECURITY_EVENTS, log_audit, record_security_event

__all__ = ["SECURITY_EVENTS", "log_audit", "record_security_event"]

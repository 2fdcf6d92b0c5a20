class AlertsEngineError(Exception):
    """Base class for errors raised by the alerts engine."""


class RuleConfigError(AlertsEngineError):
    """A persisted rule is missing a field its rule_type requires."""

    def __init__(self, rule_id: str, reason: str):
        super().__init__(f"rule {rule_id}: {reason}")
        self.rule_id = rule_id
        self.reason = reason


class WorkerLockLost(AlertsEngineError):
    """Another process owns the worker lock."""

"""
Error taxonomy.

Validation errors cross back to callers; capability errors are recovered
inside the conversation engine and never reach the caller.
"""
from __future__ import annotations


class EngageError(Exception):
    """Base exception for all LMS Engage errors."""


# ── Validation errors (raised synchronously to the caller) ──────

class ValidationFailed(EngageError):
    """The request was rejected before any state was written."""


class UnknownTemplate(ValidationFailed):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown or inactive template: {name}")


class InvalidVariables(ValidationFailed):
    def __init__(self, template: str, missing: list[str]):
        self.template = template
        self.missing = missing
        super().__init__(f"Template '{template}' has unbound variables: {', '.join(missing)}")


class InvalidTransition(ValidationFailed):
    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} from '{current}' to '{target}'")


class NotFound(ValidationFailed):
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


# ── Capability errors (recovered at the component boundary) ──────

class CapabilityUnavailable(EngageError):
    """An external capability (classifier, ranker, directory) failed."""


class ClassificationUnavailable(CapabilityUnavailable):
    pass


class KnowledgeUnavailable(CapabilityUnavailable):
    pass

"""
Exception hierarchy for the ABAC subsystem.

Only store failures are allowed to change the outcome of an evaluation
(they fail closed). Configuration problems in policies are reported as
warnings in the evaluation trace and never raised out of the engine.
"""


class ABACError(Exception):
    """Base class for all ABAC errors"""


class StoreUnavailableError(ABACError):
    """A backing store (policies, attributes, registry) could not be read or written"""


class NotFoundError(ABACError):
    """Requested attribute definition, policy or user attribute does not exist"""


class DuplicateError(ABACError):
    """Unique key (attribute name) already taken"""


class PolicyFileError(ABACError):
    """YAML policy seed file is missing or malformed"""


class ValueCoercionError(ABACError, ValueError):
    """A value cannot be represented as the attribute's declared data type"""

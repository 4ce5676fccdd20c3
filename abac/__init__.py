from abac.engine import (BUILTIN_ATTRIBUTES, PolicyEngine,)
from abac.exceptions import (ABACError, DuplicateError, NotFoundError,
                             PolicyFileError, StoreUnavailableError,
                             ValueCoercionError,)
from abac.recorder import (EvaluationRecorder,)
from abac.schemas import (AttributeDefinition, Condition, DataScope, Decision,
                          EvaluationResult, PolicyRule, ResourceRef,)
from abac.scope import (row_visible, scope_clause,)

__all__ = ['ABACError', 'AttributeDefinition', 'BUILTIN_ATTRIBUTES',
           'Condition', 'DataScope', 'Decision', 'DuplicateError',
           'EvaluationRecorder', 'EvaluationResult', 'NotFoundError',
           'PolicyEngine', 'PolicyFileError', 'PolicyRule', 'ResourceRef',
           'StoreUnavailableError', 'ValueCoercionError', 'row_visible',
           'scope_clause']

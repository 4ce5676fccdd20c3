"""
Route-level ABAC enforcement.

require_access() builds a FastAPI dependency that guards an endpoint of the
wider application:

    def load_student(request):
        return students.get(request.path_params["id"])

    @router.get("/students/{id}")
    def get_student(access: AccessContext = Depends(require_access("Student", "read", load_student))):
        return access.resource

    @router.get("/students")
    def list_students(access: AccessContext = Depends(require_access("Student", "read"))):
        return session.query(Student).filter(scope_clause(Student, access.scope)).all()

With a loader the single resource is evaluated (404 if it does not exist).
Without one the caller's DataScope is computed for list endpoints.
"""

import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, HTTPException, Request
from loguru import logger
from starlette.concurrency import run_in_threadpool

from abac.exceptions import StoreUnavailableError
from abac.schemas import DataScope, EvaluationResult, ResourceRef
from auth.rbac_dependencies import get_current_user


@dataclass
class AccessContext:
    has_access: bool
    resource: Any = None
    evaluation: Optional[EvaluationResult] = None
    scope: Optional[DataScope] = None


def request_context(request: Request) -> Dict[str, Any]:
    """Environment attributes taken from the HTTP request."""
    return {
        "ipAddress": request.client.host if request.client else None,
        "userAgent": request.headers.get("user-agent"),
        "method": request.method,
        "path": request.url.path,
    }


def _to_resource(model_name: str, loaded: Any, request: Request) -> ResourceRef:
    if isinstance(loaded, ResourceRef):
        return loaded
    if hasattr(loaded, "model_dump"):
        attributes = loaded.model_dump(by_alias=True)
    elif isinstance(loaded, dict):
        attributes = dict(loaded)
    else:
        attributes = dict(vars(loaded))
        attributes.pop("_sa_instance_state", None)

    resource_id = attributes.get("id", request.path_params.get("id"))
    return ResourceRef(
        model_name=model_name,
        resource_id=str(resource_id) if resource_id is not None else None,
        attributes=attributes,
    )


def require_access(
    model_name: str,
    action: str,
    resource_loader: Optional[Callable[[Request], Any]] = None
):
    """
    Dependency factory: evaluate the caller against ABAC policies.

    Args:
        model_name: resource type the endpoint serves
        action: action being performed
        resource_loader: returns the target resource (dict, pydantic model,
            ORM object or ResourceRef) for single-item endpoints, None if missing

    Raises:
        HTTPException: 404 resource missing, 403 denied or indeterminate,
            503 policy store unavailable
    """
    async def _require_access(request: Request, user: dict = Depends(get_current_user)) -> AccessContext:
        if user.get("is_super_admin"):
            return AccessContext(
                has_access=True,
                scope=DataScope(has_access=True, unrestricted=True, default_allow=True),
            )

        engine = request.app.state.abac.engine
        context = request_context(request)

        if resource_loader is None:
            try:
                scope = await run_in_threadpool(engine.data_scope, user["sub"], model_name, action, context)
            except StoreUnavailableError as e:
                logger.error(f"Data scope for {model_name} unavailable: {e}")
                raise HTTPException(status_code=503, detail="Access control unavailable")
            if not scope.has_access:
                raise HTTPException(status_code=403, detail="No access to this resource type")
            return AccessContext(has_access=True, scope=scope)

        loaded = resource_loader(request)
        if inspect.isawaitable(loaded):
            loaded = await loaded
        if loaded is None:
            raise HTTPException(status_code=404, detail="Resource not found")

        evaluation = await run_in_threadpool(
            engine.evaluate, user["sub"], _to_resource(model_name, loaded, request), action, context
        )
        if evaluation.store_error:
            raise HTTPException(status_code=503, detail="Access control unavailable")
        if not evaluation.allowed:
            logger.warning(
                f"User {user['sub']} denied {action} on {model_name}: {evaluation.final_decision.value}"
            )
            raise HTTPException(
                status_code=403,
                detail={
                    "message": "Access denied by policy",
                    "decision": evaluation.final_decision.value,
                    "policies": [
                        p.model_dump(mode="json", by_alias=True) for p in evaluation.evaluated_policies if p.matched
                    ],
                },
            )
        return AccessContext(has_access=True, resource=loaded, evaluation=evaluation)

    return _require_access

"""
ABAC management API endpoints.

Exposed endpoints:
- GET/POST /abac/attributes, PUT/DELETE /abac/attributes/{name} - Attribute catalog
- GET/POST /abac/policies, PUT/DELETE /abac/policies/{id} - Policy rules
- POST /abac/policies/test - Dry-run an access request
- GET/POST /abac/users/{userId}/attributes,
  DELETE /abac/users/{userId}/attributes/{attributeName} - User attributes
- GET /abac/evaluations - Paginated audit log
- GET /abac/my-scope/{modelName} - Caller's data scope
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from loguru import logger

from abac.exceptions import DuplicateError, NotFoundError, ValueCoercionError
from abac.schemas import (
    Action, AttributeDefinition, AttributeDefinitionUpdate, DataScope, Decision,
    EvaluationPage, EvaluationRequest, EvaluationResult, MessageResponse, PolicyRule,
    PolicyRuleRequest, SetUserAttributeRequest, UserAttribute
)
from abac.service import ABACService
from auth.rbac_dependencies import get_current_user, require_abac_manage, require_abac_read

router = APIRouter(prefix="/abac", tags=["abac"])


def get_service(request: Request) -> ABACService:
    return request.app.state.abac.service


# ============ ATTRIBUTE DEFINITIONS ============

@router.get("/attributes", response_model=List[AttributeDefinition])
def list_attributes(
    category: Optional[str] = Query(None),
    user: dict = Depends(require_abac_read),
    service: ABACService = Depends(get_service)
):
    """Active attribute definitions, by category then name."""
    return service.list_attributes(category)


@router.post("/attributes", response_model=AttributeDefinition, status_code=201)
def create_attribute(
    definition: AttributeDefinition,
    user: dict = Depends(require_abac_manage),
    service: ABACService = Depends(get_service)
):
    """
    Create an attribute definition.

    Example request:
        {
            "name": "department",
            "displayName": "Department",
            "dataType": "reference",
            "referenceModel": "Department",
            "category": "user"
        }
    """
    try:
        return service.create_attribute(definition)
    except DuplicateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.put("/attributes/{name}", response_model=AttributeDefinition)
def update_attribute(
    name: str,
    update: AttributeDefinitionUpdate,
    user: dict = Depends(require_abac_manage),
    service: ABACService = Depends(get_service)
):
    try:
        return service.update_attribute(name, update)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/attributes/{name}", response_model=MessageResponse)
def delete_attribute(
    name: str,
    user: dict = Depends(require_abac_manage),
    service: ABACService = Depends(get_service)
):
    try:
        service.delete_attribute(name)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return MessageResponse(message="Attribute deactivated successfully")


# ============ POLICY RULES ============

@router.get("/policies", response_model=List[PolicyRule])
def list_policies(
    model_name: Optional[str] = Query(None, alias="modelName"),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    user: dict = Depends(require_abac_read),
    service: ABACService = Depends(get_service)
):
    """Policy rules ordered by priority."""
    return service.list_policies(model_name, is_active)


@router.post("/policies", response_model=PolicyRule, status_code=201)
def create_policy(
    request: PolicyRuleRequest,
    user: dict = Depends(require_abac_manage),
    service: ABACService = Depends(get_service)
):
    return service.create_policy(request, created_by=user["sub"])


@router.put("/policies/{policy_id}", response_model=PolicyRule)
def update_policy(
    policy_id: int,
    request: PolicyRuleRequest,
    user: dict = Depends(require_abac_manage),
    service: ABACService = Depends(get_service)
):
    try:
        return service.update_policy(policy_id, request, modified_by=user["sub"])
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/policies/{policy_id}", response_model=MessageResponse)
def delete_policy(
    policy_id: int,
    user: dict = Depends(require_abac_manage),
    service: ABACService = Depends(get_service)
):
    try:
        service.delete_policy(policy_id, modified_by=user["sub"])
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return MessageResponse(message="Policy deactivated successfully")


@router.post("/policies/test", response_model=EvaluationResult)
def test_policy(
    request: EvaluationRequest,
    user: dict = Depends(require_abac_manage),
    service: ABACService = Depends(get_service)
):
    """
    Evaluate an access request without enforcing it.

    Returns:
        finalDecision, the per-policy trace and evaluationTimeMs
    """
    result = service.test_policy(request)
    if result.store_error:
        raise HTTPException(status_code=503, detail="Policy store unavailable")
    logger.info(f"Policy test by {user['sub']}: {request.user_id} -> {result.final_decision.value}")
    return result


# ============ USER ATTRIBUTES ============

@router.get("/users/{user_id}/attributes", response_model=List[UserAttribute])
def list_user_attributes(
    user_id: str,
    user: dict = Depends(require_abac_read),
    service: ABACService = Depends(get_service)
):
    return service.list_user_attributes(user_id)


@router.post("/users/{user_id}/attributes", response_model=UserAttribute)
def set_user_attribute(
    user_id: str,
    request: SetUserAttributeRequest,
    user: dict = Depends(require_abac_manage),
    service: ABACService = Depends(get_service)
):
    """
    Grant or replace one attribute value.

    Example request:
        {"attributeName": "department", "attributeValue": "CSE"}
    """
    try:
        return service.set_user_attribute(user_id, request, set_by=user["sub"])
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueCoercionError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/users/{user_id}/attributes/{attribute_name}", response_model=MessageResponse)
def remove_user_attribute(
    user_id: str,
    attribute_name: str,
    user: dict = Depends(require_abac_manage),
    service: ABACService = Depends(get_service)
):
    try:
        service.remove_user_attribute(user_id, attribute_name)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return MessageResponse(message="Attribute removed successfully")


# ============ POLICY EVALUATIONS (AUDIT) ============

@router.get("/evaluations", response_model=EvaluationPage)
def list_evaluations(
    user_id: Optional[str] = Query(None, alias="userId"),
    model_name: Optional[str] = Query(None, alias="modelName"),
    action: Optional[Action] = Query(None),
    decision: Optional[Decision] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    page: int = Query(1, ge=1),
    user: dict = Depends(require_abac_read),
    service: ABACService = Depends(get_service)
):
    """Audit log, newest first."""
    return service.evaluations(
        user_id=user_id,
        model_name=model_name,
        action=action.value if action else None,
        decision=decision.value if decision else None,
        limit=limit,
        page=page,
    )


# ============ DATA SCOPE ============

@router.get("/my-scope/{model_name}", response_model=DataScope)
def my_scope(
    model_name: str,
    action: Action = Query(Action.READ),
    user: dict = Depends(get_current_user),
    service: ABACService = Depends(get_service)
):
    """Which rows of `model_name` the caller may list."""
    return service.data_scope(user["sub"], model_name, action.value)

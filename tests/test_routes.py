"""API tests for the /abac routes and the require_access dependency."""

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from abac.enforcement import AccessContext, require_access
from abac.exceptions import StoreUnavailableError
from abac.memory_stores import InMemoryEvaluationSink, InMemoryPolicyStore
from abac.schemas import ResourceRef
from abac.service import assemble
from apps.api.main import create_app

from conftest import UTC_CONTEXT, auth_header, make_rule

STUDENT_POLICY = {
    "name": "Faculty read own department",
    "priority": 10,
    "subjectConditions": [{"attribute": "role", "operator": "equals", "value": "faculty"}],
    "resource": {
        "modelName": "Student",
        "resourceConditions": [{
            "attribute": "departmentId",
            "operator": "same_as_user",
            "referenceUserAttribute": "department",
        }],
    },
    "actions": ["read"],
    "effect": "allow",
}


class DownPolicyStore(InMemoryPolicyStore):

    def candidates(self, model_name):
        raise StoreUnavailableError("connection refused")

    def list(self, model_name=None, is_active=None):
        raise StoreUnavailableError("connection refused")


@pytest.fixture
def services(config, registry, policy_store, user_store):
    return assemble(config, registry, policy_store, user_store, InMemoryEvaluationSink())


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as client:
        yield client


ADMIN = auth_header()
READER = auth_header(sub="auditor", permissions=("abac.read",))
NOBODY = auth_header(sub="u-cse", permissions=())


class TestAuthentication:

    def test_missing_token(self, client):
        assert client.get("/abac/attributes").status_code == 401

    def test_bad_signature(self, client):
        headers = {"Authorization": "Bearer not-a-jwt"}
        assert client.get("/abac/attributes", headers=headers).status_code == 401

    def test_missing_permission(self, client):
        assert client.get("/abac/attributes", headers=NOBODY).status_code == 403

    def test_read_permission_cannot_manage(self, client):
        response = client.post(
            "/abac/attributes",
            json={"name": "hostel", "displayName": "Hostel", "dataType": "string", "category": "user"},
            headers=READER,
        )
        assert response.status_code == 403

    def test_wildcard_permission(self, client):
        headers = auth_header(sub="root", permissions=("*",))
        assert client.get("/abac/attributes", headers=headers).status_code == 200

    def test_security_headers(self, client):
        response = client.get("/health")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.json()["status"] == "healthy"


class TestAttributeRoutes:

    def test_list_by_category(self, client):
        response = client.get("/abac/attributes", params={"category": "environment"}, headers=READER)
        assert [a["name"] for a in response.json()] == ["channel"]

    def test_create_and_duplicate(self, client):
        body = {"name": "hostel", "displayName": "Hostel", "dataType": "string", "category": "user"}

        created = client.post("/abac/attributes", json=body, headers=ADMIN)
        assert created.status_code == 201
        assert created.json()["dataType"] == "string"
        assert created.json()["isActive"] is True

        assert client.post("/abac/attributes", json=body, headers=ADMIN).status_code == 409

    def test_invalid_data_type(self, client):
        body = {"name": "hostel", "displayName": "Hostel", "dataType": "blob", "category": "user"}
        assert client.post("/abac/attributes", json=body, headers=ADMIN).status_code == 422

    def test_update(self, client):
        response = client.put("/abac/attributes/role", json={"description": "Teaching role"}, headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["description"] == "Teaching role"
        assert client.put("/abac/attributes/nope", json={}, headers=ADMIN).status_code == 404

    def test_invalid_pattern_is_rejected(self, client):
        body = {"name": "rollNo", "displayName": "Roll number", "dataType": "string",
                "category": "resource", "validationRules": {"pattern": "("}}
        assert client.post("/abac/attributes", json=body, headers=ADMIN).status_code == 422

        response = client.put("/abac/attributes/code", json={"validationRules": {"pattern": "("}}, headers=ADMIN)
        assert response.status_code == 422
        code = [a for a in client.get("/abac/attributes", headers=READER).json() if a["name"] == "code"][0]
        assert code["validationRules"]["pattern"] == "^[A-Z]{3}[0-9]{3}$"

    def test_delete(self, client):
        assert client.delete("/abac/attributes/channel", headers=ADMIN).status_code == 200
        assert client.delete("/abac/attributes/nope", headers=ADMIN).status_code == 404
        names = [a["name"] for a in client.get("/abac/attributes", headers=READER).json()]
        assert "channel" not in names


class TestPolicyRoutes:

    def test_create_stamps_author(self, client):
        response = client.post("/abac/policies", json=STUDENT_POLICY, headers=ADMIN)

        assert response.status_code == 201
        body = response.json()
        assert body["id"] == 1
        assert body["createdBy"] == "admin-1"
        assert body["resource"]["resourceConditions"][0]["referenceUserAttribute"] == "department"

    def test_rejects_empty_actions(self, client):
        body = {**STUDENT_POLICY, "actions": []}
        assert client.post("/abac/policies", json=body, headers=ADMIN).status_code == 422

    def test_list_filters(self, client, policy_store):
        policy_store.add(make_rule(name="courses", resource={"modelName": "Course"}))
        policy_store.add(make_rule(name="students", priority=1))

        response = client.get("/abac/policies", params={"modelName": "Student"}, headers=READER)
        assert [p["name"] for p in response.json()] == ["students"]

    def test_update_and_delete(self, client):
        policy_id = client.post("/abac/policies", json=STUDENT_POLICY, headers=ADMIN).json()["id"]
        editor = auth_header(sub="editor", permissions=("abac.manage",))

        updated = client.put(f"/abac/policies/{policy_id}", json={**STUDENT_POLICY, "priority": 3}, headers=editor)
        assert updated.json()["priority"] == 3
        assert updated.json()["createdBy"] == "admin-1"
        assert updated.json()["lastModifiedBy"] == "editor"

        assert client.delete(f"/abac/policies/{policy_id}", headers=editor).status_code == 200
        listed = client.get("/abac/policies", params={"isActive": "false"}, headers=ADMIN).json()
        assert [p["id"] for p in listed] == [policy_id]

    def test_missing_policy(self, client):
        assert client.put("/abac/policies/99", json=STUDENT_POLICY, headers=ADMIN).status_code == 404
        assert client.delete("/abac/policies/99", headers=ADMIN).status_code == 404


class TestPolicyTestRoute:

    def request(self, department):
        return {
            "userId": "u-cse",
            "resource": {"modelName": "Student", "resourceId": "s-1", "attributes": {"departmentId": department}},
            "action": "read",
            "context": UTC_CONTEXT,
        }

    def test_decisions_and_trace(self, client, cse_faculty):
        client.post("/abac/policies", json=STUDENT_POLICY, headers=ADMIN)

        allowed = client.post("/abac/policies/test", json=self.request("CSE"), headers=ADMIN).json()
        other = client.post("/abac/policies/test", json=self.request("EEE"), headers=ADMIN).json()

        assert allowed["finalDecision"] == "allow"
        assert allowed["evaluatedPolicies"][0]["matched"] is True
        assert other["finalDecision"] == "indeterminate"
        assert "evaluationTimeMs" in other

    def test_unknown_user_is_denied(self, client):
        client.post("/abac/policies", json={
            **STUDENT_POLICY,
            "subjectConditions": [{"attribute": "role", "operator": "not_equals", "value": "student"}],
            "resource": {"modelName": "Student"},
        }, headers=ADMIN)

        result = client.post("/abac/policies/test", json=self.request("CSE"), headers=ADMIN).json()

        assert result["finalDecision"] == "deny"
        assert result["evaluatedPolicies"][0]["error"] == "unknown_subject"

    def test_store_outage(self, config, registry, user_store):
        services = assemble(config, registry, DownPolicyStore(), user_store, InMemoryEvaluationSink())
        with TestClient(create_app(services=services)) as client:
            response = client.post("/abac/policies/test", json=self.request("CSE"), headers=ADMIN)
            assert response.status_code == 503
            assert client.get("/abac/policies", headers=ADMIN).status_code == 503


class TestUserAttributeRoutes:

    def test_set_list_remove(self, client):
        response = client.post(
            "/abac/users/u-9/attributes",
            json={"attributeName": "clearance", "attributeValue": "3"},
            headers=ADMIN,
        )
        assert response.status_code == 200
        assert response.json()["attributeValue"] == 3
        assert response.json()["setBy"] == "admin-1"

        listed = client.get("/abac/users/u-9/attributes", headers=READER).json()
        assert [a["attributeName"] for a in listed] == ["clearance"]

        assert client.delete("/abac/users/u-9/attributes/clearance", headers=ADMIN).status_code == 200
        assert client.delete("/abac/users/u-9/attributes/clearance", headers=ADMIN).status_code == 404

    def test_undefined_attribute(self, client):
        body = {"attributeName": "hostel", "attributeValue": "A"}
        assert client.post("/abac/users/u-9/attributes", json=body, headers=ADMIN).status_code == 404

    def test_invalid_value(self, client):
        out_of_range = {"attributeName": "clearance", "attributeValue": 9}
        not_allowed = {"attributeName": "role", "attributeValue": "dean"}
        assert client.post("/abac/users/u-9/attributes", json=out_of_range, headers=ADMIN).status_code == 400
        assert client.post("/abac/users/u-9/attributes", json=not_allowed, headers=ADMIN).status_code == 400


class TestEvaluationRoutes:

    def test_paging_and_filters(self, client, services, policy_store, known_users):
        policy_store.add(make_rule())
        for user_id in ("u-1", "u-1", "u-2"):
            services.engine.evaluate(user_id, ResourceRef(model_name="Student"), "read", UTC_CONTEXT)
        assert services.recorder.flush(timeout=5)

        page = client.get("/abac/evaluations", params={"userId": "u-1", "limit": 1}, headers=READER).json()
        assert page["totalCount"] == 2
        assert page["totalPages"] == 2
        assert page["currentPage"] == 1
        assert page["evaluations"][0]["finalDecision"] == "allow"

        second = client.get("/abac/evaluations", params={"userId": "u-1", "limit": 1, "page": 2}, headers=READER)
        assert len(second.json()["evaluations"]) == 1

    def test_limit_bounds(self, client):
        assert client.get("/abac/evaluations", params={"limit": 0}, headers=READER).status_code == 422
        assert client.get("/abac/evaluations", params={"limit": 501}, headers=READER).status_code == 422


class TestMyScope:

    def test_scope_for_caller(self, client, cse_faculty):
        client.post("/abac/policies", json=STUDENT_POLICY, headers=ADMIN)

        scope = client.get("/abac/my-scope/Student", headers=NOBODY).json()

        assert scope["hasAccess"] is True
        assert scope["filters"][0]["conditions"][0]["value"] == "CSE"

    def test_no_policies(self, client):
        scope = client.get("/abac/my-scope/Course", headers=NOBODY).json()
        assert scope == {"hasAccess": False, "unrestricted": False, "defaultAllow": False, "filters": []}


class TestRequireAccess:

    @pytest.fixture
    def guarded(self, services, cse_faculty):
        students = {
            "s-1": {"id": "s-1", "departmentId": "CSE"},
            "s-2": {"id": "s-2", "departmentId": "EEE"},
        }
        services.policies.add(make_rule(
            subjectConditions=[{"attribute": "role", "operator": "equals", "value": "faculty"}],
            resource={
                "modelName": "Student",
                "resourceConditions": [{
                    "attribute": "departmentId",
                    "operator": "same_as_user",
                    "referenceUserAttribute": "department",
                }],
            },
        ))

        app = FastAPI()
        app.state.abac = services

        def load_student(request):
            return students.get(request.path_params["id"])

        @app.get("/students")
        def list_students(access: AccessContext = Depends(require_access("Student", "read"))):
            return {"filters": len(access.scope.filters)}

        @app.get("/students/{id}")
        def get_student(access: AccessContext = Depends(require_access("Student", "read", load_student))):
            return access.resource

        @app.get("/courses")
        def list_courses(access: AccessContext = Depends(require_access("Course", "read"))):
            return []

        return TestClient(app)

    def test_single_resource(self, guarded):
        headers = auth_header(sub="u-cse", permissions=())

        assert guarded.get("/students/s-1", headers=headers).json()["departmentId"] == "CSE"

        denied = guarded.get("/students/s-2", headers=headers)
        assert denied.status_code == 403
        assert denied.json()["detail"]["decision"] == "indeterminate"

        assert guarded.get("/students/s-9", headers=headers).status_code == 404

    def test_list_scope(self, guarded):
        headers = auth_header(sub="u-cse", permissions=())

        assert guarded.get("/students", headers=headers).json() == {"filters": 1}
        assert guarded.get("/courses", headers=headers).status_code == 403

    def test_super_admin_bypass(self, guarded):
        headers = auth_header(sub="root", permissions=(), is_super_admin=True)
        assert guarded.get("/students/s-2", headers=headers).status_code == 200

    def test_unauthenticated(self, guarded):
        assert guarded.get("/students/s-1").status_code == 401

import json
from typing import Any, Dict, Optional

import azure.functions as func

import function_app  # noqa: F401  registers routes and creates tables
from auth_endpoints import handle_sign_up
from organizations_endpoints import handle_member_add, handle_organization_create
from repository.rbac_repo import get_role_by_name
from services.rbac_seed import seed_rbac
from shared.db import Base, SessionLocal, engine

CORS: Dict[str, str] = {}


def reset_database() -> None:
    SessionLocal.remove()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_rbac(db)
        db.commit()
    finally:
        db.close()


def make_request(
    method: str,
    url: str = "/api/test",
    *,
    body: Optional[Any] = None,
    token: Optional[str] = None,
    organization_id: Optional[str] = None,
    params: Optional[Dict[str, str]] = None,
    route_params: Optional[Dict[str, str]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> func.HttpRequest:
    all_headers = {"Content-Type": "application/json"}
    if token:
        all_headers["Authorization"] = f"Bearer {token}"
    if organization_id:
        all_headers["x-organization-id"] = organization_id
    all_headers.update(headers or {})
    return func.HttpRequest(
        method=method,
        url=url,
        headers=all_headers,
        params=params or {},
        route_params=route_params or {},
        body=json.dumps(body).encode("utf-8") if body is not None else b"",
    )


def read_json(resp: func.HttpResponse) -> Any:
    return json.loads(resp.get_body().decode("utf-8"))


def sign_up(name: str, email: str, password: str = "password123") -> Dict[str, str]:
    resp = handle_sign_up(
        make_request("POST", "/api/auth/sign-up", body={"name": name, "email": email, "password": password}),
        CORS,
    )
    assert resp.status_code == 201, resp.get_body()
    data = read_json(resp)
    return {"token": data["token"], "user_id": data["user"]["id"], "email": email}


def create_organization(token: str, name: str = "Acme Sales", slug: str = "acme-sales") -> str:
    resp = handle_organization_create(
        make_request("POST", "/api/organizations", body={"name": name, "slug": slug}, token=token),
        CORS,
    )
    assert resp.status_code == 201, resp.get_body()
    return read_json(resp)["organization"]["id"]


def system_role_id(name: str) -> str:
    db = SessionLocal()
    try:
        return get_role_by_name(db, name).id
    finally:
        db.close()


def add_member(owner_token: str, organization_id: str, role_name: str, name: str, email: str) -> Dict[str, str]:
    """Sign up a new user and add them to the organization with a system role."""
    user = sign_up(name, email)
    resp = handle_member_add(
        make_request(
            "POST",
            f"/api/organizations/{organization_id}/members",
            body={"userId": user["user_id"], "roleId": system_role_id(role_name)},
            token=owner_token,
            route_params={"organizationId": organization_id},
        ),
        CORS,
    )
    assert resp.status_code == 201, resp.get_body()
    user["member_id"] = read_json(resp)["member"]["id"]
    return user


class OrganizationFixture:
    """An organization with an Owner, ready for endpoint tests."""

    def __init__(self, slug: str = "acme-sales"):
        reset_database()
        self.owner = sign_up("Olivia Owner", "owner@example.com")
        self.org_id = create_organization(self.owner["token"], slug=slug)

    def member(self, role_name: str, email: str, name: str = "Team Member") -> Dict[str, str]:
        return add_member(self.owner["token"], self.org_id, role_name, name, email)

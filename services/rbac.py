from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

RESOURCE_ACTIONS = {
    "client": ["create", "read", "update", "delete"],
    "salesperson": ["create", "read", "update", "delete"],
    "appointment": ["create", "read", "update", "delete"],
    "deal": ["create", "read", "update", "delete"],
    "task": ["create", "read", "update", "delete"],
    "reports": ["read", "export"],
    "organization": ["read", "update", "delete"],
    "user": ["create", "read", "update", "delete"],
    "role": ["create", "read", "update", "delete"],
}

RESOURCE_LABELS = {
    "client": "clients",
    "salesperson": "salespeople",
    "appointment": "appointments",
    "deal": "deals",
    "task": "tasks",
    "reports": "reports",
    "organization": "organization settings",
    "user": "team members and invitations",
    "role": "roles",
}

STAGE_ACTIONS = ("create", "read", "update", "delete")

SALES_STAGES = [
    "lead",
    "needs_assessment",
    "negotiation",
    "analysis_approval",
    "closing",
    "sale_confirmation",
    "quality_control",
    "post_sale",
]

STAGE_LABELS = {
    "lead": "Lead",
    "needs_assessment": "Needs Assessment",
    "negotiation": "Negotiation",
    "analysis_approval": "Analysis & Approval",
    "closing": "Closing",
    "sale_confirmation": "Sale Confirmation",
    "quality_control": "Quality Control",
    "post_sale": "Post-Sale",
}

OWNER_ROLE = "Owner"
ADMIN_ROLE = "Admin"
SALES_MANAGER_ROLE = "Sales Manager"
SALESPERSON_ROLE = "Salesperson"
ADMINISTRATIVE_ROLE = "Administrative"
POST_SALE_ROLE = "Post-Sale"


def permission_slug(action: str, resource: str) -> str:
    return f"{action}:{resource}"


def all_permission_slugs() -> List[str]:
    return [
        permission_slug(action, resource)
        for resource, actions in RESOURCE_ACTIONS.items()
        for action in actions
    ]


def permission_catalog() -> List[Dict[str, str]]:
    catalog = []
    for resource, actions in RESOURCE_ACTIONS.items():
        for action in actions:
            catalog.append(
                {
                    "slug": permission_slug(action, resource),
                    "resource": resource,
                    "action": action,
                    "description": f"{action.capitalize()} {RESOURCE_LABELS[resource]}",
                }
            )
    return catalog


_ORGANIZATION_ADMIN_SLUGS = {"update:organization", "delete:organization"}

SYSTEM_ROLES: List[Dict[str, Any]] = [
    {
        "name": OWNER_ROLE,
        "description": "Organization owner with full access",
        "permissions": all_permission_slugs(),
    },
    {
        "name": ADMIN_ROLE,
        "description": "Administrator with full access except organization management",
        "permissions": [slug for slug in all_permission_slugs() if slug not in _ORGANIZATION_ADMIN_SLUGS],
    },
    {
        "name": SALES_MANAGER_ROLE,
        "description": "Sales manager with access to the team pipeline and reports",
        "permissions": [
            "create:client",
            "read:client",
            "update:client",
            "delete:client",
            "read:salesperson",
            "update:salesperson",
            "create:appointment",
            "read:appointment",
            "update:appointment",
            "delete:appointment",
            "create:deal",
            "read:deal",
            "update:deal",
            "delete:deal",
            "create:task",
            "read:task",
            "update:task",
            "delete:task",
            "read:reports",
            "export:reports",
            "read:organization",
            "read:user",
        ],
    },
    {
        "name": SALESPERSON_ROLE,
        "description": "Salesperson working their own clients and early pipeline stages",
        "permissions": [
            "create:client",
            "read:client",
            "update:client",
            "read:salesperson",
            "create:appointment",
            "read:appointment",
            "update:appointment",
            "create:deal",
            "read:deal",
            "update:deal",
            "create:task",
            "read:task",
            "update:task",
            "read:organization",
        ],
    },
    {
        "name": ADMINISTRATIVE_ROLE,
        "description": "Back-office staff handling approval, closing and quality control",
        "permissions": [
            "read:client",
            "update:client",
            "read:salesperson",
            "read:appointment",
            "update:appointment",
            "read:deal",
            "update:deal",
            "create:task",
            "read:task",
            "update:task",
            "read:reports",
            "read:organization",
        ],
    },
    {
        "name": POST_SALE_ROLE,
        "description": "Post-sale team with limited access",
        "permissions": [
            "read:client",
            "update:client",
            "read:appointment",
            "update:appointment",
            "read:deal",
            "update:deal",
            "read:task",
            "update:task",
            "read:organization",
        ],
    },
]


def _grant(can_view: bool, can_edit: bool) -> Dict[str, bool]:
    return {"canView": bool(can_view or can_edit), "canEdit": bool(can_edit)}


def _matrix_row(editable: Iterable[str], view_only: Iterable[str] = ()) -> Dict[str, Dict[str, bool]]:
    editable_set = set(editable)
    view_set = set(view_only)
    row = {}
    for stage in SALES_STAGES:
        if stage in editable_set:
            row[stage] = _grant(True, True)
        elif stage in view_set:
            row[stage] = _grant(True, False)
    return row


ROLE_STAGE_MATRIX: Dict[str, Dict[str, Dict[str, bool]]] = {
    OWNER_ROLE: _matrix_row(SALES_STAGES),
    ADMIN_ROLE: _matrix_row(SALES_STAGES),
    SALES_MANAGER_ROLE: _matrix_row(SALES_STAGES),
    SALESPERSON_ROLE: _matrix_row(SALES_STAGES[0:4], SALES_STAGES[4:8]),
    ADMINISTRATIVE_ROLE: _matrix_row(SALES_STAGES[3:7]),
    POST_SALE_ROLE: _matrix_row(SALES_STAGES[7:8]),
}

ROLE_DISPLAY = {
    OWNER_ROLE: ("bg-red-500", "Crown"),
    ADMIN_ROLE: ("bg-blue-500", "Shield"),
    SALES_MANAGER_ROLE: ("bg-purple-500", "TrendingUp"),
    SALESPERSON_ROLE: ("bg-orange-500", "UserCheck"),
    ADMINISTRATIVE_ROLE: ("bg-green-500", "Shield"),
    POST_SALE_ROLE: ("bg-teal-500", "Headphones"),
}
DEFAULT_ROLE_DISPLAY = ("bg-gray-500", "Users")


def role_display(role_name: Optional[str]) -> Dict[str, str]:
    color, icon = ROLE_DISPLAY.get(str(role_name or ""), DEFAULT_ROLE_DISPLAY)
    return {"color": color, "icon": icon}


def normalize_stage(value: Any) -> Optional[str]:
    stage = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    if stage in SALES_STAGES:
        return stage
    return None


def normalize_stage_grants(raw: Any) -> Dict[str, Dict[str, bool]]:
    """
    Accept either a mapping {stage: {canView, canEdit}} or a list of
    {stage, canView, canEdit} rows and return the mapping form.
    Raises ValueError for unknown stages. Edit access always implies view access.
    """
    rows: List[Dict[str, Any]] = []
    if isinstance(raw, dict):
        for stage, grant in raw.items():
            grant = grant if isinstance(grant, dict) else {}
            rows.append({"stage": stage, **grant})
    elif isinstance(raw, list):
        rows = [row for row in raw if isinstance(row, dict)]
    elif raw is not None:
        raise ValueError("stages must be an object or a list")

    grants: Dict[str, Dict[str, bool]] = {}
    for row in rows:
        stage = normalize_stage(row.get("stage"))
        if not stage:
            raise ValueError(f"unknown stage: {row.get('stage')}")
        can_view = bool(row.get("canView"))
        can_edit = bool(row.get("canEdit"))
        if not can_view and not can_edit:
            continue
        grants[stage] = _grant(can_view, can_edit)
    return grants


def can_stage_action(grants: Dict[str, Dict[str, bool]], stage: Optional[str], action: str) -> bool:
    if action not in STAGE_ACTIONS:
        return False
    grant = (grants or {}).get(str(stage or ""))
    if not grant:
        return False
    if action == "read":
        return bool(grant.get("canView") or grant.get("canEdit"))
    return bool(grant.get("canEdit"))


def accessible_stages(grants: Dict[str, Dict[str, bool]]) -> Dict[str, List[str]]:
    editable: List[str] = []
    view_only: List[str] = []
    for stage in SALES_STAGES:
        if can_stage_action(grants, stage, "update"):
            editable.append(stage)
        elif can_stage_action(grants, stage, "read"):
            view_only.append(stage)
    return {"editable": editable, "viewOnly": view_only}


def readable_stages(grants: Dict[str, Dict[str, bool]]) -> List[str]:
    return [stage for stage in SALES_STAGES if can_stage_action(grants, stage, "read")]


def can_act_on_deal(
    permissions: Iterable[str],
    grants: Dict[str, Dict[str, bool]],
    action: str,
    stage: Optional[str],
    target_stage: Optional[str] = None,
) -> bool:
    if permission_slug(action, "deal") not in set(permissions or []):
        return False
    if not can_stage_action(grants, stage, action):
        return False
    if target_stage and target_stage != stage:
        return can_stage_action(grants, target_stage, "update")
    return True


NAVIGATION_ITEMS: List[Dict[str, Optional[str]]] = [
    {"title": "Dashboard", "href": "/dashboard", "icon": "LayoutDashboard", "permission": None},
    {"title": "Clients", "href": "/dashboard/clients", "icon": "Users", "permission": "read:client"},
    {"title": "Deals", "href": "/dashboard/deals", "icon": "Target", "permission": "read:deal"},
    {"title": "Tasks", "href": "/dashboard/tasks", "icon": "CheckSquare", "permission": "read:task"},
    {"title": "Reports", "href": "/dashboard/reports", "icon": "TrendingUp", "permission": "read:reports"},
]

STAGE_NAVIGATION = {
    "lead": ("/dashboard/leads", "UserPlus"),
    "needs_assessment": ("/dashboard/needs-assessment", "ClipboardList"),
    "negotiation": ("/dashboard/negotiation", "Headphones"),
    "analysis_approval": ("/dashboard/analysis-approval", "CheckCircle"),
    "closing": ("/dashboard/closing", "Handshake"),
    "sale_confirmation": ("/dashboard/sale-confirmation", "ShoppingCart"),
    "quality_control": ("/dashboard/quality-control", "Shield"),
    "post_sale": ("/dashboard/post-sale", "MessageSquare"),
}

TRAILING_NAVIGATION_ITEMS: List[Dict[str, Optional[str]]] = [
    {"title": "Team", "href": "/team", "icon": "UsersRound", "permission": "read:user"},
    {"title": "Settings", "href": "/dashboard/settings", "icon": "Settings", "permission": None},
]


def navigation_for(permissions: Iterable[str], grants: Dict[str, Dict[str, bool]]) -> List[Dict[str, Any]]:
    """Sidebar entries the member may open, stage pages included only for readable stages."""
    granted = set(permissions or [])
    items: List[Dict[str, Any]] = []
    for item in NAVIGATION_ITEMS:
        if item["permission"] is None or item["permission"] in granted:
            items.append({"title": item["title"], "href": item["href"], "icon": item["icon"]})
    for stage in SALES_STAGES:
        if not can_stage_action(grants, stage, "read"):
            continue
        href, icon = STAGE_NAVIGATION[stage]
        items.append(
            {
                "title": STAGE_LABELS[stage],
                "href": href,
                "icon": icon,
                "stage": stage,
                "canEdit": can_stage_action(grants, stage, "update"),
            }
        )
    for item in TRAILING_NAVIGATION_ITEMS:
        if item["permission"] is None or item["permission"] in granted:
            items.append({"title": item["title"], "href": item["href"], "icon": item["icon"]})
    return items

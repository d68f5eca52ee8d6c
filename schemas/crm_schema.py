from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from services.rbac import SALES_STAGES, normalize_stage

CLIENT_STATUSES = {"lead", "active", "inactive", "customer"}
DEAL_PRIORITIES = {"low", "medium", "high"}
TASK_PRIORITIES = {"low", "medium", "high"}
TASK_CATEGORIES = {"meeting", "follow_up", "proposal", "call", "email", "other"}
TASK_STATUSES = {"pending", "completed"}
TASK_STATUS_FILTERS = {"pending", "completed", "overdue"}

MIN_PASSWORD_LENGTH = 8
# Upper bound of a signed 64-bit INTEGER column.
MAX_MONEY = 2**63 - 1

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _normalize_enum(value: Any) -> Optional[str]:
    if value is None:
        return None
    normalized = re.sub(r"[\s-]+", "_", str(value).strip().lower())
    return normalized or None


def _require_str(payload: Dict[str, Any], field: str) -> str:
    value = payload.get(field)
    if value is None:
        raise ValueError(f"{field} is required")
    text = str(value).strip()
    if not text:
        raise ValueError(f"{field} is required")
    return text


def _optional_str(payload: Dict[str, Any], field: str) -> Optional[str]:
    value = payload.get(field)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _require_email(payload: Dict[str, Any], field: str = "email") -> str:
    email = _require_str(payload, field).lower()
    if not _EMAIL_RE.match(email):
        raise ValueError(f"{field} must be a valid email address")
    return email


def _enum(payload: Dict[str, Any], field: str, allowed: set, default: Optional[str] = None) -> Optional[str]:
    raw = payload.get(field)
    if raw is None or str(raw).strip() == "":
        return default
    value = _normalize_enum(raw)
    if value not in allowed:
        raise ValueError(f"{field} must be one of: {', '.join(sorted(allowed))}")
    return value


def parse_datetime(value: Any, field: str = "date") -> Optional[datetime]:
    """Parse an ISO date or datetime into a naive UTC datetime."""
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"{field} must be an ISO date") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _stage(payload: Dict[str, Any], field: str = "stage", default: Optional[str] = None) -> Optional[str]:
    raw = payload.get(field)
    if raw is None or str(raw).strip() == "":
        return default
    stage = normalize_stage(raw)
    if not stage:
        raise ValueError(f"{field} must be one of: {', '.join(SALES_STAGES)}")
    return stage


def _money(payload: Dict[str, Any], field: str = "value") -> int:
    raw = payload.get(field)
    if raw is None or raw == "":
        return 0
    try:
        number = float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a number") from None
    if not math.isfinite(number):
        raise ValueError(f"{field} must be a finite number")
    if number < 0:
        raise ValueError(f"{field} must not be negative")
    if number > MAX_MONEY:
        raise ValueError(f"{field} must not exceed {MAX_MONEY}")
    return int(number)


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(value or "").strip().lower())
    return slug.strip("-")[:64]


def validate_sign_up(payload: Dict[str, Any]) -> Dict[str, Any]:
    name = _require_str(payload, "name")
    email = _require_email(payload)
    password = payload.get("password")
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must have at least {MIN_PASSWORD_LENGTH} characters")
    return {"name": name, "email": email, "password": password}


def validate_sign_in(payload: Dict[str, Any]) -> Dict[str, Any]:
    email = _require_str(payload, "email").lower()
    password = payload.get("password")
    if not isinstance(password, str) or not password:
        raise ValueError("password is required")
    return {"email": email, "password": password}


def validate_user_update(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"name": _require_str(payload, "name"), "image": _optional_str(payload, "image")}


def validate_organization_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    name = _require_str(payload, "name")
    slug = _optional_str(payload, "slug")
    slug = slug.lower() if slug else slugify(name)
    if not (2 <= len(slug) <= 64) or not _SLUG_RE.match(slug):
        raise ValueError("slug must be 2-64 characters of lowercase letters, digits and dashes")
    return {"name": name, "slug": slug, "logo": _optional_str(payload, "logo")}


def validate_member_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"userId": _require_str(payload, "userId"), "roleId": _require_str(payload, "roleId")}


def validate_invitation_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "email": _require_email(payload),
        "organizationId": _require_str(payload, "organizationId"),
        "roleId": _require_str(payload, "roleId"),
    }


def validate_role_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    permissions = payload.get("permissions")
    if permissions is None:
        permissions = payload.get("permissionIds") or []
    if not isinstance(permissions, list):
        raise ValueError("permissions must be a list")
    return {
        "name": _require_str(payload, "name"),
        "description": _optional_str(payload, "description"),
        "permissions": permissions,
        "stages": payload.get("stages"),
    }


def validate_role_update(payload: Dict[str, Any]) -> Dict[str, Any]:
    updates: Dict[str, Any] = {}
    if "name" in payload:
        updates["name"] = _require_str(payload, "name")
    if "description" in payload:
        updates["description"] = _optional_str(payload, "description")
    if "permissions" in payload or "permissionIds" in payload:
        permissions = payload.get("permissions", payload.get("permissionIds"))
        if not isinstance(permissions, list):
            raise ValueError("permissions must be a list")
        updates["permissions"] = permissions
    if "stages" in payload:
        updates["stages"] = payload.get("stages")
    if not updates:
        raise ValueError("no valid fields to update")
    return updates


def validate_client_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": _require_str(payload, "name"),
        "email": _require_email(payload),
        "phone": _optional_str(payload, "phone"),
        "status": _enum(payload, "status", CLIENT_STATUSES, default="lead"),
        "salespersonId": _optional_str(payload, "salespersonId"),
    }


def validate_client_update(payload: Dict[str, Any]) -> Dict[str, Any]:
    updates: Dict[str, Any] = {}
    if "name" in payload:
        updates["name"] = _require_str(payload, "name")
    if "email" in payload:
        updates["email"] = _require_email(payload)
    if "phone" in payload:
        updates["phone"] = _optional_str(payload, "phone")
    if "status" in payload:
        updates["status"] = _enum(payload, "status", CLIENT_STATUSES, default="lead")
    if "salespersonId" in payload:
        updates["salespersonId"] = _optional_str(payload, "salespersonId")
    if not updates:
        raise ValueError("no valid fields to update")
    return updates


def validate_salesperson_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": _require_str(payload, "name"),
        "email": _require_email(payload),
        "phone": _optional_str(payload, "phone"),
        "avatarImageUrl": _optional_str(payload, "avatarImageUrl"),
        "userId": _optional_str(payload, "userId"),
    }


def validate_appointment_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    date = parse_datetime(_require_str(payload, "date"))
    return {
        "clientId": _require_str(payload, "clientId"),
        "salespersonId": _optional_str(payload, "salespersonId"),
        "date": date,
    }


def validate_deal_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    client_name = _optional_str(payload, "client") or _optional_str(payload, "clientName")
    client_id = _optional_str(payload, "clientId")
    if not client_name and not client_id:
        raise ValueError("client is required")
    return {
        "title": _require_str(payload, "title"),
        "clientName": client_name,
        "clientId": client_id,
        "clientAvatar": _optional_str(payload, "clientAvatar"),
        "value": _money(payload),
        "stage": _stage(payload, default="lead"),
        "priority": _enum(payload, "priority", DEAL_PRIORITIES, default="medium"),
        "dueDate": parse_datetime(payload.get("dueDate"), "dueDate"),
        "description": _optional_str(payload, "description"),
    }


def validate_deal_update(payload: Dict[str, Any]) -> Dict[str, Any]:
    updates: Dict[str, Any] = {}
    if "title" in payload:
        updates["title"] = _require_str(payload, "title")
    if "client" in payload or "clientName" in payload:
        updates["clientName"] = _optional_str(payload, "client") or _optional_str(payload, "clientName")
        if not updates["clientName"]:
            raise ValueError("client is required")
    if "clientAvatar" in payload:
        updates["clientAvatar"] = _optional_str(payload, "clientAvatar")
    if "value" in payload:
        updates["value"] = _money(payload)
    if "stage" in payload:
        updates["stage"] = _stage(payload)
        if not updates["stage"]:
            raise ValueError("stage is required")
    if "priority" in payload:
        updates["priority"] = _enum(payload, "priority", DEAL_PRIORITIES, default="medium")
    if "dueDate" in payload:
        updates["dueDate"] = parse_datetime(payload.get("dueDate"), "dueDate")
    if "description" in payload:
        updates["description"] = _optional_str(payload, "description")
    if not updates:
        raise ValueError("no valid fields to update")
    return updates


def _due_date(payload: Dict[str, Any]) -> str:
    value = _require_str(payload, "dueDate")
    if not _DATE_RE.match(value):
        raise ValueError("dueDate must be YYYY-MM-DD")
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise ValueError("dueDate must be a valid date") from None
    return value


def _due_time(payload: Dict[str, Any]) -> str:
    value = _require_str(payload, "dueTime")
    if not _TIME_RE.match(value):
        raise ValueError("dueTime must be HH:MM")
    return value


def validate_task_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "title": _require_str(payload, "title"),
        "description": _optional_str(payload, "description"),
        "dueDate": _due_date(payload),
        "dueTime": _due_time(payload),
        "priority": _enum(payload, "priority", TASK_PRIORITIES, default="medium"),
        "category": _enum(payload, "category", TASK_CATEGORIES, default="other"),
        "assignedTo": _optional_str(payload, "assignedTo"),
    }


def validate_task_update(payload: Dict[str, Any]) -> Dict[str, Any]:
    updates: Dict[str, Any] = {}
    if "title" in payload:
        updates["title"] = _require_str(payload, "title")
    if "description" in payload:
        updates["description"] = _optional_str(payload, "description")
    if "dueDate" in payload:
        updates["dueDate"] = _due_date(payload)
    if "dueTime" in payload:
        updates["dueTime"] = _due_time(payload)
    if "priority" in payload:
        updates["priority"] = _enum(payload, "priority", TASK_PRIORITIES, default="medium")
    if "category" in payload:
        updates["category"] = _enum(payload, "category", TASK_CATEGORIES, default="other")
    if "status" in payload:
        status = _enum(payload, "status", TASK_STATUSES)
        if not status:
            raise ValueError("status is required")
        updates["status"] = status
    if "assignedTo" in payload:
        updates["assignedTo"] = _optional_str(payload, "assignedTo")
    if not updates:
        raise ValueError("no valid fields to update")
    return updates


def normalize_task_status_filter(value: Optional[str]) -> Optional[str]:
    normalized = _normalize_enum(value)
    if not normalized or normalized == "all":
        return None
    if normalized not in TASK_STATUS_FILTERS:
        raise ValueError("Invalid status filter")
    return normalized


def validate_notification_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "title": _require_str(payload, "title"),
        "description": _optional_str(payload, "description"),
        "time": _optional_str(payload, "time") or "Just now",
        "entityType": _optional_str(payload, "entityType"),
        "entityId": _optional_str(payload, "entityId"),
    }


def validate_date_window(params: Dict[str, Any]) -> Dict[str, Optional[datetime]]:
    start = parse_datetime(params.get("startDate"), "startDate")
    end = parse_datetime(params.get("endDate"), "endDate")
    raw_end = str(params.get("endDate") or "").strip()
    # A bare end date covers the whole day.
    if end is not None and len(raw_end) == 10:
        end = end.replace(hour=23, minute=59, second=59, microsecond=999999)
    if start and end and start > end:
        raise ValueError("startDate must be before endDate")
    return {"start": start, "end": end}

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func as sa_func

from repository.clients_repo import get_client
from repository.errors import NotFoundError
from services.rbac import SALES_STAGES, STAGE_LABELS
from shared.db import Deal


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def deal_to_dict(deal: Deal) -> dict:
    return {
        "id": deal.id,
        "organizationId": deal.organization_id,
        "clientId": deal.client_id,
        "client": deal.client_name,
        "clientAvatar": deal.client_avatar,
        "title": deal.title,
        "value": deal.value,
        "stage": deal.stage,
        "priority": deal.priority,
        "dueDate": _format_dt(deal.due_date),
        "description": deal.description,
        "ownerId": deal.owner_id,
        "createdAt": _format_dt(deal.created_at),
        "updatedAt": _format_dt(deal.updated_at),
    }


def list_deals(db, organization_id: str, stages: Iterable[str]) -> List[Deal]:
    allowed = list(stages)
    if not allowed:
        return []
    return (
        db.query(Deal)
        .filter(Deal.organization_id == organization_id, Deal.stage.in_(allowed))
        .order_by(Deal.created_at.desc())
        .all()
    )


def get_deal(db, organization_id: str, deal_id: str) -> Optional[Deal]:
    if not deal_id:
        return None
    return (
        db.query(Deal)
        .filter(Deal.id == str(deal_id), Deal.organization_id == organization_id)
        .one_or_none()
    )


def _apply_client(db, deal: Deal, client_id: Optional[str], client_name: Optional[str]) -> None:
    if client_id:
        client = get_client(db, deal.organization_id, client_id)
        if not client:
            raise NotFoundError("Client not found")
        deal.client_id = client.id
        deal.client_name = client_name or client.name
    elif client_name:
        deal.client_name = client_name


def create_deal(db, organization_id: str, payload: Dict[str, Any], owner_id: str) -> Deal:
    deal = Deal(
        organization_id=organization_id,
        title=payload["title"],
        client_avatar=payload.get("clientAvatar"),
        value=payload.get("value") or 0,
        stage=payload["stage"],
        priority=payload.get("priority") or "medium",
        due_date=payload.get("dueDate"),
        description=payload.get("description"),
        owner_id=owner_id,
    )
    _apply_client(db, deal, payload.get("clientId"), payload.get("clientName"))
    db.add(deal)
    db.flush()
    return deal


def update_deal(db, deal: Deal, updates: Dict[str, Any]) -> Deal:
    if "clientName" in updates:
        _apply_client(db, deal, None, updates["clientName"])
    mapping = {
        "title": "title",
        "clientAvatar": "client_avatar",
        "value": "value",
        "stage": "stage",
        "priority": "priority",
        "dueDate": "due_date",
        "description": "description",
    }
    for key, column in mapping.items():
        if key in updates:
            setattr(deal, column, updates[key])
    deal.updated_at = datetime.utcnow()
    db.flush()
    return deal


def delete_deal(db, deal: Deal) -> None:
    db.delete(deal)
    db.flush()


def pipeline_summary(db, organization_id: str, stages: Iterable[str]) -> List[dict]:
    allowed = [stage for stage in SALES_STAGES if stage in set(stages)]
    totals = {stage: {"count": 0, "totalValue": 0} for stage in allowed}
    if allowed:
        rows = (
            db.query(Deal.stage, sa_func.count(Deal.id), sa_func.coalesce(sa_func.sum(Deal.value), 0))
            .filter(Deal.organization_id == organization_id, Deal.stage.in_(allowed))
            .group_by(Deal.stage)
            .all()
        )
        for stage, count, total in rows:
            totals[stage] = {"count": int(count), "totalValue": int(total or 0)}
    return [
        {"stage": stage, "label": STAGE_LABELS[stage], **totals[stage]}
        for stage in allowed
    ]

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, distinct, func as sa_func

from shared.db import Appointment, Client, Salesperson


def _client_window(start: Optional[datetime], end: Optional[datetime]) -> list:
    clauses = []
    if start is not None:
        clauses.append(Client.created_at >= start)
    if end is not None:
        clauses.append(Client.created_at <= end)
    return clauses


def sales_metrics(
    db,
    organization_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Lead intake per salesperson, share of clients that got at least one
    appointment, and number of converted customers, all over clients created
    inside the optional window.
    """
    window = _client_window(start, end)

    leads_rows = (
        db.query(Salesperson.id, Salesperson.name, sa_func.count(Client.id))
        .join(Client, Client.salesperson_id == Salesperson.id)
        .filter(Client.organization_id == organization_id, Client.status == "lead", *window)
        .group_by(Salesperson.id, Salesperson.name)
        .order_by(sa_func.count(Client.id).desc(), Salesperson.name.asc())
        .all()
    )
    leads_by_salesperson = [
        {"salespersonId": sp_id, "salespersonName": name, "count": int(count)}
        for sp_id, name, count in leads_rows
    ]

    total_clients = (
        db.query(sa_func.count(Client.id))
        .filter(Client.organization_id == organization_id, *window)
        .scalar()
        or 0
    )
    clients_with_appointments = (
        db.query(sa_func.count(distinct(Client.id)))
        .join(Appointment, Appointment.client_id == Client.id)
        .filter(Client.organization_id == organization_id, *window)
        .scalar()
        or 0
    )
    conversion = (clients_with_appointments / total_clients) * 100 if total_clients else 0.0

    customer_count = (
        db.query(sa_func.count(Client.id))
        .filter(Client.organization_id == organization_id, Client.status == "customer", *window)
        .scalar()
        or 0
    )

    return {
        "leadsReceivedBySalesperson": leads_by_salesperson,
        "appointmentConversion": round(float(conversion), 2),
        "clientCount": int(customer_count),
        "totalClients": int(total_clients),
        "clientsWithAppointments": int(clients_with_appointments),
    }


def sales_ranking(
    db,
    organization_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Per-salesperson lead and customer counts, busiest salesperson first."""
    join_on = and_(
        Client.salesperson_id == Salesperson.id,
        Client.organization_id == organization_id,
        *_client_window(start, end),
    )
    leads = sa_func.count(case((Client.status == "lead", 1)))
    customers = sa_func.count(case((Client.status == "customer", 1)))
    total = sa_func.count(Client.id)
    rows = (
        db.query(Salesperson.id, Salesperson.name, Salesperson.avatar_image_url, leads, customers, total)
        .outerjoin(Client, join_on)
        .filter(Salesperson.organization_id == organization_id)
        .group_by(Salesperson.id, Salesperson.name, Salesperson.avatar_image_url)
        .order_by(total.desc(), Salesperson.name.asc())
        .all()
    )
    return [
        {
            "salespersonId": sp_id,
            "salespersonName": name,
            "salespersonAvatar": avatar,
            "leadsCount": int(lead_count),
            "clientsCount": int(customer_count),
            "totalClients": int(total_count),
        }
        for sp_id, name, avatar, lead_count, customer_count, total_count in rows
    ]

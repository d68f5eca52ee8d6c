from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func as sa_func

from repository.errors import ConflictError, NotFoundError
from shared.db import Appointment, Client, Salesperson, User


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def salesperson_to_dict(salesperson: Salesperson) -> dict:
    return {
        "id": salesperson.id,
        "organizationId": salesperson.organization_id,
        "userId": salesperson.user_id,
        "name": salesperson.name,
        "email": salesperson.email,
        "phone": salesperson.phone,
        "avatarImageUrl": salesperson.avatar_image_url,
        "createdAt": _format_dt(salesperson.created_at),
        "updatedAt": _format_dt(salesperson.updated_at),
    }


def client_to_dict(client: Client) -> dict:
    salesperson = client.salesperson
    return {
        "id": client.id,
        "organizationId": client.organization_id,
        "salespersonId": client.salesperson_id,
        "salesperson": {"id": salesperson.id, "name": salesperson.name} if salesperson else None,
        "name": client.name,
        "email": client.email,
        "phone": client.phone,
        "status": client.status,
        "createdAt": _format_dt(client.created_at),
        "updatedAt": _format_dt(client.updated_at),
    }


def appointment_to_dict(appointment: Appointment) -> dict:
    client = appointment.client
    salesperson = appointment.salesperson
    return {
        "id": appointment.id,
        "organizationId": appointment.organization_id,
        "clientId": appointment.client_id,
        "salespersonId": appointment.salesperson_id,
        "clientName": client.name if client else None,
        "salespersonName": salesperson.name if salesperson else None,
        "date": _format_dt(appointment.date),
        "createdAt": _format_dt(appointment.created_at),
    }


# Salespeople


def list_salespeople(db, organization_id: str) -> List[Salesperson]:
    return (
        db.query(Salesperson)
        .filter(Salesperson.organization_id == organization_id)
        .order_by(Salesperson.name.asc())
        .all()
    )


def get_salesperson(db, organization_id: str, salesperson_id: str) -> Optional[Salesperson]:
    if not salesperson_id:
        return None
    return (
        db.query(Salesperson)
        .filter(Salesperson.id == str(salesperson_id), Salesperson.organization_id == organization_id)
        .one_or_none()
    )


def _salesperson_by_email(db, organization_id: str, email: str) -> Optional[Salesperson]:
    return (
        db.query(Salesperson)
        .filter(
            Salesperson.organization_id == organization_id,
            sa_func.lower(Salesperson.email) == str(email or "").lower(),
        )
        .first()
    )


def create_salesperson(db, organization_id: str, payload: Dict[str, Any]) -> Salesperson:
    if _salesperson_by_email(db, organization_id, payload["email"]):
        raise ConflictError("A salesperson with this email already exists")
    salesperson = Salesperson(
        organization_id=organization_id,
        user_id=payload.get("userId"),
        name=payload["name"],
        email=payload["email"],
        phone=payload.get("phone"),
        avatar_image_url=payload.get("avatarImageUrl"),
    )
    db.add(salesperson)
    db.flush()
    return salesperson


def ensure_salesperson_for_user(db, organization_id: str, user: User) -> Salesperson:
    """Return the user's salesperson record in the organization, creating it on first use."""
    salesperson = (
        db.query(Salesperson)
        .filter(Salesperson.organization_id == organization_id, Salesperson.user_id == user.id)
        .first()
    )
    if salesperson:
        return salesperson
    salesperson = _salesperson_by_email(db, organization_id, user.email)
    if salesperson:
        if not salesperson.user_id:
            salesperson.user_id = user.id
            db.flush()
        return salesperson
    salesperson = Salesperson(
        organization_id=organization_id,
        user_id=user.id,
        name=user.name,
        email=user.email,
        avatar_image_url=user.image,
    )
    db.add(salesperson)
    db.flush()
    return salesperson


# Clients


def list_clients(db, organization_id: str, status: Optional[str] = None, search: Optional[str] = None) -> List[Client]:
    query = db.query(Client).filter(Client.organization_id == organization_id)
    if status:
        query = query.filter(Client.status == status)
    if search:
        pattern = f"%{search.strip().lower()}%"
        query = query.filter(
            sa_func.lower(Client.name).like(pattern) | sa_func.lower(Client.email).like(pattern)
        )
    return query.order_by(Client.created_at.desc()).all()


def get_client(db, organization_id: str, client_id: str) -> Optional[Client]:
    if not client_id:
        return None
    return (
        db.query(Client)
        .filter(Client.id == str(client_id), Client.organization_id == organization_id)
        .one_or_none()
    )


def _email_taken(db, organization_id: str, email: str, exclude_id: Optional[str] = None) -> bool:
    query = db.query(Client.id).filter(
        Client.organization_id == organization_id,
        sa_func.lower(Client.email) == email.lower(),
    )
    if exclude_id:
        query = query.filter(Client.id != exclude_id)
    return query.first() is not None


def create_client(db, organization_id: str, payload: Dict[str, Any], salesperson: Salesperson) -> Client:
    if _email_taken(db, organization_id, payload["email"]):
        raise ConflictError("A client with this email already exists")
    client = Client(
        organization_id=organization_id,
        salesperson_id=salesperson.id,
        name=payload["name"],
        email=payload["email"],
        phone=payload.get("phone"),
        status=payload.get("status") or "lead",
    )
    db.add(client)
    db.flush()
    return client


def update_client(db, client: Client, updates: Dict[str, Any]) -> Client:
    if "email" in updates and _email_taken(db, client.organization_id, updates["email"], exclude_id=client.id):
        raise ConflictError("A client with this email already exists")
    if "salespersonId" in updates:
        salesperson_id = updates["salespersonId"]
        if salesperson_id and not get_salesperson(db, client.organization_id, salesperson_id):
            raise NotFoundError("Salesperson not found")
        client.salesperson_id = salesperson_id
    for field in ("name", "email", "phone", "status"):
        if field in updates:
            setattr(client, field, updates[field])
    client.updated_at = datetime.utcnow()
    db.flush()
    return client


def delete_client(db, client: Client) -> None:
    db.delete(client)
    db.flush()


# Appointments


def list_appointments(db, organization_id: str, client_id: Optional[str] = None) -> List[Appointment]:
    query = db.query(Appointment).filter(Appointment.organization_id == organization_id)
    if client_id:
        query = query.filter(Appointment.client_id == client_id)
    return query.order_by(Appointment.date.asc()).all()


def get_appointment(db, organization_id: str, appointment_id: str) -> Optional[Appointment]:
    if not appointment_id:
        return None
    return (
        db.query(Appointment)
        .filter(Appointment.id == str(appointment_id), Appointment.organization_id == organization_id)
        .one_or_none()
    )


def create_appointment(db, organization_id: str, payload: Dict[str, Any], salesperson: Salesperson) -> Appointment:
    client = get_client(db, organization_id, payload["clientId"])
    if not client:
        raise NotFoundError("Client not found")
    appointment = Appointment(
        organization_id=organization_id,
        client_id=client.id,
        salesperson_id=salesperson.id,
        date=payload["date"],
    )
    db.add(appointment)
    db.flush()
    return appointment


def delete_appointment(db, appointment: Appointment) -> None:
    db.delete(appointment)
    db.flush()

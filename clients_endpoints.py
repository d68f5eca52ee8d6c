from __future__ import annotations

import logging
from typing import Dict

import azure.functions as func

from crm_shared import (
    CRMActor,
    error_response,
    json_response,
    parse_json_body,
    permission_error,
    repository_error_response,
    resolve_actor_or_error,
    server_error_response,
)
from function_app import app
from repository.clients_repo import (
    appointment_to_dict,
    client_to_dict,
    create_appointment,
    create_client,
    create_salesperson,
    delete_appointment,
    delete_client,
    ensure_salesperson_for_user,
    get_appointment,
    get_client,
    get_salesperson,
    list_appointments,
    list_clients,
    list_salespeople,
    salesperson_to_dict,
    update_client,
)
from repository.errors import NotFoundError, RepositoryError
from repository.users_repo import get_user
from schemas.crm_schema import (
    CLIENT_STATUSES,
    validate_appointment_create,
    validate_client_create,
    validate_client_update,
    validate_salesperson_create,
)
from shared.db import SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _validation_error(exc: ValueError, cors: Dict[str, str]) -> func.HttpResponse:
    return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")


def _salesperson_for(db, actor: CRMActor, salesperson_id=None):
    if salesperson_id:
        salesperson = get_salesperson(db, actor.organization_id, salesperson_id)
        if not salesperson:
            raise NotFoundError("Salesperson not found")
        return salesperson
    return ensure_salesperson_for_user(db, actor.organization_id, get_user(db, actor.user_id))


def handle_clients_list(req: func.HttpRequest, cors: Dict[str, str], db, actor: CRMActor) -> func.HttpResponse:
    denied = permission_error(actor, "read:client", cors)
    if denied:
        return denied
    status = str(req.params.get("status") or "").strip().lower() or None
    if status and status not in CLIENT_STATUSES:
        return error_response(cors=cors, status_code=400, message="Invalid status filter", code="validation_error")
    rows = list_clients(db, actor.organization_id, status=status, search=req.params.get("search"))
    return json_response({"clients": [client_to_dict(row) for row in rows]}, status_code=200, cors=cors)


def handle_client_create(req: func.HttpRequest, cors: Dict[str, str], db, actor: CRMActor, body: dict) -> func.HttpResponse:
    denied = permission_error(actor, "create:client", cors)
    if denied:
        return denied
    try:
        payload = validate_client_create(body)
    except ValueError as exc:
        return _validation_error(exc, cors)
    salesperson = _salesperson_for(db, actor, payload.get("salespersonId"))
    client = create_client(db, actor.organization_id, payload, salesperson)
    db.commit()
    return json_response({"client": client_to_dict(client)}, status_code=201, cors=cors)


def handle_clients(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors)
        if auth_error:
            return auth_error
        assert actor
        if req.method == "GET":
            return handle_clients_list(req, cors, db, actor)
        return handle_client_create(req, cors, db, actor, body)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Clients request failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_client_detail(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors)
        if auth_error:
            return auth_error
        assert actor
        action = {"GET": "read", "PUT": "update", "DELETE": "delete"}.get(req.method, "read")
        denied = permission_error(actor, f"{action}:client", cors)
        if denied:
            return denied
        client = get_client(db, actor.organization_id, req.route_params.get("id"))
        if not client:
            return error_response(cors=cors, status_code=404, message="Client not found", code="not_found")

        if req.method == "GET":
            data = client_to_dict(client)
            data["appointments"] = [appointment_to_dict(row) for row in client.appointments]
            return json_response({"client": data}, status_code=200, cors=cors)

        if req.method == "DELETE":
            delete_client(db, client)
            db.commit()
            return json_response({"success": True}, status_code=200, cors=cors)

        try:
            updates = validate_client_update(body)
        except ValueError as exc:
            return _validation_error(exc, cors)
        update_client(db, client, updates)
        db.commit()
        return json_response({"client": client_to_dict(client)}, status_code=200, cors=cors)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Client detail request failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_salespeople(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors)
        if auth_error:
            return auth_error
        assert actor
        if req.method == "GET":
            denied = permission_error(actor, "read:salesperson", cors)
            if denied:
                return denied
            rows = list_salespeople(db, actor.organization_id)
            return json_response({"salespeople": [salesperson_to_dict(row) for row in rows]}, status_code=200, cors=cors)

        denied = permission_error(actor, "create:salesperson", cors)
        if denied:
            return denied
        try:
            payload = validate_salesperson_create(body)
        except ValueError as exc:
            return _validation_error(exc, cors)
        salesperson = create_salesperson(db, actor.organization_id, payload)
        db.commit()
        return json_response({"salesperson": salesperson_to_dict(salesperson)}, status_code=201, cors=cors)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Salespeople request failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_appointments(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors)
        if auth_error:
            return auth_error
        assert actor
        if req.method == "GET":
            denied = permission_error(actor, "read:appointment", cors)
            if denied:
                return denied
            rows = list_appointments(db, actor.organization_id, client_id=req.params.get("clientId"))
            return json_response({"appointments": [appointment_to_dict(row) for row in rows]}, status_code=200, cors=cors)

        denied = permission_error(actor, "create:appointment", cors)
        if denied:
            return denied
        try:
            payload = validate_appointment_create(body)
        except ValueError as exc:
            return _validation_error(exc, cors)
        salesperson = _salesperson_for(db, actor, payload.get("salespersonId"))
        appointment = create_appointment(db, actor.organization_id, payload, salesperson)
        db.commit()
        return json_response({"appointment": appointment_to_dict(appointment)}, status_code=201, cors=cors)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Appointments request failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_appointment_delete(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors)
        if auth_error:
            return auth_error
        assert actor
        denied = permission_error(actor, "delete:appointment", cors)
        if denied:
            return denied
        appointment = get_appointment(db, actor.organization_id, req.route_params.get("id"))
        if not appointment:
            return error_response(cors=cors, status_code=404, message="Appointment not found", code="not_found")
        delete_appointment(db, appointment)
        db.commit()
        return json_response({"success": True}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Appointment delete failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


@app.function_name(name="Clients")
@app.route(route="clients", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def clients(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_clients(req, cors)


@app.function_name(name="ClientDetail")
@app.route(route="clients/{id}", methods=["GET", "PUT", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def client_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PUT", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_client_detail(req, cors)


@app.function_name(name="Salespeople")
@app.route(route="salespeople", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def salespeople(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_salespeople(req, cors)


@app.function_name(name="Appointments")
@app.route(route="appointments", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def appointments(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_appointments(req, cors)


@app.function_name(name="AppointmentDetail")
@app.route(route="appointments/{id}", methods=["DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def appointment_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_appointment_delete(req, cors)

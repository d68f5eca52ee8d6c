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
from repository.deals_repo import (
    create_deal,
    deal_to_dict,
    delete_deal,
    get_deal,
    list_deals,
    pipeline_summary,
    update_deal,
)
from repository.errors import RepositoryError
from schemas.crm_schema import validate_deal_create, validate_deal_update
from services.rbac import can_act_on_deal, normalize_stage, readable_stages
from shared.db import SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _forbidden(cors: Dict[str, str], message: str) -> func.HttpResponse:
    return error_response(cors=cors, status_code=403, message=message, code="forbidden")


def _actor_can(actor: CRMActor, action: str, stage, target_stage=None) -> bool:
    return can_act_on_deal(actor.permissions, actor.stage_grants, action, stage, target_stage)


def handle_deals_list(req: func.HttpRequest, cors: Dict[str, str], db, actor: CRMActor) -> func.HttpResponse:
    denied = permission_error(actor, "read:deal", cors)
    if denied:
        return denied
    stages = readable_stages(actor.stage_grants)
    raw_stage = req.params.get("stage")
    if raw_stage:
        stage = normalize_stage(raw_stage)
        if not stage:
            return error_response(cors=cors, status_code=400, message="Invalid stage", code="validation_error")
        if stage not in stages:
            return _forbidden(cors, f"No access to stage: {stage}")
        stages = [stage]
    deals = [deal_to_dict(deal) for deal in list_deals(db, actor.organization_id, stages)]
    return json_response({"deals": deals}, status_code=200, cors=cors)


def handle_deal_create(req: func.HttpRequest, cors: Dict[str, str], db, actor: CRMActor, body: dict) -> func.HttpResponse:
    try:
        payload = validate_deal_create(body)
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
    if not _actor_can(actor, "create", payload["stage"]):
        return _forbidden(cors, f"Cannot create deals in stage: {payload['stage']}")
    deal = create_deal(db, actor.organization_id, payload, actor.user_id)
    db.commit()
    logger.info("Deal %s created in %s by %s", deal.id, deal.stage, actor.email)
    return json_response({"deal": deal_to_dict(deal)}, status_code=201, cors=cors)


def handle_deals(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors)
        if auth_error:
            return auth_error
        assert actor
        if req.method == "GET":
            return handle_deals_list(req, cors, db, actor)
        return handle_deal_create(req, cors, db, actor, body)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Deals request failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_deal_detail(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors)
        if auth_error:
            return auth_error
        assert actor
        deal = get_deal(db, actor.organization_id, req.route_params.get("id"))
        if not deal:
            return error_response(cors=cors, status_code=404, message="Deal not found", code="not_found")

        if req.method == "GET":
            if not _actor_can(actor, "read", deal.stage):
                return _forbidden(cors, f"No access to stage: {deal.stage}")
            return json_response({"deal": deal_to_dict(deal)}, status_code=200, cors=cors)

        if req.method == "DELETE":
            if not _actor_can(actor, "delete", deal.stage):
                return _forbidden(cors, f"Cannot delete deals in stage: {deal.stage}")
            delete_deal(db, deal)
            db.commit()
            return json_response({"success": True}, status_code=200, cors=cors)

        try:
            updates = validate_deal_update(body)
        except ValueError as exc:
            return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
        target_stage = updates.get("stage")
        if not _actor_can(actor, "update", deal.stage, target_stage):
            if target_stage and target_stage != deal.stage:
                return _forbidden(cors, f"Cannot move deal from {deal.stage} to {target_stage}")
            return _forbidden(cors, f"Cannot update deals in stage: {deal.stage}")
        previous_stage = deal.stage
        update_deal(db, deal, updates)
        db.commit()
        if deal.stage != previous_stage:
            logger.info("Deal %s moved from %s to %s by %s", deal.id, previous_stage, deal.stage, actor.email)
        return json_response({"deal": deal_to_dict(deal)}, status_code=200, cors=cors)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Deal detail request failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_deal_pipeline(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors)
        if auth_error:
            return auth_error
        assert actor
        denied = permission_error(actor, "read:deal", cors)
        if denied:
            return denied
        stages = pipeline_summary(db, actor.organization_id, readable_stages(actor.stage_grants))
        return json_response({"organizationId": actor.organization_id, "stages": stages}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Deal pipeline failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


@app.function_name(name="Deals")
@app.route(route="deals", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def deals(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_deals(req, cors)


@app.function_name(name="DealPipeline")
@app.route(route="deals/pipeline", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def deal_pipeline(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_deal_pipeline(req, cors)


@app.function_name(name="DealDetail")
@app.route(route="deals/{id}", methods=["GET", "PUT", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def deal_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PUT", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_deal_detail(req, cors)

from __future__ import annotations

import logging
from typing import Callable, Dict

import azure.functions as func

from crm_shared import (
    error_response,
    format_dt,
    json_response,
    permission_error,
    resolve_actor_or_error,
    server_error_response,
)
from function_app import app
from schemas.crm_schema import validate_date_window
from services.metrics_service import sales_metrics, sales_ranking
from shared.db import SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _handle_report(req: func.HttpRequest, cors: Dict[str, str], key: str, compute: Callable) -> func.HttpResponse:
    try:
        window = validate_date_window(req.params)
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors)
        if auth_error:
            return auth_error
        assert actor
        denied = permission_error(actor, "read:reports", cors)
        if denied:
            return denied
        result = compute(db, actor.organization_id, window["start"], window["end"])
        return json_response(
            {
                "organizationId": actor.organization_id,
                "startDate": format_dt(window["start"]),
                "endDate": format_dt(window["end"]),
                key: result,
            },
            status_code=200,
            cors=cors,
        )
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Dashboard %s failed: %s", key, exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_sales_metrics(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    return _handle_report(req, cors, "metrics", sales_metrics)


def handle_sales_ranking(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    return _handle_report(req, cors, "ranking", sales_ranking)


@app.function_name(name="DashboardSalesMetrics")
@app.route(route="dashboard/sales-metrics", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def dashboard_sales_metrics(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_sales_metrics(req, cors)


@app.function_name(name="DashboardSalesRanking")
@app.route(route="dashboard/sales-ranking", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def dashboard_sales_ranking(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_sales_ranking(req, cors)

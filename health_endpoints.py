import logging

import azure.functions as func
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from crm_shared import json_response
from function_app import app
from shared.db import SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def handle_health(req: func.HttpRequest, cors: dict) -> func.HttpResponse:  # pylint: disable=unused-argument
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Health check database ping failed: %s", exc)
        return json_response({"status": "degraded", "database": "unavailable"}, status_code=503, cors=cors)
    finally:
        db.close()
    return json_response({"status": "ok", "database": "ok"}, status_code=200, cors=cors)


@app.function_name(name="HealthApi")
@app.route(route="health", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def health_api(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_health(req, cors)

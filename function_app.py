import azure.functions as func
from dotenv import load_dotenv

# Load local .env for dev convenience (local.settings.json is handled by Functions host)
load_dotenv()

from shared.db import init_db  # noqa: E402

# Creates missing tables and seeds the RBAC catalog once per host start.
init_db()

app = func.FunctionApp()

# Import endpoint modules so their routes register with the shared app.
import health_endpoints  # noqa: E402,F401
import auth_endpoints  # noqa: E402,F401
import organizations_endpoints  # noqa: E402,F401
import permissions_endpoints  # noqa: E402,F401
import invitations_endpoints  # noqa: E402,F401
import clients_endpoints  # noqa: E402,F401
import deals_endpoints  # noqa: E402,F401
import tasks_endpoints  # noqa: E402,F401
import notifications_endpoints  # noqa: E402,F401
import dashboard_endpoints  # noqa: E402,F401

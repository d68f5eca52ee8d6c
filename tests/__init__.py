import os

# Point the app at a throwaway in-memory database before shared.db is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("AUTH_SESSION_SECRET", "test-secret")
os.environ.pop("RESEND_API_KEY", None)

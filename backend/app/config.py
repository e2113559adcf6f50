import os

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
TOKEN_EXPIRE_HOURS = int(os.getenv("TOKEN_EXPIRE_HOURS", "24"))
CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]
ADVISORY_WORKERS = int(os.getenv("ADVISORY_WORKERS", "2"))

ROLE_REPORTER = "reporter"
ROLE_RESPONDER = "responder"
ROLES = {ROLE_REPORTER, ROLE_RESPONDER}

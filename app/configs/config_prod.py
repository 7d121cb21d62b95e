"""
Production environment configuration.

These are the baseline defaults. Local overrides live in config_local.py.
"""

# FastAPI docs are disabled in production
DOCS_ENABLED = False

CORS_ORIGINS = [
    "https://campfire.example.com",
]

ALLOWED_HOSTS = [
    "campfire.example.com",
    "api.campfire.example.com",
    "localhost",
    "127.0.0.1",
    "testserver",
]

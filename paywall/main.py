import logging
from typing import Optional

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, Header
from fastapi.middleware.cors import CORSMiddleware

from paywall import app_context
from paywall.app.access import CredentialClaims, JWTCredentialDecoder, parse_bearer_token, resolve_claims
from paywall.app.purchases.repository import PostgresEntitlementStore
from paywall.app.routes.materials import router as materials_router
from paywall.app.routes.payments import router as payments_router
from paywall.app.routes.purchases import router as purchases_router
from paywall.config import load_config

load_dotenv()

CONFIG = load_config()

logging.basicConfig(level=CONFIG.log_level)
logger = logging.getLogger("paywall")

_credential_decoder = JWTCredentialDecoder(CONFIG.jwt_secret_key, algorithm=CONFIG.jwt_algorithm)


def get_conn():
    return psycopg2.connect(**CONFIG.db_settings)


def get_credential_claims(authorization: Optional[str] = Header(None)) -> Optional[CredentialClaims]:
    return resolve_claims(_credential_decoder, parse_bearer_token(authorization))


app_context.configure(
    get_conn=get_conn,
    get_credential_claims=get_credential_claims,
    config=CONFIG,
)

app = FastAPI(title="Paywall API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(CONFIG.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(purchases_router)
app.include_router(materials_router)
app.include_router(payments_router)


@app.on_event("startup")
def ensure_purchase_schema() -> None:
    try:
        PostgresEntitlementStore().ensure_schema()
    except psycopg2.Error:
        logger.exception("Failed to ensure the purchases schema")
        raise


@app.get("/api/healthz")
def healthz():
    return {"ok": True}


# run: uvicorn paywall.main:app --host 127.0.0.1 --port 8000 --reload

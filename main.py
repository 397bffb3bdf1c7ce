import os
import logging

import stripe
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import admin
import auth
import chat_routes
import config
import database
import earnings
import payments
import payouts
import product_routes
import webhooks
from errors import install_error_handlers

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

if config.STRIPE_SECRET_KEY:
    stripe.api_key = config.STRIPE_SECRET_KEY

app = FastAPI(title="Ascend AI Empire API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)

app.include_router(auth.router)
app.include_router(admin.auth_router)
app.include_router(admin.router)
# checkout and purchase routes have fixed paths that would otherwise match /{product_id}
app.include_router(payments.router)
app.include_router(product_routes.router)
app.include_router(webhooks.router)
app.include_router(chat_routes.router)
app.include_router(payouts.router)
app.include_router(earnings.router)


@app.on_event("startup")
def create_indexes():
    if database.db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
        return
    try:
        database.ensure_indexes()
    except Exception as e:
        logger.error("Could not create indexes: %s", e)


@app.get("/")
def read_root():
    return {"message": "Ascend AI Empire API ready"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "stripe": "✅ Configured" if config.STRIPE_SECRET_KEY else "❌ Not Configured",
        "groq": "✅ Configured" if config.GROQ_API_KEY else "❌ Not Configured",
        "discord_roles": {plan: bool(role) for plan, role in config.DISCORD_ROLE_IDS.items()},
    }
    try:
        _db = database.db
        if _db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = _db.name if hasattr(_db, 'name') else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = _db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

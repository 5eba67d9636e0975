import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.database import engine, Base
from app.routers import payments, plans, subscribers
from app.schema_patch import apply_schema_patches

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Create database tables
Base.metadata.create_all(bind=engine)
apply_schema_patches()

app = FastAPI(
    title="ReelPass",
    description="Payment reconciliation and subscription entitlements for streaming plans",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(payments.router)
app.include_router(subscribers.router)
app.include_router(plans.router)


@app.get("/health")
def health_check():
    return {"status": "healthy"}

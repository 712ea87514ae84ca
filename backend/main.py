import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database import init_db
from truth_api import router as truth_router

logging.basicConfig(
    level=os.getenv("TRUTH_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

init_db()

app = FastAPI(title="Inventory Truth & Root-Cause Engine API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(truth_router)


@app.get("/")
def read_root():
    return {"message": "Inventory Truth & Root-Cause Engine API is running"}


@app.get("/health")
def health():
    return {"status": "ok"}

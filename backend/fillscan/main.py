import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fillscan.config import settings
from fillscan.routers import fills

logging.basicConfig(level=settings.log_level)

app = FastAPI(title=settings.api_title, version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(fills.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
